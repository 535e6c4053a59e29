"""Harness configuration (mountprobe.yaml plus MOUNTPROBE_* environment)."""

import errno
import pathlib
import typing

import platformdirs
import pydantic
import yaml
from pydantic_settings import BaseSettings, SettingsConfigDict

from mountprobe.mountspec import UINT32_MAX, MountSpec
from mountprobe.readiness import DEFAULT_ATTEMPTS, DEFAULT_INTERVAL, PROBES

CONFIG_DIR = pathlib.Path(platformdirs.user_config_dir("mountprobe"))
CONFIG_NAME = "mountprobe.yaml"


class ConfigNotFoundError(Exception):
    """Raised when an explicitly requested config file does not exist."""


class HarnessConfig(BaseSettings):
    """Settings for one harness run."""

    model_config = SettingsConfigDict(env_prefix="MOUNTPROBE_", extra="forbid")

    driver_command: list[str] = pydantic.Field(default_factory=lambda: ["ceph-dokan"])
    mountpoint: str = "X:\\"
    spare_mountpoints: list[str] = pydantic.Field(default_factory=lambda: ["Y:\\", "Z:\\"])

    readiness_probe: str = "open-handle"
    poll_attempts: typing.Annotated[int, pydantic.Field(ge=1)] = DEFAULT_ATTEMPTS
    poll_interval: typing.Annotated[float, pydantic.Field(ge=0)] = DEFAULT_INTERVAL
    unmap_timeout: float | None = 60.0
    process_grace: float = 5.0

    volume_name: str = "TestCeph"
    volume_serial: typing.Annotated[int, pydantic.Field(ge=0, le=UINT32_MAX)] = 1234567890
    expected_filesystem: str = "Ceph"
    expected_max_component_length: int = 256
    read_only_remove_errno: str = "ENODEV"

    @pydantic.field_validator("driver_command")
    @classmethod
    def _command_not_empty(cls, value: list[str]) -> list[str]:
        if not value:
            raise ValueError("driver_command must name an executable")
        return value

    @pydantic.field_validator("readiness_probe")
    @classmethod
    def _known_probe(cls, value: str) -> str:
        if value not in PROBES:
            raise ValueError(f"unknown readiness probe {value!r}, expected one of {sorted(PROBES)}")
        return value

    @pydantic.field_validator("read_only_remove_errno")
    @classmethod
    def _known_errno(cls, value: str) -> str:
        if not hasattr(errno, value):
            raise ValueError(f"unknown errno name {value!r}")
        return value

    @property
    def read_only_errno(self) -> int:
        return getattr(errno, self.read_only_remove_errno)

    def shared_spec(self) -> MountSpec:
        """Spec for the suite-wide mount."""
        return MountSpec(
            mountpoint=self.mountpoint,
            volume_name=self.volume_name,
            volume_serial=self.volume_serial,
        )

    def spare_spec(self, index: int, **options: typing.Any) -> MountSpec:
        """Spec for the ``index``-th per-case mountpoint."""
        try:
            mountpoint = self.spare_mountpoints[index]
        except IndexError:
            raise ValueError(
                f"probe needs spare mountpoint #{index + 1}, "
                f"only {len(self.spare_mountpoints)} configured"
            ) from None
        return MountSpec(mountpoint=mountpoint, **options)

    @classmethod
    def load(cls, config_path: pathlib.Path | None = None) -> typing.Self:
        """Load from YAML; environment variables override file values.

        Without ``config_path`` the per-user config file is used if present.
        """
        if config_path is None:
            config_path = CONFIG_DIR / CONFIG_NAME
            if not config_path.is_file():
                return cls()
        elif not config_path.is_file():
            raise ConfigNotFoundError(f"No config found at {config_path}")

        data = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Invalid config {config_path}: expected a mapping")
        return cls(**data)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: typing.Any,
        env_settings: typing.Any,
        dotenv_settings: typing.Any,
        file_secret_settings: typing.Any,
    ) -> tuple[typing.Any, ...]:
        return env_settings, init_settings
