"""Mount options passed to the driver's ``map`` subcommand."""

import pathlib
import typing

import pydantic

UINT32_MAX = 2**32 - 1


class MountSpec(pydantic.BaseModel):
    """Immutable description of one mount."""

    model_config = pydantic.ConfigDict(extra="forbid", frozen=True)

    mountpoint: str
    read_only: bool = False
    volume_name: str | None = None
    volume_serial: typing.Annotated[int, pydantic.Field(ge=0, le=UINT32_MAX)] | None = None

    @pydantic.field_validator("mountpoint")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("mountpoint must not be empty")
        return value

    @property
    def path(self) -> pathlib.Path:
        return pathlib.Path(self.mountpoint)

    def args(self) -> list[str]:
        """Driver argument vector for ``map``."""
        argv = ["map", "-l", self.mountpoint]
        if self.volume_name is not None:
            argv += ["--win-vol-name", self.volume_name]
        if self.volume_serial is not None:
            argv += ["--win-vol-serial", str(self.volume_serial)]
        if self.read_only:
            argv.append("--read-only")
        return argv

    def unmap_args(self) -> list[str]:
        return ["unmap", "-l", self.mountpoint]

    def with_options(self, **changes: typing.Any) -> "MountSpec":
        """Return a validated copy with ``changes`` applied."""
        return MountSpec.model_validate(self.model_dump() | changes)
