"""Tests for probe sequencing against the fake driver."""

import errno
import pathlib

import pytest

from mountprobe import fsops, probes
from mountprobe.config import HarnessConfig
from mountprobe.errors import FilesystemError, MountTimeoutError
from mountprobe.orchestrator import Orchestrator
from mountprobe.probes import Probe, ProbeContext
from mountprobe.session import Driver, SessionState

# Probes whose expectations the fake driver can meet on any OS.
PORTABLE = [
    "mount_cycle",
    "create_delete_on_close",
    "write_delete_on_close",
    "write_read_round_trip",
    "directory_hierarchy",
    "cross_mount_persistence",
    "recursive_enumeration",
    "copy_and_delete",
    "free_space",
    "file_times",
    "file_security",
    "allocation_size",
]


def _register(monkeypatch: pytest.MonkeyPatch, name: str, func, spares: int = 0) -> None:
    monkeypatch.setitem(probes.REGISTRY, name, Probe(name, func, spares, ""))


class TestRun:
    """Tests for a full orchestrated run."""

    def test_portable_probes_pass(
        self, fake_config: HarnessConfig, fake_driver: Driver, store: pathlib.Path
    ) -> None:
        report = Orchestrator(fake_config, fake_driver).run(PORTABLE)
        assert [o.name for o in report.outcomes] == PORTABLE
        assert report.ok, report.failed
        assert fake_driver.active == []
        assert list(store.iterdir()) == []
        assert not pathlib.Path(fake_config.mountpoint).exists()

    def test_registry_order_and_placeholders(self) -> None:
        names = [p.name for p in probes.select()]
        assert names[0] == "mount_cycle"
        for reserved in ("file_times", "file_security", "allocation_size"):
            assert reserved in names

    def test_unknown_probe(self, fake_config: HarnessConfig, fake_driver: Driver) -> None:
        with pytest.raises(KeyError):
            Orchestrator(fake_config, fake_driver).run(["no_such_probe"])

    def test_not_enough_spares(self, fake_config: HarnessConfig, fake_driver: Driver) -> None:
        config = fake_config.model_copy(update={"spare_mountpoints": fake_config.spare_mountpoints[:1]})
        with pytest.raises(ValueError, match="spare mountpoints"):
            Orchestrator(config, fake_driver).run(["cross_mount_persistence"])

    def test_shared_mount_timeout_aborts_run(
        self, fake_config: HarnessConfig, fake_driver: Driver, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("FAKE_DRIVER_NEVER_READY", "1")
        fake_driver.attempts = 2
        with pytest.raises(MountTimeoutError):
            Orchestrator(fake_config, fake_driver).run(["free_space"])
        assert fake_driver.active == []


class TestFailures:
    """Tests for failure isolation and unconditional cleanup."""

    def test_assertion_fails_only_that_probe(
        self, fake_config: HarnessConfig, fake_driver: Driver, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def broken(ctx: ProbeContext) -> None:
            raise AssertionError("one is not two")

        _register(monkeypatch, "broken", broken)
        report = Orchestrator(fake_config, fake_driver).run(["free_space", "broken", "file_times"])
        assert report["broken"].passed is False
        assert report["broken"].infrastructure is False
        assert report["broken"].detail == "one is not two"
        assert report["free_space"].passed
        assert report["file_times"].passed

    def test_per_case_mount_released_after_failure(
        self, fake_config: HarnessConfig, fake_driver: Driver, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        seen = []

        def leaky(ctx: ProbeContext) -> None:
            session = ctx.map(ctx.spare(0))
            seen.append(session)
            raise AssertionError("failed while mapped")

        _register(monkeypatch, "leaky", leaky, spares=1)
        report = Orchestrator(fake_config, fake_driver).run(["leaky", "mount_cycle"])
        assert not report["leaky"].passed
        assert seen[0].state is SessionState.UNMAPPED
        # the same spare mountpoint is usable by the next probe
        assert report["mount_cycle"].passed
        assert fake_driver.active == []

    def test_infrastructure_error_is_flagged(
        self, fake_config: HarnessConfig, fake_driver: Driver, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def remap_shared(ctx: ProbeContext) -> None:
            ctx.map(ctx.shared.spec)

        _register(monkeypatch, "remap_shared", remap_shared)
        report = Orchestrator(fake_config, fake_driver).run(["remap_shared"])
        assert report["remap_shared"].infrastructure is True
        assert "already mapped" in report["remap_shared"].detail

    def test_unmap_error_during_cleanup_fails_probe(
        self, fake_config: HarnessConfig, fake_driver: Driver, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def noisy(ctx: ProbeContext) -> None:
            ctx.map(ctx.spare(0))
            monkeypatch.setenv("FAKE_DRIVER_UNMAP_OUTPUT", "Failed to unmap")

        _register(monkeypatch, "noisy", noisy, spares=1)
        orchestrator = Orchestrator(fake_config, fake_driver)
        shared = orchestrator.setup()
        try:
            outcome = orchestrator.run_probe(probes.REGISTRY["noisy"], shared)
        finally:
            monkeypatch.delenv("FAKE_DRIVER_UNMAP_OUTPUT")
            orchestrator.teardown(shared)
        assert not outcome.passed
        assert outcome.infrastructure
        assert "Failed to unmap" in outcome.detail
        assert fake_driver.active == []

    def test_unexpected_exception_is_contained(
        self, fake_config: HarnessConfig, fake_driver: Driver, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def closed_write(ctx: ProbeContext) -> None:
            f = fsops.create_delete_on_close(ctx.root / probes.unique_name("test_closed_"))
            f.close()
            f.write(b"x")

        _register(monkeypatch, "closed_write", closed_write)
        report = Orchestrator(fake_config, fake_driver).run(["closed_write", "free_space"])
        assert report["closed_write"].passed is False
        assert report["closed_write"].infrastructure is True
        assert report["closed_write"].detail.startswith("ValueError")
        assert report["free_space"].passed


def _read_only_session(driver: Driver, path: fsops.PathLike):
    path = pathlib.Path(path).absolute()
    for session in driver.active:
        if session.spec.read_only and path.parent == session.path.absolute():
            return session
    return None


def _enforce_read_only(
    monkeypatch: pytest.MonkeyPatch, driver: Driver, remove_code: int | None = errno.ENODEV
) -> None:
    """Make writes and removals under read-only fake mounts fail like the real driver."""
    write_bytes, remove = fsops.write_bytes, fsops.remove

    def guarded_write(path: fsops.PathLike, data: bytes) -> int:
        if _read_only_session(driver, path) is not None:
            raise FilesystemError("create", errno.ENODEV, path)
        return write_bytes(path, data)

    def guarded_remove(path: fsops.PathLike) -> bool:
        if remove_code is not None and _read_only_session(driver, path) is not None:
            raise FilesystemError("remove", remove_code, pathlib.Path(path).absolute())
        return remove(path)

    monkeypatch.setattr(fsops, "write_bytes", guarded_write)
    monkeypatch.setattr(fsops, "remove", guarded_remove)


class TestReadOnly:
    """Tests for read-only enforcement on a read-only remount."""

    def test_rejected_writes_and_removal_pass(
        self,
        fake_config: HarnessConfig,
        fake_driver: Driver,
        store: pathlib.Path,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        _enforce_read_only(monkeypatch, fake_driver)
        report = Orchestrator(fake_config, fake_driver).run(["read_only_enforcement"])
        assert report.ok, report.failed
        assert list(store.iterdir()) == []
        assert fake_driver.active == []

    def test_removal_error_text(self, tmp_path: pathlib.Path) -> None:
        path = tmp_path / "Y" / "test_ro_1"
        e = FilesystemError("remove", errno.ENODEV, path)
        assert str(e) == f"filesystem error: cannot remove: No such device [{path}]"

    def test_successful_removal_fails(
        self,
        fake_config: HarnessConfig,
        fake_driver: Driver,
        store: pathlib.Path,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        _enforce_read_only(monkeypatch, fake_driver, remove_code=None)
        report = Orchestrator(fake_config, fake_driver).run(["read_only_enforcement"])
        outcome = report["read_only_enforcement"]
        assert not outcome.passed
        assert not outcome.infrastructure
        assert "on a read-only mount" in outcome.detail
        assert fake_driver.active == []

    def test_wrong_errno_fails_and_cleans_up(
        self,
        fake_config: HarnessConfig,
        fake_driver: Driver,
        store: pathlib.Path,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        _enforce_read_only(monkeypatch, fake_driver, remove_code=errno.EROFS)
        report = Orchestrator(fake_config, fake_driver).run(["read_only_enforcement"])
        outcome = report["read_only_enforcement"]
        assert not outcome.passed
        assert "EROFS" in outcome.detail
        # the file written before the read-only remount is removed again
        assert list(store.iterdir()) == []
        assert fake_driver.active == []


class TestVolumeInformation:
    """Tests for the volume options carried by the shared mount."""

    @pytest.fixture
    def volume(self, fake_driver: Driver, monkeypatch: pytest.MonkeyPatch) -> dict[str, object]:
        reported: dict[str, object] = {"filesystem": "Ceph", "max_component_length": 256}

        def volume_information(path: fsops.PathLike) -> fsops.VolumeInfo:
            [spec] = [s.spec for s in fake_driver.active if s.path == pathlib.Path(path)]
            return fsops.VolumeInfo(
                spec.volume_name,
                reported["filesystem"],
                reported["max_component_length"],
                spec.volume_serial,
            )

        monkeypatch.setattr(fsops, "volume_information", volume_information)
        return reported

    def test_map_options_reported(
        self, fake_config: HarnessConfig, fake_driver: Driver, volume: dict[str, object]
    ) -> None:
        assert (fake_config.volume_name, fake_config.volume_serial) == ("TestCeph", 1234567890)
        report = Orchestrator(fake_config, fake_driver).run(["volume_information"])
        assert report.ok, report.failed

    def test_wrong_filesystem_fails(
        self, fake_config: HarnessConfig, fake_driver: Driver, volume: dict[str, object]
    ) -> None:
        volume["filesystem"] = "NTFS"
        report = Orchestrator(fake_config, fake_driver).run(["volume_information"])
        assert not report["volume_information"].passed
        assert "NTFS" in report["volume_information"].detail

    def test_wrong_component_length_fails(
        self, fake_config: HarnessConfig, fake_driver: Driver, volume: dict[str, object]
    ) -> None:
        volume["max_component_length"] = 255
        report = Orchestrator(fake_config, fake_driver).run(["volume_information"])
        assert "max component length 255" in report["volume_information"].detail
