"""Filesystem-semantics probes run against mapped drives.

Each probe takes a ``ProbeContext`` and raises ``AssertionError`` when the
mounted filesystem does not behave exactly as expected.
"""

import collections.abc
import os
import pathlib
import typing
import uuid

import structlog

from mountprobe import fsops
from mountprobe.errors import FilesystemError, HarnessError
from mountprobe.mountspec import MountSpec
from mountprobe.session import Driver, MountSession, SessionState

if typing.TYPE_CHECKING:
    from mountprobe.config import HarnessConfig

logger = structlog.get_logger()

ProbeFunc = collections.abc.Callable[["ProbeContext"], None]


class Probe(typing.NamedTuple):
    name: str
    func: ProbeFunc
    spares: int
    description: str

    def __call__(self, ctx: "ProbeContext") -> None:
        self.func(ctx)


REGISTRY: dict[str, Probe] = {}


def probe(name: str, *, spares: int = 0) -> collections.abc.Callable[[ProbeFunc], ProbeFunc]:
    """Register a probe; ``spares`` is how many per-case mountpoints it maps."""

    def register(func: ProbeFunc) -> ProbeFunc:
        if name in REGISTRY:
            raise ValueError(f"duplicate probe {name!r}")
        doc = (func.__doc__ or "").strip().splitlines()
        REGISTRY[name] = Probe(name, func, spares, doc[0] if doc else "")
        return func

    return register


def select(names: collections.abc.Iterable[str] | None = None) -> list[Probe]:
    """Probes in registration order, optionally restricted to ``names``."""
    if names is None:
        return list(REGISTRY.values())
    wanted = list(names)
    unknown = [n for n in wanted if n not in REGISTRY]
    if unknown:
        raise KeyError(f"unknown probe(s): {', '.join(unknown)}")
    return [p for p in REGISTRY.values() if p.name in wanted]


class ProbeContext:
    """Everything one probe may touch: the shared mount and its own mounts.

    Mounts opened through ``map`` belong to this context and are released by
    ``close`` even when the probe failed.
    """

    def __init__(self, config: "HarnessConfig", driver: Driver, shared: MountSession) -> None:
        self.config = config
        self.driver = driver
        self.shared = shared
        self._owned: list[MountSession] = []

    @property
    def root(self) -> pathlib.Path:
        return self.shared.path

    def spare(self, index: int, **options: typing.Any) -> MountSpec:
        return self.config.spare_spec(index, **options)

    def map(self, spec: MountSpec) -> MountSession:
        try:
            session = self.driver.map(spec)
        except HarnessError as e:
            stuck = getattr(e, "session", None)
            if stuck is not None:
                self._owned.append(stuck)
            raise
        self._owned.append(session)
        return session

    def unmap(self, session: MountSession) -> None:
        self.driver.unmap(session)

    def close(self, failed: bool = False) -> None:
        """Release every mount this probe opened, newest first.

        After a failed probe release errors are logged so the original error
        wins; otherwise the first one is raised once all mounts are released.
        """
        first: HarnessError | None = None
        for session in reversed(self._owned):
            if session.state is SessionState.UNMAPPED:
                continue
            try:
                self.driver.release(session)
            except HarnessError as e:
                logger.error("probe.release_failed", mountpoint=session.spec.mountpoint, error=str(e))
                if session.state is not SessionState.UNMAPPED:
                    self.driver.abort(session)
                if first is None:
                    first = e
        self._owned.clear()
        if first is not None and not failed:
            raise first


def unique_name(prefix: str) -> str:
    return f"{prefix}{uuid.uuid4()}"


def _create(path: pathlib.Path) -> fsops.DeleteOnCloseFile:
    try:
        return fsops.create_delete_on_close(path)
    except FilesystemError as e:
        raise AssertionError(f"Could not open file: {path} err: {e}") from e


@probe("mount_cycle", spares=1)
def mount_cycle(ctx: ProbeContext) -> None:
    """Map and unmap a second drive while the shared one stays mapped."""
    session = ctx.map(ctx.spare(0))
    assert session.mapped
    ctx.unmap(session)
    assert session.state is SessionState.UNMAPPED


@probe("create_delete_on_close")
def create_delete_on_close(ctx: ProbeContext) -> None:
    """A delete-on-close file is gone once its handle closes."""
    path = ctx.root / unique_name("test_create_")
    f = _create(path)
    f.close()
    assert not fsops.exists(path), f"{path} still exists after close"


@probe("write_delete_on_close")
def write_delete_on_close(ctx: ProbeContext) -> None:
    """Writes to a delete-on-close file report the full byte count."""
    data = b"abcdef"
    path = ctx.root / unique_name("test_write_")
    with _create(path) as f:
        written = f.write(data)
        assert written == len(data), f"wrote {written} of {len(data)} bytes"
    assert not fsops.exists(path), f"{path} still exists after close"


@probe("write_read_round_trip")
def write_read_round_trip(ctx: ProbeContext) -> None:
    """Bytes written, flushed and closed read back unchanged."""
    data = b"abcdef\x00\xffround trip\r\n"
    path = ctx.root / unique_name("test_round_trip_")
    try:
        written = fsops.write_bytes(path, data)
        assert written == len(data), f"wrote {written} of {len(data)} bytes"
        content = fsops.read_bytes(path)
        assert content == data, f"read back {content!r}, expected {data!r}"
    finally:
        fsops.remove(path)
    assert not fsops.exists(path)


@probe("directory_hierarchy")
def directory_hierarchy(ctx: ProbeContext) -> None:
    """Nested directories are created, refuse plain removal while full, and remove recursively."""
    base = ctx.root / unique_name("test_dir_")
    nested = base / "nested"
    top_file = base / "top.txt"
    nested_file = nested / "nested.txt"
    try:
        fsops.make_dir(base)
        fsops.make_dir(nested)
        fsops.write_bytes(top_file, b"top")
        fsops.write_bytes(nested_file, b"nested")
        assert fsops.exists(top_file), f"{top_file} missing"
        assert fsops.exists(nested_file), f"{nested_file} missing"

        try:
            fsops.remove(nested)
        except FilesystemError:
            pass
        else:
            raise AssertionError(f"removed non-empty directory {nested}")

        assert fsops.remove(nested_file)
        assert fsops.remove(nested)
        assert not fsops.exists(nested)

        removed = fsops.remove_all(base)
        assert removed > 0, f"remove_all({base}) removed nothing"
        assert not fsops.exists(base)
    finally:
        if fsops.exists(base):
            fsops.remove_all(base)


@probe("read_only_enforcement", spares=1)
def read_only_enforcement(ctx: ProbeContext) -> None:
    """A read-only mount rejects creation and removal but keeps existing files."""
    spec = ctx.spare(0)
    data = b"read-only probe"
    name = unique_name("test_ro_")

    session = ctx.map(spec)
    fsops.write_bytes(session / name, data)
    ctx.unmap(session)

    try:
        session = ctx.map(spec.with_options(read_only=True))
        path = (session / name).absolute()
        new_path = session / unique_name("test_ro_new_")
        try:
            fsops.write_bytes(new_path, b"should not exist")
        except FilesystemError:
            pass
        else:
            raise AssertionError(f"created {new_path} on a read-only mount")
        assert not fsops.exists(new_path), f"{new_path} exists on a read-only mount"

        assert fsops.exists(path), f"{path} vanished after remount"
        assert fsops.read_bytes(path) == data

        code = ctx.config.read_only_errno
        expected = f"filesystem error: cannot remove: {os.strerror(code)} [{path}]"
        try:
            fsops.remove(path)
        except FilesystemError as e:
            assert e.matches("remove", code, path), f"unexpected error {e.kind}: {e}"
            assert str(e) == expected, f"{str(e)!r} != {expected!r}"
        else:
            raise AssertionError(f"removed {path} on a read-only mount")
        ctx.unmap(session)

        session = ctx.map(spec)
        path = session / name
        assert fsops.exists(path), f"{path} vanished after read-only mount"
        assert fsops.remove(path)
        assert not fsops.exists(path)
        ctx.unmap(session)
    except BaseException:
        _discard(ctx, spec, name)
        raise


def _discard(ctx: ProbeContext, spec: MountSpec, name: str) -> None:
    """Remove ``name`` through a fresh writable mount after a failed probe.

    Errors are logged; the probe's own failure is what gets reported.
    """
    ctx.close(failed=True)
    try:
        with ctx.driver.mounted(spec) as session:
            fsops.remove(session / name)
    except (HarnessError, OSError) as e:
        logger.warning("probe.cleanup_failed", mountpoint=spec.mountpoint, name=name, error=str(e))


@probe("cross_mount_persistence", spares=2)
def cross_mount_persistence(ctx: ProbeContext) -> None:
    """A file written through one drive is visible through another."""
    data = b"abcdef"
    name = unique_name("test_persist_")

    first = ctx.map(ctx.spare(0))
    fsops.write_bytes(first / name, data)
    ctx.unmap(first)

    second = ctx.map(ctx.spare(1))
    path = second / name
    assert fsops.exists(path), f"{path} not visible through {second.spec.mountpoint}"
    assert fsops.read_bytes(path) == data
    assert fsops.remove(path)
    assert not fsops.exists(path)
    ctx.unmap(second)


@probe("recursive_enumeration")
def recursive_enumeration(ctx: ProbeContext) -> None:
    """Recursive listing returns the subdirectory and both files."""
    base = ctx.root / unique_name("test_walk_")
    sub = base / "sub"
    top_file = base / "top.txt"
    nested_file = sub / "nested.txt"
    try:
        fsops.make_dir(base)
        fsops.make_dir(sub)
        fsops.write_bytes(top_file, b"top")
        fsops.write_bytes(nested_file, b"nested")

        found = fsops.walk(base)
        expected = {sub, top_file, nested_file}
        assert found == expected, f"listed {sorted(map(str, found))}"
    finally:
        fsops.remove_all(base)


@probe("copy_and_delete")
def copy_and_delete(ctx: ProbeContext) -> None:
    """Copy to another directory then delete the source, as a move."""
    data = b"abcdef"
    base = ctx.root / unique_name("test_move_")
    src_dir = base / "src"
    dst_dir = base / "dst"
    source = src_dir / "file.txt"
    destination = dst_dir / "file.txt"
    try:
        fsops.make_dir(base)
        fsops.make_dir(src_dir)
        fsops.make_dir(dst_dir)
        fsops.write_bytes(source, data)

        fsops.copy(source, destination)
        assert fsops.remove(source)

        assert fsops.exists(destination), f"{destination} missing"
        assert not fsops.exists(source), f"{source} still exists"
        assert fsops.read_bytes(destination) == data
    finally:
        fsops.remove_all(base)


@probe("volume_information")
def volume_information(ctx: ProbeContext) -> None:
    """Volume label, filesystem, component length and serial match the map options."""
    info = fsops.volume_information(ctx.root)
    config = ctx.config
    assert info.label == config.volume_name, f"label {info.label!r}"
    assert info.filesystem == config.expected_filesystem, f"filesystem {info.filesystem!r}"
    assert info.max_component_length == config.expected_max_component_length, (
        f"max component length {info.max_component_length}"
    )
    assert info.serial == config.volume_serial, f"serial {info.serial}"


@probe("free_space")
def free_space(ctx: ProbeContext) -> None:
    """Capacity, free and available space are all reported non-zero."""
    space = fsops.disk_space(ctx.root)
    assert space.capacity > 0, f"capacity {space.capacity}"
    assert space.free > 0, f"free {space.free}"
    assert space.available > 0, f"available {space.available}"


@probe("file_times")
def file_times(ctx: ProbeContext) -> None:
    """Reserved."""


@probe("file_security")
def file_security(ctx: ProbeContext) -> None:
    """Reserved."""


@probe("allocation_size")
def allocation_size(ctx: ProbeContext) -> None:
    """Reserved."""
