"""Map and unmap drives through the driver CLI."""

import collections.abc
import contextlib
import enum
import os
import pathlib
import subprocess
import typing

import structlog

from mountprobe import readiness
from mountprobe.errors import HarnessError, MountBusyError, MountTimeoutError, UnmapError
from mountprobe.mountspec import MountSpec
from mountprobe.process import ProcessController, run_to_completion

if typing.TYPE_CHECKING:
    from mountprobe.config import HarnessConfig

logger = structlog.get_logger()

DEFAULT_COMMAND = ("ceph-dokan",)


class SessionState(enum.Enum):
    UNMAPPED = "unmapped"
    MAPPING = "mapping"
    MAPPED = "mapped"
    UNMAPPING = "unmapping"


class MountSession:
    """A drive mapped by a running driver process.

    Only the ``Driver`` that created a session moves it between states.
    """

    __slots__ = ("_spec", "_process", "state")

    def __init__(self, spec: MountSpec, process: ProcessController) -> None:
        self._spec = spec
        self._process = process
        self.state = SessionState.MAPPING

    @property
    def spec(self) -> MountSpec:
        return self._spec

    @property
    def process(self) -> ProcessController:
        return self._process

    @property
    def path(self) -> pathlib.Path:
        return self._spec.path

    @property
    def mapped(self) -> bool:
        return self.state is SessionState.MAPPED

    def __truediv__(self, other: str) -> pathlib.Path:
        return self.path / other

    def __repr__(self) -> str:
        return f"MountSession({self._spec.mountpoint!r}, state={self.state.value})"


class Driver:
    """Front end to a driver executable's ``map`` / ``unmap`` subcommands."""

    def __init__(
        self,
        command: collections.abc.Sequence[str] = DEFAULT_COMMAND,
        probe: readiness.ReadinessProbe = readiness.open_handle_probe,
        attempts: int = readiness.DEFAULT_ATTEMPTS,
        interval: float = readiness.DEFAULT_INTERVAL,
        unmap_timeout: float | None = 60.0,
        grace: float = 5.0,
    ) -> None:
        self.command = tuple(command)
        self.probe = probe
        self.attempts = attempts
        self.interval = interval
        self.unmap_timeout = unmap_timeout
        self.grace = grace
        self._active: dict[str, MountSession] = {}
        self._log = logger.bind(component="driver", command=self.command[0])

    @property
    def active(self) -> list[MountSession]:
        return list(self._active.values())

    def map(self, spec: MountSpec) -> MountSession:
        """Spawn ``map`` for ``spec`` and wait until the mountpoint is ready.

        On timeout the session is left in ``MAPPING`` and attached to the
        raised ``MountTimeoutError``; the caller decides whether to ``abort``.
        Any other error while waiting aborts the session before propagating.
        """
        key = _key(spec)
        if key in self._active:
            raise MountBusyError(f"{spec.mountpoint} is already mapped")

        self._log.info("mount.map", mountpoint=spec.mountpoint, args=spec.args())
        process = ProcessController.spawn(self.command, spec.args())
        session = MountSession(spec, process)
        self._active[key] = session

        try:
            readiness.wait_until_ready(
                spec.path, self.probe, self.attempts, self.interval
            )
        except MountTimeoutError as e:
            e.session = session
            raise
        except BaseException:
            self.abort(session)
            raise

        session.state = SessionState.MAPPED
        self._log.info("mount.mapped", mountpoint=spec.mountpoint, pid=process.pid)
        return session

    def unmap(self, session: MountSession) -> None:
        """Run ``unmap`` and join the mapping process.

        Any output from ``unmap`` or a non-zero exit of the mapping process is
        an ``UnmapError``. Nothing is retried.
        """
        if session.state is not SessionState.MAPPED:
            raise UnmapError(f"cannot unmap {session!r}: not mapped")

        spec = session.spec
        session.state = SessionState.UNMAPPING
        try:
            result = run_to_completion(
                self.command, spec.unmap_args(), timeout=self.unmap_timeout
            )
        except subprocess.TimeoutExpired as e:
            raise UnmapError(f"unmap {spec.mountpoint} timed out after {e.timeout}s") from e

        if result.stdout != "":
            raise UnmapError(
                f"unmap {spec.mountpoint} printed output: {result.stdout.strip()!r}"
            )

        code = session.process.join()
        if code != 0:
            raise UnmapError(f"map process for {spec.mountpoint} exited with {code}")

        session.state = SessionState.UNMAPPED
        self._active.pop(_key(spec), None)
        self._log.info("mount.unmapped", mountpoint=spec.mountpoint)

    def abort(self, session: MountSession) -> None:
        """Tear down a session that failed midway.

        Only used after another error is already propagating, so the unmap
        result is logged rather than raised.
        """
        spec = session.spec
        self._log.warning("mount.abort", mountpoint=spec.mountpoint, state=session.state.value)
        unmap_attempted = session.state is SessionState.UNMAPPING
        session.state = SessionState.UNMAPPING
        if not unmap_attempted and session.process.poll() is None:
            try:
                result = run_to_completion(
                    self.command, spec.unmap_args(), timeout=self.unmap_timeout
                )
            except (HarnessError, subprocess.TimeoutExpired) as e:
                self._log.error("mount.abort.unmap_failed", mountpoint=spec.mountpoint, error=str(e))
            else:
                if result.stdout or result.returncode:
                    self._log.error(
                        "mount.abort.unmap_failed",
                        mountpoint=spec.mountpoint,
                        returncode=result.returncode,
                        stdout=result.stdout.strip(),
                    )
        try:
            code = session.process.terminate(self.grace)
        except HarnessError as e:
            self._log.error("mount.abort.join_failed", mountpoint=spec.mountpoint, error=str(e))
        else:
            self._log.info("mount.aborted", mountpoint=spec.mountpoint, returncode=code)
        session.state = SessionState.UNMAPPED
        self._active.pop(_key(spec), None)

    def release(self, session: MountSession) -> None:
        """Unmap a mapped session, or abort one stuck in another state."""
        if session.state is SessionState.MAPPED:
            self.unmap(session)
        elif session.state is not SessionState.UNMAPPED:
            self.abort(session)

    @contextlib.contextmanager
    def mounted(self, spec: MountSpec) -> collections.abc.Iterator[MountSession]:
        """Map ``spec`` for the duration of the block; unmapping is unconditional."""
        try:
            session = self.map(spec)
        except MountTimeoutError as e:
            if e.session is not None:
                self.abort(e.session)
            raise
        try:
            yield session
        except BaseException:
            self._release_quietly(session)
            raise
        else:
            try:
                self.unmap(session)
            except HarnessError:
                if session.state is not SessionState.UNMAPPED:
                    self.abort(session)
                raise

    def _release_quietly(self, session: MountSession) -> None:
        # The block already failed; an unmap failure here is logged and the
        # original error keeps propagating.
        try:
            self.release(session)
        except HarnessError as e:
            self._log.error("mount.release_failed", mountpoint=session.spec.mountpoint, error=str(e))
            if session.state is not SessionState.UNMAPPED:
                self.abort(session)


def _key(spec: MountSpec) -> str:
    return os.path.normcase(spec.mountpoint.rstrip("\\/") or spec.mountpoint)


def driver_from_config(config: "HarnessConfig") -> Driver:
    """Build a ``Driver`` from a ``HarnessConfig``."""
    return Driver(
        command=config.driver_command,
        probe=readiness.get_probe(config.readiness_probe),
        attempts=config.poll_attempts,
        interval=config.poll_interval,
        unmap_timeout=config.unmap_timeout,
        grace=config.process_grace,
    )
