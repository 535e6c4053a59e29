"""Error taxonomy for the mount harness."""

import errno
import os
import pathlib
import typing

if typing.TYPE_CHECKING:
    from mountprobe.session import MountSession


class HarnessError(Exception):
    """Base class for test-infrastructure failures."""


class SpawnError(HarnessError):
    """Raised when the driver process could not be created."""

    def __init__(self, command: typing.Sequence[str], reason: str) -> None:
        self.command = list(command)
        self.reason = reason
        super().__init__(f"cannot spawn {' '.join(self.command)}: {reason}")


class JoinError(HarnessError):
    """Raised when a process cannot be waited on."""


class MountTimeoutError(HarnessError, TimeoutError):
    """Raised when a mountpoint does not become ready within the attempt budget."""

    def __init__(self, path: str | os.PathLike[str], attempts: int) -> None:
        self.path = os.fspath(path)
        self.attempts = attempts
        self.session: "MountSession | None" = None
        super().__init__(
            f"timed out waiting for mount: {self.path} after {attempts} attempts"
        )


class UnmapError(HarnessError):
    """Raised when the unmap command prints output or the map process exits non-zero."""


class MountBusyError(HarnessError):
    """Raised when mapping a mountpoint that is already mapped."""


class FilesystemError(OSError):
    """An OS error raised by a filesystem operation under the mount.

    Compared structurally through ``operation``, ``errno`` and ``path``;
    ``str()`` renders the display form
    ``filesystem error: cannot <operation>: <strerror> [<path>]``.
    """

    def __init__(self, operation: str, code: int, path: str | os.PathLike[str]) -> None:
        super().__init__(code, os.strerror(code), os.fspath(path))
        self.operation = operation

    @classmethod
    def from_os_error(
        cls, operation: str, exc: OSError, path: str | os.PathLike[str]
    ) -> "FilesystemError":
        code = exc.errno if exc.errno is not None else errno.EIO
        return cls(operation, code, exc.filename or path)

    @property
    def kind(self) -> str:
        return errno.errorcode.get(self.errno, str(self.errno))

    def matches(self, operation: str, code: int, path: str | os.PathLike[str]) -> bool:
        return (
            self.operation == operation
            and self.errno == code
            and pathlib.Path(self.filename) == pathlib.Path(path)
        )

    def __str__(self) -> str:
        return f"filesystem error: cannot {self.operation}: {self.strerror} [{self.filename}]"
