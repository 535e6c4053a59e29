"""Lifecycle of externally launched driver processes."""

import collections.abc
import os
import subprocess
import typing

import structlog

from mountprobe.errors import JoinError, SpawnError

logger = structlog.get_logger()


class CommandResult(typing.NamedTuple):
    """Captured output of a short-lived command."""

    stdout: str
    stderr: str
    returncode: int


class ProcessController:
    """Owns one long-running driver process.

    The controller is the only holder of the ``Popen`` object; ``close()``
    (or leaving the ``with`` block) releases its pipes and reaps the child.
    """

    __slots__ = ("_argv", "_proc", "_returncode", "_log")

    def __init__(self, argv: collections.abc.Sequence[str], proc: subprocess.Popen) -> None:
        self._argv = list(argv)
        self._proc: subprocess.Popen | None = proc
        self._returncode: int | None = None
        self._log = logger.bind(component="process", pid=proc.pid)

    @classmethod
    def spawn(
        cls,
        command: collections.abc.Sequence[str],
        args: collections.abc.Sequence[str] = (),
    ) -> typing.Self:
        """Start ``command + args`` without waiting for it to finish."""
        argv = [*command, *args]
        if not argv:
            raise SpawnError(argv, "empty command")
        try:
            proc = subprocess.Popen(argv, stdin=subprocess.DEVNULL)
        except FileNotFoundError:
            raise SpawnError(argv, "executable not found") from None
        except OSError as e:
            raise SpawnError(argv, os.strerror(e.errno) if e.errno else str(e)) from e
        controller = cls(argv, proc)
        controller._log.debug("process.spawned", argv=argv)
        return controller

    @property
    def argv(self) -> list[str]:
        return list(self._argv)

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc is not None else None

    @property
    def returncode(self) -> int | None:
        return self._returncode

    def poll(self) -> int | None:
        """Return the exit code if the process has exited, else ``None``."""
        if self._proc is None:
            return self._returncode
        return self._proc.poll()

    def join(self, timeout: float | None = None) -> int:
        """Block until the process terminates and return its exit code."""
        if self._proc is None:
            raise JoinError(f"process {self._argv[0]} already joined")
        try:
            code = self._proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired as e:
            raise JoinError(f"process {self._proc.pid} still running after {timeout}s") from e
        self._returncode = code
        self._release()
        self._log.debug("process.joined", returncode=code)
        return code

    def terminate(self, grace: float = 5.0) -> int:
        """Terminate the process, escalating to kill after ``grace`` seconds."""
        if self._proc is None:
            raise JoinError(f"process {self._argv[0]} already joined")
        if self._proc.poll() is None:
            self._log.warning("process.terminate", grace=grace)
            self._proc.terminate()
            try:
                self._proc.wait(timeout=grace)
            except subprocess.TimeoutExpired:
                self._log.warning("process.kill")
                self._proc.kill()
        return self.join()

    def close(self) -> None:
        """Release OS resources, killing the child if it is still alive."""
        if self._proc is None:
            return
        if self._proc.poll() is None:
            self._proc.kill()
        self._returncode = self._proc.wait()
        self._release()

    def _release(self) -> None:
        proc, self._proc = self._proc, None
        if proc is None:
            return
        for stream in (proc.stdin, proc.stdout, proc.stderr):
            if stream is not None:
                stream.close()

    def __enter__(self) -> typing.Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: typing.Any,
    ) -> bool:
        self.close()
        return False

    def __repr__(self) -> str:
        return f"ProcessController(argv={self._argv!r}, pid={self.pid})"


def run_to_completion(
    command: collections.abc.Sequence[str],
    args: collections.abc.Sequence[str] = (),
    timeout: float | None = None,
) -> CommandResult:
    """Run a short-lived command synchronously and capture its output."""
    argv = [*command, *args]
    try:
        proc = subprocess.run(
            argv,
            stdin=subprocess.DEVNULL,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except FileNotFoundError:
        raise SpawnError(argv, "executable not found") from None
    except OSError as e:
        raise SpawnError(argv, os.strerror(e.errno) if e.errno else str(e)) from e
    logger.debug("process.completed", argv=argv, returncode=proc.returncode)
    return CommandResult(proc.stdout, proc.stderr, proc.returncode)
