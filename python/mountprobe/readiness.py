"""Bounded polling for mount readiness.

Driver processes report "started" before the OS-visible mountpoint exists,
so readiness is polled with a pluggable probe instead of assumed.
"""

import collections.abc
import os
import pathlib
import sys
import time

import structlog

from mountprobe.errors import MountTimeoutError

logger = structlog.get_logger()

DEFAULT_ATTEMPTS = 10
DEFAULT_INTERVAL = 1.0

ReadinessProbe = collections.abc.Callable[[pathlib.Path], bool]


def _open_handle_windows(path: pathlib.Path) -> bool:
    import ctypes
    from ctypes import wintypes

    GENERIC_READ = 0x80000000
    FILE_SHARE_READ = 0x00000001
    OPEN_EXISTING = 3
    FILE_ATTRIBUTE_NORMAL = 0x80
    FILE_FLAG_BACKUP_SEMANTICS = 0x02000000
    INVALID_HANDLE_VALUE = wintypes.HANDLE(-1).value

    kernel32 = ctypes.WinDLL("kernel32", use_last_error=True)
    kernel32.CreateFileW.restype = wintypes.HANDLE
    handle = kernel32.CreateFileW(
        str(path),
        GENERIC_READ,
        FILE_SHARE_READ,
        None,
        OPEN_EXISTING,
        FILE_ATTRIBUTE_NORMAL | FILE_FLAG_BACKUP_SEMANTICS,
        None,
    )
    if handle == INVALID_HANDLE_VALUE:
        return False
    kernel32.CloseHandle(handle)
    return True


def open_handle_probe(path: pathlib.Path) -> bool:
    """Ready when a low-level read handle can be opened on the mount root."""
    if sys.platform == "win32":
        return _open_handle_windows(path)
    fd = os.open(path, os.O_RDONLY)
    os.close(fd)
    return True


def path_exists_probe(path: pathlib.Path) -> bool:
    """Ready when the mount root is visible to high-level path queries."""
    return os.path.exists(path)


def ismount_probe(path: pathlib.Path) -> bool:
    """Ready when the OS reports the path as a mountpoint."""
    return os.path.ismount(path)


PROBES: dict[str, ReadinessProbe] = {
    "open-handle": open_handle_probe,
    "exists": path_exists_probe,
    "ismount": ismount_probe,
}


def get_probe(name: str) -> ReadinessProbe:
    try:
        return PROBES[name]
    except KeyError:
        raise ValueError(
            f"unknown readiness probe {name!r}, expected one of {sorted(PROBES)}"
        ) from None


def wait_until_ready(
    path: str | os.PathLike[str],
    probe: ReadinessProbe = open_handle_probe,
    max_attempts: int = DEFAULT_ATTEMPTS,
    interval: float = DEFAULT_INTERVAL,
    *,
    sleep: collections.abc.Callable[[float], None] = time.sleep,
) -> int:
    """Evaluate ``probe`` until it succeeds or ``max_attempts`` is spent.

    Returns the number of attempts used. An ``OSError`` from the probe counts
    as "not ready". There is no sleep after the final failed attempt.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    target = pathlib.Path(path)
    log = logger.bind(component="readiness", path=str(target))
    log.info("mount.waiting", max_attempts=max_attempts, interval=interval)

    attempts = 0
    while True:
        try:
            ready = probe(target)
        except OSError as e:
            log.debug("mount.probe_error", attempt=attempts + 1, error=str(e))
            ready = False
        attempts += 1
        if ready:
            log.info("mount.ready", attempts=attempts)
            return attempts
        if attempts >= max_attempts:
            break
        sleep(interval)

    log.error("mount.timeout", attempts=attempts)
    raise MountTimeoutError(target, attempts)
