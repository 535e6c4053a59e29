"""Filesystem operations the probes run against a mounted drive.

Windows-only semantics (delete-on-close, volume label and serial) go through
kernel32 via ``ctypes``; other platforms get the closest POSIX equivalent.
"""

import collections.abc
import contextlib
import os
import pathlib
import shutil
import sys
import typing

from mountprobe.errors import FilesystemError

PROC_MOUNTS = "/proc/self/mounts"

PathLike = str | os.PathLike[str]


class VolumeInfo(typing.NamedTuple):
    label: str | None
    filesystem: str | None
    max_component_length: int
    serial: int | None


class DiskSpace(typing.NamedTuple):
    capacity: int
    free: int
    available: int


def _kernel32() -> typing.Any:
    import ctypes
    from ctypes import wintypes

    k32 = ctypes.WinDLL("kernel32", use_last_error=True)
    k32.CreateFileW.restype = wintypes.HANDLE
    k32.CreateFileW.argtypes = [
        wintypes.LPCWSTR, wintypes.DWORD, wintypes.DWORD, wintypes.LPVOID,
        wintypes.DWORD, wintypes.DWORD, wintypes.HANDLE,
    ]
    k32.WriteFile.argtypes = [
        wintypes.HANDLE, wintypes.LPCVOID, wintypes.DWORD,
        ctypes.POINTER(wintypes.DWORD), wintypes.LPVOID,
    ]
    k32.CloseHandle.argtypes = [wintypes.HANDLE]
    return k32


def _last_os_error(path: PathLike) -> OSError:
    import ctypes

    e = ctypes.WinError(ctypes.get_last_error())
    e.filename = os.fspath(path)
    return e


class DeleteOnCloseFile:
    """A newly created file the OS removes when its last handle closes.

    On POSIX the name is unlinked right after creation, which releases the
    storage on last close the same way.
    """

    def __init__(self, path: PathLike) -> None:
        self.path = pathlib.Path(path)
        self._handle: typing.Any = None
        self._fd: int | None = None
        try:
            if sys.platform == "win32":
                self._open_windows()
            else:
                self._open_posix()
        except OSError as e:
            raise FilesystemError.from_os_error("create", e, self.path) from e

    def _open_windows(self) -> None:
        from ctypes import wintypes

        GENERIC_WRITE = 0x40000000
        CREATE_NEW = 1
        FILE_ATTRIBUTE_NORMAL = 0x80
        FILE_FLAG_DELETE_ON_CLOSE = 0x04000000

        k32 = _kernel32()
        handle = k32.CreateFileW(
            str(self.path),
            GENERIC_WRITE,
            0,
            None,
            CREATE_NEW,
            FILE_ATTRIBUTE_NORMAL | FILE_FLAG_DELETE_ON_CLOSE,
            None,
        )
        if handle == wintypes.HANDLE(-1).value:
            raise _last_os_error(self.path)
        self._handle = handle

    def _open_posix(self) -> None:
        fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
        try:
            os.unlink(self.path)
        except OSError:
            os.close(fd)
            raise
        self._fd = fd

    @property
    def closed(self) -> bool:
        return self._handle is None and self._fd is None

    def write(self, data: bytes) -> int:
        """Write ``data`` and return the number of bytes the OS reports written."""
        if self.closed:
            raise ValueError("write to closed file")
        try:
            if self._fd is not None:
                return os.write(self._fd, data)
            return self._write_windows(data)
        except OSError as e:
            raise FilesystemError.from_os_error("write", e, self.path) from e

    def _write_windows(self, data: bytes) -> int:
        import ctypes
        from ctypes import wintypes

        written = wintypes.DWORD(0)
        ok = _kernel32().WriteFile(self._handle, data, len(data), ctypes.byref(written), None)
        if not ok:
            raise _last_os_error(self.path)
        return written.value

    def close(self) -> None:
        if self._fd is not None:
            fd, self._fd = self._fd, None
            os.close(fd)
        elif self._handle is not None:
            handle, self._handle = self._handle, None
            if not _kernel32().CloseHandle(handle):
                raise FilesystemError.from_os_error("close", _last_os_error(self.path), self.path)

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


def create_delete_on_close(path: PathLike) -> DeleteOnCloseFile:
    return DeleteOnCloseFile(path)


@contextlib.contextmanager
def _translate(operation: str, path: PathLike) -> collections.abc.Iterator[None]:
    try:
        yield
    except FilesystemError:
        raise
    except OSError as e:
        raise FilesystemError.from_os_error(operation, e, path) from e


def write_bytes(path: PathLike, data: bytes) -> int:
    """Create ``path`` (which must not exist), write, flush and sync.

    Returns the number of bytes written.
    """
    with _translate("create", path), open(path, "xb") as f:
        written = f.write(data)
        f.flush()
        os.fsync(f.fileno())
    return written


def read_bytes(path: PathLike) -> bytes:
    with _translate("read", path), open(path, "rb") as f:
        return f.read()


def make_dir(path: PathLike) -> None:
    with _translate("create directory", path):
        os.mkdir(path)


def remove(path: PathLike) -> bool:
    """Remove a file or an empty directory.

    Returns ``False`` if nothing existed at ``path``; a non-empty directory
    raises.
    """
    path = pathlib.Path(path).absolute()
    with _translate("remove", path):
        try:
            if path.is_dir() and not path.is_symlink():
                os.rmdir(path)
            else:
                os.unlink(path)
        except FileNotFoundError:
            return False
    return True


def remove_all(path: PathLike) -> int:
    """Remove ``path`` and everything below it; return the number of entries removed."""
    root = pathlib.Path(path).absolute()
    if not os.path.lexists(root):
        return 0
    if not root.is_dir() or root.is_symlink():
        return int(remove(root))

    count = 0
    with _translate("remove all", root):
        for dirpath, dirnames, filenames in os.walk(root, topdown=False):
            for name in filenames:
                os.unlink(os.path.join(dirpath, name))
                count += 1
            for name in dirnames:
                entry = os.path.join(dirpath, name)
                if os.path.islink(entry):
                    os.unlink(entry)
                else:
                    os.rmdir(entry)
                count += 1
        os.rmdir(root)
    return count + 1


def walk(path: PathLike) -> set[pathlib.Path]:
    """Every file and directory below ``path`` (excluding ``path`` itself)."""
    root = pathlib.Path(path)
    found: set[pathlib.Path] = set()

    def _raise(e: OSError) -> None:
        raise e

    with _translate("list", root):
        for dirpath, dirnames, filenames in os.walk(root, onerror=_raise):
            base = pathlib.Path(dirpath)
            found.update(base / name for name in dirnames)
            found.update(base / name for name in filenames)
    return found


def copy(source: PathLike, destination: PathLike) -> None:
    with _translate("copy", source):
        shutil.copyfile(source, destination)


def volume_information(path: PathLike) -> VolumeInfo:
    """Label, filesystem name, maximum component length and serial of a volume."""
    if sys.platform == "win32":
        return _volume_information_windows(path)
    return _volume_information_posix(path)


def _volume_information_windows(path: PathLike) -> VolumeInfo:
    import ctypes
    from ctypes import wintypes

    MAX_PATH = 260
    label = ctypes.create_unicode_buffer(MAX_PATH + 1)
    fs_name = ctypes.create_unicode_buffer(MAX_PATH + 1)
    serial = wintypes.DWORD(0)
    max_component = wintypes.DWORD(0)
    flags = wintypes.DWORD(0)

    k32 = _kernel32()
    ok = k32.GetVolumeInformationW(
        ctypes.c_wchar_p(os.fspath(path)),
        label,
        len(label),
        ctypes.byref(serial),
        ctypes.byref(max_component),
        ctypes.byref(flags),
        fs_name,
        len(fs_name),
    )
    if not ok:
        raise FilesystemError.from_os_error("query volume", _last_os_error(path), path)
    return VolumeInfo(label.value, fs_name.value, max_component.value, serial.value)


def _volume_information_posix(path: PathLike) -> VolumeInfo:
    with _translate("query volume", path):
        st = os.statvfs(path)
    return VolumeInfo(None, _mount_fstype(path), st.f_namemax, None)


def _mount_fstype(path: PathLike) -> str | None:
    """Filesystem type of the mount containing ``path`` from /proc/self/mounts."""
    target = os.path.realpath(path)
    best: tuple[int, str] | None = None
    try:
        with open(PROC_MOUNTS, encoding="utf8") as fp:
            for line in fp:
                fields = line.split()
                if len(fields) < 3:
                    continue
                where = fields[1].replace("\\040", " ")
                if target == where or target.startswith(where.rstrip("/") + "/"):
                    if best is None or len(where) > best[0]:
                        best = (len(where), fields[2])
    except FileNotFoundError:
        return None
    return best[1] if best else None


def disk_space(path: PathLike) -> DiskSpace:
    """Capacity, free and caller-available bytes of the volume holding ``path``."""
    if sys.platform == "win32":
        import ctypes

        available = ctypes.c_ulonglong(0)
        capacity = ctypes.c_ulonglong(0)
        free = ctypes.c_ulonglong(0)
        ok = _kernel32().GetDiskFreeSpaceExW(
            ctypes.c_wchar_p(os.fspath(path)),
            ctypes.byref(available),
            ctypes.byref(capacity),
            ctypes.byref(free),
        )
        if not ok:
            raise FilesystemError.from_os_error("query space", _last_os_error(path), path)
        return DiskSpace(capacity.value, free.value, available.value)

    with _translate("query space", path):
        st = os.statvfs(path)
    return DiskSpace(
        st.f_blocks * st.f_frsize,
        st.f_bfree * st.f_frsize,
        st.f_bavail * st.f_frsize,
    )


def exists(path: PathLike) -> bool:
    return os.path.lexists(path)


__all__ = [
    "DeleteOnCloseFile",
    "DiskSpace",
    "VolumeInfo",
    "copy",
    "create_delete_on_close",
    "disk_space",
    "exists",
    "make_dir",
    "read_bytes",
    "remove",
    "remove_all",
    "walk",
    "volume_information",
    "write_bytes",
]
