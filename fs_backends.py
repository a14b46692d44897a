"""
Filesystem Backends — Where Spec Entries Are Built
===================================================
Pluggable targets for the buildfs engine.  Every path handed to a
backend is already relative to the backend's root.

Backend hierarchy:
  FilesystemBackend   — abstract base
  ├─ HostBackend      — *at() syscalls against a directory fd
  └─ MemoryBackend    — in-process tree (dry runs, unit tests)

Usage:
  fd = os.open("/mnt/rootfs", os.O_RDONLY | os.O_DIRECTORY)
  backend = HostBackend(fd, fstype="ext4")
  backend.mkdir_at("etc", 0o755)
  backend.chown_at("etc", 0, 0)

Every operation either succeeds or raises a BackendError subclass:
AlreadyExists, NotFound, PermissionDenied, Unsupported, BackendIOError.
"""

from __future__ import annotations

import abc
import contextlib
import errno
import os
import stat
from dataclasses import dataclass, field
from typing import Optional

# ── Constants ─────────────────────────────────────────────────────────

TYPEFLAGS = {
    "c": stat.S_IFCHR,
    "b": stat.S_IFBLK,
    "p": stat.S_IFIFO,
    "s": stat.S_IFSOCK,
    "r": stat.S_IFREG,
}

# Filesystems that cannot store symbolic links.
NO_SYMLINK_FSTYPES = ("vfat",)


# ══════════════════════════════════════════════════════════════════════
#  Errors
# ══════════════════════════════════════════════════════════════════════

class BackendError(Exception):
    """A backend operation failed."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"{path}: {reason}")
        self.path = path
        self.reason = reason


class AlreadyExists(BackendError):
    pass


class NotFound(BackendError):
    """Missing parent directory (or missing entry for chown)."""


class PermissionDenied(BackendError):
    pass


class Unsupported(BackendError):
    """The target filesystem cannot represent this entry kind."""


class BackendIOError(BackendError):
    pass


_ERRNO_KINDS = {
    errno.EEXIST: AlreadyExists,
    errno.ENOENT: NotFound,
    errno.ENOTDIR: NotFound,
    errno.EACCES: PermissionDenied,
    errno.EPERM: PermissionDenied,
    errno.EROFS: PermissionDenied,
    errno.EOPNOTSUPP: Unsupported,
    errno.ENOTSUP: Unsupported,
    errno.ENOSYS: Unsupported,
}


def backend_error_from_oserror(exc: OSError, path: str) -> BackendError:
    """Classify a host OSError into the backend error taxonomy."""
    kind = _ERRNO_KINDS.get(exc.errno, BackendIOError)
    reason = exc.strerror or str(exc)
    return kind(path, reason)


@contextlib.contextmanager
def _classified(path: str):
    try:
        yield
    except OSError as e:
        raise backend_error_from_oserror(e, path) from e


def device_type_flag(devtype: str) -> int:
    """``S_IF*`` bits for a spec device type character."""
    return TYPEFLAGS[devtype]


# ══════════════════════════════════════════════════════════════════════
#  Abstract base
# ══════════════════════════════════════════════════════════════════════

class BackendFile(abc.ABC):
    """A destination file opened for writing by a backend."""

    def __init__(self, path: str):
        self.path = path

    @abc.abstractmethod
    def write(self, data: bytes) -> int:
        """Write some of *data*.  Returns the number of bytes accepted."""
        ...

    @abc.abstractmethod
    def fchown(self, uid: int, gid: int):
        ...

    @abc.abstractmethod
    def close(self):
        ...

    def __enter__(self) -> "BackendFile":
        return self

    def __exit__(self, *exc):
        self.close()


class FilesystemBackend(abc.ABC):
    """Mutating operations against a mounted target root."""

    def __init__(self, fstype: Optional[str] = None):
        self.fstype = fstype

    @abc.abstractmethod
    def mkdir_at(self, relpath: str, mode: int):
        ...

    @abc.abstractmethod
    def symlink_at(self, relpath: str, target: str):
        ...

    @abc.abstractmethod
    def mknod_at(self, relpath: str, mode: int, device: int):
        """Create a special file.  *mode* includes the ``S_IF*`` bits."""
        ...

    @abc.abstractmethod
    def chown_at(self, relpath: str, uid: int, gid: int,
                 follow_symlinks: bool = True):
        ...

    @abc.abstractmethod
    def open_create_truncate_at(self, relpath: str, mode: int) -> BackendFile:
        ...

    def _check_symlinks(self, relpath: str):
        if self.fstype in NO_SYMLINK_FSTYPES:
            raise Unsupported(relpath, f"symlinks unsupported on {self.fstype}")

    @property
    def name(self) -> str:
        """Human-readable backend name for log lines."""
        return type(self).__name__


# ══════════════════════════════════════════════════════════════════════
#  Host — *at() syscalls relative to a directory descriptor
# ══════════════════════════════════════════════════════════════════════

class HostFile(BackendFile):

    def __init__(self, path: str, fd: int):
        super().__init__(path)
        self.fd = fd

    def write(self, data: bytes) -> int:
        with _classified(self.path):
            return os.write(self.fd, data)

    def fchown(self, uid: int, gid: int):
        with _classified(self.path):
            os.fchown(self.fd, uid, gid)

    def close(self):
        if self.fd < 0:
            return
        fd, self.fd = self.fd, -1
        with _classified(self.path):
            os.close(fd)


class HostBackend(FilesystemBackend):
    """Builds entries under the directory open on *dir_fd*.

    Modes are applied exactly, independent of the process umask.  The
    descriptor is borrowed: whoever opened it closes it.
    """

    def __init__(self, dir_fd: int, fstype: Optional[str] = None):
        super().__init__(fstype)
        self.dir_fd = dir_fd

    def mkdir_at(self, relpath: str, mode: int):
        with _classified(relpath):
            os.mkdir(relpath, mode, dir_fd=self.dir_fd)
            os.chmod(relpath, mode, dir_fd=self.dir_fd)

    def symlink_at(self, relpath: str, target: str):
        self._check_symlinks(relpath)
        with _classified(relpath):
            os.symlink(target, relpath, dir_fd=self.dir_fd)

    def mknod_at(self, relpath: str, mode: int, device: int):
        with _classified(relpath):
            os.mknod(relpath, mode, device, dir_fd=self.dir_fd)
            os.chmod(relpath, stat.S_IMODE(mode), dir_fd=self.dir_fd)

    def chown_at(self, relpath: str, uid: int, gid: int,
                 follow_symlinks: bool = True):
        with _classified(relpath):
            os.chown(relpath, uid, gid, dir_fd=self.dir_fd,
                     follow_symlinks=follow_symlinks)

    def open_create_truncate_at(self, relpath: str, mode: int) -> HostFile:
        # O_NOFOLLOW: an absolute link inside the target would otherwise
        # be resolved against the host root.
        flags = (os.O_WRONLY | os.O_CREAT | os.O_TRUNC
                 | os.O_CLOEXEC | os.O_NOFOLLOW)
        with _classified(relpath):
            fd = os.open(relpath, flags, mode, dir_fd=self.dir_fd)
        try:
            with _classified(relpath):
                os.fchmod(fd, mode)
        except BackendError:
            os.close(fd)
            raise
        return HostFile(relpath, fd)


# ══════════════════════════════════════════════════════════════════════
#  Memory — in-process tree (dry runs, unit tests)
# ══════════════════════════════════════════════════════════════════════

@dataclass
class MemoryNode:
    """One entry of a MemoryBackend tree."""
    mode: int                       # S_IF* | permission bits
    uid: int = 0
    gid: int = 0
    target: str = ""                # symlinks
    device: int = 0                 # block/char specials
    data: bytearray = field(default_factory=bytearray)

    @property
    def file_type(self) -> int:
        return stat.S_IFMT(self.mode)

    @property
    def permissions(self) -> int:
        return stat.S_IMODE(self.mode)

    @property
    def is_dir(self) -> bool:
        return stat.S_ISDIR(self.mode)


class MemoryFile(BackendFile):

    def __init__(self, path: str, node: MemoryNode, quota: Optional[int]):
        super().__init__(path)
        self.node = node
        self.quota = quota
        self.closed = False

    def write(self, data: bytes) -> int:
        if self.closed:
            raise BackendIOError(self.path, "write to closed file")
        if self.quota is not None:
            data = data[:max(0, self.quota - len(self.node.data))]
        self.node.data += data
        return len(data)

    def fchown(self, uid: int, gid: int):
        self.node.uid = uid
        self.node.gid = gid

    def close(self):
        self.closed = True


class MemoryBackend(FilesystemBackend):
    """A target tree kept in a dict keyed by normalised relative path.

    Parents must exist before children, exactly like a real filesystem.
    *write_quota*, when set, caps the size of every regular file; writes
    past it are accepted short.
    """

    def __init__(self, fstype: Optional[str] = None,
                 write_quota: Optional[int] = None):
        super().__init__(fstype)
        self.write_quota = write_quota
        self.nodes: dict[str, MemoryNode] = {
            ".": MemoryNode(stat.S_IFDIR | 0o755),
        }

    @staticmethod
    def _key(relpath: str) -> str:
        parts = [p for p in relpath.split("/") if p and p != "."]
        return "/".join(parts) or "."

    def _parent(self, key: str) -> str:
        head, _, _ = key.rpartition("/")
        return head or "."

    def _create(self, relpath: str, node: MemoryNode) -> MemoryNode:
        key = self._key(relpath)
        if key in self.nodes:
            raise AlreadyExists(relpath, "File exists")
        parent = self.nodes.get(self._parent(key))
        if parent is None:
            raise NotFound(relpath, "No such file or directory")
        if not parent.is_dir:
            raise NotFound(relpath, "Not a directory")
        self.nodes[key] = node
        return node

    def lookup(self, relpath: str) -> Optional[MemoryNode]:
        return self.nodes.get(self._key(relpath))

    def mkdir_at(self, relpath: str, mode: int):
        self._create(relpath, MemoryNode(stat.S_IFDIR | stat.S_IMODE(mode)))

    def symlink_at(self, relpath: str, target: str):
        self._check_symlinks(relpath)
        self._create(relpath, MemoryNode(stat.S_IFLNK | 0o777, target=target))

    def mknod_at(self, relpath: str, mode: int, device: int):
        self._create(relpath, MemoryNode(mode, device=device))

    def chown_at(self, relpath: str, uid: int, gid: int,
                 follow_symlinks: bool = True):
        node = self.lookup(relpath)
        if node is None:
            raise NotFound(relpath, "No such file or directory")
        node.uid = uid
        node.gid = gid

    def open_create_truncate_at(self, relpath: str, mode: int) -> MemoryFile:
        node = self.lookup(relpath)
        if node is None:
            node = self._create(relpath,
                                MemoryNode(stat.S_IFREG | stat.S_IMODE(mode)))
        elif not stat.S_ISREG(node.mode):
            raise BackendIOError(relpath, "not a regular file")
        else:
            node.mode = stat.S_IFREG | stat.S_IMODE(mode)
            node.data = bytearray()
        return MemoryFile(relpath, node, self.write_quota)
