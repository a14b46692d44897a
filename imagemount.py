"""
imagemount.py — acquire and release the target root for a build.

A MountLifecycle hands the build engine a HostBackend bound to a
directory descriptor and tears everything down afterwards, on every
exit path:

    with ImageMount("disk.img", "ext4", partition=1) as backend:
        BuildEngine(backend).run(lines)

Targets:
    DirectoryTarget   an existing host directory (rootfs staging area)
    ImageMount        a disk image, loop-mounted on a temporary directory

Partition lookup (partition 0 = whole image):

    MBR  (sector 0)
        +446  4 × 16-byte entries: status, chs, type, chs, lba u32, count u32
        +510  signature 55 AA
    GPT  (behind a protective MBR entry of type 0xEE)
        LBA 1    header: "EFI PART", entries_lba u64 @72,
                 num_entries u32 @80, entry_size u32 @84
        entries  type_guid[16], part_guid[16], first_lba u64, last_lba u64
"""

from __future__ import annotations

import abc
import logging
import os
import struct
import subprocess
import tempfile
from pathlib import Path

from fs_backends import HostBackend

logger = logging.getLogger(__name__)

# ── Constants ──────────────────────────────────────────────────────────

FSTYPES = ("btrfs", "ext2", "ext3", "ext4", "vfat", "xfs")
MAX_PARTITION = 128

SECTOR_SIZE = 512
MBR_TABLE = 446
MBR_ENTRY = struct.Struct("<B3sB3sII")
MBR_SIGNATURE = b"\x55\xaa"
MBR_PRIMARY = 4
GPT_PROTECTIVE = 0xEE
GPT_MAGIC = b"EFI PART"
GPT_HEADER_SIZE = 92


class MountError(RuntimeError):
    """The target root could not be acquired or released."""


# ── Partition tables ───────────────────────────────────────────────────

def _mbr_entries(mbr: bytes) -> list[tuple[int, int, int]]:
    """Return (type, first_lba, sector_count) for the 4 primary slots."""
    entries = []
    for i in range(MBR_PRIMARY):
        _, _, ptype, _, lba, count = MBR_ENTRY.unpack_from(
            mbr, MBR_TABLE + i * MBR_ENTRY.size)
        entries.append((ptype, lba, count))
    return entries


def _gpt_partition(f, number: int) -> tuple[int, int]:
    f.seek(SECTOR_SIZE)
    header = f.read(GPT_HEADER_SIZE)
    if len(header) < GPT_HEADER_SIZE or header[0:8] != GPT_MAGIC:
        raise MountError("protective MBR without a GPT header")
    entries_lba = struct.unpack_from("<Q", header, 72)[0]
    num_entries = struct.unpack_from("<I", header, 80)[0]
    entry_size = struct.unpack_from("<I", header, 84)[0]
    if number > num_entries:
        raise MountError(
            f"partition {number}: GPT has only {num_entries} entries")
    f.seek(entries_lba * SECTOR_SIZE + (number - 1) * entry_size)
    entry = f.read(entry_size)
    if len(entry) < 48 or not any(entry[0:16]):
        raise MountError(f"partition {number} is empty")
    first, last = struct.unpack_from("<QQ", entry, 32)
    return first * SECTOR_SIZE, (last - first + 1) * SECTOR_SIZE


def find_partition(image: str | Path, number: int) -> tuple[int, int]:
    """Locate partition *number* (1-based) in *image*.

    Returns ``(offset, size)`` in bytes.  Raises MountError when the
    image has no partition table or the slot is empty.
    """
    with open(image, "rb") as f:
        mbr = f.read(SECTOR_SIZE)
        if len(mbr) < SECTOR_SIZE or mbr[510:512] != MBR_SIGNATURE:
            raise MountError(f"{image}: no partition table")
        entries = _mbr_entries(mbr)
        if any(ptype == GPT_PROTECTIVE for ptype, _, _ in entries):
            return _gpt_partition(f, number)
        if number > MBR_PRIMARY:
            raise MountError(
                f"partition {number}: MBR has only {MBR_PRIMARY} primary entries")
        ptype, lba, count = entries[number - 1]
        if ptype == 0 or count == 0:
            raise MountError(f"partition {number} is empty")
        return lba * SECTOR_SIZE, count * SECTOR_SIZE


# ══════════════════════════════════════════════════════════════════════
#  Lifecycles
# ══════════════════════════════════════════════════════════════════════

class MountLifecycle(abc.ABC):
    """Owns the root handle for the duration of one build."""

    fstype: str | None = None

    def __init__(self):
        self.dir_fd = -1

    @abc.abstractmethod
    def acquire(self) -> str:
        """Make the target reachable; return the host directory path."""
        ...

    @abc.abstractmethod
    def release(self):
        """Undo acquire().  Called once, after the root fd is closed."""
        ...

    def __enter__(self) -> HostBackend:
        path = self.acquire()
        try:
            self.dir_fd = os.open(path, os.O_RDONLY | os.O_DIRECTORY)
        except OSError as e:
            self.release()
            raise MountError(f"failed to open {path}: {e.strerror}") from e
        return HostBackend(self.dir_fd, self.fstype)

    def __exit__(self, exc_type, exc, tb):
        try:
            if self.dir_fd >= 0:
                os.close(self.dir_fd)
        finally:
            self.dir_fd = -1
            try:
                self.release()
            except MountError as e:
                if exc is None:
                    raise
                logger.error("%s (while handling: %s)", e, exc)


class DirectoryTarget(MountLifecycle):
    """Populate an existing host directory in place."""

    def __init__(self, path: str | Path, fstype: str | None = None):
        super().__init__()
        self.path = str(path)
        self.fstype = fstype

    def acquire(self) -> str:
        if not os.path.isdir(self.path):
            raise MountError(f"{self.path}: not a directory")
        return self.path

    def release(self):
        pass


class ImageMount(MountLifecycle):
    """Loop-mount *image* (or one partition of it) on a temporary dir.

    Needs privileges to run mount(8).  At *verbosity* >= 3 the output of
    the mount helpers is passed through instead of being captured.
    """

    def __init__(self, image: str | Path, fstype: str, partition: int = 0,
                 verbosity: int = 0):
        super().__init__()
        if fstype not in FSTYPES:
            raise MountError(f"unknown fstype: {fstype}")
        if not 0 <= partition <= MAX_PARTITION:
            raise MountError(f"partition must be in [0, {MAX_PARTITION}]")
        if not os.access(image, os.R_OK | os.W_OK):
            raise MountError(f"unable to read/write image path '{image}'")
        self.image = str(image)
        self.fstype = fstype
        self.partition = partition
        self.verbosity = verbosity
        self.mountpoint: str | None = None

    def mount_options(self) -> list[str]:
        options = ["loop"]
        if self.partition == 0:
            logger.warning("operating on entire disk")
        else:
            offset, size = find_partition(self.image, self.partition)
            logger.info("partition %d: offset %d, %d bytes",
                        self.partition, offset, size)
            options += [f"offset={offset}", f"sizelimit={size}"]
        return options

    def _run(self, argv: list[str]):
        logger.debug("running %s", " ".join(argv))
        try:
            subprocess.run(argv, check=True, text=True,
                           capture_output=self.verbosity < 3)
        except FileNotFoundError as e:
            raise MountError(f"{argv[0]}: command not found") from e
        except subprocess.CalledProcessError as e:
            detail = (e.stderr or "").strip()
            raise MountError(
                f"{argv[0]} exited with status {e.returncode}"
                + (f": {detail}" if detail else "")) from e

    def acquire(self) -> str:
        options = self.mount_options()
        self.mountpoint = tempfile.mkdtemp(prefix="buildfs-")
        try:
            self._run(["mount", "-t", self.fstype, "-o", ",".join(options),
                       self.image, self.mountpoint])
        except MountError:
            os.rmdir(self.mountpoint)
            self.mountpoint = None
            raise
        logger.info("mounted %s (%s) on %s",
                    self.image, self.fstype, self.mountpoint)
        return self.mountpoint

    def release(self):
        if self.mountpoint is None:
            return
        mountpoint, self.mountpoint = self.mountpoint, None
        # A failed umount leaves the directory busy; keep it for the user.
        self._run(["umount", mountpoint])
        os.rmdir(mountpoint)
        logger.info("unmounted %s", self.image)
