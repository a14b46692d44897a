#!/usr/bin/env python3
"""
buildfs.py — construct a root filesystem on a target from a spec file.

Reads a gen_init_cpio style spec (see buildspec.py) and creates each
entry in order against a FilesystemBackend: a loop-mounted disk image,
an existing directory, or an in-memory tree for dry runs.

Per line:
    parse -> resolve path -> create -> chown -> classify errors

AlreadyExists from dir/slink/nod creation is tolerated, so re-running a
spec "ensures" those entries.  Regular files are always truncated and
rewritten.  Any other error fails the line; the build goes on to the
next line unless strict mode is set.  Nothing is rolled back.

Usage:
    buildfs -i disk.img -t ext4 [-P 1] < rootfs.spec
    buildfs -d staging/ rootfs.spec
    buildfs -n rootfs.spec          # dry run against an empty tree
"""

from __future__ import annotations

import argparse
import contextlib
import enum
import logging
import os
import sys
from dataclasses import dataclass, field
from typing import Iterable, Optional

from buildspec import (
    Directory, Symlink, RegularFile, DeviceNode, Entry,
    ParseError, parse_line, read_spec, resolve_path, keyword_of,
)
from fs_backends import (
    FilesystemBackend, MemoryBackend, BackendError, AlreadyExists,
    backend_error_from_oserror, device_type_flag,
)
from imagemount import (
    DirectoryTarget, ImageMount, MountError, FSTYPES, MAX_PARTITION,
)

logger = logging.getLogger(__name__)

# ── Constants ──────────────────────────────────────────────────────────

COPY_BUFSIZE = 64 * 1024


# ── Errors ─────────────────────────────────────────────────────────────

class CopyError(Exception):
    """Copying a host file into the target went wrong."""


class ShortWrite(CopyError):
    """Fewer bytes reached the destination than the source held."""

    def __init__(self, path: str, copied: int, expected: int):
        super().__init__(
            f"{path}: short copy, wrote {copied} of {expected} bytes")
        self.path = path
        self.copied = copied
        self.expected = expected


# ── File copy ──────────────────────────────────────────────────────────

def _advise_sequential(fd: int):
    """Hint the kernel that *fd* is read front to back.  Optional."""
    if not hasattr(os, "posix_fadvise"):
        return
    try:
        os.posix_fadvise(fd, 0, 0, os.POSIX_FADV_SEQUENTIAL)
    except OSError as e:
        logger.debug("posix_fadvise: %s", e.strerror)


def _write_all(dst, data: bytes) -> int:
    """Write *data* until done or the destination stops accepting."""
    view = memoryview(data)
    total = 0
    while total < len(view):
        n = dst.write(view[total:])
        if n == 0:
            break
        total += n
    return total


def copy_file(source: str, backend: FilesystemBackend, relpath: str,
              mode: int, uid: int, gid: int) -> int:
    """Stream host file *source* into *relpath* on *backend*.

    Exactly the source's size at open time is copied, in COPY_BUFSIZE
    chunks; anything less raises ShortWrite and leaves the partial file.
    Returns the number of bytes copied.
    """
    try:
        with open(source, "rb", buffering=0) as src:
            expected = os.fstat(src.fileno()).st_size
            _advise_sequential(src.fileno())
            copied = 0
            with backend.open_create_truncate_at(relpath, mode) as dst:
                while copied < expected:
                    chunk = src.read(min(COPY_BUFSIZE, expected - copied))
                    if not chunk:
                        break
                    written = _write_all(dst, chunk)
                    copied += written
                    if written < len(chunk):
                        break
                if copied != expected:
                    raise ShortWrite(relpath, copied, expected)
                dst.fchown(uid, gid)
    except OSError as e:
        raise backend_error_from_oserror(e, source) from e
    logger.info("copied %d of %d bytes from %s to %s",
                copied, expected, source, relpath)
    return copied


# ── Engine ─────────────────────────────────────────────────────────────

class BuildState(enum.Enum):
    READING = "reading"
    DISPATCHING = "dispatching"
    TERMINATED = "terminated"


class Outcome(enum.Enum):
    CREATED = "created"
    TOLERATED = "tolerated"         # already existed


@dataclass
class BuildOptions:
    strict: bool = False            # stop at the first failing line
    allow_legacy_slink: bool = False


@dataclass
class BuildFailure:
    lineno: int
    error: Exception
    entry: Optional[Entry] = None

    def __str__(self) -> str:
        reason = getattr(self.error, "message", str(self.error))
        if self.entry is None:
            return f"line {self.lineno}: {reason}"
        return (f"line {self.lineno}: {keyword_of(self.entry)} "
                f"{self.entry.name}: {reason}")


@dataclass
class BuildReport:
    created: int = 0
    tolerated: int = 0
    failures: list[BuildFailure] = field(default_factory=list)
    aborted: bool = False

    @property
    def ok(self) -> bool:
        return not self.failures

    def summary(self) -> str:
        text = (f"{self.created} created, {self.tolerated} already present, "
                f"{len(self.failures)} failed")
        if self.aborted:
            text += " (aborted)"
        return text


class BuildEngine:
    """Applies spec lines, in order, to one backend."""

    def __init__(self, backend: FilesystemBackend,
                 options: BuildOptions | None = None):
        self.backend = backend
        self.options = options or BuildOptions()
        self.state = BuildState.READING
        self.report = BuildReport()

    def _ensure(self, create, relpath: str, *args) -> Outcome:
        try:
            create(relpath, *args)
        except AlreadyExists:
            logger.info("%s already exists", relpath)
            return Outcome.TOLERATED
        return Outcome.CREATED

    def apply(self, entry: Entry, lineno: int | None = None) -> Outcome:
        """Create one entry and set its ownership."""
        relpath = resolve_path(entry.name, lineno)
        backend = self.backend

        if isinstance(entry, Directory):
            outcome = self._ensure(backend.mkdir_at, relpath, entry.mode)
            backend.chown_at(relpath, entry.uid, entry.gid)
        elif isinstance(entry, Symlink):
            outcome = self._ensure(backend.symlink_at, relpath, entry.target)
            backend.chown_at(relpath, entry.uid, entry.gid,
                             follow_symlinks=False)
        elif isinstance(entry, DeviceNode):
            mode = entry.mode | device_type_flag(entry.devtype)
            device = (os.makedev(entry.major, entry.minor)
                      if entry.has_device_number else 0)
            outcome = self._ensure(backend.mknod_at, relpath, mode, device)
            backend.chown_at(relpath, entry.uid, entry.gid)
        elif isinstance(entry, RegularFile):
            copy_file(entry.source, backend, relpath,
                      entry.mode, entry.uid, entry.gid)
            outcome = Outcome.CREATED
        else:
            raise TypeError(f"not a spec entry: {entry!r}")

        logger.debug("%s %s %s", outcome.value, keyword_of(entry), relpath)
        return outcome

    def _fail(self, failure: BuildFailure):
        self.report.failures.append(failure)
        logger.error("%s", failure)

    def run(self, lines: Iterable[str]) -> BuildReport:
        """Process every line of *lines*, or up to the first failure in
        strict mode.  Returns the accumulated report."""
        logger.info("building into %s", self.backend.name)
        for line in read_spec(lines):
            self.state = BuildState.DISPATCHING
            entry = None
            try:
                entry = parse_line(line,
                                   legacy_slink=self.options.allow_legacy_slink)
                outcome = self.apply(entry, line.lineno)
            except (ParseError, BackendError, CopyError) as e:
                self._fail(BuildFailure(line.lineno, e, entry))
                if self.options.strict:
                    self.report.aborted = True
                    self.state = BuildState.TERMINATED
                    logger.error("line %d: aborting build (strict mode)",
                                 line.lineno)
                    break
            else:
                if outcome is Outcome.CREATED:
                    self.report.created += 1
                else:
                    self.report.tolerated += 1
            self.state = BuildState.READING
        self.state = BuildState.TERMINATED
        return self.report


def build(target, lines: Iterable[str],
          options: BuildOptions | None = None) -> BuildReport:
    """Acquire *target* (a context manager yielding a backend), run the
    spec against it, and release it again whatever happens."""
    with target as backend:
        return BuildEngine(backend, options).run(lines)


# ── CLI ────────────────────────────────────────────────────────────────

def _log_level(verbosity: int) -> int:
    if verbosity <= 0:
        return logging.WARNING
    if verbosity == 1:
        return logging.INFO
    return logging.DEBUG


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="buildfs",
        description="Construct a root filesystem from a spec file",
    )
    where = parser.add_mutually_exclusive_group(required=True)
    where.add_argument("-i", "--image", default=None,
                       help="Disk image to populate (needs -t)")
    where.add_argument("-d", "--directory", default=None,
                       help="Existing directory to populate")
    where.add_argument("-n", "--dry-run", action="store_true",
                       help="Build into an empty in-memory tree")
    parser.add_argument("-t", "--fstype", choices=FSTYPES, default=None,
                        help="Filesystem type of the image")
    parser.add_argument("-P", "--partition", type=int, default=0,
                        help="Partition to operate on (default: 0 = entire disk)")
    parser.add_argument("-v", "--verbose", action="count", default=0,
                        help="Increase verbosity (repeatable)")
    parser.add_argument("--strict", action="store_true",
                        help="Abort at the first failing line")
    parser.add_argument("--legacy-slink", action="store_true",
                        help="Accept slink lines carrying a mode field")
    parser.add_argument("spec", nargs="?", default="-",
                        help="Spec file (default: standard input)")

    args = parser.parse_args(argv)

    if args.image is not None and args.fstype is None:
        parser.error("-i requires -t FSTYPE")
    if not 0 <= args.partition <= MAX_PARTITION:
        parser.error(f"-P NUM must be in range [0, {MAX_PARTITION}]")

    logging.basicConfig(level=_log_level(args.verbose),
                        format="%(name)s: %(message)s", stream=sys.stderr)

    options = BuildOptions(strict=args.strict,
                           allow_legacy_slink=args.legacy_slink)

    try:
        spec = (contextlib.nullcontext(sys.stdin.buffer) if args.spec == "-"
                else open(args.spec, "rb"))
    except OSError as e:
        logger.error("%s: %s", args.spec, e.strerror)
        return 1

    try:
        with spec as lines:
            if args.image is not None:
                target = ImageMount(args.image, args.fstype,
                                    partition=args.partition,
                                    verbosity=args.verbose)
            elif args.directory is not None:
                target = DirectoryTarget(args.directory, fstype=args.fstype)
            else:
                target = contextlib.nullcontext(
                    MemoryBackend(fstype=args.fstype))
            report = build(target, lines, options)
    except MountError as e:
        logger.error("%s", e)
        return 1

    logger.info("%s", report.summary())
    return 0 if report.ok else 1


if __name__ == "__main__":
    sys.exit(main())
