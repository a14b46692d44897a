"""
buildspec.py — spec file reader and entry parser for buildfs.

A spec file describes, one entry per line, the tree to construct inside
a target filesystem.  The grammar follows gen_init_cpio:

    # comment
    dir     NAME MODE UID GID
    file    NAME SOURCE MODE UID GID
    slink   NAME TARGET UID GID
    nod     NAME MODE UID GID DEVTYPE MAJ MIN
    pipe    NAME MODE UID GID
    sock    NAME MODE UID GID

MODE is octal (``0755``), UID/GID/MAJ/MIN are decimal, DEVTYPE is one
of ``b c p s r``.  SOURCE is a path on the host; NAME and TARGET are
paths inside the target filesystem.

Parsing is a pipeline of three small steps:

    read_spec()     raw lines  -> SpecLine (comments and blanks dropped)
    parse_line()    SpecLine   -> Directory | Symlink | RegularFile | DeviceNode
    resolve_path()  NAME       -> path relative to the target root
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Iterable, Iterator, Union

logger = logging.getLogger(__name__)

# ── Constants ──────────────────────────────────────────────────────────

PATH_MAX = 4096                     # Linux PATH_MAX, NUL included
MAX_LINE = 2 * PATH_MAX + 64        # longest accepted spec line (bytes)
MAX_MODE = 0o7777
MAX_ID = 0xFFFFFFFE                 # (uid_t)-1 means "unchanged" to chown
MAX_MAJOR = 0xFFF                   # Linux dev_t: 12-bit major, 20-bit minor
MAX_MINOR = 0xFFFFF

DEVTYPES = "bcpsr"

_OCTAL = re.compile(r"[0-7]+")
_DECIMAL = re.compile(r"[0-9]+")
_SEPARATOR = re.compile(r"[ \t]+")


# ── Errors ─────────────────────────────────────────────────────────────

class ParseError(Exception):
    """A spec line could not be turned into an entry."""

    def __init__(self, message: str, lineno: int | None = None):
        super().__init__(message)
        self.message = message
        self.lineno = lineno

    def __str__(self) -> str:
        if self.lineno is None:
            return self.message
        return f"line {self.lineno}: {self.message}"


class MalformedLine(ParseError):
    """No separator between type and args, the line is too long, or it
    is not valid UTF-8."""


class MalformedArgs(ParseError):
    """Wrong field count, a field failed to decode, or a NUL byte."""


class UnknownEntryType(ParseError):
    """The type token names no known entry kind."""


class PathTooLong(ParseError):
    """The normalised target path does not fit in PATH_MAX."""


# ── Data classes ───────────────────────────────────────────────────────

@dataclass(frozen=True)
class SpecLine:
    """One raw, non-comment, non-blank line of a spec file."""
    lineno: int
    text: str


@dataclass(frozen=True)
class Directory:
    name: str
    mode: int
    uid: int
    gid: int


@dataclass(frozen=True)
class Symlink:
    """Symbolic link.  Links carry no permission bits of their own."""
    name: str
    target: str
    uid: int
    gid: int


@dataclass(frozen=True)
class RegularFile:
    """Regular file copied from *source* on the host."""
    name: str
    source: str
    mode: int
    uid: int
    gid: int


@dataclass(frozen=True)
class DeviceNode:
    """Character/block device, fifo, socket or empty regular file.

    *major*/*minor* only mean something for ``b`` and ``c``.  *keyword*
    remembers whether the line said ``nod``, ``pipe`` or ``sock``.
    """
    name: str
    mode: int
    uid: int
    gid: int
    devtype: str
    major: int = 0
    minor: int = 0
    keyword: str = field(default="nod", compare=False)

    @property
    def has_device_number(self) -> bool:
        return self.devtype in ("b", "c")


Entry = Union[Directory, Symlink, RegularFile, DeviceNode]


# ── Field decoders ─────────────────────────────────────────────────────

def _mode(text: str, lineno: int | None) -> int:
    if not _OCTAL.fullmatch(text):
        raise MalformedArgs(f"bad octal mode {text!r}", lineno)
    mode = int(text, 8)
    if mode > MAX_MODE:
        raise MalformedArgs(f"mode {text!r} out of range", lineno)
    return mode


def _number(text: str, what: str, lineno: int | None,
            limit: int = MAX_ID) -> int:
    if not _DECIMAL.fullmatch(text):
        raise MalformedArgs(f"bad {what} {text!r}", lineno)
    value = int(text)
    if value > limit:
        raise MalformedArgs(f"{what} {text} out of range (max {limit})",
                            lineno)
    return value


def _devtype(text: str, lineno: int | None) -> str:
    if len(text) != 1 or text not in DEVTYPES:
        raise MalformedArgs(
            f"bad device type {text!r} (expected one of {', '.join(DEVTYPES)})",
            lineno)
    return text


def _fields(args: str, count: int, keyword: str,
            lineno: int | None) -> list[str]:
    fields = args.split()
    if len(fields) != count:
        raise MalformedArgs(
            f"{keyword} expects {count} fields, got {len(fields)}", lineno)
    return fields


# ── Per-type grammars ──────────────────────────────────────────────────

def _parse_dir(args: str, lineno, legacy_slink=False) -> Directory:
    name, mode, uid, gid = _fields(args, 4, "dir", lineno)
    return Directory(name, _mode(mode, lineno),
                     _number(uid, "uid", lineno), _number(gid, "gid", lineno))


def _parse_file(args: str, lineno, legacy_slink=False) -> RegularFile:
    name, source, mode, uid, gid = _fields(args, 5, "file", lineno)
    return RegularFile(name, source, _mode(mode, lineno),
                       _number(uid, "uid", lineno), _number(gid, "gid", lineno))


def _parse_slink(args: str, lineno, legacy_slink=False) -> Symlink:
    fields = args.split()
    if legacy_slink and len(fields) == 5:
        # Old spec files carried a mode for links; it has nowhere to go.
        name, target, mode, uid, gid = fields
        _mode(mode, lineno)
        logger.debug("line %s: ignoring mode %s on slink %s", lineno, mode, name)
    elif len(fields) == 5:
        raise MalformedArgs(
            "slink expects 4 fields, got 5 "
            "(mode-carrying links need --legacy-slink)", lineno)
    else:
        name, target, uid, gid = _fields(args, 4, "slink", lineno)
    return Symlink(name, target,
                   _number(uid, "uid", lineno), _number(gid, "gid", lineno))


def _parse_nod(args: str, lineno, legacy_slink=False) -> DeviceNode:
    name, mode, uid, gid, devtype, major, minor = _fields(args, 7, "nod", lineno)
    return DeviceNode(name, _mode(mode, lineno),
                      _number(uid, "uid", lineno), _number(gid, "gid", lineno),
                      _devtype(devtype, lineno),
                      _number(major, "major", lineno, MAX_MAJOR),
                      _number(minor, "minor", lineno, MAX_MINOR))


def _special(keyword: str, devtype: str):
    def parse(args: str, lineno, legacy_slink=False) -> DeviceNode:
        name, mode, uid, gid = _fields(args, 4, keyword, lineno)
        return DeviceNode(name, _mode(mode, lineno),
                          _number(uid, "uid", lineno),
                          _number(gid, "gid", lineno),
                          devtype, 0, 0, keyword=keyword)
    return parse


ENTRY_TYPES = {
    "dir":   _parse_dir,
    "file":  _parse_file,
    "slink": _parse_slink,
    "nod":   _parse_nod,
    "pipe":  _special("pipe", "p"),
    "sock":  _special("sock", "s"),
}


# ── Reader ─────────────────────────────────────────────────────────────

def read_spec(lines: Iterable[str | bytes]) -> Iterator[SpecLine]:
    """Yield the meaningful lines of a spec, numbered from 1.

    *lines* is consumed lazily and exactly once; comment lines (first
    character ``#``) and blank lines are skipped but still counted.
    Byte lines are decoded as UTF-8 with ``surrogateescape`` so a bad
    byte is reported by the parser against its own line.
    """
    for lineno, raw in enumerate(lines, start=1):
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", "surrogateescape")
        text = raw.rstrip("\r\n")
        if text.startswith("#") or not text.strip():
            continue
        yield SpecLine(lineno, text)


# ── Parser ─────────────────────────────────────────────────────────────

def split_line(line: SpecLine) -> tuple[str, str]:
    """Split a line into its type token and the remaining args."""
    try:
        encoded = line.text.encode("utf-8")
    except UnicodeEncodeError as e:
        raise MalformedLine(f"invalid UTF-8 at column {e.start + 1}",
                            line.lineno) from None
    if len(encoded) > MAX_LINE:
        raise MalformedLine(f"line longer than {MAX_LINE} bytes", line.lineno)
    parts = _SEPARATOR.split(line.text.strip(" \t"), maxsplit=1)
    if len(parts) != 2 or not parts[1].strip():
        raise MalformedLine("expected separator and args", line.lineno)
    return parts[0], parts[1]


def parse_entry(keyword: str, args: str, lineno: int | None = None,
                legacy_slink: bool = False) -> Entry:
    """Decode *args* with the grammar registered for *keyword*."""
    try:
        grammar = ENTRY_TYPES[keyword]
    except KeyError:
        raise UnknownEntryType(f"unrecognized type: {keyword}", lineno) from None
    if "\0" in args:
        raise MalformedArgs("embedded NUL byte", lineno)
    return grammar(args, lineno, legacy_slink=legacy_slink)


def parse_line(line: SpecLine, legacy_slink: bool = False) -> Entry:
    keyword, args = split_line(line)
    return parse_entry(keyword, args, line.lineno, legacy_slink=legacy_slink)


def render_entry(entry: Entry) -> tuple[str, str]:
    """Return ``(keyword, args)`` that parse back to *entry*."""
    if isinstance(entry, Directory):
        return "dir", f"{entry.name} {entry.mode:04o} {entry.uid} {entry.gid}"
    if isinstance(entry, RegularFile):
        return "file", (f"{entry.name} {entry.source} {entry.mode:04o} "
                        f"{entry.uid} {entry.gid}")
    if isinstance(entry, Symlink):
        return "slink", f"{entry.name} {entry.target} {entry.uid} {entry.gid}"
    if isinstance(entry, DeviceNode):
        head = f"{entry.name} {entry.mode:04o} {entry.uid} {entry.gid}"
        if entry.keyword in ("pipe", "sock"):
            return entry.keyword, head
        return "nod", f"{head} {entry.devtype} {entry.major} {entry.minor}"
    raise TypeError(f"not a spec entry: {entry!r}")


def keyword_of(entry: Entry) -> str:
    return render_entry(entry)[0]


# ── Path resolution ────────────────────────────────────────────────────

def resolve_path(name: str, lineno: int | None = None) -> str:
    """Make *name* relative to the target root.

    Exactly one leading ``/`` is stripped; ``/`` itself becomes ``.``.
    ``..`` components are NOT resolved.
    """
    relpath = name[1:] if name.startswith("/") else name
    if relpath.startswith("/"):
        raise MalformedArgs(f"path {name!r} escapes the target root", lineno)
    if "\0" in relpath:
        raise MalformedArgs(f"path {name!r} contains a NUL byte", lineno)
    if not relpath:
        relpath = "."
    if len(relpath.encode("utf-8", "surrogateescape")) >= PATH_MAX:
        raise PathTooLong(f"path longer than {PATH_MAX - 1} bytes", lineno)
    return relpath
