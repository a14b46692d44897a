"""
Tests for the spec reader, entry parser and path resolver.
"""

from __future__ import annotations

import dataclasses
import unittest

from buildspec import (
    Directory, Symlink, RegularFile, DeviceNode, SpecLine,
    ParseError, MalformedLine, MalformedArgs, UnknownEntryType, PathTooLong,
    PATH_MAX, MAX_LINE, MAX_ID, MAX_MAJOR, MAX_MINOR,
    read_spec, split_line, parse_line, parse_entry, render_entry,
    resolve_path,
)


def parse(text: str, lineno: int = 1, **kw):
    return parse_line(SpecLine(lineno, text), **kw)


# ---------------------------------------------------------------------------
#  Reader
# ---------------------------------------------------------------------------

class TestReadSpec(unittest.TestCase):

    def test_skips_comments_and_blanks(self):
        """Comment and blank lines are dropped but still counted."""
        lines = [
            "# root skeleton\n",
            "\n",
            "dir / 0755 0 0\n",
            "   \t\n",
            "dir /bin 0755 0 0\n",
        ]
        got = list(read_spec(lines))
        self.assertEqual(got, [SpecLine(3, "dir / 0755 0 0"),
                               SpecLine(5, "dir /bin 0755 0 0")])

    def test_strips_crlf(self):
        got = list(read_spec(["dir /etc 0755 0 0\r\n"]))
        self.assertEqual(got[0].text, "dir /etc 0755 0 0")

    def test_last_line_without_newline(self):
        got = list(read_spec(["dir /a 0755 0 0\n", "dir /b 0755 0 0"]))
        self.assertEqual([l.lineno for l in got], [1, 2])
        self.assertEqual(got[1].text, "dir /b 0755 0 0")

    def test_hash_only_at_line_start(self):
        """A '#' later in the line is not a comment marker."""
        got = list(read_spec(["file /a#b /src 0644 0 0\n"]))
        self.assertEqual(len(got), 1)

    def test_lazy_single_pass(self):
        """Lines are pulled from the source one at a time."""
        source = iter(["dir /a 0755 0 0\n", "dir /b 0755 0 0\n"])
        reader = read_spec(source)
        first = next(reader)
        self.assertEqual(first.lineno, 1)
        self.assertEqual(next(source), "dir /b 0755 0 0\n")
        with self.assertRaises(StopIteration):
            next(reader)


# ---------------------------------------------------------------------------
#  Parser
# ---------------------------------------------------------------------------

class TestParseLine(unittest.TestCase):

    def test_dir(self):
        self.assertEqual(parse("dir\t/bin 0755 0 0"),
                         Directory("/bin", 0o755, 0, 0))

    def test_file(self):
        self.assertEqual(parse("file /bin/init /host/init 0755 10 20"),
                         RegularFile("/bin/init", "/host/init", 0o755, 10, 20))

    def test_slink(self):
        self.assertEqual(parse("slink /sbin /bin 0 0"),
                         Symlink("/sbin", "/bin", 0, 0))

    def test_nod_char(self):
        e = parse("nod\t/dev/null 0666 0 0 c 1 3")
        self.assertEqual(e, DeviceNode("/dev/null", 0o666, 0, 0, "c", 1, 3))
        self.assertTrue(e.has_device_number)

    def test_nod_block(self):
        e = parse("nod /dev/sda 0660 0 6 b 8 0")
        self.assertEqual(e.devtype, "b")
        self.assertEqual((e.major, e.minor), (8, 0))

    def test_pipe_and_sock(self):
        """pipe/sock are nod with devtype p/s and device 0,0."""
        pipe = parse("pipe /run/initctl 0600 0 0")
        sock = parse("sock /run/log 0666 0 0")
        self.assertEqual(pipe, DeviceNode("/run/initctl", 0o600, 0, 0, "p"))
        self.assertEqual(sock, DeviceNode("/run/log", 0o666, 0, 0, "s"))
        self.assertFalse(pipe.has_device_number)
        self.assertEqual(pipe.keyword, "pipe")

    def test_leading_whitespace_and_tabs(self):
        e = parse("  dir \t /etc\t0700   0 0")
        self.assertEqual(e, Directory("/etc", 0o700, 0, 0))

    def test_mode_without_leading_zero(self):
        self.assertEqual(parse("dir /x 755 0 0").mode, 0o755)

    def test_special_bits(self):
        self.assertEqual(parse("dir /tmp 1777 0 0").mode, 0o1777)

    def test_no_separator(self):
        with self.assertRaises(MalformedLine):
            parse("dir")

    def test_type_without_args(self):
        with self.assertRaises(MalformedLine):
            parse("dir   \t")

    def test_unknown_type(self):
        with self.assertRaises(UnknownEntryType) as cm:
            parse("bogus\tx y z", lineno=7)
        self.assertEqual(cm.exception.lineno, 7)
        self.assertIn("line 7", str(cm.exception))

    def test_field_count(self):
        for text in ("dir /a 0755 0", "dir /a 0755 0 0 0",
                     "file /a 0644 0 0", "nod /a 0600 0 0 c 1",
                     "pipe /a 0600 0"):
            with self.subTest(text=text):
                with self.assertRaises(MalformedArgs):
                    parse(text)

    def test_bad_octal(self):
        with self.assertRaises(MalformedArgs):
            parse("dir /a 0789 0 0")

    def test_mode_out_of_range(self):
        with self.assertRaises(MalformedArgs):
            parse("dir /a 17777 0 0")

    def test_negative_ids(self):
        with self.assertRaises(MalformedArgs):
            parse("dir /a 0755 -1 0")
        with self.assertRaises(MalformedArgs):
            parse("dir /a 0755 0 +5")

    def test_id_range(self):
        """uid/gid stop below (uid_t)-1, which chown reads as 'unchanged'."""
        e = parse(f"dir /a 0755 {MAX_ID} {MAX_ID}")
        self.assertEqual((e.uid, e.gid), (0xFFFFFFFE, 0xFFFFFFFE))
        for line in ("dir /a 0755 4294967295 0",
                     "dir /a 0755 0 99999999999",
                     "slink /a /b 99999999999 0",
                     "file /a /src 0644 0 4294967295"):
            with self.subTest(line=line):
                with self.assertRaises(MalformedArgs):
                    parse(line)

    def test_device_number_range(self):
        e = parse(f"nod /dev/x 0600 0 0 c {MAX_MAJOR} {MAX_MINOR}")
        self.assertEqual((e.major, e.minor), (4095, 1048575))
        for numbers in ("4096 0", "0 1048576", "99999999999 1"):
            with self.subTest(numbers=numbers):
                with self.assertRaises(MalformedArgs) as cm:
                    parse(f"nod /dev/x 0600 0 0 c {numbers}")
                self.assertIn("out of range", str(cm.exception))

    def test_embedded_nul(self):
        for line in ("dir /a\0b 0755 0 0",
                     "slink /a /b\0c 0 0",
                     "file /a /src\0x 0644 0 0"):
            with self.subTest(line=line):
                with self.assertRaises(MalformedArgs):
                    parse(line)

    def test_invalid_utf8_is_per_line(self):
        """A bad byte fails its own line; the lines around it still parse."""
        got = list(read_spec([b"dir /a 0755 0 0\n",
                              b"dir /\xff 0755 0 0\n",
                              b"dir /b 0755 0 0\n"]))
        self.assertEqual([l.lineno for l in got], [1, 2, 3])
        self.assertEqual(parse_line(got[0]), Directory("/a", 0o755, 0, 0))
        with self.assertRaises(MalformedLine) as cm:
            parse_line(got[1])
        self.assertEqual(cm.exception.lineno, 2)
        self.assertIn("UTF-8", str(cm.exception))
        self.assertEqual(parse_line(got[2]), Directory("/b", 0o755, 0, 0))

    def test_bad_devtype(self):
        for devtype in ("x", "cc"):
            with self.subTest(devtype=devtype):
                with self.assertRaises(MalformedArgs):
                    parse(f"nod /dev/x 0600 0 0 {devtype} 1 1")

    def test_legacy_slink_requires_opt_in(self):
        """The 5-field slink form is only accepted when asked for."""
        with self.assertRaises(MalformedArgs) as cm:
            parse("slink /sbin /bin 0777 0 0")
        self.assertIn("--legacy-slink", str(cm.exception))
        e = parse("slink /sbin /bin 0777 0 0", legacy_slink=True)
        self.assertEqual(e, Symlink("/sbin", "/bin", 0, 0))

    def test_legacy_slink_still_checks_mode(self):
        with self.assertRaises(MalformedArgs):
            parse("slink /sbin /bin rwx 0 0", legacy_slink=True)

    def test_overlong_line(self):
        name = "/" + "a" * (MAX_LINE + 1)
        with self.assertRaises(MalformedLine):
            parse(f"dir {name} 0755 0 0")

    def test_errors_are_parse_errors(self):
        for cls in (MalformedLine, MalformedArgs, UnknownEntryType, PathTooLong):
            self.assertTrue(issubclass(cls, ParseError))

    def test_entries_are_immutable(self):
        e = parse("dir /a 0755 0 0")
        with self.assertRaises(dataclasses.FrozenInstanceError):
            e.mode = 0o700

    def test_split_line(self):
        self.assertEqual(split_line(SpecLine(1, "file  /a /b 0644 0 0")),
                         ("file", "/a /b 0644 0 0"))

    def test_parse_entry_direct(self):
        self.assertEqual(parse_entry("pipe", "/p 0600 1 1"),
                         DeviceNode("/p", 0o600, 1, 1, "p", keyword="pipe"))


class TestRenderEntry(unittest.TestCase):

    SAMPLES = [
        ("dir", "/bin 0755 0 0"),
        ("dir", "/tmp   1777 0 0"),
        ("file", "/bin/init /host/init 0755 0 0"),
        ("slink", "/sbin /bin 0 0"),
        ("nod", "/dev/console 0600 0 5 c 5 1"),
        ("nod", "/dev/sda 0660 0 6 b 8 0"),
        ("nod", "/etc/empty 0644 0 0 r 0 0"),
        ("pipe", "/run/initctl 0600 0 0"),
        ("sock", "/run/log 0666 0 0"),
    ]

    def test_parse_then_render(self):
        """Rendering a parsed entry reproduces the argument string."""
        for keyword, args in self.SAMPLES:
            with self.subTest(keyword=keyword, args=args):
                entry = parse_entry(keyword, args)
                got_keyword, got_args = render_entry(entry)
                self.assertEqual(got_keyword, keyword)
                self.assertEqual(got_args, " ".join(args.split()))

    def test_render_rejects_non_entries(self):
        with self.assertRaises(TypeError):
            render_entry("dir /a 0755 0 0")


# ---------------------------------------------------------------------------
#  Path resolution
# ---------------------------------------------------------------------------

class TestResolvePath(unittest.TestCase):

    def test_strips_one_separator(self):
        self.assertEqual(resolve_path("/a/b"), "a/b")
        self.assertEqual(resolve_path("a/b"), "a/b")

    def test_root(self):
        self.assertEqual(resolve_path("/"), ".")

    def test_idempotent(self):
        for p in ("/a/b", "a/b", "/", ".", "/dev/console",
                  "/a/../b", "x/", "/x/"):
            with self.subTest(p=p):
                once = resolve_path(p)
                self.assertEqual(resolve_path(once), once)

    def test_no_dotdot_canonicalisation(self):
        self.assertEqual(resolve_path("/a/../b"), "a/../b")

    def test_double_separator_rejected(self):
        """'//etc' would still be absolute after one strip."""
        with self.assertRaises(MalformedArgs):
            resolve_path("//etc", lineno=4)

    def test_nul_rejected(self):
        with self.assertRaises(MalformedArgs) as cm:
            resolve_path("/a\0b", lineno=2)
        self.assertEqual(cm.exception.lineno, 2)

    def test_too_long(self):
        ok ="/" + "a" * (PATH_MAX - 1)
        self.assertEqual(len(resolve_path(ok)), PATH_MAX - 1)
        with self.assertRaises(PathTooLong) as cm:
            resolve_path("/" + "a" * PATH_MAX, lineno=9)
        self.assertEqual(cm.exception.lineno, 9)

    def test_length_counts_bytes(self):
        name = "é" * (PATH_MAX // 2)
        with self.assertRaises(PathTooLong):
            resolve_path(name)


if __name__ == "__main__":
    unittest.main()
