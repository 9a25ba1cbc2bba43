"""Line filter supporting the ^ . * $ regular expression operators."""

from __future__ import annotations

import sys
from typing import BinaryIO, Optional, Sequence

BUF_SIZE = 1024


def _matchhere(re: str, ri: int, text: str, ti: int) -> bool:
    while True:
        if ri == len(re):
            return True
        if ri + 1 < len(re) and re[ri + 1] == "*":
            return _matchstar(re[ri], re, ri + 2, text, ti)
        if re[ri] == "$" and ri + 1 == len(re):
            return ti == len(text)
        if ti < len(text) and (re[ri] == "." or re[ri] == text[ti]):
            ri += 1
            ti += 1
            continue
        return False


def _matchstar(c: str, re: str, ri: int, text: str, ti: int) -> bool:
    while True:
        if _matchhere(re, ri, text, ti):
            return True
        if ti < len(text) and (text[ti] == c or c == "."):
            ti += 1
            continue
        return False


def match(re: str, text: str) -> bool:
    """Return whether the pattern matches anywhere in text."""
    if re.startswith("^"):
        return _matchhere(re, 1, text, 0)
    return any(_matchhere(re, 0, text, ti) for ti in range(len(text) + 1))


def grep(pattern: str, stream: BinaryIO, out: BinaryIO) -> None:
    """Copy to out each newline-terminated line of stream that matches pattern.

    A final line without a newline is dropped, as is a buffer full of text
    that holds no newline at all.
    """
    buf = b""
    while True:
        chunk = stream.read(BUF_SIZE - 1 - len(buf))
        if not chunk:
            break
        buf += chunk
        start = 0
        while (nl := buf.find(b"\n", start)) != -1:
            line = buf[start:nl].split(b"\0", 1)[0].decode("latin-1")
            if match(pattern, line):
                out.write(buf[start:nl + 1])
            start = nl + 1
        buf = b"" if start == 0 else buf[start:]


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = list(sys.argv[1:] if argv is None else argv)
    if not args:
        sys.stderr.write("usage: grep pattern [file ...]\n")
        return 1
    pattern = args[0]
    out = sys.stdout.buffer
    if len(args) == 1:
        grep(pattern, sys.stdin.buffer, out)
        out.flush()
        return 0
    for path in args[1:]:
        try:
            handle = open(path, "rb")
        except OSError:
            out.flush()
            sys.stdout.write(f"grep: cannot open {path}\n")
            sys.stdout.flush()
            return 1
        with handle:
            grep(pattern, handle, out)
        out.flush()
    return 0