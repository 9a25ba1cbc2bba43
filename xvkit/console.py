"""Console formatting, line-edited keyboard input, text screen and PC keyboard decoding."""

from __future__ import annotations

import threading
from typing import Callable, Iterable, Optional, Union

INPUT_BUF = 128
BACKSPACE = 0x100

CONSOLE_HORIZONTAL_MAX = 53
CONSOLE_VERTICAL_MAX = 20
FONT_WIDTH = 15
FONT_HEIGHT = 30

_DIGITS = "0123456789abcdef"

# Keyboard modifier bits.
NO = 0
SHIFT = 1 << 0
CTL = 1 << 1
ALT = 1 << 2
CAPSLOCK = 1 << 3
NUMLOCK = 1 << 4
SCROLLLOCK = 1 << 5
E0ESC = 1 << 6

# Special keycodes.
KEY_HOME = 0xE0
KEY_END = 0xE1
KEY_UP = 0xE2
KEY_DN = 0xE3
KEY_LF = 0xE4
KEY_RT = 0xE5
KEY_PGUP = 0xE6
KEY_PGDN = 0xE7
KEY_INS = 0xE8
KEY_DEL = 0xE9


def _ctrl(key: str) -> int:
    """The code of Control-key."""
    return (ord(key) - ord("@")) & 0xFF


def format_int(value: int, base: int, signed: bool) -> str:
    """Format a 32-bit value in base 2..16, as signed or unsigned."""
    if not 2 <= base <= 16:
        raise ValueError(f"base {base} is outside 2..16")
    x = value & 0xFFFFFFFF
    negative = bool(signed and x & 0x80000000)
    if negative:
        x = -x & 0xFFFFFFFF
    digits = []
    while True:
        digits.append(_DIGITS[x % base])
        x //= base
        if x == 0:
            break
    if negative:
        digits.append("-")
    return "".join(reversed(digits))


def cprintf(fmt: Optional[str], *args) -> str:
    """Format like the kernel console: only %d, %x, %p, %s and %% are understood."""
    if fmt is None:
        raise ValueError("null fmt")
    values = iter(args)

    def next_arg():
        try:
            return next(values)
        except StopIteration:
            raise TypeError("not enough arguments for format string") from None

    out = []
    i = 0
    while i < len(fmt):
        c = fmt[i]
        i += 1
        if c != "%":
            out.append(c)
            continue
        if i >= len(fmt):
            break
        c = fmt[i]
        i += 1
        if c == "d":
            out.append(format_int(next_arg(), 10, True))
        elif c in ("x", "p"):
            out.append(format_int(next_arg(), 16, False))
        elif c == "s":
            s = next_arg()
            out.append("(null)" if s is None else str(s))
        elif c == "%":
            out.append("%")
        else:
            # Unknown sequences are printed to draw attention.
            out.append("%" + c)
    return "".join(out)


Chars = Union[bytes, bytearray, str, Iterable[int]]


class ConsoleInput:
    """The console's line-editing input buffer.

    Characters arrive through interrupt(); read() hands out committed lines,
    waiting until one is available. Every echoed character goes to echo.
    """

    def __init__(self, echo: Optional[Callable[[int], object]] = None) -> None:
        self._buf = bytearray(INPUT_BUF)
        self.r = 0  # read index
        self.w = 0  # write index
        self.e = 0  # edit index
        self._echo = echo
        self._cond = threading.Condition()

    def _putc(self, c: int) -> None:
        if self._echo is not None:
            self._echo(c)

    def interrupt(self, chars: Chars) -> bool:
        """Feed typed characters; return whether a process listing was asked for."""
        procdump = False
        with self._cond:
            for c in chars:
                if isinstance(c, str):
                    c = ord(c)
                if c == _ctrl("P"):
                    procdump = True
                elif c == _ctrl("U"):
                    while self.e != self.w and self._buf[(self.e - 1) % INPUT_BUF] != ord("\n"):
                        self.e -= 1
                        self._putc(BACKSPACE)
                elif c in (_ctrl("H"), 0x7F):
                    if self.e != self.w:
                        self.e -= 1
                        self._putc(BACKSPACE)
                elif c != 0 and self.e - self.r < INPUT_BUF:
                    if c == ord("\r"):
                        c = ord("\n")
                    self._buf[self.e % INPUT_BUF] = c & 0xFF
                    self.e += 1
                    self._putc(c)
                    if c == ord("\n") or c == _ctrl("D") or self.e == self.r + INPUT_BUF:
                        self.w = self.e
                        self._cond.notify_all()
        return procdump

    def read(self, n: int) -> bytes:
        """Read up to n bytes, stopping after a newline; Control-D marks end of file."""
        target = n
        out = bytearray()
        with self._cond:
            while n > 0:
                while self.r == self.w:
                    self._cond.wait()
                c = self._buf[self.r % INPUT_BUF]
                self.r += 1
                if c == _ctrl("D"):
                    if n < target:
                        # Keep ^D so that the next read returns nothing.
                        self.r -= 1
                    break
                out.append(c)
                n -= 1
                if c == ord("\n"):
                    break
        return bytes(out)


class TextScreen:
    """A grid of character cells drawn on the graphic console.

    render(x, y, c) is told the pixel position of each drawn character and
    scroll(height) the pixel height of each scroll.
    """

    def __init__(
        self,
        render: Optional[Callable[[int, int, int], object]] = None,
        scroll: Optional[Callable[[int], object]] = None,
    ) -> None:
        self.pos = CONSOLE_HORIZONTAL_MAX * CONSOLE_VERTICAL_MAX
        self._rows = [[" "] * CONSOLE_HORIZONTAL_MAX for _ in range(CONSOLE_VERTICAL_MAX)]
        self._render = render
        self._scroll = scroll

    @property
    def lines(self) -> list[str]:
        return ["".join(row) for row in self._rows]

    def _scroll_up(self) -> None:
        self.pos -= CONSOLE_HORIZONTAL_MAX
        self._rows.pop(0)
        self._rows.append([" "] * CONSOLE_HORIZONTAL_MAX)
        if self._scroll is not None:
            self._scroll(FONT_HEIGHT)

    def putc(self, c: Union[int, str]) -> None:
        """Draw one character, or handle newline and BACKSPACE."""
        if isinstance(c, str):
            c = ord(c)
        limit = CONSOLE_VERTICAL_MAX * CONSOLE_HORIZONTAL_MAX
        if c == ord("\n"):
            self.pos += CONSOLE_HORIZONTAL_MAX - self.pos % CONSOLE_HORIZONTAL_MAX
            if self.pos >= limit:
                self._scroll_up()
        elif c == BACKSPACE:
            if self.pos > 0:
                self.pos -= 1
        else:
            if self.pos >= limit:
                self._scroll_up()
            row, col = divmod(self.pos, CONSOLE_HORIZONTAL_MAX)
            self._rows[row][col] = chr(c)
            if self._render is not None:
                self._render(col * FONT_WIDTH + 2, row * FONT_HEIGHT, c)
            self.pos += 1


def _table(codes: Iterable[int], extras: dict) -> tuple:
    table = [NO] * 256
    for index, code in enumerate(codes):
        table[index] = code
    for index, code in extras.items():
        table[index] = code
    return tuple(table)


def _chars(*rows: str) -> list[int]:
    return [ord(ch) for ch in "".join(rows)]


_KEYPAD = "\0" * 7 + "789-456+1230."

_SPECIAL = {
    0xC8: KEY_UP, 0xD0: KEY_DN,
    0xC9: KEY_PGUP, 0xD1: KEY_PGDN,
    0xCB: KEY_LF, 0xCD: KEY_RT,
    0x97: KEY_HOME, 0xCF: KEY_END,
    0xD2: KEY_INS, 0xD3: KEY_DEL,
}

SHIFTCODE = _table([], {0x1D: CTL, 0x2A: SHIFT, 0x36: SHIFT, 0x38: ALT, 0x9D: CTL, 0xB8: ALT})
TOGGLECODE = _table([], {0x3A: CAPSLOCK, 0x45: NUMLOCK, 0x46: SCROLLLOCK})

NORMALMAP = _table(
    _chars(
        "\0\x1b1234567890-=\b\t",
        "qwertyuiop[]\n\0as",
        "dfghjkl;'`\0\\zxcv",
        "bnm,./\0*\0 " + "\0" * 6,
        _KEYPAD,
    ),
    {0x9C: ord("\n"), 0xB5: ord("/"), **_SPECIAL},
)

SHIFTMAP = _table(
    _chars(
        "\0\x1b!@#$%^&*()_+\b\t",
        "QWERTYUIOP{}\n\0AS",
        "DFGHJKL:\"~\0|ZXCV",
        "BNM<>?\0*\0 " + "\0" * 6,
        _KEYPAD,
    ),
    {0x9C: ord("\n"), 0xB5: ord("/"), **_SPECIAL},
)

CTLMAP = _table(
    [NO] * 16
    + [_ctrl(k) for k in "QWERTYUI"]
    + [_ctrl("O"), _ctrl("P"), NO, NO, ord("\r"), NO, _ctrl("A"), _ctrl("S")]
    + [_ctrl(k) for k in "DFGHJKL"] + [NO]
    + [NO, NO, NO, _ctrl("\\"), _ctrl("Z"), _ctrl("X"), _ctrl("C"), _ctrl("V")]
    + [_ctrl("B"), _ctrl("N"), _ctrl("M"), NO, NO, _ctrl("/"), NO, NO],
    {0x9C: ord("\r"), 0xB5: _ctrl("/"), **_SPECIAL},
)

_CHARCODE = (NORMALMAP, SHIFTMAP, CTLMAP, CTLMAP)


class Keyboard:
    """Decodes PC keyboard scan codes into characters, tracking modifier state."""

    def __init__(self) -> None:
        self.shift = 0

    def getc(self, scancode: int) -> int:
        """Return the character for a scan code, or 0 when it yields none."""
        if not 0 <= scancode <= 0xFF:
            raise ValueError(f"scan code {scancode} is outside 0..255")
        data = scancode
        if data == 0xE0:
            self.shift |= E0ESC
            return 0
        if data & 0x80:
            # Key released.
            data = data if self.shift & E0ESC else data & 0x7F
            self.shift &= ~(SHIFTCODE[data] | E0ESC)
            return 0
        if self.shift & E0ESC:
            # The last code was an E0 escape.
            data |= 0x80
            self.shift &= ~E0ESC

        self.shift |= SHIFTCODE[data]
        self.shift ^= TOGGLECODE[data]
        c = _CHARCODE[self.shift & (CTL | SHIFT)][data]
        if self.shift & CAPSLOCK:
            if ord("a") <= c <= ord("z"):
                c += ord("A") - ord("a")
            elif ord("A") <= c <= ord("Z"):
                c += ord("a") - ord("A")
        return c