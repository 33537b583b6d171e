"""A simple newline-splitting Pixelflut parser."""

from __future__ import annotations

from collections.abc import Iterator

from .framebuffer import FrameBuffer
from .protocol import Parser

_DIGITS = frozenset("0123456789")


def _number(raw: bytes, bits: int, name: str) -> int:
    """Parse an unsigned decimal number that must fit into bits."""
    try:
        text = raw.decode()
    except UnicodeDecodeError as err:
        raise ValueError("Not utf-8") from err
    digits = text[1:] if text.startswith("+") else text
    if not digits or not set(digits) <= _DIGITS:
        raise ValueError(f"{name} was not a number")
    value = int(digits)
    if value >= 1 << bits:
        raise ValueError(f"{name} was not a number")
    return value


def _lines(data: bytes) -> Iterator[tuple[bytes, int]]:
    """Yield each line (without its final two bytes' last one) and the index after it."""
    line_start = 0
    newline = data.find(b"\n")
    while newline != -1:
        end = max(newline - 1, 0)
        if line_start > end:
            raise ValueError(f"line starts at {line_start} but ends at {end}")
        line = data[line_start:end]
        line_start = newline + 1
        if not line:
            raise ValueError("Line is empty")
        yield line, line_start
        newline = data.find(b"\n", line_start)


class LineParser(Parser):
    """Splits the input at newlines and handles "PX x y rgba _" lines.

    The color is a decimal number and the character before each newline is
    dropped. Anything else is skipped; malformed numbers raise ValueError.
    """

    lookahead = 0

    def __init__(self, fb: FrameBuffer) -> None:
        self.fb = fb

    def parse(self, buffer) -> tuple[int, bytes]:
        data = bytes(buffer)
        after_last_newline = 0
        for line, after_last_newline in _lines(data):
            self._handle_line(line)
        return max(after_last_newline - 1, 0), b""

    def _handle_line(self, line: bytes) -> None:
        parts = line.split(b" ")
        if len(parts) < 5 or parts[0] != b"PX":
            return
        x = _number(parts[1], 16, "x")
        y = _number(parts[2], 16, "y")
        rgba = _number(parts[3], 32, "rgba")
        self.fb.set(x, y, rgba)