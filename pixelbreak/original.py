"""The reference Pixelflut command parser."""

from __future__ import annotations

import struct
from dataclasses import dataclass

from .framebuffer import FrameBuffer
from .protocol import ALT_HELP_TEXT, PARSER_LOOKAHEAD, Features, Parser, help_text

_NEWLINE = ord("\n")
_SPACE = ord(" ")
_ZERO = ord("0")
_NINE = ord("9")
_MAX_COORDINATE_DIGITS = 4
_HELP_REPEATS = 3

# Nibble positions of the eight input characters, so that "rrggbbaa" ends up
# as the little-endian u32 with rr in the lowest byte.
_NIBBLE_SHIFTS = (4, 0, 12, 8, 20, 16, 28, 24)

_BINARY_PIXEL = struct.Struct("<HHI")
_SYNC_HEADER = struct.Struct("<HHI")


def _at(data: bytes, index: int) -> int:
    """Return the byte at index, or 0 past the end of data."""
    return data[index] if index < len(data) else 0


def _read(data: bytes, index: int, length: int) -> bytes:
    """Return length bytes from index, zero padded past the end of data."""
    return data[index : index + length].ljust(length, b"\0")


def unhex(data) -> int:
    """Decode up to eight hex characters into a little-endian ordered u32.

    The result is only meaningful for valid hex characters; anything else
    yields an unspecified (but deterministic) value.
    """
    value = 0
    for shift, char in zip(_NIBBLE_SHIFTS, bytes(data[:8]).ljust(8, b"\0")):
        value |= ((char & 0xF) + (char >> 6) * 9) << shift
    return value & 0xFFFF_FFFF


def _parse_coordinate(buffer: bytes, index: int) -> tuple[int, bool, int]:
    value = 0
    visited = False
    for _ in range(_MAX_COORDINATE_DIGITS):
        digit = _at(buffer, index)
        if not _ZERO <= digit <= _NINE:
            break
        value = value * 10 + digit - _ZERO
        index += 1
        visited = True
    return value, visited, index


def parse_pixel_coordinates(buffer, index: int) -> tuple[int, int, bool, int]:
    """Parse "x y" starting at index.

    Returns x, y, whether both were present, and the index after y.
    """
    x, x_visited, index = _parse_coordinate(buffer, index)
    index += 1
    y, y_visited, index = _parse_coordinate(buffer, index)
    return x, y, x_visited and y_visited, index


def _to_big_endian(pixel: int) -> int:
    return int.from_bytes(pixel.to_bytes(4, "little"), "big")


@dataclass
class _PendingSync:
    """A PXMULTI transfer that continues into the next buffer."""

    current_index: int
    bytes_remaining: int


class OriginalParser(Parser):
    """Scans the buffer byte by byte for known commands.

    The per-connection offset and any unfinished binary pixel sync are kept
    between calls.
    """

    def __init__(self, fb: FrameBuffer, features: Features = Features()) -> None:
        self.fb = fb
        self.features = features
        self.x_offset = 0
        self.y_offset = 0
        self._help_text = help_text(features)
        self._pending_sync: _PendingSync | None = None

    def parse(self, buffer) -> tuple[int, bytes]:
        data = bytes(buffer)
        response = bytearray()
        loop_end = max(0, len(data) - PARSER_LOOKAHEAD)
        last_byte_parsed = 0
        help_count = 0
        i = 0

        if self._pending_sync is not None:
            pending = self._pending_sync
            available = data[:loop_end]
            if pending.bytes_remaining <= len(available):
                self.fb.set_multi_from_start_index(
                    pending.current_index, available[: pending.bytes_remaining]
                )
                i = last_byte_parsed = pending.bytes_remaining
                self._pending_sync = None
            else:
                pixel_bytes = len(available) // 4 * 4
                copied = self.fb.set_multi_from_start_index(
                    pending.current_index, available[:pixel_bytes]
                )
                self._pending_sync = _PendingSync(
                    pending.current_index + copied,
                    max(0, pending.bytes_remaining - pixel_bytes),
                )
                return max(0, pixel_bytes - 1), b""

        while i < loop_end:
            if data.startswith(b"PX ", i):
                i, parsed = self._handle_pixel(data, i + 3, response)
                if parsed is not None:
                    last_byte_parsed = parsed
                    continue
            elif self.features.binary_set_pixel and data.startswith(b"PB", i):
                x, y, rgba = _BINARY_PIXEL.unpack(_read(data, i + 2, 8))
                self.fb.set(x, y, rgba & 0x00FF_FFFF)
                last_byte_parsed = i + 9
                i += 10
                continue
            elif self.features.binary_sync_pixels and data.startswith(b"PXMULTI", i):
                i += len(b"PXMULTI")
                start_x, start_y, length = _SYNC_HEADER.unpack(_read(data, i, 8))
                i += 8
                len_in_bytes = length * 4
                bytes_left = max(0, loop_end - i)
                if len_in_bytes <= bytes_left:
                    self.fb.set_multi(start_x, start_y, data[i : i + len_in_bytes])
                    i += len_in_bytes
                    last_byte_parsed = i
                    continue
                pixel_bytes = bytes_left // 4 * 4
                current_index = start_x + start_y * self.fb.width
                current_index += self.fb.set_multi_from_start_index(
                    current_index, data[i : i + pixel_bytes]
                )
                self._pending_sync = _PendingSync(current_index, len_in_bytes - pixel_bytes)
                return i + max(0, pixel_bytes - 1), bytes(response)
            elif data.startswith(b"OFFSET ", i):
                x, y, present, i = parse_pixel_coordinates(data, i + 7)
                if present and _at(data, i) == _NEWLINE:
                    last_byte_parsed = i
                    self.x_offset = x
                    self.y_offset = y
                    continue
            elif data.startswith(b"SIZE", i):
                i += 4
                last_byte_parsed = i + 1
                response += f"SIZE {self.fb.width} {self.fb.height}\n".encode()
                continue
            elif data.startswith(b"HELP", i):
                i += 4
                last_byte_parsed = i + 1
                if help_count < _HELP_REPEATS:
                    response += self._help_text
                    help_count += 1
                elif help_count == _HELP_REPEATS:
                    response += ALT_HELP_TEXT
                    help_count += 1
                continue

            i += 1

        return last_byte_parsed, bytes(response)

    def _handle_pixel(
        self, data: bytes, index: int, response: bytearray
    ) -> tuple[int, int | None]:
        """Handle a PX command whose arguments start at index.

        Returns the next scan position and the last byte parsed, the latter
        being None when the command was not complete.
        """
        x, y, present, i = parse_pixel_coordinates(data, index)
        if not present:
            return i, None
        x += self.x_offset
        y += self.y_offset

        if _at(data, i) == _SPACE:
            i += 1
            if _at(data, i + 6) == _NEWLINE:
                self.fb.set(x, y, unhex(data[i : i + 8]) & 0x00FF_FFFF)
                return i + 7, i + 6
            if _at(data, i + 8) == _NEWLINE:
                self._set_rgba(x, y, unhex(data[i : i + 8]))
                return i + 9, i + 8
            if _at(data, i + 2) == _NEWLINE:
                base = unhex(data[i : i + 8]) & 0xFF
                self.fb.set(x, y, (base << 16) | (base << 8) | base)
                return i + 3, i + 2

        if _at(data, i) == _NEWLINE:
            pixel = self.fb.get(x, y)
            if pixel is not None:
                response += (
                    f"PX {x - self.x_offset} {y - self.y_offset} "
                    f"{_to_big_endian(pixel) >> 8:06x}\n"
                ).encode()
            return i + 1, i
        return i, None

    def _set_rgba(self, x: int, y: int, rgba: int) -> None:
        if not self.features.alpha:
            self.fb.set(x, y, rgba & 0x00FF_FFFF)
            return

        alpha = (rgba >> 24) & 0xFF
        if alpha == 0 or x >= self.fb.width or y >= self.fb.height:
            return
        alpha_comp = 0xFF - alpha
        current = self.fb.get(x, y) or 0
        r = (((current >> 24) & 0xFF) * alpha_comp + ((rgba >> 16) & 0xFF) * alpha) // 0xFF
        g = (((current >> 16) & 0xFF) * alpha_comp + ((rgba >> 8) & 0xFF) * alpha) // 0xFF
        b = (((current >> 8) & 0xFF) * alpha_comp + (rgba & 0xFF) * alpha) // 0xFF
        self.fb.set(x, y, (r << 16) | (g << 8) | b)