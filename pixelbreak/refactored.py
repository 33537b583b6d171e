"""A Pixelflut parser with one handler per command."""

from __future__ import annotations

import struct

from .framebuffer import FrameBuffer
from .original import parse_pixel_coordinates, unhex
from .protocol import PARSER_LOOKAHEAD, Features, Parser, help_text

_NEWLINE = ord("\n")
_SPACE = ord(" ")

_BINARY_PIXEL = struct.Struct("<HHI")


def _at(data: bytes, index: int) -> int:
    """Return the byte at index, or 0 past the end of data."""
    return data[index] if index < len(data) else 0


def _to_big_endian(pixel: int) -> int:
    return int.from_bytes(pixel.to_bytes(4, "little"), "big")


class RefactoredParser(Parser):
    """Scans the buffer for commands and hands each one to its own handler.

    Unlike the reference parser every HELP is answered and binary pixel
    syncing is not supported. The per-connection offset is kept between calls.
    """

    def __init__(self, fb: FrameBuffer, features: Features = Features()) -> None:
        self.fb = fb
        self.features = features
        self.x_offset = 0
        self.y_offset = 0
        self._help_text = help_text(features)

    def parse(self, buffer) -> tuple[int, bytes]:
        """Parse commands in buffer.

        Returns the index of the last byte parsed (-1 when nothing was
        parsed) and the response for the client.
        """
        data = bytes(buffer)
        response = bytearray()
        loop_end = max(0, len(data) - PARSER_LOOKAHEAD)
        last_byte_parsed = 0
        i = 0

        while i < loop_end:
            if data.startswith(b"PX ", i):
                i, last_byte_parsed = self._handle_pixel(data, i, response)
            elif self.features.binary_set_pixel and data.startswith(b"PB", i):
                i, last_byte_parsed = self._handle_binary_pixel(data, i)
            elif data.startswith(b"OFFSET ", i):
                i = self._handle_offset(data, i + 7)
                last_byte_parsed = i
            elif data.startswith(b"SIZE", i):
                i += 4
                last_byte_parsed = i
                response += f"SIZE {self.fb.width} {self.fb.height}\n".encode()
            elif data.startswith(b"HELP", i):
                i += 4
                last_byte_parsed = i
                response += self._help_text
            else:
                i += 1

        return last_byte_parsed - 1, bytes(response)

    def _handle_pixel(self, data: bytes, index: int, response: bytearray) -> tuple[int, int]:
        """Handle a PX command starting at index.

        Returns the next scan position and the new last-parsed marker, which
        falls back to the command start when the command is incomplete.
        """
        previous = index
        x, y, present, idx = parse_pixel_coordinates(data, index + 3)
        if not present:
            return idx, previous
        x += self.x_offset
        y += self.y_offset

        if _at(data, idx) == _SPACE:
            idx += 1
            if _at(data, idx + 6) == _NEWLINE:
                self.fb.set(x, y, unhex(data[idx : idx + 8]) & 0x00FF_FFFF)
                return idx + 7, idx + 7
            if _at(data, idx + 8) == _NEWLINE:
                self._handle_rgba(x, y, unhex(data[idx : idx + 8]))
                return idx + 9, idx + 9
            if _at(data, idx + 2) == _NEWLINE:
                base = unhex(data[idx : idx + 8]) & 0xFF
                self.fb.set(x, y, (base << 16) | (base << 8) | base)
                return idx + 3, idx + 3
            return idx, previous

        if _at(data, idx) == _NEWLINE:
            idx += 1
            self._handle_get_pixel(response, x, y)
            return idx, idx
        return idx, previous

    def _handle_binary_pixel(self, data: bytes, index: int) -> tuple[int, int]:
        payload = data[index + 2 : index + 10].ljust(8, b"\0")
        x, y, rgba = _BINARY_PIXEL.unpack(payload)
        self.fb.set(x, y, rgba & 0x00FF_FFFF)
        return index + 10, index

    def _handle_offset(self, data: bytes, index: int) -> int:
        x, y, present, index = parse_pixel_coordinates(data, index)
        if present and _at(data, index) == _NEWLINE:
            self.x_offset = x
            self.y_offset = y
        return index

    def _handle_rgba(self, x: int, y: int, rgba: int) -> None:
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

    def _handle_get_pixel(self, response: bytearray, x: int, y: int) -> None:
        pixel = self.fb.get(x, y)
        if pixel is not None:
            response += (
                f"PX {x - self.x_offset} {y - self.y_offset} "
                f"{_to_big_endian(pixel) >> 8:06x}\n"
            ).encode()