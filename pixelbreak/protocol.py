"""Protocol-wide definitions shared by the Pixelflut command parsers."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

PARSER_LOOKAHEAD = len(b"PX 1234 1234 rrggbbaa\n")
"""Length of the longest possible command."""

ALT_HELP_TEXT = b"Stop spamming HELP!\n"


@dataclass(frozen=True)
class Features:
    """Optional protocol extensions the server has enabled."""

    alpha: bool = False
    binary_set_pixel: bool = False
    binary_sync_pixels: bool = False


def help_text(features: Features = Features()) -> bytes:
    """Return the HELP response for the given feature set."""
    if features.alpha:
        alpha_line = (
            "PX x y rrggbbaa: Color the pixel (x,y) with the given hexadecimal color rrggbb "
            "and a transparency of aa, where ff means draw normally on top of the existing "
            "pixel and 00 means fully transparent (no change at all)"
        )
    else:
        alpha_line = (
            "PX x y rrggbbaa: Color the pixel (x,y) with the given hexadecimal color rrggbb. "
            "The alpha part is discarded for performance reasons, as the server was started "
            "without the alpha feature"
        )
    binary_set = (
        "PBxxyyrgba: Binary version of the PX command. x and y are little-endian 16 bit "
        "coordinates, r, g, b and a are a byte each. There is *no* newline after the command.\n"
        if features.binary_set_pixel
        else ""
    )
    binary_sync = (
        "PXMULTI<startX:16><startY:16><len:32><rgba 1 of (startX, startY)>"
        "<rgba 2 of (startX + 1, startY)><rgba 3 of (startX + 1, startY)>...<rgba len>: "
        "EXPERIMENTAL binary syncing of whole pixel areas. Please note that for performance "
        "reasons this will be copied 1:1 to the servers framebuffer. The server will just take "
        "the following <len> bytes and memcpy it into the framebuffer, so the alpha channel "
        "doesn't matter and you might mess up the screen. This is intended for export-use, "
        "especially when syncing or combining multiple Pixelflut screens across multiple servers\n"
        if features.binary_sync_pixels
        else ""
    )
    text = (
        "Pixelflut server powered by pixelbreak\n"
        "Available commands:\n"
        "HELP: Show this help\n"
        "PX x y rrggbb: Color the pixel (x,y) with the given hexadecimal color rrggbb\n"
        f"{alpha_line}\n"
        "PX x y gg: Color the pixel (x,y) with the hexadecimal color gggggg. Basically this is "
        "the same as the other commands, but is a more efficient way of filling white, black "
        "or gray areas\n"
        "PX x y: Get the color value of the pixel (x,y)\n"
        f"{binary_set}{binary_sync}"
        "SIZE: Get the size of the drawing surface, e.g. `SIZE 1920 1080`\n"
        "OFFSET x y: Apply offset (x,y) to all further pixel draws on this connection. This can "
        "e.g. be used to pre-calculate an image/animation and simply use the OFFSET command to "
        "move it around the screen without the need to re-calculate it\n"
    )
    return text.encode()


HELP_TEXT = help_text()


class Parser(ABC):
    """Turns bytes received from a client into framebuffer updates and responses."""

    lookahead: int = PARSER_LOOKAHEAD
    """Bytes past the data end the parser may inspect; callers pad with zeros."""

    @abstractmethod
    def parse(self, buffer: bytes) -> tuple[int, bytes]:
        """Parse commands in buffer.

        Returns the index of the last byte parsed and the response for the
        client. Unparsed bytes are handed in again on the next call.
        """