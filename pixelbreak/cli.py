"""Command line options of the Pixelflut server."""

from __future__ import annotations

import argparse
from dataclasses import dataclass

from .protocol import Features
from .statistics import SaveMode

DEFAULT_NETWORK_BUFFER_SIZE = 256 * 1024
MIN_NETWORK_BUFFER_SIZE = 64_000
MAX_NETWORK_BUFFER_SIZE = 100_000_000
"""Exclusive upper limit of the network buffer size."""


@dataclass(frozen=True)
class CliArgs:
    """Settings of one server run."""

    listen_address: str = "[::]:1234"
    width: int = 1280
    height: int = 720
    fps: int = 30
    network_buffer_size: int = DEFAULT_NETWORK_BUFFER_SIZE
    text: str = "Pixelflut server (pixelbreak)"
    font: str = "Arial.ttf"
    prometheus_listen_address: str = "[::]:9100"
    statistics_save_file: str = "statistics.json"
    statistics_save_interval_s: int = 10
    disable_statistics_save_file: bool = False
    rtmp_address: str | None = None
    video_save_folder: str | None = None
    connections_per_ip: int | None = None
    shared_memory_name: str | None = None
    alpha: bool = False
    binary_set_pixel: bool = False
    binary_sync_pixels: bool = False

    @property
    def features(self) -> Features:
        """The protocol extensions selected on the command line."""
        return Features(
            alpha=self.alpha,
            binary_set_pixel=self.binary_set_pixel,
            binary_sync_pixels=self.binary_sync_pixels,
        )

    @property
    def statistics_save_mode(self) -> SaveMode:
        """How statistics are persisted; disabled when requested."""
        if self.disable_statistics_save_file:
            return SaveMode()
        return SaveMode(self.statistics_save_file, self.statistics_save_interval_s)


def _non_negative(raw: str) -> int:
    try:
        value = int(raw)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid digit found in string: {raw!r}") from None
    if value < 0:
        raise argparse.ArgumentTypeError(f"{raw} is negative")
    return value


def _network_buffer_size(raw: str) -> int:
    try:
        value = int(raw)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid digit found in string: {raw!r}") from None
    if not MIN_NETWORK_BUFFER_SIZE <= value < MAX_NETWORK_BUFFER_SIZE:
        raise argparse.ArgumentTypeError(
            f"{value} is not in {MIN_NETWORK_BUFFER_SIZE}..{MAX_NETWORK_BUFFER_SIZE}"
        )
    return value


def _build_parser() -> argparse.ArgumentParser:
    defaults = CliArgs()
    parser = argparse.ArgumentParser(prog="pixelbreak", description="Pixelflut server")
    parser.add_argument(
        "-l", "--listen-address", default=defaults.listen_address,
        help="Listen address to bind to. The default listens on all interfaces "
             "for IPv4 and IPv6 packets.",
    )
    parser.add_argument("--width", type=_non_negative, default=defaults.width,
                        help="Width of the drawing surface.")
    parser.add_argument("--height", type=_non_negative, default=defaults.height,
                        help="Height of the drawing surface.")
    parser.add_argument("-f", "--fps", type=_non_negative, default=defaults.fps,
                        help="Frames per second the server should aim for.")
    parser.add_argument(
        "--network-buffer-size", type=_network_buffer_size,
        default=defaults.network_buffer_size,
        help="The size in bytes of the network buffer used for each open TCP connection. "
             "Please use at least 64 KB (64_000 bytes).",
    )
    parser.add_argument("-t", "--text", default=defaults.text,
                        help="Text to display on the screen.")
    parser.add_argument("--font", default=defaults.font,
                        help="The font used to render the text on the screen (a ttf file).")
    parser.add_argument(
        "-p", "--prometheus-listen-address", default=defaults.prometheus_listen_address,
        help="Listen address the prometheus exporter should listen on.",
    )
    parser.add_argument(
        "--statistics-save-file", default=defaults.statistics_save_file,
        help="Save file where statistics are periodically saved and restored from "
             "during startup. Remove the file to reset the statistics.",
    )
    parser.add_argument(
        "--statistics-save-interval-s", type=_non_negative,
        default=defaults.statistics_save_interval_s,
        help="Interval (in seconds) in which the statistics save file should be updated.",
    )
    parser.add_argument("--disable-statistics-save-file", action="store_true",
                        help="Disable periodical saving of statistics into save file.")
    parser.add_argument("--rtmp-address",
                        help="Enable rtmp streaming to configured address, "
                             "e.g. `rtmp://127.0.0.1:1935/live/test`")
    parser.add_argument(
        "--video-save-folder",
        help="Enable dump of video stream into file. File location will be "
             "`<VIDEO_SAVE_FOLDER>/pixelflut_dump_{timestamp}.mp4`",
    )
    parser.add_argument("-c", "--connections-per-ip", type=_non_negative,
                        help="Allow only a certain number of connections per ip address")
    parser.add_argument(
        "--shared-memory-name",
        help="Create (or use an existing) shared memory region for the framebuffer.",
    )
    parser.add_argument("--alpha", action="store_true",
                        help="Honour the alpha channel of PX x y rrggbbaa commands.")
    parser.add_argument("--binary-set-pixel", action="store_true",
                        help="Accept the binary PB command.")
    parser.add_argument("--binary-sync-pixels", action="store_true",
                        help="Accept the experimental binary PXMULTI command.")
    return parser


def parse_args(argv: list[str] | None = None) -> CliArgs:
    """Parse command line arguments; invalid ones exit with status 2."""
    namespace = _build_parser().parse_args(argv)
    return CliArgs(**vars(namespace))