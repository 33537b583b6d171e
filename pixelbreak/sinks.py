"""Outputs that consume the framebuffer, such as a video stream via ffmpeg."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime

from .framebuffer import FrameBuffer

FRAME_INTERVAL = 1 / 30
"""Seconds between two frames handed to ffmpeg."""

log = logging.getLogger(__name__)


class SinkError(Exception):
    """Raised when a sink cannot be configured or run."""


class DisplaySink(ABC):
    """Something that shows or records the framebuffer until told to stop."""

    @abstractmethod
    async def run(self) -> None:
        """Run the sink until it is terminated."""


def video_file(video_save_folder: str, now: datetime | None = None) -> str:
    """Return the path of the video dump for a recording started at now."""
    now = now or datetime.now()
    return f"{video_save_folder}/pixelflut_dump_{now:%Y-%m-%d_%H-%M-%S}.mp4"


def _flags(pairs: list[tuple[str, str]]) -> list[str]:
    return [item for arg, value in pairs for item in (f"-{arg}", value)]


class FfmpegSink(DisplaySink):
    """Pipes raw frames into ffmpeg, streaming to rtmp or recording to a file."""

    def __init__(
        self,
        fb: FrameBuffer,
        terminate: asyncio.Event,
        rtmp_address: str | None = None,
        video_save_folder: str | None = None,
        fps: int = 30,
    ) -> None:
        if rtmp_address is None and video_save_folder is None:
            raise SinkError("either an rtmp address or a video save folder is needed")
        self.fb = fb
        self.terminate = terminate
        self.rtmp_address = rtmp_address
        self.video_save_folder = video_save_folder
        self.fps = fps

    @classmethod
    def from_args(cls, fb: FrameBuffer, args, terminate: asyncio.Event) -> FfmpegSink | None:
        """Create the sink if the arguments ask for streaming or recording."""
        if args.rtmp_address is None and args.video_save_folder is None:
            return None
        return cls(fb, terminate, args.rtmp_address, args.video_save_folder, args.fps)

    def _input_args(self) -> list[tuple[str, str]]:
        return [
            ("f", "rawvideo"),
            ("pixel_format", "rgb0"),
            ("video_size", f"{self.fb.width}x{self.fb.height}"),
            ("i", "-"),
            ("f", "lavfi"),
            ("i", "anullsrc=channel_layout=stereo:sample_rate=44100"),
        ]

    def _rtmp_sink_args(self) -> list[tuple[str, str]]:
        return [
            ("vcodec", "libx264"),
            ("acodec", "aac"),
            ("pix_fmt", "yuv420p"),
            ("preset", "veryfast"),
            ("r", str(self.fps)),
            ("g", str(self.fps * 2)),
            ("ar", "44100"),
            ("b:v", "6000k"),
            ("b:a", "128k"),
            ("threads", "4"),
        ]

    def ffmpeg_args(self, now: datetime | None = None) -> list[str]:
        """Return the ffmpeg arguments; now names the recording file."""
        args = _flags(self._input_args())
        if self.rtmp_address is not None:
            if self.video_save_folder is not None:
                raise SinkError(
                    "Writing to file and rtmp sink simultaneously currently not supported, sorry!"
                )
            args += _flags(self._rtmp_sink_args())
            args += ["-f", "flv", self.rtmp_address]
        else:
            args.append(video_file(self.video_save_folder, now))
        return args

    async def run(self) -> None:
        """Start ffmpeg and feed it frames until terminate is set.

        The ffmpeg process is left running on exit; interrupting it corrupts
        the recording.
        """
        args = self.ffmpeg_args()
        command = "ffmpeg " + " ".join(args)
        log.debug("executing ffmpeg: %s", command)
        try:
            process = await asyncio.create_subprocess_exec(
                "ffmpeg", *args, stdin=asyncio.subprocess.PIPE
            )
        except OSError as err:
            raise SinkError(f"failed to start ffmpeg command '{command}'") from err

        stdin = process.stdin
        loop = asyncio.get_running_loop()
        next_frame = loop.time()
        while not self.terminate.is_set():
            try:
                stdin.write(self.fb.as_bytes())
                await stdin.drain()
            except (ConnectionError, OSError) as err:
                raise SinkError("failed to write to ffmpeg stdin") from err
            next_frame += FRAME_INTERVAL
            await asyncio.sleep(max(0.0, next_frame - loop.time()))