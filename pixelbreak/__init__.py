"""A Pixelflut server: frame buffers, command parsers, statistics, metrics and ffmpeg output."""

__version__ = "0.18.1"