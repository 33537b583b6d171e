"""Pixel storage for the drawing surface."""

from __future__ import annotations

import logging
import os
import struct
from multiprocessing import resource_tracker, shared_memory

FB_BYTES_PER_PIXEL = 4
"""Number of bytes a single pixel occupies."""

HEADER_SIZE = 4
"""Shared memory header: width and height, both unsigned 16 bit."""

_PIXEL = struct.Struct("<I")
_HEADER = struct.Struct("=HH")
_MAX_DIMENSION = 0xFFFF

log = logging.getLogger(__name__)


class FrameBuffer:
    """A width x height grid of 32 bit pixels, stored as little-endian bytes."""

    def __init__(self, width: int, height: int, memory) -> None:
        if width < 0 or height < 0:
            raise ValueError(f"invalid framebuffer size {width}x{height}")
        expected = width * height * FB_BYTES_PER_PIXEL
        view = memoryview(memory)
        if view.readonly:
            view.release()
            raise ValueError("framebuffer memory must be writable")
        if view.nbytes < expected:
            view.release()
            raise ValueError(
                f"framebuffer memory holds {len(memory)} bytes, {expected} needed"
            )
        self.width = width
        self.height = height
        self._pixels = view[:expected]
        view.release()

    @property
    def size(self) -> int:
        """Number of pixels (not bytes)."""
        return self.width * self.height

    def _in_bounds(self, x: int, y: int) -> bool:
        return 0 <= x < self.width and 0 <= y < self.height

    def get(self, x: int, y: int) -> int | None:
        """Return the pixel at (x, y), or None when it lies outside the surface."""
        if not self._in_bounds(x, y):
            return None
        return _PIXEL.unpack_from(self._pixels, (x + y * self.width) * FB_BYTES_PER_PIXEL)[0]

    def set(self, x: int, y: int, rgba: int) -> None:
        """Store rgba at (x, y); coordinates outside the surface are ignored."""
        if self._in_bounds(x, y):
            _PIXEL.pack_into(
                self._pixels,
                (x + y * self.width) * FB_BYTES_PER_PIXEL,
                rgba & 0xFFFF_FFFF,
            )

    def set_multi(self, start_x: int, start_y: int, pixels) -> tuple[int, int]:
        """Copy raw pixel bytes starting at (start_x, start_y).

        Returns the coordinates reached after filling.
        """
        copied = self.set_multi_from_start_index(start_x + start_y * self.width, pixels)
        return (start_x + copied) % self.width, start_y + copied // self.width

    def set_multi_from_start_index(self, starting_index: int, pixels) -> int:
        """Copy raw pixel bytes starting at a linear pixel index.

        Returns the number of pixels copied; nothing is copied when the data
        would run past the end of the surface.
        """
        data = memoryview(pixels).cast("B")
        num_pixels = len(data) // FB_BYTES_PER_PIXEL
        if starting_index < 0 or starting_index + num_pixels > self.size:
            log.debug(
                "Ignoring invalid set_multi call, which would exceed the screen "
                "(starting_index=%d, num_pixels=%d, size=%d)",
                starting_index,
                num_pixels,
                self.size,
            )
            return 0
        start = starting_index * FB_BYTES_PER_PIXEL
        end = min(start + len(data), len(self._pixels))
        self._pixels[start:end] = data[: end - start]
        return num_pixels

    def as_bytes(self) -> bytes:
        """Return a snapshot of the raw pixel bytes."""
        return bytes(self._pixels)


class SimpleFrameBuffer(FrameBuffer):
    """A framebuffer held in ordinary process memory."""

    def __init__(self, width: int, height: int) -> None:
        super().__init__(width, height, bytearray(width * height * FB_BYTES_PER_PIXEL))


def _keep_after_exit(shm: shared_memory.SharedMemory) -> None:
    # The region must outlive this process so the canvas persists across restarts.
    if os.name == "posix":
        resource_tracker.unregister("/" + shm.name.lstrip("/"), "shared_memory")


def _open_shared_memory(name: str, width: int, height: int) -> shared_memory.SharedMemory:
    for value, label in ((width, "width"), (height, "height")):
        if value > _MAX_DIMENSION:
            raise ValueError(f"Framebuffer {label} too high")

    target_size = HEADER_SIZE + width * height * FB_BYTES_PER_PIXEL
    try:
        shm = shared_memory.SharedMemory(name=name, create=True, size=target_size)
    except FileExistsError:
        try:
            shm = shared_memory.SharedMemory(name=name)
        except OSError as err:
            raise OSError(f'failed to open existing shared memory "{name}"') from err
    _keep_after_exit(shm)

    actual_size = shm.size
    if actual_size < target_size:
        shm.close()
        raise ValueError(
            f"The shared memory is too small! Expected at least {target_size} bytes, "
            f"but it has {actual_size} bytes instead."
        )
    if actual_size > target_size:
        log.warning(
            "The shared memory is too big! Expected at maximum %d bytes, "
            "but it has %d bytes instead.",
            target_size,
            actual_size,
        )
    log.info(
        "Shared memory loaded (name=%s, actual_size=%d, target_size=%d)",
        name,
        actual_size,
        target_size,
    )
    _HEADER.pack_into(shm.buf, 0, width, height)
    return shm


class SharedMemoryFrameBuffer(FrameBuffer):
    """A framebuffer optionally backed by a named shared memory region.

    Without a name the pixels live in local memory. With a name the region is
    created or reused; it starts with a header holding width and height and is
    left in place when the framebuffer is closed.
    """

    def __init__(self, width: int, height: int, shared_memory_name: str | None = None) -> None:
        self._shm: shared_memory.SharedMemory | None = None
        if shared_memory_name is None:
            log.debug("Using plain (non shared memory) framebuffer")
            super().__init__(width, height, bytearray(width * height * FB_BYTES_PER_PIXEL))
            return

        shm = _open_shared_memory(shared_memory_name, width, height)
        self._shm = shm
        region = shm.buf[HEADER_SIZE:]
        try:
            super().__init__(width, height, region)
        finally:
            region.release()

    def close(self) -> None:
        """Detach from the shared memory region; the region itself is kept."""
        if self._shm is None:
            return
        self._pixels.release()
        self._shm.close()
        self._shm = None

    def __enter__(self) -> SharedMemoryFrameBuffer:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()