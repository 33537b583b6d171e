import asyncio
from contextlib import suppress
from ipaddress import IPv4Address, IPv6Address

import pytest

from pixelbreak.framebuffer import SharedMemoryFrameBuffer, SimpleFrameBuffer
from pixelbreak.protocol import HELP_TEXT, Features
from pixelbreak.server import (
    CONNECTION_DENIED_TEXT,
    Server,
    ServerError,
    _canonical_ip,
    _split_address,
    handle_connection,
)
from pixelbreak.statistics import EventKind

NETWORK_BUFFER_SIZE = 256 * 1024
IP = IPv4Address("127.0.0.1")


class _Writer:
    def __init__(self) -> None:
        self.data = bytearray()

    def write(self, data) -> None:
        self.data += data

    async def drain(self) -> None:
        pass


def _reader(data: bytes) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    reader.feed_data(data)
    reader.feed_eof()
    return reader


def _fb():
    return SharedMemoryFrameBuffer(640, 480)


async def _run(data, fb=None, features=Features(), size=NETWORK_BUFFER_SIZE, stats=None,
               dropped=None) -> str:
    if fb is None:
        fb = _fb()
    if stats is None:
        stats = asyncio.Queue()
    writer = _Writer()
    await handle_connection(_reader(data), writer, IP, fb, stats, size, dropped, features)
    return writer.data.decode()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "data, expected",
    [
        (b"", ""),
        (b"\n", ""),
        (b"not a pixelflut command", ""),
        (b"not a pixelflut command with newline\n", ""),
        (b"SIZE", "SIZE 640 480\n"),
        (b"SIZE\n", "SIZE 640 480\n"),
        (b"SIZE\nSIZE\n", "SIZE 640 480\nSIZE 640 480\n"),
        (b"HELP", HELP_TEXT.decode()),
        (b"HELP\n", HELP_TEXT.decode()),
        (b"bla bla bla\nSIZE\nblub\nbla", "SIZE 640 480\n"),
    ],
)
async def test_correct_responses_to_general_commands(data, expected):
    assert await _run(data) == expected


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "data, expected",
    [
        (b"PX 0 0 ffffff\nPX 0 0\n", "PX 0 0 ffffff\n"),
        (b"PX 0 0 abcdef\nPX 0 0\n", "PX 0 0 abcdef\n"),
        (b"PX 0 42 abcdef\nPX 0 42\n", "PX 0 42 abcdef\n"),
        (b"PX 42 0 abcdef\nPX 42 0\n", "PX 42 0 abcdef\n"),
        (b"PX 0 0 ffffffff\nPX 0 0\n", "PX 0 0 ffffff\n"),
        (b"PX 1 0 abcdefff\nPX 1 0\n", "PX 1 0 abcdef\n"),
        (b"PX 0 0 00\nPX 0 0\n", "PX 0 0 000000\n"),
        (b"PX 0 0 ff\nPX 0 0\n", "PX 0 0 ffffff\n"),
        (b"PX 0 1 12\nPX 0 1\n", "PX 0 1 121212\n"),
        (b"PX 0 1 34\nPX 0 1\n", "PX 0 1 343434\n"),
        (b"PX 9999 0 abcdef\nPX 9999 0\n", ""),
        (b"PX 0 9999 abcdef\nPX 9999 0\n", ""),
        (b"PX 9999 9999 abcdef\nPX 9999 9999\n", ""),
        (b"PX 99999 0 abcdef\nPX 0 99999\n", ""),
        (b"PX 0 99999 abcdef\nPX 0 99999\n", ""),
        (b"PX 99999 99999 abcdef\nPX 99999 99999\n", ""),
        (b"PX 0 abcdef\nPX 0 0\n", "PX 0 0 000000\n"),
        (b"PX 0 1 2 abcdef\nPX 0 0\n", "PX 0 0 000000\n"),
        (b"PX -1 0 abcdef\nPX 0 0\n", "PX 0 0 000000\n"),
        (b"bla bla bla\nPX 0 0\n", "PX 0 0 000000\n"),
        (
            b"OFFSET 10 10\nPX 0 0 ffffff\nPX 0 0\nPX 42 42\n",
            "PX 0 0 ffffff\nPX 42 42 000000\n",
        ),
        (b"OFFSET 0 0\nPX 0 42 abcdef\nPX 0 42\n", "PX 0 42 abcdef\n"),
    ],
)
async def test_setting_pixel(data, expected):
    assert await _run(data) == expected


@pytest.mark.asyncio
@pytest.mark.parametrize("alpha", [False, True])
@pytest.mark.parametrize(
    "data, plain, blended",
    [
        (b"PX 0 0 ffffff00\nPX 0 0\n", "PX 0 0 ffffff\n", "PX 0 0 000000\n"),
        (b"PX 0 1 abcdef00\nPX 0 1\n", "PX 0 1 abcdef\n", "PX 0 1 000000\n"),
        (b"PX 0 0 ffffff88\nPX 0 0\n", "PX 0 0 ffffff\n", "PX 0 0 888888\n"),
        (b"PX 0 0 ffffff11\nPX 0 0\n", "PX 0 0 ffffff\n", "PX 0 0 111111\n"),
        (b"PX 0 0 abcdef80\nPX 0 0\n", "PX 0 0 abcdef\n", "PX 0 0 556677\n"),
        (b"PX 0 0 abcdef88\nPX 0 0\n", "PX 0 0 abcdef\n", "PX 0 0 5b6d7f\n"),
    ],
)
async def test_setting_pixel_with_alpha(data, plain, blended, alpha):
    result = await _run(data, features=Features(alpha=alpha))
    assert result == (blended if alpha else plain)


@pytest.mark.asyncio
@pytest.mark.parametrize("data", [b"PX 0 0 aaaaaa\n", b"PX 0 0 aa\n"])
async def test_safe(data):
    fb = _fb()
    await _run(data, fb=fb)
    assert fb.get(0, 0) & 0x00FF_FFFF == 0xAAAAAA


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "width, height, offset_x, offset_y",
    [
        (5, 5, 0, 0),
        (6, 6, 0, 0),
        (7, 7, 0, 0),
        (10, 10, 0, 0),
        (10, 10, 20, 30),
        (10, 10, 50, 40),
        (10, 10, 59, 43),  # exceeds the framebuffer
    ],
)
async def test_drawing_rect(width, height, offset_x, offset_y):
    fb = SimpleFrameBuffer(64, 48)
    color = 0
    fill = read = combined = combined_expected = other = other_expected = ""
    for x in range(fb.width):
        for y in range(fb.height):
            if offset_x <= x <= offset_x + width and offset_y <= y <= offset_y + height:
                fill += f"PX {x} {y} {color:06x}\n"
                read += f"PX {x} {y}\n"
                color += 1
                combined += f"PX {x} {y} {color:06x}\nPX {x} {y}\n"
                combined_expected += f"PX {x} {y} {color:06x}\n"
                color += 1
            else:
                other += f"PX {x} {y}\n"
                other_expected += f"PX {x} {y} 000000\n"

    assert await _run(fill.encode(), fb=fb) == ""
    assert await _run(read.encode(), fb=fb) == fill
    assert await _run(combined.encode(), fb=fb) == combined_expected
    assert await _run(other.encode(), fb=fb) == other_expected


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "data, expected",
    [
        (b"PB\x00\x00\x00\x00\x00\x00\x00\x00PX 0 0\n", "PX 0 0 000000\n"),
        (b"PB\x00\x00\x00\x001234PX 0 0\n", "PX 0 0 313233\n"),
        (b"PB\x00\x00\x00\x00\x00\x00\x00\x00PB\x00\x00\x00\x001234PX 0 0\n", "PX 0 0 313233\n"),
        (
            b"PB\x00\x00\x00\x00\x00\x00\x00\x00PX 0 0\nPB\x00\x00\x00\x001234PX 0 0\n",
            "PX 0 0 000000\nPX 0 0 313233\n",
        ),
        (b"PB \x00*\x00____PX 32 42\n", "PX 32 42 5f5f5f\n"),
        (
            b"PB\x00\x00\x00\x00\x00\x00\x00\x00\nPX 0 0\nPB\x00\x00\x00\x001234\n\n\nPX 0 0\n",
            "PX 0 0 000000\nPX 0 0 313233\n",
        ),
    ],
)
async def test_binary_set_pixel(data, expected):
    assert await _run(data, features=Features(binary_set_pixel=True)) == expected


SYNC = Features(binary_sync_pixels=True)


def _sync_header(x: int, y: int, length: int) -> bytes:
    return b"PXMULTI" + x.to_bytes(2, "little") + y.to_bytes(2, "little") + length.to_bytes(
        4, "little"
    )


@pytest.mark.asyncio
async def test_binary_sync_pixels():
    assert await _run(b"PX 0 0 42\nPX 0 0\n", features=SYNC) == "PX 0 0 424242\n"

    data = _sync_header(0, 0, 0) + b"PX 0 0\n"
    assert await _run(data, features=SYNC) == "PX 0 0 000000\n"

    data = _sync_header(0, 0, 10)
    data += b"".join((pixel << 8).to_bytes(4, "big") for pixel in range(10))
    data += "".join(f"PX {x} 0\n" for x in range(10)).encode()
    expected = "".join(f"PX {x} 0 {x:06x}\n" for x in range(10))
    assert await _run(data, features=SYNC) == expected


@pytest.mark.asyncio
async def test_binary_sync_pixels_last_pixel():
    fb = _fb()
    x, y = fb.width - 1, fb.height - 1
    data = _sync_header(x, y, 1) + (0x12345678).to_bytes(4, "big")
    data += f"PX 0 0\nPX {x - 1} {y}\nPX {x} {y}\n".encode()
    expected = f"PX 0 0 000000\nPX {x - 1} {y} 000000\nPX {x} {y} 123456\n"
    assert await _run(data, fb=fb, features=SYNC) == expected


@pytest.mark.asyncio
async def test_binary_sync_pixels_in_the_middle():
    fb = _fb()
    num_pixels = fb.width + 10
    data = _sync_header(42, 13, num_pixels)
    data += b"".join((rgba << 8).to_bytes(4, "big") for rgba in range(num_pixels))

    expected = ""
    rgba = 0
    for x in range(42, fb.width):
        data += f"PX {x} 13\n".encode()
        expected += f"PX {x} 13 {rgba:06x}\n"
        rgba += 1
    for x in range(52):
        data += f"PX {x} 14\n".encode()
        expected += f"PX {x} 14 {rgba:06x}\n"
        rgba += 1
    data += b"PX 52 14\n"
    expected += "PX 52 14 000000\n"

    assert await _run(data, fb=fb, features=SYNC) == expected


@pytest.mark.asyncio
async def test_binary_sync_pixels_exceeding_screen():
    fb = _fb()
    x, y = fb.width - 1, fb.height - 1
    data = _sync_header(x, y, 2)
    data += (0x12345678).to_bytes(4, "big") + (0x87654321).to_bytes(4, "big")
    data += f"PX {x} {y}\n".encode()
    assert await _run(data, fb=fb, features=SYNC) == f"PX {x} {y} 000000\n"


@pytest.mark.asyncio
async def test_binary_sync_pixels_larger_than_buffer():
    fb = SimpleFrameBuffer(64, 64)
    buffer_size = 4096
    num_pixels = fb.width * fb.height
    assert num_pixels * 4 > buffer_size * 3

    data = _sync_header(0, 0, num_pixels)
    data += b"".join((rgba << 8).to_bytes(4, "big") for rgba in range(num_pixels))
    expected = ""
    rgba = 0
    for y in range(fb.height):
        for x in range(fb.width):
            data += f"PX {x} {y}\n".encode()
            expected += f"PX {x} {y} {rgba:06x}\n"
            rgba += 1

    assert await _run(data, fb=fb, features=SYNC, size=buffer_size) == expected


@pytest.mark.asyncio
async def test_connection_reports_statistics_and_drop():
    stats = asyncio.Queue()
    dropped = asyncio.Queue()
    assert await _run(b"SIZE\n", stats=stats, dropped=dropped) == "SIZE 640 480\n"

    kinds = []
    while not stats.empty():
        event = stats.get_nowait()
        assert event.ip == IP
        kinds.append(event.kind)
    assert kinds[0] is EventKind.CONNECTION_CREATED
    assert kinds[-1] is EventKind.CONNECTION_CLOSED
    assert dropped.get_nowait() == IP


@pytest.mark.asyncio
async def test_too_small_buffer_is_rejected():
    with pytest.raises(ValueError):
        await _run(b"SIZE\n", size=16)


def test_split_address():
    assert _split_address("[::]:1234") == (None, 1234)
    assert _split_address("127.0.0.1:9100") == ("127.0.0.1", 9100)
    assert _split_address("[::1]:80") == ("::1", 80)
    with pytest.raises(ValueError):
        _split_address("no-port")
    with pytest.raises(ValueError):
        _split_address("127.0.0.1:99999")


def test_canonical_ip():
    assert _canonical_ip("::ffff:10.0.0.1") == IPv4Address("10.0.0.1")
    assert _canonical_ip("::1") == IPv6Address("::1")
    assert _canonical_ip("192.168.1.2") == IPv4Address("192.168.1.2")


async def _start(server: Server) -> asyncio.Task:
    task = asyncio.create_task(server.start())
    await asyncio.wait_for(server.started.wait(), 5)
    return task


async def _stop(task: asyncio.Task) -> None:
    task.cancel()
    with suppress(asyncio.CancelledError):
        await task


async def _close(writer) -> None:
    writer.close()
    with suppress(ConnectionError, OSError):
        await writer.wait_closed()


@pytest.mark.asyncio
async def test_server_limits_connections_per_ip():
    stats = asyncio.Queue()
    server = Server(
        "127.0.0.1:0", SimpleFrameBuffer(16, 8), stats, NETWORK_BUFFER_SIZE,
        max_connections_per_ip=1,
    )
    task = await _start(server)
    try:
        r1, w1 = await asyncio.open_connection("127.0.0.1", server.port)
        w1.write(b"SIZE\n")
        await w1.drain()
        assert await asyncio.wait_for(r1.readline(), 5) == b"SIZE 16 8\n"

        r2, w2 = await asyncio.open_connection("127.0.0.1", server.port)
        assert await asyncio.wait_for(r2.read(), 5) == CONNECTION_DENIED_TEXT
        await _close(w2)

        await _close(w1)
        kinds = []
        while not kinds or kinds[-1] is not EventKind.CONNECTION_CLOSED:
            kinds.append((await asyncio.wait_for(stats.get(), 5)).kind)
        assert EventKind.CONNECTION_DENIED in kinds

        r3, w3 = await asyncio.open_connection("127.0.0.1", server.port)
        w3.write(b"SIZE\n")
        await w3.drain()
        assert await asyncio.wait_for(r3.readline(), 5) == b"SIZE 16 8\n"
        await _close(w3)
    finally:
        await _stop(task)


@pytest.mark.asyncio
async def test_server_fails_on_used_address():
    fb = SimpleFrameBuffer(4, 4)
    first = Server("127.0.0.1:0", fb, asyncio.Queue(), NETWORK_BUFFER_SIZE)
    task = await _start(first)
    try:
        second = Server(f"127.0.0.1:{first.port}", fb, asyncio.Queue(), NETWORK_BUFFER_SIZE)
        with pytest.raises(ServerError):
            await asyncio.wait_for(second.start(), 5)
    finally:
        await _stop(task)