"""The Pixelflut TCP server and the per-connection read loop."""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import time
from contextlib import suppress
from ipaddress import IPv4Address, IPv6Address

from .framebuffer import FrameBuffer
from .original import OriginalParser
from .protocol import Features
from .statistics import EventKind, StatisticsEvent

CONNECTION_DENIED_TEXT = b"Connection denied as connection limit is reached"

STATISTICS_REPORT_INTERVAL = 0.25
"""Seconds between two BYTES_READ events of one connection."""

log = logging.getLogger(__name__)


class ServerError(Exception):
    """Raised when the server cannot listen on its address."""


def _split_address(address: str) -> tuple[str | None, int]:
    """Split "host:port" or "[v6host]:port" into host and port.

    The IPv6 wildcard "::" becomes None, meaning every interface of every
    address family.
    """
    host, sep, port = address.rpartition(":")
    if not sep or not port.isdigit() or int(port) > 0xFFFF:
        raise ValueError(f"invalid listen address {address!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    if host in ("", "::"):
        return None, int(port)
    return host, int(port)


def _canonical_ip(host: str) -> IPv4Address | IPv6Address:
    """Parse a peer address, unwrapping IPv4 addresses embedded in IPv6."""
    ip = ipaddress.ip_address(host.split("%", 1)[0])
    if isinstance(ip, IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


def _allocate_buffer(size: int, lookahead: int) -> bytearray:
    if size <= 2 * lookahead:
        raise ValueError(
            f"network buffer of {size} bytes is too small, "
            f"more than {2 * lookahead} bytes are needed"
        )
    return bytearray(size)


async def handle_connection(
    reader: asyncio.StreamReader,
    writer,
    ip: IPv4Address | IPv6Address,
    fb: FrameBuffer,
    statistics_queue: asyncio.Queue,
    network_buffer_size: int,
    connection_dropped: asyncio.Queue | None = None,
    features: Features = Features(),
) -> None:
    """Read commands from reader until EOF and write responses to writer.

    Statistics events are put on statistics_queue. When the connection ends
    its ip is put on connection_dropped, if given. The writer is left open.
    """
    log.debug("handling new connection from %s", ip)
    await statistics_queue.put(StatisticsEvent(EventKind.CONNECTION_CREATED, ip))

    parser = OriginalParser(fb, features)
    lookahead = parser.lookahead
    buffer = _allocate_buffer(network_buffer_size, lookahead)
    read_end = network_buffer_size - lookahead

    # Bytes left over at the start of the buffer from the previous iteration
    leftover = 0
    last_statistics = time.monotonic()
    bytes_since_report = 0

    while True:
        try:
            chunk = await reader.read(read_end - leftover)
        except (ConnectionError, OSError):
            break
        bytes_read = len(chunk)

        bytes_since_report += bytes_read
        if time.monotonic() - last_statistics > STATISTICS_REPORT_INTERVAL:
            await statistics_queue.put(
                StatisticsEvent(EventKind.BYTES_READ, ip, bytes_since_report)
            )
            last_statistics = time.monotonic()
            bytes_since_report = 0

        data_end = leftover + bytes_read
        if not bytes_read:
            if not leftover:
                break
            # No new data will come; the leftover can never complete
            leftover = 0
            continue

        buffer[leftover:data_end] = chunk
        # Clear the lookahead so no command from an earlier read is seen again
        buffer[data_end : data_end + lookahead] = bytes(lookahead)

        last_byte_parsed, response = parser.parse(memoryview(buffer)[: data_end + lookahead])

        if response:
            writer.write(response)
            await writer.drain()

        # last_byte_parsed is an index, so one more byte than it has been consumed.
        # Nothing longer than a command is kept, so gibberish cannot clog the buffer.
        leftover = min(max(0, data_end - last_byte_parsed - 1), lookahead)
        if leftover:
            start = last_byte_parsed + 1
            buffer[:leftover] = buffer[start : start + leftover]

    await statistics_queue.put(StatisticsEvent(EventKind.CONNECTION_CLOSED, ip))
    if connection_dropped is not None:
        connection_dropped.put_nowait(ip)


class Server:
    """Accepts Pixelflut clients and serves each on its own task.

    With max_connections_per_ip set, further connections from an address
    that already has that many open are refused.
    """

    def __init__(
        self,
        listen_address: str,
        fb: FrameBuffer,
        statistics_queue: asyncio.Queue,
        network_buffer_size: int,
        max_connections_per_ip: int | None = None,
        features: Features = Features(),
    ) -> None:
        self.listen_address = listen_address
        self.fb = fb
        self.statistics_queue = statistics_queue
        self.network_buffer_size = network_buffer_size
        self.max_connections_per_ip = max_connections_per_ip
        self.features = features
        self.connections_per_ip: dict[IPv4Address | IPv6Address, int] = {}
        self.port: int | None = None
        self.started = asyncio.Event()
        self._dropped: asyncio.Queue = asyncio.Queue()

    async def start(self) -> None:
        """Listen on the configured address and serve clients until cancelled."""
        host, port = _split_address(self.listen_address)
        try:
            server = await asyncio.start_server(self._on_client, host, port)
        except OSError as err:
            raise ServerError(f"failed to bind to {self.listen_address}") from err
        log.info("started Pixelflut server")
        self.port = server.sockets[0].getsockname()[1]
        self.started.set()
        try:
            await server.serve_forever()
        finally:
            server.close()

    def _release_dropped(self) -> None:
        while not self._dropped.empty():
            ip = self._dropped.get_nowait()
            remaining = self.connections_per_ip.get(ip)
            if remaining is None:
                continue
            if remaining <= 1:
                del self.connections_per_ip[ip]
            else:
                self.connections_per_ip[ip] = remaining - 1

    async def _on_client(self, reader: asyncio.StreamReader, writer) -> None:
        self._release_dropped()
        ip = _canonical_ip(writer.get_extra_info("peername")[0])
        try:
            limit = self.max_connections_per_ip
            if limit is not None:
                current = self.connections_per_ip.get(ip, 0)
                if current >= limit:
                    await self.statistics_queue.put(
                        StatisticsEvent(EventKind.CONNECTION_DENIED, ip)
                    )
                    # Only best effort, the client may already be gone
                    with suppress(ConnectionError, OSError):
                        writer.write(CONNECTION_DENIED_TEXT)
                        await writer.drain()
                    return
                self.connections_per_ip[ip] = current + 1

            try:
                await handle_connection(
                    reader,
                    writer,
                    ip,
                    self.fb,
                    self.statistics_queue,
                    self.network_buffer_size,
                    self._dropped if limit is not None else None,
                    self.features,
                )
            except Exception:
                log.error("failed to handle connection from %s", ip, exc_info=True)
        finally:
            writer.close()
            with suppress(ConnectionError, OSError):
                await writer.wait_closed()