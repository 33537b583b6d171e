"""Exposes server statistics in the Prometheus text format over HTTP."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress

from .server import _split_address
from .statistics import StatisticsInformationEvent

log = logging.getLogger(__name__)

_GAUGES = (
    ("ips_v6", "pixelbreak_ips_v6", "Total number of connected IPv6 addresses"),
    ("ips_v4", "pixelbreak_ips_v4", "Total number of connected IPv4 addresses"),
    ("frame", "pixelbreak_frame", "Frame number of the VNC server"),
    ("statistic_events", "pixelbreak_statistic_events",
     "Number of statistics events send internally"),
)

_LABELLED_GAUGES = (
    ("connections_for_ip", "pixelbreak_connections",
     "Number of client connections per IP address"),
    ("denied_connections_for_ip", "pixelbreak_denied_connections",
     "Number of denied connections per IP address because it tried to open too many "
     "connections"),
    ("bytes_for_ip", "pixelbreak_bytes", "Number of bytes received per IP address"),
)

_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"
_MAX_HEADER_LINES = 100


class ExporterError(Exception):
    """Raised when the exporter cannot listen on its address."""


def _escape_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


class PrometheusExporter:
    """Serves the latest statistics summary as Prometheus gauges.

    Summaries arrive on the given queue; None stops run().
    """

    def __init__(self, listen_address: str, information_queue: asyncio.Queue) -> None:
        self.listen_address = listen_address
        self._host, self._port = _split_address(listen_address)
        self._events = information_queue
        self._values: dict[str, int] = {name: 0 for _, name, _ in _GAUGES}
        self._labelled: dict[str, dict[str, int]] = {name: {} for _, name, _ in _LABELLED_GAUGES}
        self.port: int | None = None
        self.started = asyncio.Event()

    def update(self, event: StatisticsInformationEvent) -> None:
        """Set all gauges from a summary.

        Per-IP gauges are replaced, so addresses that are gone disappear.
        """
        for attribute, name, _ in _GAUGES:
            self._values[name] = int(getattr(event, attribute))
        for attribute, name, _ in _LABELLED_GAUGES:
            self._labelled[name] = {
                str(ip): int(value) for ip, value in getattr(event, attribute).items()
            }

    def render(self) -> str:
        """Return all gauges in the Prometheus text exposition format."""
        lines: list[str] = []
        for _, name, description in _GAUGES:
            lines += [f"# HELP {name} {description}", f"# TYPE {name} gauge",
                      f"{name} {self._values[name]}"]
        for _, name, description in _LABELLED_GAUGES:
            lines += [f"# HELP {name} {description}", f"# TYPE {name} gauge"]
            lines += [
                f'{name}{{ip="{_escape_label(ip)}"}} {value}'
                for ip, value in self._labelled[name].items()
            ]
        return "\n".join(lines) + "\n"

    async def run(self) -> None:
        """Serve metrics over HTTP and apply summaries until None arrives."""
        try:
            server = await asyncio.start_server(self._serve, self._host, self._port)
        except OSError as err:
            raise ExporterError(
                f"failed to start prometheus exporter on {self.listen_address}"
            ) from err
        self.port = server.sockets[0].getsockname()[1]
        self.started.set()
        try:
            while (event := await self._events.get()) is not None:
                self.update(event)
        finally:
            server.close()

    async def _serve(self, reader: asyncio.StreamReader, writer) -> None:
        try:
            request_line = await reader.readline()
            for _ in range(_MAX_HEADER_LINES):
                header = await reader.readline()
                if header in (b"", b"\n", b"\r\n"):
                    break
            parts = request_line.decode("latin-1").split()
            path = parts[1].split("?", 1)[0] if len(parts) >= 2 else ""
            if len(parts) >= 2 and parts[0] == "GET" and path == "/metrics":
                status, body, content_type = "200 OK", self.render(), _CONTENT_TYPE
            else:
                status, body, content_type = "404 Not Found", "Not Found\n", "text/plain"
            payload = body.encode()
            head = (
                f"HTTP/1.1 {status}\r\n"
                f"Content-Type: {content_type}\r\n"
                f"Content-Length: {len(payload)}\r\n"
                "Connection: close\r\n\r\n"
            ).encode()
            writer.write(head + payload)
            await writer.drain()
        except (ConnectionError, OSError):
            log.debug("metrics client went away", exc_info=True)
        finally:
            writer.close()
            with suppress(ConnectionError, OSError):
                await writer.wait_closed()