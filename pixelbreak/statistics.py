"""Collects connection statistics and periodically publishes summaries."""

from __future__ import annotations

import asyncio
import enum
import ipaddress
import json
import math
from collections import deque
from dataclasses import asdict, dataclass, field
from ipaddress import IPv4Address, IPv6Address

STATS_REPORT_INTERVAL = 1.0
"""Seconds between two published summaries."""

STATS_SLIDING_WINDOW_SIZE = 5
STATISTICS_SEND_ERR = "failed to send on statistics channel"
STATISTICS_INFO_SEND_ERR = "failed to send on statistics information channel"
STATISTICS_INFO_RECV_ERR = "failed to receive on statistics information channel"

_SUBSCRIBER_CAPACITY = 2

IpAddress = IPv4Address | IPv6Address


class StatisticsError(Exception):
    """Raised when statistics cannot be saved, loaded or published."""


class EventKind(enum.Enum):
    CONNECTION_CREATED = "connection_created"
    CONNECTION_CLOSED = "connection_closed"
    CONNECTION_DENIED = "connection_denied"
    BYTES_READ = "bytes_read"
    FRAME_RENDERED = "frame_rendered"


@dataclass(frozen=True)
class StatisticsEvent:
    """Something that happened on the server and should be counted."""

    kind: EventKind
    ip: IpAddress | None = None
    bytes: int = 0


def _ip_map(raw: object, name: str) -> dict[IpAddress, int]:
    if not isinstance(raw, dict):
        raise ValueError(f"{name} must be an object")
    result: dict[IpAddress, int] = {}
    for key, value in raw.items():
        if not isinstance(value, int) or isinstance(value, bool) or value < 0:
            raise ValueError(f"{name} holds an invalid count for {key}")
        result[ipaddress.ip_address(key)] = value
    return result


_COUNTERS = ("frame", "connections", "ips_v6", "ips_v4", "bytes", "fps", "bytes_per_s",
             "statistic_events")
_IP_MAPS = ("connections_for_ip", "denied_connections_for_ip", "bytes_for_ip")


@dataclass
class StatisticsInformationEvent:
    """A summary of the server statistics at one point in time."""

    frame: int = 0
    connections: int = 0
    ips_v6: int = 0
    ips_v4: int = 0
    bytes: int = 0
    fps: int = 0
    bytes_per_s: int = 0
    connections_for_ip: dict[IpAddress, int] = field(default_factory=dict)
    denied_connections_for_ip: dict[IpAddress, int] = field(default_factory=dict)
    bytes_for_ip: dict[IpAddress, int] = field(default_factory=dict)
    statistic_events: int = 0

    def to_json(self) -> dict:
        data = asdict(self)
        for name in _IP_MAPS:
            data[name] = {str(ip): value for ip, value in data[name].items()}
        return data

    @classmethod
    def from_json(cls, data: object) -> StatisticsInformationEvent:
        if not isinstance(data, dict):
            raise ValueError("statistics must be an object")
        values: dict = {}
        for name in _COUNTERS:
            value = data[name]
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                raise ValueError(f"{name} must be a non-negative integer")
            values[name] = value
        for name in _IP_MAPS:
            values[name] = _ip_map(data[name], name)
        return cls(**values)

    def save_to_file(self, file_name: str) -> None:
        """Write the summary as JSON to file_name."""
        try:
            with open(file_name, "w", encoding="utf-8") as file:
                json.dump(self.to_json(), file, separators=(",", ":"))
        except OSError as err:
            raise StatisticsError(
                f"failed to create statistics save file at {file_name}"
            ) from err

    @classmethod
    def load_from_file(cls, file_name: str) -> StatisticsInformationEvent:
        """Read a summary previously written by save_to_file."""
        try:
            with open(file_name, encoding="utf-8") as file:
                raw = json.load(file)
        except OSError as err:
            raise StatisticsError(f"failed to load statistic from file '{file_name}'") from err
        except ValueError as err:
            raise StatisticsError(
                f"failed to deserialize statistics from file '{file_name}'"
            ) from err
        try:
            return cls.from_json(raw)
        except (KeyError, TypeError, ValueError) as err:
            raise StatisticsError(
                f"failed to deserialize statistics from file '{file_name}'"
            ) from err


@dataclass(frozen=True)
class SaveMode:
    """Where and how often statistics are saved; no file means saving is disabled."""

    save_file: str | None = None
    interval_s: float = 10

    @property
    def enabled(self) -> bool:
        return self.save_file is not None


class _MovingAverage:
    def __init__(self, window: int) -> None:
        self._samples: deque[int] = deque(maxlen=window)

    def add(self, sample: int) -> None:
        self._samples.append(sample)

    @property
    def average(self) -> int:
        return sum(self._samples) // len(self._samples) if self._samples else 0


class Statistics:
    """Aggregates events from the events queue and publishes summaries.

    Putting None on the events queue stops run().
    """

    def __init__(
        self,
        events: asyncio.Queue,
        save_mode: SaveMode = SaveMode(),
    ) -> None:
        self._events = events
        self.save_mode = save_mode
        self._subscribers: list[asyncio.Queue] = []
        self.statistic_events = 0
        self.frame = 0
        self.connections_for_ip: dict[IpAddress, int] = {}
        self.denied_connections_for_ip: dict[IpAddress, int] = {}
        self.bytes_for_ip: dict[IpAddress, int] = {}
        self._bytes_per_s = _MovingAverage(STATS_SLIDING_WINDOW_SIZE)
        self._fps = _MovingAverage(STATS_SLIDING_WINDOW_SIZE)

        if save_mode.save_file is not None:
            # There might not be a save point on first start
            try:
                save_point = StatisticsInformationEvent.load_from_file(save_mode.save_file)
            except StatisticsError:
                pass
            else:
                self.statistic_events = save_point.statistic_events
                self.frame = save_point.frame
                self.bytes_for_ip = dict(save_point.bytes_for_ip)

    def subscribe(self) -> asyncio.Queue:
        """Return a queue receiving every published summary.

        The queue holds the latest few summaries; older ones are dropped when
        the subscriber lags behind.
        """
        queue: asyncio.Queue = asyncio.Queue(maxsize=_SUBSCRIBER_CAPACITY)
        self._subscribers.append(queue)
        return queue

    def _publish(self, event: StatisticsInformationEvent) -> None:
        if not self._subscribers:
            raise StatisticsError(STATISTICS_INFO_SEND_ERR)
        for queue in self._subscribers:
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(event)

    def process_event(self, event: StatisticsEvent) -> None:
        """Account for a single event."""
        self.statistic_events += 1
        match event.kind:
            case EventKind.CONNECTION_CREATED:
                self.connections_for_ip[event.ip] = self.connections_for_ip.get(event.ip, 0) + 1
            case EventKind.CONNECTION_CLOSED:
                remaining = self.connections_for_ip.get(event.ip)
                if remaining is not None:
                    if remaining <= 1:
                        del self.connections_for_ip[event.ip]
                    else:
                        self.connections_for_ip[event.ip] = remaining - 1
            case EventKind.CONNECTION_DENIED:
                self.denied_connections_for_ip[event.ip] = (
                    self.denied_connections_for_ip.get(event.ip, 0) + 1
                )
            case EventKind.BYTES_READ:
                self.bytes_for_ip[event.ip] = self.bytes_for_ip.get(event.ip, 0) + event.bytes
            case EventKind.FRAME_RENDERED:
                self.frame += 1

    def calculate_information_event(
        self, prev: StatisticsInformationEvent, elapsed: float
    ) -> StatisticsInformationEvent:
        """Summarize the current state; elapsed is the time since prev in seconds."""
        elapsed_ms = max(1, int(elapsed * 1000))
        frame = self.frame
        connections = sum(self.connections_for_ip.values())
        ips_v6 = sum(1 for ip in self.connections_for_ip if ip.version == 6)
        ips_v4 = sum(1 for ip in self.connections_for_ip if ip.version == 4)
        total_bytes = sum(self.bytes_for_ip.values())
        self._bytes_per_s.add(max(0, total_bytes - prev.bytes) * 1000 // elapsed_ms)
        self._fps.add(max(0, frame - prev.frame) * 1000 // elapsed_ms)

        return StatisticsInformationEvent(
            frame=frame,
            connections=connections,
            ips_v6=ips_v6,
            ips_v4=ips_v4,
            bytes=total_bytes,
            fps=self._fps.average,
            bytes_per_s=self._bytes_per_s.average,
            connections_for_ip=dict(self.connections_for_ip),
            denied_connections_for_ip=dict(self.denied_connections_for_ip),
            bytes_for_ip=dict(self.bytes_for_ip),
            statistic_events=self.statistic_events,
        )

    async def run(self) -> None:
        """Process events, publish summaries and save them until None arrives."""
        loop = asyncio.get_running_loop()
        information = StatisticsInformationEvent()
        next_report = loop.time()
        save_file = self.save_mode.save_file
        next_save = loop.time() if save_file is not None else math.inf

        while True:
            now = loop.time()
            if now >= next_report:
                information = self.calculate_information_event(
                    information, STATS_REPORT_INTERVAL
                )
                self._publish(information)
                next_report += STATS_REPORT_INTERVAL
                continue
            if save_file is not None and now >= next_save:
                information.save_to_file(save_file)
                next_save += self.save_mode.interval_s
                continue

            try:
                event = await asyncio.wait_for(
                    self._events.get(), min(next_report, next_save) - now
                )
            except TimeoutError:
                continue
            if event is None:
                return
            self.process_event(event)