"""Starts the Pixelflut server together with statistics, metrics and sinks."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from collections.abc import Iterator
from contextlib import contextmanager

from .cli import CliArgs, parse_args
from .framebuffer import FrameBuffer, SharedMemoryFrameBuffer
from .prometheus import PrometheusExporter
from .server import Server
from .sinks import DisplaySink, FfmpegSink
from .statistics import Statistics

STATISTICS_QUEUE_SIZE = 100
"""A bigger queue lets the statistics lag behind."""

LOG_LEVEL_VARIABLE = "PIXELBREAK_LOG"

log = logging.getLogger(__name__)


@contextmanager
def _termination_on_signals(terminate: asyncio.Event) -> Iterator[None]:
    """Set terminate when the process receives SIGINT or SIGTERM."""
    loop = asyncio.get_running_loop()
    restore: list = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, terminate.set)
        except (NotImplementedError, RuntimeError):
            previous = signal.signal(
                sig, lambda *_: loop.call_soon_threadsafe(terminate.set)
            )
            restore.append(lambda sig=sig, previous=previous: signal.signal(sig, previous))
        else:
            restore.append(lambda sig=sig: loop.remove_signal_handler(sig))
    try:
        yield
    finally:
        for undo in restore:
            undo()


async def _wait_started(task: asyncio.Task, started: asyncio.Event, what: str) -> None:
    """Wait until started is set, raising whatever made task end before that."""
    waiter = asyncio.ensure_future(started.wait())
    done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    if waiter in done:
        return
    waiter.cancel()
    task.result()
    raise RuntimeError(f"{what} stopped unexpectedly")


async def _cancel(tasks: list[asyncio.Task]) -> None:
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


async def _serve(args: CliArgs, fb: FrameBuffer) -> None:
    terminate = asyncio.Event()
    with _termination_on_signals(terminate):
        events: asyncio.Queue = asyncio.Queue(maxsize=STATISTICS_QUEUE_SIZE)
        statistics = Statistics(events, args.statistics_save_mode)
        server = Server(
            args.listen_address,
            fb,
            events,
            args.network_buffer_size,
            args.connections_per_ip,
            args.features,
        )
        exporter = PrometheusExporter(args.prometheus_listen_address, statistics.subscribe())

        statistics_task = asyncio.create_task(statistics.run())
        background: list[asyncio.Task] = []
        try:
            server_task = asyncio.create_task(server.start())
            background.append(server_task)
            await _wait_started(server_task, server.started, "pixelflut server")

            exporter_task = asyncio.create_task(exporter.run())
            background.append(exporter_task)
            await _wait_started(exporter_task, exporter.started, "prometheus exporter")

            sinks: list[DisplaySink] = []
            ffmpeg_sink = FfmpegSink.from_args(fb, args, terminate)
            if ffmpeg_sink is not None:
                sinks.append(ffmpeg_sink)
            sink_tasks = [asyncio.create_task(sink.run()) for sink in sinks]

            await terminate.wait()

            await _cancel(background)
            background.clear()
            try:
                for sink_task in sink_tasks:
                    await sink_task
            finally:
                await _cancel(sink_tasks)
        finally:
            await _cancel(background)
            # Stopped last, as everything else keeps sending statistics to it
            await _cancel([statistics_task])

    if ffmpeg_sink is not None:
        log.info(
            "successfully shut down "
            "(there might still be a ffmpeg process running - it's complicated)"
        )
    else:
        log.info("successfully shut down")


async def run(args: CliArgs) -> None:
    """Run the server with the given settings until SIGINT or SIGTERM arrives."""
    fb = SharedMemoryFrameBuffer(args.width, args.height, args.shared_memory_name)
    try:
        await _serve(args, fb)
    finally:
        fb.close()


def _configure_logging() -> None:
    level_name = os.environ.get(LOG_LEVEL_VARIABLE, "INFO").upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def main(argv: list[str] | None = None) -> int:
    """Command line entry point; returns the process exit status."""
    args = parse_args(argv)
    _configure_logging()
    try:
        asyncio.run(run(args))
    except Exception as err:
        log.error("%s", err, exc_info=True)
        return 1
    return 0