import asyncio
import ipaddress

import pytest

from pixelbreak.prometheus import PrometheusExporter
from pixelbreak.statistics import StatisticsInformationEvent

V4 = ipaddress.ip_address("127.0.0.1")
V6 = ipaddress.ip_address("::1")


def _event(**kwargs):
    return StatisticsInformationEvent(**kwargs)


def test_render_fresh_exporter_has_zero_gauges():
    exporter = PrometheusExporter("127.0.0.1:0", asyncio.Queue())
    text = exporter.render()
    assert "pixelbreak_ips_v6 0\n" in text
    assert "# TYPE pixelbreak_connections gauge\n" in text
    assert "# HELP pixelbreak_ips_v4 Total number of connected IPv4 addresses\n" in text


def test_update_sets_scalar_gauges():
    exporter = PrometheusExporter("127.0.0.1:0", asyncio.Queue())
    exporter.update(_event(ips_v6=3, ips_v4=5, frame=7, statistic_events=11))
    lines = exporter.render().splitlines()
    assert "pixelbreak_ips_v6 3" in lines
    assert "pixelbreak_ips_v4 5" in lines
    assert "pixelbreak_frame 7" in lines
    assert "pixelbreak_statistic_events 11" in lines


def test_update_sets_labelled_gauges():
    exporter = PrometheusExporter("127.0.0.1:0", asyncio.Queue())
    exporter.update(_event(connections_for_ip={V4: 2, V6: 1},
                           denied_connections_for_ip={V4: 4},
                           bytes_for_ip={V6: 1000}))
    lines = exporter.render().splitlines()
    assert 'pixelbreak_connections{ip="127.0.0.1"} 2' in lines
    assert 'pixelbreak_connections{ip="::1"} 1' in lines
    assert 'pixelbreak_denied_connections{ip="127.0.0.1"} 4' in lines
    assert 'pixelbreak_bytes{ip="::1"} 1000' in lines


def test_labelled_gauges_are_reset():
    exporter = PrometheusExporter("127.0.0.1:0", asyncio.Queue())
    exporter.update(_event(connections_for_ip={V4: 2}))
    exporter.update(_event(connections_for_ip={V6: 1}))
    text = exporter.render()
    assert 'ip="127.0.0.1"' not in text
    assert 'pixelbreak_connections{ip="::1"} 1' in text


def test_invalid_listen_address():
    with pytest.raises(ValueError):
        PrometheusExporter("no-port-here", asyncio.Queue())


@pytest.mark.asyncio
async def test_run_consumes_queue_until_none():
    queue = asyncio.Queue()
    exporter = PrometheusExporter("127.0.0.1:0", queue)
    await queue.put(_event(ips_v4=2))
    await queue.put(_event(ips_v4=9))
    await queue.put(None)
    await asyncio.wait_for(exporter.run(), 2)
    assert "pixelbreak_ips_v4 9" in exporter.render().splitlines()
    assert queue.empty()


async def _request(port, path):
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    writer.write(f"GET {path} HTTP/1.1\r\nHost: localhost\r\n\r\n".encode())
    await writer.drain()
    data = await reader.read()
    writer.close()
    await writer.wait_closed()
    return data


@pytest.mark.asyncio
async def test_http_metrics_endpoint():
    queue = asyncio.Queue()
    exporter = PrometheusExporter("127.0.0.1:0", queue)
    exporter.update(_event(ips_v6=4))
    task = asyncio.create_task(exporter.run())
    await asyncio.wait_for(exporter.started.wait(), 2)

    ok = await _request(exporter.port, "/metrics")
    missing = await _request(exporter.port, "/elsewhere")

    await queue.put(None)
    await asyncio.wait_for(task, 2)

    head, _, body = ok.partition(b"\r\n\r\n")
    assert head.startswith(b"HTTP/1.1 200 OK")
    assert body.decode() == exporter.render()
    assert b"pixelbreak_ips_v6 4\n" in body
    assert missing.startswith(b"HTTP/1.1 404")