# pixelbreak

A Pixelflut server. Clients connect over TCP and send short text commands to
paint single pixels onto a shared canvas, read pixels back, or ask for the
canvas size. The canvas can be streamed to RTMP or recorded to a file through
ffmpeg, and live statistics are served in the Prometheus text format.

It needs nothing outside the Python standard library. Streaming and recording
need an `ffmpeg` executable on the `PATH`.

## Installation

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Running the server

```
pixelbreak --width 1280 --height 720 --listen-address "[::]:1234"
```

Options:

- `-l`, `--listen-address` – address to listen on (default `[::]:1234`, all
  interfaces, IPv4 and IPv6).
- `--width`, `--height` – size of the canvas (default 1280 x 720).
- `-f`, `--fps` – frame rate given to ffmpeg for streaming (default 30).
- `--network-buffer-size` – receive buffer per connection in bytes, at least
  64,000 and below 100,000,000 (default 262,144).
- `-c`, `--connections-per-ip` – cap the number of connections one address may
  hold open. Further connections get
  `Connection denied as connection limit is reached` and are closed.
- `-p`, `--prometheus-listen-address` – where the metrics endpoint listens
  (default `[::]:9100`).
- `--statistics-save-file` / `--statistics-save-interval-s` – where (default
  `statistics.json`) and how often (default every 10 seconds) statistics are
  saved as JSON. The file is read at startup, so frame count, event count and
  bytes per address survive restarts; delete it to reset them.
  `--disable-statistics-save-file` turns saving off.
- `--rtmp-address` – stream the canvas to an RTMP endpoint through ffmpeg.
- `--video-save-folder` – record the canvas into
  `<folder>/pixelflut_dump_<YYYY-MM-DD_HH-MM-SS>.mp4` through ffmpeg.
  Streaming and recording at the same time is not supported.
- `--shared-memory-name` – keep the canvas in a named shared-memory region. It
  starts with a 4 byte header (width and height as unsigned 16 bit numbers)
  followed by the pixels, is reused if it already exists, and is left in place
  when the server stops, so the canvas survives restarts.
- `--alpha` – blend `PX x y rrggbbaa` with the existing pixel instead of
  ignoring the alpha part.
- `--binary-set-pixel` – accept the binary `PB` command.
- `--binary-sync-pixels` – accept the experimental binary `PXMULTI` command.
- `-t`, `--text` and `--font` are accepted but have no effect (see below).

The log level is taken from the `PIXELBREAK_LOG` environment variable
(for example `DEBUG`; default `INFO`).

Stop the server with Ctrl+C (SIGINT) or SIGTERM. An ffmpeg process that was
started may keep running after the server has stopped.

## The protocol

Text commands end with a newline.

| Command | Meaning |
| --- | --- |
| `HELP` | Show the help text (three times per read; then once `Stop spamming HELP!`, then nothing) |
| `SIZE` | Answers `SIZE <width> <height>` |
| `PX x y rrggbb` | Set the pixel at (x, y) |
| `PX x y rrggbbaa` | Set the pixel; alpha is ignored unless `--alpha` is given |
| `PX x y gg` | Set the pixel to the gray `gggggg` |
| `PX x y` | Answers `PX x y rrggbb` with the current colour |
| `OFFSET x y` | Add (x, y) to every later pixel command on this connection |

Coordinates have at most four digits. Pixels outside the canvas are ignored
and reading them gives no answer.

With `--binary-set-pixel`, `PB` followed by x and y (little-endian 16 bit) and
four colour bytes sets a pixel, with no newline. With `--binary-sync-pixels`,
`PXMULTI` followed by start x, start y (16 bit) and a pixel count (32 bit), all
little-endian, copies that many raw 4 byte pixels into the canvas; a transfer
that would run past the end of the canvas is ignored.

Example session with `nc`:

```
$ printf 'SIZE\nPX 10 10 ff0000\nPX 10 10\n' | nc localhost 1234
SIZE 1280 720
PX 10 10 ff0000
```

## Metrics

`GET /metrics` on the Prometheus address returns the gauges
`pixelbreak_ips_v6`, `pixelbreak_ips_v4`, `pixelbreak_frame`,
`pixelbreak_statistic_events`, and per address (label `ip`)
`pixelbreak_connections`, `pixelbreak_denied_connections` and
`pixelbreak_bytes`. Any other request gets a 404. Values are refreshed once a
second.

## Using it as a library

Frame buffers (`pixelbreak.framebuffer`):

- `SimpleFrameBuffer(width, height)` – pixels in process memory.
- `SharedMemoryFrameBuffer(width, height, shared_memory_name=None)` – local
  memory without a name, a shared-memory region with one; `close()` detaches
  from the region. It is also a context manager.

Both offer `get(x, y)` (None outside the canvas), `set(x, y, rgba)`,
`set_multi(start_x, start_y, pixels)`,
`set_multi_from_start_index(starting_index, pixels)` and `as_bytes()`.

Parsers take bytes received from a client and return the index of the last
byte parsed and the bytes to send back. They may look up to `parser.lookahead`
bytes past the data, so pad the input with that many zero bytes:

```python
from pixelbreak.framebuffer import SimpleFrameBuffer
from pixelbreak.original import OriginalParser

fb = SimpleFrameBuffer(640, 480)
parser = OriginalParser(fb)
data = b"PX 1 2 ff0000\nPX 1 2\n"
last_byte_parsed, response = parser.parse(data + bytes(parser.lookahead))
assert response == b"PX 1 2 ff0000\n"
```

- `pixelbreak.original.OriginalParser(fb, features)` – the parser the server
  uses; `pixelbreak.protocol.Features` selects alpha blending and the binary
  commands.
- `pixelbreak.refactored.RefactoredParser(fb, features)` – the same commands
  split into handlers; it answers every `HELP` and has no `PXMULTI`.
- `pixelbreak.line_parser.LineParser(fb)` – splits at newlines and handles
  `PX x y rgba _` lines with a decimal colour; malformed numbers raise
  `ValueError`.

Other building blocks:

- `pixelbreak.server.handle_connection(...)` runs the read–parse–reply loop for
  one connection on asyncio streams; `pixelbreak.server.Server` accepts
  clients and serves each on its own task.
- `pixelbreak.statistics.Statistics` aggregates `StatisticsEvent`s from a
  queue and publishes `StatisticsInformationEvent` summaries to subscribers.
- `pixelbreak.prometheus.PrometheusExporter` serves those summaries.
- `pixelbreak.sinks.FfmpegSink` pipes frames into ffmpeg.
- `pixelbreak.app.run(args)` starts all of it from a `pixelbreak.cli.CliArgs`.

## What it does not do

There is no VNC server and no on-screen window or overlay: the canvas can only
be seen by reading pixels over the protocol, through the shared-memory region,
or through the ffmpeg stream or recording. Because nothing is drawn on screen,
`--text` and `--font` do nothing, and `pixelbreak_frame` stays at whatever was
restored from the statistics file.