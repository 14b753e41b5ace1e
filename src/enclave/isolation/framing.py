"""Demultiplexer for the container engine's attached-stream framing.

When a process runs without a TTY, the engine interleaves stdout and stderr on one
connection. Each frame is an 8-byte header followed by the payload::

    [stream: u8][0, 0, 0][length: u32 big-endian][payload: length bytes]

Frames are not aligned with transport chunks: one chunk can carry several frames or
only part of one, so the decoder buffers until a full frame is available.
"""

import struct
from collections.abc import Iterator

HEADER_SIZE = 8

STREAM_NAMES = {0: "stdin", 1: "stdout", 2: "stderr"}


class FramingError(ValueError):
    """Raised when the multiplexed stream is malformed."""

    pass


def encode_frame(stream: int, payload: bytes) -> bytes:
    """Build one frame. Used by tests and fakes."""
    return struct.pack(">BxxxI", stream, len(payload)) + payload


class StreamDemuxer:
    """Incremental decoder for multiplexed output."""

    def __init__(self):
        self._buffer = bytearray()

    def feed(self, chunk: bytes) -> Iterator[tuple[str, bytes]]:
        """Add a transport chunk and yield every complete (stream_name, payload) frame."""
        self._buffer.extend(chunk)
        while len(self._buffer) >= HEADER_SIZE:
            stream, length = struct.unpack(">BxxxI", self._buffer[:HEADER_SIZE])
            if stream not in STREAM_NAMES:
                raise FramingError(f"Unknown stream selector {stream}")
            end = HEADER_SIZE + length
            if len(self._buffer) < end:
                break
            payload = bytes(self._buffer[HEADER_SIZE:end])
            del self._buffer[:end]
            yield STREAM_NAMES[stream], payload

    def close(self) -> None:
        """Signal end of stream.

        Raises:
            FramingError: If a partial frame is left over
        """
        if self._buffer:
            leftover = len(self._buffer)
            self._buffer.clear()
            raise FramingError(f"Stream ended inside a frame ({leftover} bytes left)")


def demux(data: bytes) -> tuple[bytes, bytes]:
    """Split a complete multiplexed buffer into (stdout, stderr)."""
    out, err = bytearray(), bytearray()
    demuxer = StreamDemuxer()
    for name, payload in demuxer.feed(data):
        if name == "stdout":
            out.extend(payload)
        elif name == "stderr":
            err.extend(payload)
    demuxer.close()
    return bytes(out), bytes(err)
