"""Tests for the multiplexed exec stream decoder."""

import pytest

from enclave.isolation.framing import FramingError, StreamDemuxer, demux, encode_frame


class TestStreamDemuxer:
    """Test incremental frame decoding."""

    def test_single_frame(self):
        """Test decoding one complete frame."""
        demuxer = StreamDemuxer()
        frames = list(demuxer.feed(encode_frame(1, b"hello\n")))
        assert frames == [("stdout", b"hello\n")]

    def test_several_frames_in_one_chunk(self):
        """Test that one chunk may carry several frames."""
        data = encode_frame(1, b"out") + encode_frame(2, b"err") + encode_frame(1, b"more")
        frames = list(StreamDemuxer().feed(data))
        assert frames == [("stdout", b"out"), ("stderr", b"err"), ("stdout", b"more")]

    def test_frame_split_across_chunks(self):
        """Test that a partial header or payload is buffered until complete."""
        data = encode_frame(2, b"split payload")
        demuxer = StreamDemuxer()

        assert list(demuxer.feed(data[:3])) == []
        assert list(demuxer.feed(data[3:10])) == []
        assert list(demuxer.feed(data[10:])) == [("stderr", b"split payload")]
        demuxer.close()

    def test_byte_at_a_time(self):
        """Test feeding one byte per chunk."""
        data = encode_frame(1, b"abc") + encode_frame(2, b"de")
        demuxer = StreamDemuxer()
        frames = []
        for index in range(len(data)):
            frames.extend(demuxer.feed(data[index:index + 1]))
        assert frames == [("stdout", b"abc"), ("stderr", b"de")]

    def test_empty_payload(self):
        """Test a zero-length frame."""
        assert list(StreamDemuxer().feed(encode_frame(1, b""))) == [("stdout", b"")]

    def test_unknown_stream_selector(self):
        """Test that an invalid selector is rejected."""
        data = bytes([7, 0, 0, 0, 0, 0, 0, 1]) + b"x"
        with pytest.raises(FramingError):
            list(StreamDemuxer().feed(data))

    def test_close_with_partial_frame(self):
        """Test that ending inside a frame is an error."""
        demuxer = StreamDemuxer()
        list(demuxer.feed(encode_frame(1, b"truncated")[:-2]))
        with pytest.raises(FramingError):
            demuxer.close()


class TestDemux:
    """Test whole-buffer demultiplexing."""

    def test_splits_streams(self):
        """Test that stdout and stderr are concatenated separately."""
        data = encode_frame(1, b"a") + encode_frame(2, b"x") + encode_frame(1, b"b") + encode_frame(0, b"in")
        assert demux(data) == (b"ab", b"x")
