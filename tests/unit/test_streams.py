"""Unit tests for the length-limiting and byte-counting stream filters."""

import io
import os

import pytest

from storage_envelope.streams import ByteCountingStream, LengthLimitingStream, NonCloseableStream, RequestResult


class _NothingReadyStream(io.RawIOBase):
    """Non-blocking source with no data available yet."""

    def readable(self) -> bool:
        return True

    def readinto(self, b: object) -> None:
        return None


class TestLengthLimitingStream:
    """Test the write window filter."""

    def test_window_single_write(self) -> None:
        """start=10, length=5 over bytes [0, 20) keeps bytes [10, 15)."""
        out = io.BytesIO()
        stream = LengthLimitingStream(out, start=10, length=5)

        assert stream.write(bytes(range(20))) == 20

        assert out.getvalue() == bytes(range(10, 15))
        assert stream.tell() == 15

    @pytest.mark.parametrize("chunk", [1, 3, 7, 10, 20])
    def test_window_chunked(self, chunk: int) -> None:
        """The window is the same however the input is split."""
        out = io.BytesIO()
        stream = LengthLimitingStream(out, start=10, length=5)
        data = bytes(range(20))

        for i in range(0, len(data), chunk):
            stream.write(data[i : i + chunk])

        assert out.getvalue() == bytes(range(10, 15))

    def test_open_ended(self) -> None:
        """No length keeps everything from start on."""
        out = io.BytesIO()
        stream = LengthLimitingStream(out, start=4)

        stream.write(bytes(range(10)))
        stream.write(bytes(range(10, 20)))

        assert out.getvalue() == bytes(range(4, 20))

    def test_zero_start_passes_through(self) -> None:
        """start=0 without length forwards every byte."""
        out = io.BytesIO()
        LengthLimitingStream(out, start=0).write(b"abc")
        assert out.getvalue() == b"abc"

    def test_writes_past_window_dropped(self) -> None:
        """Once the window is full, later writes forward nothing."""
        out = io.BytesIO()
        stream = LengthLimitingStream(out, start=0, length=3)

        stream.write(b"abcdef")
        assert stream.write(b"ghi") == 3

        assert out.getvalue() == b"abc"

    def test_accepts_memoryview_and_bytearray(self) -> None:
        """Any bytes-like object can be written."""
        out = io.BytesIO()
        stream = LengthLimitingStream(out, start=1, length=2)

        stream.write(memoryview(b"ab"))
        stream.write(bytearray(b"cd"))

        assert out.getvalue() == b"bc"

    def test_seek_bounds(self) -> None:
        """Seeking outside [0, length] raises."""
        stream = LengthLimitingStream(io.BytesIO(), start=0, length=5)

        assert stream.seek(5) == 5
        assert stream.seek(-2, os.SEEK_CUR) == 3
        assert stream.seek(0, os.SEEK_END) == 5
        with pytest.raises(ValueError, match="out of bounds"):
            stream.seek(6)
        with pytest.raises(ValueError, match="out of bounds"):
            stream.seek(-1)

    def test_length_falls_back_to_wrapped(self) -> None:
        """Without an explicit length the wrapped stream's length is used."""
        wrapped = io.BytesIO(b"12345678")
        wrapped.seek(3)
        stream = LengthLimitingStream(wrapped, start=0)

        assert stream.length == 8
        assert wrapped.tell() == 3

    def test_close_leaves_wrapped_open(self) -> None:
        """Closing the filter does not close the destination."""
        out = io.BytesIO()
        stream = LengthLimitingStream(out, start=0)

        stream.close()
        stream.close()

        assert stream.closed
        assert not out.closed

    def test_flush_after_wrapped_closed(self) -> None:
        """Flush is a no-op once the destination is closed."""
        out = io.BytesIO()
        stream = LengthLimitingStream(out, start=0)
        out.close()

        stream.flush()


class TestByteCountingStream:
    """Test ingress/egress tallies."""

    def test_counts_writes(self) -> None:
        """Writes add to egress only."""
        result = RequestResult()
        out = io.BytesIO()
        stream = ByteCountingStream(out, result)

        assert stream.write(b"abc") == 3
        stream.write(b"")
        stream.write(b"d")

        assert result.egress_bytes == 4
        assert result.ingress_bytes == 0
        assert out.getvalue() == b"abcd"

    def test_counts_reads(self) -> None:
        """read and readinto add to ingress only."""
        result = RequestResult()
        stream = ByteCountingStream(io.BytesIO(b"0123456789"), result)

        assert stream.read(0) == b""
        assert stream.read(1) == b"0"
        buffer = bytearray(4)
        assert stream.readinto(buffer) == 4
        assert stream.read() == b"56789"
        assert stream.read() == b""

        assert result.ingress_bytes == 10
        assert result.egress_bytes == 0

    def test_nothing_ready_counts_zero(self) -> None:
        """A non-blocking source returning None leaves ingress untouched."""
        result = RequestResult()
        stream = ByteCountingStream(_NothingReadyStream(), result)

        assert stream.read(8) is None
        assert stream.readinto(bytearray(8)) is None
        assert result.ingress_bytes == 0

    def test_shared_result_accumulates(self) -> None:
        """Several streams can feed one result."""
        result = RequestResult()
        ByteCountingStream(io.BytesIO(b"abc"), result).read()
        ByteCountingStream(io.BytesIO(b"de"), result).read()

        assert result.ingress_bytes == 5

    def test_delegates_position(self) -> None:
        """seek, tell and truncate go to the wrapped stream."""
        wrapped = io.BytesIO(b"abcdef")
        stream = ByteCountingStream(wrapped, RequestResult())

        assert stream.seek(2) == 2
        assert stream.tell() == 2
        assert stream.truncate(4) == 4
        assert wrapped.getvalue() == b"abcd"

    def test_close_closes_wrapped(self) -> None:
        """Closing the counter closes the wrapped stream."""
        wrapped = io.BytesIO()
        stream = ByteCountingStream(wrapped, RequestResult())

        stream.close()

        assert wrapped.closed

    @pytest.mark.parametrize("missing", ["wrapped", "result"])
    def test_requires_arguments(self, missing: str) -> None:
        """Both wrapped stream and result are required."""
        kwargs = {"wrapped": io.BytesIO(), "result": RequestResult()}
        kwargs[missing] = None

        with pytest.raises(ValueError, match="required"):
            ByteCountingStream(**kwargs)  # type: ignore[arg-type]


class TestNonCloseableStream:
    """Test the close shield."""

    def test_close_keeps_wrapped_open(self) -> None:
        """Writes pass through; close stays local."""
        out = io.BytesIO()
        stream = NonCloseableStream(out)

        stream.write(b"data")
        stream.close()

        assert stream.closed
        assert not out.closed
        assert out.getvalue() == b"data"
