"""
Stream filters used by the transfer pipeline.

These filters carry no domain knowledge: they never raise encryption errors
and let whatever the wrapped stream raises propagate unchanged.
"""

from __future__ import annotations

import io
import os
from dataclasses import dataclass
from typing import Any

__all__ = [
    "ByteCountingStream",
    "LengthLimitingStream",
    "NonCloseableStream",
    "RequestResult",
]


@dataclass
class RequestResult:
    """Telemetry for one logical storage operation (across all attempts)."""

    ingress_bytes: int = 0
    egress_bytes: int = 0
    status: int | None = None
    etag: str | None = None
    attempts: int = 0


def _stream_length(stream: Any) -> int:
    current = stream.tell()
    end = stream.seek(0, os.SEEK_END)
    stream.seek(current, os.SEEK_SET)
    return end


class LengthLimitingStream(io.RawIOBase):
    """Write filter keeping only the bytes in ``[start, start + length)``.

    Position counts every byte offered to ``write``, including discarded
    ones, so the window is measured against the full written sequence.
    Closing this stream leaves the wrapped stream open.
    """

    def __init__(self, wrapped: Any, start: int, length: int | None = None) -> None:
        super().__init__()
        self._wrapped = wrapped
        self._start = start
        self._length = length
        self._end = start + length - 1 if length is not None else None
        self._position = 0

    @property
    def length(self) -> int:
        if self._length is not None:
            return self._length
        return _stream_length(self._wrapped)

    def readable(self) -> bool:
        return self._wrapped.readable()

    def writable(self) -> bool:
        return self._wrapped.writable()

    def seekable(self) -> bool:
        return self._wrapped.seekable()

    def tell(self) -> int:
        return self._position

    def seek(self, offset: int, whence: int = os.SEEK_SET) -> int:
        if whence == os.SEEK_SET:
            new_position = offset
        elif whence == os.SEEK_CUR:
            new_position = self._position + offset
        elif whence == os.SEEK_END:
            new_position = self.length + offset
        else:
            raise ValueError(f"Invalid whence: {whence}")

        length = self.length
        if not 0 <= new_position <= length:
            raise ValueError(f"Position {new_position} out of bounds [0, {length}]")

        self._position = new_position
        return self._position

    def read(self, size: int = -1) -> bytes:
        return self._wrapped.read(size)

    def readinto(self, b: Any) -> int:
        return self._wrapped.readinto(b)

    def write(self, b: Any) -> int:  # type: ignore[override]
        data = memoryview(b).cast("B")
        offset = 0
        count = len(data)

        # Discard leading bytes before the window
        if self._position < self._start:
            discard = min(self._start - self._position, count)
            offset += discard
            count -= discard
            self._position += discard

        # Discard trailing bytes past the window
        if self._end is not None:
            count = min(self._end + 1 - self._position, count)

        if count > 0:
            self._wrapped.write(data[offset : offset + count])
            self._position += count

        return len(data)

    def flush(self) -> None:
        if not self._wrapped.closed:
            self._wrapped.flush()

    def close(self) -> None:
        # The wrapped stream belongs to its owner
        if not self.closed:
            super().close()


class ByteCountingStream(io.RawIOBase):
    """Transparent pass-through that tallies bytes into a RequestResult.

    Reads add to ``ingress_bytes``, writes add to ``egress_bytes``.
    """

    def __init__(self, wrapped: Any, result: RequestResult) -> None:
        if wrapped is None:
            raise ValueError("wrapped stream is required")
        if result is None:
            raise ValueError("result is required")
        super().__init__()
        self._wrapped = wrapped
        self._result = result

    @property
    def result(self) -> RequestResult:
        return self._result

    def readable(self) -> bool:
        return self._wrapped.readable()

    def writable(self) -> bool:
        return self._wrapped.writable()

    def seekable(self) -> bool:
        return self._wrapped.seekable()

    def tell(self) -> int:
        return self._wrapped.tell()

    def seek(self, offset: int, whence: int = os.SEEK_SET) -> int:
        return self._wrapped.seek(offset, whence)

    def truncate(self, size: int | None = None) -> int:
        return self._wrapped.truncate(size)

    def read(self, size: int | None = -1) -> bytes | None:
        data = self._wrapped.read(size)
        # None: non-blocking source has nothing ready
        if data:
            self._result.ingress_bytes += len(data)
        return data

    def readinto(self, b: Any) -> int | None:
        read = self._wrapped.readinto(b)
        if read:
            self._result.ingress_bytes += read
        return read

    def write(self, b: Any) -> int:  # type: ignore[override]
        written = self._wrapped.write(b)
        self._result.egress_bytes += written if written is not None else memoryview(b).nbytes
        return written

    def flush(self) -> None:
        if not self._wrapped.closed:
            self._wrapped.flush()

    def close(self) -> None:
        if not self.closed:
            super().close()
            self._wrapped.close()


class NonCloseableStream(io.RawIOBase):
    """Forward writes to a stream whose lifetime belongs to the caller.

    Used under a CryptoStream so finalizing the cipher does not close the
    user's destination.
    """

    def __init__(self, wrapped: Any) -> None:
        super().__init__()
        self._wrapped = wrapped

    def writable(self) -> bool:
        return self._wrapped.writable()

    def write(self, b: Any) -> int:  # type: ignore[override]
        return self._wrapped.write(b)

    def flush(self) -> None:
        if not self._wrapped.closed:
            self._wrapped.flush()

    def close(self) -> None:
        if not self.closed:
            super().close()
