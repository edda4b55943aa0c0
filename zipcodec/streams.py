#
# Byte source and sink adapters
#
# The engine talks to anything that can read or write bytes: aiofiles handles,
# asyncio streams, plain file objects and async generators of chunks. Both
# adapters own the session's OffsetTracker.
#
import inspect
import io
import os
from typing import Any, AsyncIterable, AsyncIterator, Optional, Union

from .base import OffsetTracker, TruncatedError, UnsupportedSourceTypeError, UsageError

__all__ = ("ByteSource", "ByteSink")

DEFAULT_CHUNK_SIZE: int = 64 * 1024


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class ByteSource:
    """
    Buffered, offset-counting reader over an arbitrary byte source.

    Args:
        raw: object with ``read(n)`` (sync or async), an async iterable of
            ``bytes`` chunks, or a ``bytes`` object.
        chunksize: Number of bytes requested from ``raw`` per read.
    """

    def __init__(self, raw: Union[bytes, Any, AsyncIterable[bytes]], chunksize: int = DEFAULT_CHUNK_SIZE) -> None:
        if isinstance(raw, (bytes, bytearray, memoryview)):
            raw = io.BytesIO(bytes(raw))
        if hasattr(raw, "read"):
            self._raw = raw
            self._chunks: Optional[AsyncIterator[bytes]] = None
        elif hasattr(raw, "__aiter__"):
            self._raw = None
            self._chunks = raw.__aiter__()
        else:
            raise UnsupportedSourceTypeError(f"Cannot read archive data from {type(raw).__name__}.")
        self.chunksize = chunksize
        self.tracker = OffsetTracker()
        self._buffer = b""
        self._eof = False

    @property
    def offset(self) -> int:
        """Absolute offset of the next byte handed out."""
        return self.tracker.offset

    @property
    def seekable(self) -> bool:
        raw = self._raw
        if raw is None or not (hasattr(raw, "seek") and hasattr(raw, "tell")):
            return False
        probe = getattr(raw, "seekable", None)
        if probe is not None and not inspect.iscoroutinefunction(probe):
            return bool(probe())
        return True

    async def _fill(self) -> bool:
        """Append the next raw chunk to the buffer; False at end of data."""
        if self._eof:
            return False
        if self._chunks is not None:
            # empty chunks from a generator do not mean end of stream
            chunk = b""
            while not chunk:
                try:
                    chunk = await self._chunks.__anext__()
                except StopAsyncIteration:
                    self._eof = True
                    return False
        else:
            chunk = await _maybe_await(self._raw.read(self.chunksize))
            if not chunk:
                self._eof = True
        if not chunk:
            return False
        self._buffer += bytes(chunk)
        return True

    async def peek(self, size: int) -> bytes:
        """Return up to ``size`` bytes without consuming them."""
        while len(self._buffer) < size:
            if not await self._fill():
                break
        return self._buffer[:size]

    async def peek_chunk(self) -> bytes:
        """Return whatever is buffered (reading once if empty) without consuming."""
        if not self._buffer:
            await self._fill()
        return self._buffer

    def consume(self, size: int) -> None:
        """Drop ``size`` bytes previously returned by a peek."""
        if size > len(self._buffer):
            raise UsageError("cannot consume more than was peeked")
        self._buffer = self._buffer[size:]
        self.tracker.advance(size)

    async def read(self, size: int) -> bytes:
        """Read up to ``size`` bytes; fewer only at end of data."""
        data = await self.peek(size)
        self.consume(len(data))
        return data

    async def read_exact(self, size: int, what: str = "record") -> bytes:
        data = await self.read(size)
        if len(data) != size:
            raise TruncatedError(
                f"Unexpected end of data in {what} at offset {self.offset}: "
                f"needed {size} bytes, got {len(data)}."
            )
        return data

    async def skip(self, size: int, what: str = "entry data") -> None:
        while size:
            data = await self.read(min(size, self.chunksize))
            if not data:
                raise TruncatedError(f"Unexpected end of data in {what} at offset {self.offset}.")
            size -= len(data)

    async def at_eof(self) -> bool:
        return not await self.peek(1)

    async def seek(self, offset: int) -> None:
        if not self.seekable:
            raise UsageError("source does not support seeking")
        await _maybe_await(self._raw.seek(offset))
        self._buffer = b""
        self._eof = False
        self.tracker.rebase(offset)

    async def size(self) -> int:
        """Total length of a seekable source; leaves the position unchanged."""
        if not self.seekable:
            raise UsageError("source does not support seeking")
        end = await _maybe_await(self._raw.seek(0, os.SEEK_END))
        if end is None:
            end = await _maybe_await(self._raw.tell())
        await self.seek(self.offset)
        return end

    async def read_at(self, offset: int, size: int, what: str = "record") -> bytes:
        await self.seek(offset)
        return await self.read_exact(size, what)


class ByteSink:
    """
    Offset-counting writer over an arbitrary byte sink.

    Args:
        raw: object with ``write(data)``, sync or async. ``drain()`` is awaited
            after each write when present (``asyncio.StreamWriter``).
    """

    def __init__(self, raw: Any) -> None:
        if not hasattr(raw, "write"):
            raise UnsupportedSourceTypeError(f"Cannot write archive data to {type(raw).__name__}.")
        self._raw = raw
        self._drain = getattr(raw, "drain", None)
        self.tracker = OffsetTracker()

    @property
    def offset(self) -> int:
        return self.tracker.offset

    async def write(self, data: bytes) -> None:
        if not data:
            return
        await _maybe_await(self._raw.write(data))
        if self._drain is not None:
            await self._drain()
        self.tracker.advance(len(data))

    async def flush(self) -> None:
        flush = getattr(self._raw, "flush", None)
        if flush is not None:
            await _maybe_await(flush())
