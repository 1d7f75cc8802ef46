from __future__ import annotations

import asyncio
from typing import AsyncIterator, Awaitable, Callable, Iterator, Optional

CloseHook = Callable[[], Awaitable[None]]


async def limit_stream(chunks: AsyncIterator[bytes], length: int) -> AsyncIterator[bytes]:
    """
    Yield at most `length` bytes from `chunks`, then stop and close the source.

    This is the range stage that sits in front of every provider stream, so a
    ranged read yields exactly [start, start + length) even when a provider
    hands back more than it was asked for.
    """
    remaining = max(0, int(length))
    try:
        if remaining == 0:
            return
        async for chunk in chunks:
            if not chunk:
                continue
            if len(chunk) >= remaining:
                yield bytes(chunk[:remaining])
                return
            remaining -= len(chunk)
            yield bytes(chunk)
    finally:
        aclose = getattr(chunks, "aclose", None)
        if aclose is not None:
            await aclose()


async def skip_stream(chunks: AsyncIterator[bytes], count: int) -> AsyncIterator[bytes]:
    """Drop the first `count` bytes of `chunks` (origins that ignore Range)."""
    remaining = max(0, int(count))
    try:
        async for chunk in chunks:
            if remaining:
                if len(chunk) <= remaining:
                    remaining -= len(chunk)
                    continue
                chunk, remaining = chunk[remaining:], 0
            if chunk:
                yield bytes(chunk)
    finally:
        aclose = getattr(chunks, "aclose", None)
        if aclose is not None:
            await aclose()


async def empty_stream() -> AsyncIterator[bytes]:
    return
    yield b""


async def iterate_blocking(
    read: Callable[[int], bytes],
    chunk_size: int,
    length: Optional[int] = None,
    close: Optional[Callable[[], None]] = None,
) -> AsyncIterator[bytes]:
    """
    Turn a blocking `read(n)` (SDK file-like bodies) into an async chunk stream.

    Each read runs in a worker thread so the event loop is never blocked.
    `close` releases the SDK body once the stream ends or is abandoned.
    """
    remaining = length
    try:
        while remaining is None or remaining > 0:
            size = chunk_size if remaining is None else min(chunk_size, remaining)
            chunk = await asyncio.to_thread(read, size)
            if not chunk:
                return
            if remaining is not None:
                remaining -= len(chunk)
            yield chunk
    finally:
        if close is not None:
            close()


async def iterate_in_thread(chunks: Iterator[bytes]) -> AsyncIterator[bytes]:
    """Pull a blocking chunk iterator one item at a time from a worker thread."""
    sentinel = object()
    while True:
        chunk = await asyncio.to_thread(next, chunks, sentinel)
        if chunk is sentinel:
            return
        yield chunk


class Body:
    """
    Forward-only, single-consumption async byte stream.

    Wraps a provider chunk stream; nothing is buffered beyond the chunk being
    handed out. Once exhausted (or closed) the close hook runs exactly once,
    which is where transports release their connections.
    """

    def __init__(self, chunks: AsyncIterator[bytes], on_close: Optional[CloseHook] = None) -> None:
        self._chunks = chunks
        self._on_close = on_close
        self._buffer = b""
        self._iterating = False
        self._eof = False
        self._closed = False

    @classmethod
    def from_bytes(cls, data: bytes) -> "Body":
        async def _one() -> AsyncIterator[bytes]:
            if data:
                yield data

        return cls(_one())

    @property
    def closed(self) -> bool:
        return self._closed

    async def _next_chunk(self) -> bytes:
        if self._eof:
            return b""
        try:
            chunk = await self._chunks.__anext__()
        except StopAsyncIteration:
            self._eof = True
            await self.aclose()
            return b""
        except BaseException:
            self._eof = True
            await self.aclose()
            raise
        return chunk

    async def read(self, n: int = -1) -> bytes:
        """Read up to n bytes; n < 0 reads to the end. Returns b"" at EOF."""
        if n is None or n < 0:
            parts = [self._buffer]
            self._buffer = b""
            while True:
                chunk = await self._next_chunk()
                if not chunk:
                    break
                parts.append(chunk)
            return b"".join(parts)

        while not self._buffer and not self._eof:
            self._buffer = await self._next_chunk()

        out, self._buffer = self._buffer[:n], self._buffer[n:]
        return out

    def __aiter__(self) -> AsyncIterator[bytes]:
        if self._iterating:
            raise RuntimeError("body stream has already been consumed")
        self._iterating = True
        return self._iter()

    async def _iter(self) -> AsyncIterator[bytes]:
        if self._buffer:
            chunk, self._buffer = self._buffer, b""
            yield chunk
        while True:
            chunk = await self._next_chunk()
            if not chunk:
                return
            yield chunk

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._eof = True

        aclose = getattr(self._chunks, "aclose", None)
        try:
            if aclose is not None:
                await aclose()
        finally:
            if self._on_close is not None:
                await self._on_close()

    async def __aenter__(self) -> "Body":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()


async def translate_errors(
    chunks: AsyncIterator[bytes],
    translate: Callable[[Exception], Exception],
) -> AsyncIterator[bytes]:
    """Re-raise anything the source stream throws as `translate(err)`."""
    try:
        async for chunk in chunks:
            yield chunk
    except Exception as err:
        raise translate(err) from err
    finally:
        aclose = getattr(chunks, "aclose", None)
        if aclose is not None:
            await aclose()
