"""
Card Catalog Sync — Stream Decoder & Batch Builder

Decodes a top-level JSON array one element at a time with ijson, so a
multi-hundred-megabyte dataset never sits in memory whole, and groups the
elements into fixed-size batches.

Any structural problem (malformed JSON, truncated stream, non-array top
level, non-object element) raises StreamDecodeError and fails the run:
a partial catalog from a corrupt stream is worse than no update.
"""

from __future__ import annotations

import asyncio
from typing import IO, Any, AsyncIterable, AsyncIterator, Iterable, Iterator

import ijson
import structlog

from cardsync.errors import StreamDecodeError

logger = structlog.get_logger(__name__)

Batch = list[dict[str, Any]]

_WHITESPACE = b" \t\r\n"
_BOM = b"\xef\xbb\xbf"


class _PrefixedStream:
    """Replays already-consumed bytes before delegating to the wrapped stream."""

    def __init__(self, prefix: bytes, stream: IO[bytes]):
        self._prefix = prefix
        self._stream = stream

    def read(self, size: int = -1) -> bytes:
        if self._prefix:
            if size is None or size < 0:
                data, self._prefix = self._prefix + self._stream.read(), b""
                return data
            data, self._prefix = self._prefix[:size], self._prefix[size:]
            return data
        return self._stream.read(size)


def _check_array_start(stream: IO[bytes]) -> _PrefixedStream:
    """Consume leading whitespace and require '[' as the first token."""
    consumed = b""
    while True:
        chunk = stream.read(1)
        if not chunk:
            raise StreamDecodeError("empty stream: expected a top-level JSON array")
        consumed += chunk
        if consumed == _BOM[: len(consumed)]:
            if consumed == _BOM:
                consumed = b""
            continue
        if chunk in _WHITESPACE:
            continue
        if chunk != b"[":
            raise StreamDecodeError(
                f"expected a top-level JSON array, stream starts with {chunk!r}"
            )
        return _PrefixedStream(consumed, stream)


def iter_records(stream: IO[bytes]) -> Iterator[dict[str, Any]]:
    """
    Yield each element of the top-level JSON array in `stream`.

    Raises:
        StreamDecodeError: The stream is not a well-formed array of objects.
    """
    source = _check_array_start(stream)
    index = 0
    try:
        for item in ijson.items(source, "item", use_float=True):
            if not isinstance(item, dict):
                raise StreamDecodeError(
                    f"array element {index} is {type(item).__name__}, expected an object"
                )
            yield item
            index += 1
    except ijson.JSONError as e:
        raise StreamDecodeError(f"malformed JSON stream after {index} records: {e}") from e

    logger.debug("stream_decode_complete", records=index)


def iter_batches(records: Iterable[dict[str, Any]], batch_size: int) -> Iterator[Batch]:
    """
    Group records into lists of `batch_size`, flushing the final partial batch.
    """
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")

    batch: Batch = []
    for record in records:
        batch.append(record)
        if len(batch) >= batch_size:
            yield batch
            batch = []
    if batch:
        yield batch


_DONE = object()


async def iter_batches_threaded(batches: Iterator[Batch]) -> AsyncIterator[Batch]:
    """
    Advance a blocking batch iterator in a worker thread, one batch per hop.

    File reads and JSON parsing stay off the event loop, so pool workers run
    while the next batch is being decoded.
    """
    while True:
        batch = await asyncio.to_thread(next, batches, _DONE)
        if batch is _DONE:
            return
        yield batch


async def aiter_batches(records: AsyncIterable[dict[str, Any]], batch_size: int) -> AsyncIterator[Batch]:
    """iter_batches for an async record source (paged APIs)."""
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")

    batch: Batch = []
    async for record in records:
        batch.append(record)
        if len(batch) >= batch_size:
            yield batch
            batch = []
    if batch:
        yield batch
