"""
SSE stream decoding.

The server answers /generate with OpenAI-style chat.completion.chunk events:

    data: {"choices": [{"index": 0, "delta": {"content": "Hel"}, "finish_reason": null}]}

    data: [DONE]

Network reads do not line up with event boundaries, so SSEDecoder keeps a
carry-over buffer and only hands back events that are complete. Bytes are
decoded incrementally, so a code point split across reads is fine.
"""

from __future__ import annotations

import asyncio
import codecs
import json
import logging
from typing import AsyncIterator

logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "
DONE_MARKER = "[DONE]"


class StreamCancelled(Exception):
    """The caller stopped the stream before it finished."""


def extract_delta(payload: str) -> str:
    """Pull choices[0].delta.content out of one JSON payload, or "" if absent."""
    try:
        chunk = json.loads(payload)
        content = chunk["choices"][0]["delta"]["content"]
    except (json.JSONDecodeError, KeyError, IndexError, TypeError):
        logger.debug("Skipping unparseable SSE payload: %r", payload[:80])
        return ""
    return content if isinstance(content, str) else ""


class SSEDecoder:
    """Incremental SSE decoder: feed raw bytes, get content fragments back."""

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.done = False

    def feed(self, chunk: bytes) -> list[str]:
        """Consume one network read. Returns fragments from the events it completed."""
        if self.done:
            return []
        self._buffer += self._decoder.decode(chunk)
        self._buffer = self._buffer.replace("\r\n", "\n")

        # Last piece is the incomplete tail; keep it for the next read
        *events, self._buffer = self._buffer.split("\n\n")
        return self._parse_events(events)

    def close(self) -> list[str]:
        """The source closed. Flush whatever complete lines are left over."""
        if self.done:
            return []
        tail = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        fragments = self._parse_events([tail]) if tail.strip() else []
        self.done = True
        return fragments

    def _parse_events(self, events: list[str]) -> list[str]:
        fragments = []
        for event in events:
            for line in event.split("\n"):
                line = line.strip()
                if not line.startswith(DATA_PREFIX):
                    continue
                payload = line[len(DATA_PREFIX):]
                if payload == DONE_MARKER:
                    self.done = True
                    return fragments
                delta = extract_delta(payload)
                if delta:
                    fragments.append(delta)
        return fragments


async def _read_next(source: AsyncIterator[bytes]) -> bytes | None:
    try:
        return await source.__anext__()
    except StopAsyncIteration:
        return None


async def _read_or_cancel(source: AsyncIterator[bytes], cancel: asyncio.Event | None) -> bytes | None:
    """Wait for the next chunk, unless the cancel event fires first."""
    if cancel is None:
        return await _read_next(source)
    if cancel.is_set():
        raise StreamCancelled()

    read = asyncio.ensure_future(_read_next(source))
    waiter = asyncio.ensure_future(cancel.wait())
    try:
        done, _ = await asyncio.wait({read, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        # Task cancelled from outside; settle the read before the source is closed
        read.cancel()
        await asyncio.gather(read, return_exceptions=True)
        raise
    finally:
        waiter.cancel()
    if read in done:
        return read.result()

    read.cancel()
    try:
        await read
    except asyncio.CancelledError:
        pass
    raise StreamCancelled()


async def decode_stream(
    source: AsyncIterator[bytes],
    cancel: asyncio.Event | None = None,
) -> AsyncIterator[str]:
    """
    Yield content fragments from a raw SSE byte stream.

    Ends on [DONE] or when the source closes; both count as success.
    Raises StreamCancelled if `cancel` is set, checked at every read.
    Errors raised by the source propagate unchanged.
    """
    decoder = SSEDecoder()
    try:
        while not decoder.done:
            chunk = await _read_or_cancel(source, cancel)
            if chunk is None:
                for fragment in decoder.close():
                    yield fragment
                break
            for fragment in decoder.feed(chunk):
                yield fragment
    finally:
        aclose = getattr(source, "aclose", None)
        if aclose is not None:
            await aclose()
