"""
Base backend abstraction.
A backend knows how to ship a prompt to the model server and report health.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator

from fmchat.stream import decode_stream

logger = logging.getLogger(__name__)


class TransportError(Exception):
    """Request failed at the HTTP level: bad status, dropped connection, timeout."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class HealthStatus:
    """Body of GET /health."""
    status: str = ""
    model: str = ""
    available: bool = False

    @classmethod
    def from_dict(cls, data: dict) -> "HealthStatus":
        return cls(
            status=str(data.get("status", "")),
            model=str(data.get("model", "")),
            available=bool(data.get("available", False)),
        )


class BaseBackend(abc.ABC):
    """
    Abstract base for model servers.
    Subclasses provide the raw byte stream; decoding is shared.
    """

    def __init__(self, name: str, url: str, timeout: float = 120):
        self.name = name
        self.url = url.rstrip("/")
        self.timeout = timeout

    @abc.abstractmethod
    def stream_bytes(self, prompt: str) -> AsyncIterator[bytes]:
        """
        POST the prompt and yield raw SSE bytes as they arrive.
        Raises TransportError on a non-2xx status before yielding anything.
        """
        ...

    @abc.abstractmethod
    async def health_check(self) -> HealthStatus | None:
        """Check server health. None means unreachable or unhealthy."""
        ...

    async def generate_stream(self, prompt: str, cancel: asyncio.Event | None = None) -> AsyncIterator[str]:
        """
        Stream content fragments for a prompt.
        A source that drops mid-stream (OSError) surfaces as TransportError.
        """
        try:
            async for fragment in decode_stream(self.stream_bytes(prompt), cancel):
                yield fragment
        except OSError as e:
            logger.warning("Backend '%s' stream dropped: %s", self.name, e)
            raise TransportError(str(e) or e.__class__.__name__) from e

    async def is_available(self) -> bool:
        health = await self.health_check()
        return bool(health and health.available)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r} url={self.url!r}>"
