"""
Backend for the local on-device LLM server.

Speaks the apple-local-llm wire format:
  POST /generate  {"input": "<prompt>", "stream": true}  -> SSE chunks
  GET  /health    -> {"status": "...", "model": "...", "available": true}
"""

from __future__ import annotations

import logging
from typing import AsyncIterator

import httpx

from fmchat.backends.base import BaseBackend, HealthStatus, TransportError

logger = logging.getLogger(__name__)

DEFAULT_URL = "http://127.0.0.1:17832"


class LocalLLMBackend(BaseBackend):
    """
    Talks to a model server on localhost.

    `transport` is handed to httpx.AsyncClient as-is; tests pass an
    httpx.MockTransport.
    """

    def __init__(
        self,
        name: str = "local",
        url: str = DEFAULT_URL,
        timeout: float = 120,
        health_timeout: float = 3,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(name, url, timeout)
        self.health_timeout = health_timeout
        self._transport = transport

    @property
    def generate_url(self) -> str:
        return f"{self.url}/generate"

    @property
    def health_url(self) -> str:
        return f"{self.url}/health"

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    async def stream_bytes(self, prompt: str) -> AsyncIterator[bytes]:
        """Forward a streaming request, yielding raw body bytes."""
        body = {"input": prompt, "stream": True}
        try:
            async with self._client(self.timeout) as client:
                async with client.stream("POST", self.generate_url, json=body) as resp:
                    if not resp.is_success:
                        raise TransportError(
                            f"Server error: {resp.status_code}",
                            status_code=resp.status_code,
                        )
                    async for chunk in resp.aiter_bytes():
                        if chunk:
                            yield chunk
        except httpx.TimeoutException as e:
            logger.warning("Backend '%s' stream timed out after %ss", self.name, self.timeout)
            raise TransportError(f"Timeout after {self.timeout}s") from e
        except httpx.HTTPError as e:
            logger.warning("Backend '%s' stream failed: %s", self.name, e)
            raise TransportError(str(e) or e.__class__.__name__) from e

    async def health_check(self) -> HealthStatus | None:
        """GET /health. Any failure reads as unavailable."""
        try:
            async with self._client(self.health_timeout) as client:
                resp = await client.get(self.health_url)
                if not resp.is_success:
                    logger.debug("Health check on '%s' returned HTTP %d", self.name, resp.status_code)
                    return None
                data = resp.json()
                if not isinstance(data, dict):
                    return None
                return HealthStatus.from_dict(data)
        except (httpx.HTTPError, ValueError) as e:
            logger.debug("Health check on '%s' failed: %s", self.name, e)
            return None
