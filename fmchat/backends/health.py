"""
Connection monitor, polls the server's health endpoint.

State follows the chat app: CONNECTING until the first health check answers, then
CHAT once the model has been available at least once, or SETUP if it never
was. Losing the server after that keeps CHAT but flips `connected` off.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Callable

from fmchat.backends.base import BaseBackend, HealthStatus

logger = logging.getLogger(__name__)


class AppState(str, Enum):
    CONNECTING = "CONNECTING"
    CHAT = "CHAT"
    SETUP = "SETUP"


class HealthMonitor:
    """Tracks server availability across repeated health checks."""

    def __init__(
        self,
        backend: BaseBackend,
        poll_interval: float = 2.0,
        on_change: Callable[["HealthMonitor"], None] | None = None,
    ):
        self.backend = backend
        self.poll_interval = poll_interval
        self.on_change = on_change
        self.state = AppState.CONNECTING
        self.connected = False
        self.ever_connected = False
        self.last_health: HealthStatus | None = None
        self._stop = asyncio.Event()

    async def check(self) -> bool:
        """Run one health check and update state. Returns whether the model is available."""
        health = await self.backend.health_check()
        self.last_health = health
        before = (self.state, self.connected)

        if health and health.available:
            self.connected = True
            self.ever_connected = True
            self.state = AppState.CHAT
        else:
            self.connected = False
            if not self.ever_connected:
                self.state = AppState.SETUP

        if (self.state, self.connected) != before:
            logger.info(
                "Server '%s' state: %s (%s)",
                self.backend.name,
                self.state.value,
                "connected" if self.connected else "disconnected",
            )
            if self.on_change:
                self.on_change(self)
        return self.connected

    async def run(self, max_polls: int | None = None) -> None:
        """Poll until stop() is called or max_polls checks have run."""
        self._stop.clear()
        polls = 0
        while not self._stop.is_set():
            await self.check()
            polls += 1
            if max_polls is not None and polls >= max_polls:
                break
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

    async def wait_until_available(self) -> HealthStatus | None:
        """Poll until the model is available or stop() is called."""
        self._stop.clear()
        while not self._stop.is_set():
            if await self.check():
                return self.last_health
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
        return None

    def stop(self) -> None:
        self._stop.set()
