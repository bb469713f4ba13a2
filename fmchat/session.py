"""
Chat session: runs one turn at a time against a backend.

A turn goes:
  1. append the user turn and an empty assistant turn
  2. format the closed history into a prompt and stream the reply
  3. append each fragment to the open assistant turn as it arrives
  4. classify the finished text; a filtered reply marks the assistant turn
     and the user turn before it, so neither goes into later prompts

Outcomes are three-way: success, cancelled, failed.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from fmchat.backends.base import BaseBackend, TransportError
from fmchat.conversation import Conversation, ConversationTurn
from fmchat.guardrail import classify_response
from fmchat.prompt import format_prompt
from fmchat.settings import DEFAULT_CHAT_SETTINGS, ChatSettings
from fmchat.stream import StreamCancelled
from fmchat.wiretap import WireLog

logger = logging.getLogger(__name__)

ERROR_RESPONSE = "Error: Failed to get response. Is the server running?"


class SessionBusyError(RuntimeError):
    """A reply is still streaming."""


class TurnStatus(str, Enum):
    SUCCESS = "success"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class TurnOutcome:
    status: TurnStatus
    turn: ConversationTurn | None = None   # None when a cancelled turn was dropped
    error: str = ""

    @property
    def filtered(self) -> bool:
        return bool(self.turn and self.turn.filtered)


class ChatSession:
    """Owns one conversation and at most one in-flight stream."""

    def __init__(
        self,
        backend: BaseBackend,
        settings: ChatSettings | None = None,
        wire: WireLog | None = None,
    ):
        self.backend = backend
        self.settings = settings or DEFAULT_CHAT_SETTINGS
        self.wire = wire
        self.conversation = Conversation()
        self._cancel: asyncio.Event | None = None

    @property
    def is_streaming(self) -> bool:
        return self._cancel is not None

    def cancel(self) -> None:
        """Ask the active stream to stop. No-op when idle."""
        if self._cancel is not None:
            self._cancel.set()

    def clear(self) -> None:
        if self.is_streaming:
            raise SessionBusyError("Cannot clear while a reply is streaming")
        self.conversation.clear()

    def _wire_log(self, direction: str, role: str, content: str, filtered: bool = False, status: str = "") -> None:
        if self.wire is None:
            return
        try:
            self.wire.log(direction, role, content, filtered=filtered, status=status)
        except OSError as e:
            logger.warning("Wire log write failed: %s", e)

    async def submit(
        self,
        text: str,
        on_fragment: Callable[[str], None] | None = None,
        settings: ChatSettings | None = None,
    ) -> TurnOutcome:
        """Send a user message and stream the reply into the conversation."""
        text = text.strip()
        if not text:
            raise ValueError("Message is empty")
        if self.is_streaming:
            raise SessionBusyError("A reply is already streaming")

        settings = settings or self.settings
        cancel = asyncio.Event()
        self._cancel = cancel
        try:
            self.conversation.add_user_turn(text)
            prompt = format_prompt(self.conversation.history(), settings.system_prompt)
            self.conversation.open_assistant_turn()
            self._wire_log("outbound", "user", prompt)
            return await self._stream_turn(prompt, cancel, settings, on_fragment)
        finally:
            self._cancel = None

    async def _stream_turn(
        self,
        prompt: str,
        cancel: asyncio.Event,
        settings: ChatSettings,
        on_fragment: Callable[[str], None] | None,
    ) -> TurnOutcome:
        conv = self.conversation
        stream = self.backend.generate_stream(prompt, cancel=cancel)
        try:
            async for fragment in stream:
                conv.append_fragment(fragment)
                if on_fragment:
                    on_fragment(fragment)
        except (StreamCancelled, asyncio.CancelledError) as e:
            turn = self._finish_cancelled(settings)
            self._wire_log("inbound", "assistant", turn.content if turn else "",
                           filtered=bool(turn and turn.filtered), status=TurnStatus.CANCELLED.value)
            if isinstance(e, asyncio.CancelledError):
                raise
            return TurnOutcome(TurnStatus.CANCELLED, turn)
        except TransportError as e:
            logger.warning("Turn failed on backend '%s': %s", self.backend.name, e)
            turn = conv.close_open_turn(content=ERROR_RESPONSE, filtered=False)
            self._wire_log("inbound", "assistant", str(e), status=TurnStatus.FAILED.value)
            return TurnOutcome(TurnStatus.FAILED, turn, error=str(e))
        except Exception as e:
            # Any other failure still closes the open turn
            logger.error("Turn aborted on backend '%s': %s", self.backend.name, e)
            if conv.has_open_turn:
                conv.close_open_turn(content=ERROR_RESPONSE, filtered=False)
            self._wire_log("inbound", "assistant", str(e) or e.__class__.__name__,
                           status=TurnStatus.FAILED.value)
            raise
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        open_turn = conv.open_turn
        result = classify_response(open_turn.content, settings.refusal_prefixes)
        turn = conv.close_open_turn(content=result.content, filtered=result.filtered)
        self._wire_log("inbound", "assistant", turn.content,
                       filtered=turn.filtered, status=TurnStatus.SUCCESS.value)
        return TurnOutcome(TurnStatus.SUCCESS, turn)

    def _finish_cancelled(self, settings: ChatSettings) -> ConversationTurn | None:
        """Drop the turn if nothing arrived yet, otherwise keep and classify the partial text."""
        conv = self.conversation
        open_turn = conv.open_turn
        if open_turn is None:
            return None
        if not open_turn.content:
            conv.discard_open_turn()
            logger.debug("Cancelled before any content, assistant turn dropped")
            return None
        result = classify_response(open_turn.content, settings.refusal_prefixes)
        return conv.close_open_turn(content=result.content, filtered=result.filtered)
