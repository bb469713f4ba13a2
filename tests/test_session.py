"""
Tests for the chat session turn loop.
"""

import asyncio
import json
from pathlib import Path

import pytest

from fmchat.backends.base import BaseBackend, HealthStatus, TransportError
from fmchat.conversation import Role
from fmchat.guardrail import BLOCKED_RESPONSE
from fmchat.prompt import SYSTEM_PROMPT
from fmchat.session import ERROR_RESPONSE, ChatSession, SessionBusyError, TurnStatus
from fmchat.settings import ChatSettings
from fmchat.wiretap import WireLog


def _event(content) -> bytes:
    chunk = {"choices": [{"index": 0, "delta": {"content": content}, "finish_reason": None}]}
    return f"data: {json.dumps(chunk)}\n\n".encode()


DONE = b"data: [DONE]\n\n"


class FakeBackend(BaseBackend):
    """Replays canned byte streams; an exception entry is raised instead."""

    def __init__(self, *replies, hang: bool = False):
        super().__init__("fake", "http://fake:17832")
        self.replies = list(replies)
        self.prompts: list[str] = []
        self.hang = hang
        self.started = asyncio.Event()

    async def stream_bytes(self, prompt):
        self.prompts.append(prompt)
        self.started.set()
        if self.hang:
            await asyncio.sleep(30)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        for chunk in reply:
            yield chunk

    async def health_check(self):
        return HealthStatus(status="ok", model="fake", available=True)


# ---------------------------------------------------------------------------
# Successful turns
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_plain_answer():
    """A clean answer is stored and not filtered."""
    backend = FakeBackend([_event("4"), DONE])
    session = ChatSession(backend)

    outcome = await session.submit("2+2?")

    assert outcome.status == TurnStatus.SUCCESS
    assert outcome.turn.content == "4"
    assert not outcome.filtered
    assert backend.prompts == [f"{SYSTEM_PROMPT}\n\nUser: 2+2?\nAssistant:"]
    assert [(t.role, t.content, t.filtered) for t in session.conversation] == [
        (Role.USER, "2+2?", False),
        (Role.ASSISTANT, "4", False),
    ]
    assert not session.is_streaming


@pytest.mark.asyncio
async def test_fragments_reported_in_order():
    """on_fragment sees each fragment in arrival order."""
    backend = FakeBackend([_event("Hel"), _event("lo"), _event("!")])
    session = ChatSession(backend)
    seen = []

    outcome = await session.submit("hi", on_fragment=seen.append)

    assert seen == ["Hel", "lo", "!"]
    assert outcome.turn.content == "Hello!"


@pytest.mark.asyncio
async def test_message_is_trimmed():
    """User text is trimmed before it is stored."""
    session = ChatSession(FakeBackend([_event("ok")]))
    await session.submit("  hi  \n")
    assert session.conversation[0].content == "hi"


# ---------------------------------------------------------------------------
# Guardrail filtering
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_empty_reply_is_blocked_and_pair_filtered():
    """An empty reply is blocked and filters the pair."""
    session = ChatSession(FakeBackend([]))

    outcome = await session.submit("something spicy")

    assert outcome.status == TurnStatus.SUCCESS
    assert outcome.filtered
    assert outcome.turn.content == BLOCKED_RESPONSE
    assert [t.filtered for t in session.conversation] == [True, True]


@pytest.mark.asyncio
async def test_refusal_is_filtered_with_content_kept():
    """A refusal filters the pair and keeps its text."""
    reply = "I'm sorry, I cannot help with that request."
    session = ChatSession(FakeBackend([_event(reply), DONE]))

    outcome = await session.submit("bad idea")

    assert outcome.filtered
    assert outcome.turn.content == reply
    assert [t.filtered for t in session.conversation] == [True, True]


@pytest.mark.asyncio
async def test_filtered_exchange_left_out_of_next_prompt():
    """A filtered exchange is not sent in the next prompt."""
    backend = FakeBackend(
        [_event("Sorry, I can't help with that."), DONE],
        [_event("Paris."), DONE],
    )
    session = ChatSession(backend)

    await session.submit("bad idea")
    await session.submit("capital of France?")

    assert backend.prompts[1] == f"{SYSTEM_PROMPT}\n\nUser: capital of France?\nAssistant:"
    assert [t.filtered for t in session.conversation] == [True, True, False, False]


@pytest.mark.asyncio
async def test_clean_history_carried_forward():
    """Earlier clean turns are included in the next prompt."""
    backend = FakeBackend([_event("4"), DONE], [_event("8"), DONE])
    session = ChatSession(backend)

    await session.submit("2+2?")
    await session.submit("double it")

    assert backend.prompts[1] == (
        f"{SYSTEM_PROMPT}\n\nUser: 2+2?\nAssistant: 4\nUser: double it\nAssistant:"
    )


@pytest.mark.asyncio
async def test_custom_settings_per_call():
    """Settings passed to submit override the session's."""
    backend = FakeBackend([_event("Nope, not that."), DONE])
    session = ChatSession(backend)
    settings = ChatSettings(system_prompt="Be terse.", refusal_prefixes=("Nope",))

    outcome = await session.submit("q", settings=settings)

    assert backend.prompts[0] == "Be terse.\n\nUser: q\nAssistant:"
    assert outcome.filtered


@pytest.mark.asyncio
async def test_session_default_settings():
    """Settings given to the session apply to every turn."""
    backend = FakeBackend([_event("I'm sorry, I can't"), DONE])
    session = ChatSession(backend, settings=ChatSettings(system_prompt="S", refusal_prefixes=()))

    outcome = await session.submit("q")

    assert backend.prompts[0].startswith("S\n\n")
    assert not outcome.filtered


# ---------------------------------------------------------------------------
# Failures and cancellation
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_transport_failure_sets_error_text_not_filtered():
    """Transport errors store the error text unfiltered."""
    session = ChatSession(FakeBackend(TransportError("Server error: 500", status_code=500)))

    outcome = await session.submit("hi")

    assert outcome.status == TurnStatus.FAILED
    assert outcome.error == "Server error: 500"
    assert outcome.turn.content == ERROR_RESPONSE
    assert [t.filtered for t in session.conversation] == [False, False]
    assert not session.is_streaming


@pytest.mark.asyncio
async def test_connection_drop_fails_turn_and_session_recovers():
    """A dropped connection fails the turn and the next submit still works."""
    backend = FakeBackend(ConnectionResetError("peer reset"), [_event("ok"), DONE])
    session = ChatSession(backend)

    outcome = await session.submit("hi")

    assert outcome.status == TurnStatus.FAILED
    assert outcome.error == "peer reset"
    assert outcome.turn.content == ERROR_RESPONSE
    assert not session.conversation.has_open_turn

    second = await session.submit("again")
    assert second.status == TurnStatus.SUCCESS
    assert second.turn.content == "ok"


@pytest.mark.asyncio
async def test_fragment_callback_error_closes_turn_and_propagates():
    """An exception from on_fragment reaches the caller with the turn closed."""
    backend = FakeBackend([_event("a"), _event("b"), DONE], [_event("ok"), DONE])
    session = ChatSession(backend)

    def broken_pipe(fragment):
        raise BrokenPipeError("stdout closed")

    with pytest.raises(BrokenPipeError):
        await session.submit("hi", on_fragment=broken_pipe)

    assert not session.is_streaming
    assert not session.conversation.has_open_turn
    assert session.conversation[1].content == ERROR_RESPONSE
    assert not session.conversation[1].filtered

    outcome = await session.submit("again")
    assert outcome.status == TurnStatus.SUCCESS
    assert outcome.turn.content == "ok"


@pytest.mark.asyncio
async def test_cancel_before_content_drops_assistant_turn():
    """Cancelling before any content drops the assistant turn."""
    backend = FakeBackend([_event("late")], hang=True)
    session = ChatSession(backend)

    task = asyncio.create_task(session.submit("hi"))
    await asyncio.wait_for(backend.started.wait(), timeout=2)
    assert session.is_streaming
    session.cancel()
    outcome = await asyncio.wait_for(task, timeout=2)

    assert outcome.status == TurnStatus.CANCELLED
    assert outcome.turn is None
    assert [t.role for t in session.conversation] == [Role.USER]
    assert not session.conversation.has_open_turn


@pytest.mark.asyncio
async def test_cancel_after_content_keeps_partial_reply():
    """Cancelling mid-reply keeps the partial text."""
    backend = FakeBackend([_event("Part"), _event("ial"), DONE])
    session = ChatSession(backend)

    def stop_after_first(fragment):
        session.cancel()

    outcome = await session.submit("hi", on_fragment=stop_after_first)

    assert outcome.status == TurnStatus.CANCELLED
    assert outcome.turn.content == "Part"
    assert not outcome.filtered
    assert len(session.conversation) == 2


@pytest.mark.asyncio
async def test_cancel_when_idle_is_noop():
    """cancel() with nothing streaming does nothing."""
    session = ChatSession(FakeBackend())
    session.cancel()
    assert not session.is_streaming


@pytest.mark.asyncio
async def test_second_submit_while_streaming_rejected():
    """Only one reply may stream at a time."""
    backend = FakeBackend([_event("x")], hang=True)
    session = ChatSession(backend)

    task = asyncio.create_task(session.submit("first"))
    await asyncio.wait_for(backend.started.wait(), timeout=2)
    with pytest.raises(SessionBusyError):
        await session.submit("second")
    with pytest.raises(SessionBusyError):
        session.clear()

    session.cancel()
    await asyncio.wait_for(task, timeout=2)
    assert len(backend.prompts) == 1


@pytest.mark.asyncio
async def test_empty_message_rejected():
    """Blank input is rejected without touching history."""
    session = ChatSession(FakeBackend())
    with pytest.raises(ValueError):
        await session.submit("   ")
    assert len(session.conversation) == 0


@pytest.mark.asyncio
async def test_clear_when_idle():
    """clear() empties the conversation when idle."""
    session = ChatSession(FakeBackend([_event("4"), DONE]))
    await session.submit("2+2?")
    session.clear()
    assert len(session.conversation) == 0


# ---------------------------------------------------------------------------
# Wire log
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_turns_written_to_wire_log(tmp_path):
    """Each turn writes an outbound and an inbound entry."""
    wire = WireLog(tmp_path / "wire.jsonl")
    session = ChatSession(
        FakeBackend([_event("4"), DONE], [_event("Sorry, but no."), DONE]),
        wire=wire,
    )

    await session.submit("2+2?")
    await session.submit("bad")
    wire.close()

    entries = [json.loads(line) for line in Path(wire.log_path).read_text().splitlines()]
    assert [(e["dir"], e["role"]) for e in entries] == [
        ("outbound", "user"),
        ("inbound", "assistant"),
        ("outbound", "user"),
        ("inbound", "assistant"),
    ]
    assert entries[0]["content"] == f"{SYSTEM_PROMPT}\n\nUser: 2+2?\nAssistant:"
    assert entries[1]["content"] == "4"
    assert entries[1]["status"] == "success"
    assert entries[1]["filtered"] is False
    assert entries[3]["filtered"] is True
