"""
Conversation state for a single chat.

A Conversation is an ordered list of turns. Only the trailing assistant turn
may be "open" while its reply streams in; it is tracked by index and closed
exactly once, either finalized (content + filtered flag) or discarded.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class ConversationBusyError(RuntimeError):
    """Raised when a turn is added while an assistant turn is still open."""


@dataclass
class ConversationTurn:
    """A single message in the conversation."""
    role: Role
    content: str = ""
    filtered: bool = False   # one-way: never reset once set

    def mark_filtered(self) -> None:
        self.filtered = True

    def to_dict(self) -> dict:
        return {
            "role": self.role.value,
            "content": self.content,
            "filtered": self.filtered,
        }


class Conversation:
    """Append-only turn history with at most one open assistant turn."""

    def __init__(self, turns: list[ConversationTurn] | None = None):
        self._turns: list[ConversationTurn] = list(turns or [])
        self._open_index: int | None = None

    def __len__(self) -> int:
        return len(self._turns)

    def __iter__(self):
        return iter(self._turns)

    def __getitem__(self, index: int) -> ConversationTurn:
        return self._turns[index]

    @property
    def turns(self) -> list[ConversationTurn]:
        return list(self._turns)

    @property
    def has_open_turn(self) -> bool:
        return self._open_index is not None

    @property
    def open_turn(self) -> ConversationTurn | None:
        if self._open_index is None:
            return None
        return self._turns[self._open_index]

    def history(self) -> list[ConversationTurn]:
        """Closed turns only, in order. This is what gets serialized."""
        return [t for i, t in enumerate(self._turns) if i != self._open_index]

    def add_user_turn(self, content: str) -> ConversationTurn:
        if self.has_open_turn:
            raise ConversationBusyError("Assistant turn still open")
        turn = ConversationTurn(role=Role.USER, content=content)
        self._turns.append(turn)
        return turn

    def open_assistant_turn(self) -> int:
        """Append an empty assistant turn and return its index handle."""
        if self.has_open_turn:
            raise ConversationBusyError("Assistant turn already open")
        self._turns.append(ConversationTurn(role=Role.ASSISTANT))
        self._open_index = len(self._turns) - 1
        return self._open_index

    def append_fragment(self, fragment: str) -> None:
        turn = self.open_turn
        if turn is None:
            raise RuntimeError("No open assistant turn")
        turn.content += fragment

    def close_open_turn(self, content: str | None = None, filtered: bool = False) -> ConversationTurn:
        """
        Finalize the open assistant turn.

        When filtered, the user turn right before it is marked filtered too,
        so neither side of the exchange re-enters a prompt.
        """
        index = self._open_index
        if index is None:
            raise RuntimeError("No open assistant turn")
        turn = self._turns[index]
        if content is not None:
            turn.content = content
        if filtered:
            turn.mark_filtered()
            if index > 0 and self._turns[index - 1].role == Role.USER:
                self._turns[index - 1].mark_filtered()
        self._open_index = None
        return turn

    def discard_open_turn(self) -> None:
        index = self._open_index
        if index is None:
            return
        del self._turns[index]
        self._open_index = None

    def clear(self) -> None:
        if self.has_open_turn:
            raise ConversationBusyError("Cannot clear while a reply is streaming")
        self._turns.clear()

    def to_list(self) -> list[dict]:
        return [t.to_dict() for t in self._turns]
