"""
Prompt formatting for the on-device model.

The server takes a single text prompt, not a messages array, so the history
is flattened into "User:" / "Assistant:" lines under a system block.
Turns flagged as filtered are left out entirely.
"""

from __future__ import annotations

from typing import Iterable

from fmchat.conversation import ConversationTurn, Role

SYSTEM_PROMPT = (
    "You are an expert assistant focused on precise, factual, and concise responses. "
    "When responding to questions, prioritize accuracy and do not make up facts. "
    "If asked for summaries, give them in no more than three sentences. "
    "Follow instructions exactly as stated."
)

ASSISTANT_CUE = "Assistant:"

_ROLE_LABELS = {
    Role.USER: "User",
    Role.ASSISTANT: "Assistant",
}


def format_prompt(turns: Iterable[ConversationTurn], system_prompt: str = SYSTEM_PROMPT) -> str:
    """
    Flatten turns into a prompt string.
    Returns "" when nothing is left after dropping filtered turns; callers
    must not send that to the server.
    """
    valid = [t for t in turns if not t.filtered]
    if not valid:
        return ""

    parts = [system_prompt, ""]
    for turn in valid:
        parts.append(f"{_ROLE_LABELS[Role(turn.role)]}: {turn.content}")

    # Cue the model to answer as the assistant
    parts.append(ASSISTANT_CUE)
    return "\n".join(parts)
