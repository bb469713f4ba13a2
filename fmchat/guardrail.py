"""
Guardrail detection for completed replies.

The on-device model does not report when its safety layer kicks in. It either
sends nothing at all or answers with a stock apology. Both are detected here
so the exchange can be kept out of later prompts.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

logger = logging.getLogger(__name__)

# Stock openings the model uses when content is filtered.
DEFAULT_REFUSAL_PREFIXES: tuple[str, ...] = (
    "Sorry, I",
    "Sorry, but",
    "I'm sorry, I",
    "I'm sorry, but",
    "I apologize, but",
    "I can't help with",
    "I'm not able to",
)

# Shown in place of a reply that was blocked entirely.
BLOCKED_RESPONSE = "I'm sorry, I can't assist with that."


@dataclass(frozen=True)
class ClassificationResult:
    content: str
    filtered: bool


def is_empty_response(content: str) -> bool:
    return not content.strip()


def is_guardrail_refusal(content: str, refusal_prefixes: Sequence[str] = DEFAULT_REFUSAL_PREFIXES) -> bool:
    """Exact, case-sensitive prefix match on the trimmed reply."""
    trimmed = content.strip()
    return any(trimmed.startswith(prefix) for prefix in refusal_prefixes)


def classify_response(
    content: str,
    refusal_prefixes: Sequence[str] = DEFAULT_REFUSAL_PREFIXES,
) -> ClassificationResult:
    """Decide whether a finished reply was filtered by the model's guardrails."""
    if is_empty_response(content):
        logger.info("Empty reply, treating as blocked")
        return ClassificationResult(content=BLOCKED_RESPONSE, filtered=True)

    if is_guardrail_refusal(content, refusal_prefixes):
        logger.info("Refusal detected: %r", content[:60])
        return ClassificationResult(content=content, filtered=True)

    return ClassificationResult(content=content, filtered=False)
