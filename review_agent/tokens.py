"""Token estimation against fixed per-model context limits.

The estimate is a character-ratio heuristic, not the service tokenizer.
ASCII text is counted at ``CHARS_PER_TOKEN = 3`` characters per token,
which over-counts source code and English prose. Every non-ASCII code
point is counted as a whole token, since byte-level tokenizers spend at
least one token on each CJK ideograph or emoji. A 5% margin is added on
top of both. Only text that tokenizes at more than one token per
non-ASCII code point can be under-counted.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass, field

from review_agent.config import (
    CHARS_PER_TOKEN,
    CONVERSATION_OVERHEAD_TOKENS,
    DEFAULT_MODEL,
    MESSAGE_OVERHEAD_TOKENS,
    MODEL_TOKEN_LIMITS,
    TOKEN_SAFETY_MARGIN,
)
from review_agent.models import Conversation


def estimate_tokens(text: str) -> int:
    """Estimated token count of a string; monotonic under concatenation."""
    if not text:
        return 0
    non_ascii = sum(1 for ch in text if ord(ch) > 127)
    ascii_chars = len(text) - non_ascii
    return math.ceil(
        (ascii_chars / CHARS_PER_TOKEN + non_ascii) * (1 + TOKEN_SAFETY_MARGIN)
    )


def estimate_conversation_tokens(conversation: Conversation) -> int:
    """Estimated token count of a full conversation, including role overhead."""
    total = CONVERSATION_OVERHEAD_TOKENS
    for message in conversation.messages:
        total += MESSAGE_OVERHEAD_TOKENS + estimate_tokens(message.content)
    return total


@dataclass(frozen=True)
class TokenBudget:
    """The active model and the capacity table it is looked up in."""

    model: str = DEFAULT_MODEL
    limits: Mapping[str, int] = field(default_factory=lambda: dict(MODEL_TOKEN_LIMITS))

    def __post_init__(self) -> None:
        if self.model not in self.limits:
            raise ValueError(f"No token limit configured for model {self.model!r}")

    @property
    def capacity(self) -> int:
        return self.limits[self.model]

    def fits(self, conversation: Conversation) -> bool:
        return estimate_conversation_tokens(conversation) < self.capacity


def fits(
    conversation: Conversation,
    model: str = DEFAULT_MODEL,
    limits: Mapping[str, int] = MODEL_TOKEN_LIMITS,
) -> bool:
    """True when the conversation is strictly under the model's capacity."""
    return TokenBudget(model=model, limits=limits).fits(conversation)
