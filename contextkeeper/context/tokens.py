"""Token estimation, per-target limits, truncation and chunking.

Tokens are approximated as four characters each. This is deliberately not a
model tokenizer: it is deterministic, cheap and identical for every target.
"""

from __future__ import annotations

import math
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict

if TYPE_CHECKING:
    from collections.abc import Iterator

CHARS_PER_TOKEN = 4

TRUNCATION_MARKER = "\n\n[...truncated]"

# Boundary policy: accept a paragraph break only in the last 30% of the
# budget, a sentence break only in the last 20%; chunking accepts either in
# the last half of the window.
PARAGRAPH_CUTOFF = 0.7
SENTENCE_CUTOFF = 0.8
CHUNK_BOUNDARY_CUTOFF = 0.5

NEAR_LIMIT_PERCENT = 80


class TokenConfig(BaseModel):
    """Token limits for one prompt target."""

    model_config = ConfigDict(frozen=True)

    max_tokens: int
    reserve_tokens: int
    chunk_size: int


class ContextUsage(BaseModel):
    """How much of a target's window a block of text occupies."""

    used: int
    available: int
    percentage: int

    @property
    def is_near_limit(self) -> bool:
        return self.percentage >= NEAR_LIMIT_PERCENT


ADAPTER_LIMITS: dict[str, TokenConfig] = {
    "claude": TokenConfig(max_tokens=100_000, reserve_tokens=4_000, chunk_size=8_000),
    "gemini": TokenConfig(max_tokens=128_000, reserve_tokens=4_000, chunk_size=8_000),
    "codex": TokenConfig(max_tokens=32_000, reserve_tokens=2_000, chunk_size=4_000),
    "ollama": TokenConfig(max_tokens=8_000, reserve_tokens=1_000, chunk_size=2_000),
}

# Unknown targets get the smallest window.
DEFAULT_TARGET = "ollama"


def estimate_tokens(text: str) -> int:
    """Estimate tokens as ``ceil(len / 4)``; empty text is zero."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def get_token_config(target: str) -> TokenConfig:
    """Return the limits for *target*, falling back to the most conservative entry."""
    return ADAPTER_LIMITS.get(target, ADAPTER_LIMITS[DEFAULT_TARGET])


def get_available_tokens(target: str, used_tokens: int = 0) -> int:
    """Tokens left for content. May be negative; callers treat ``<= 0`` as full."""
    config = get_token_config(target)
    return config.max_tokens - config.reserve_tokens - used_tokens


def fits_in_context(text: str, target: str, used_tokens: int = 0) -> bool:
    return estimate_tokens(text) <= get_available_tokens(target, used_tokens)


def truncate_for_agent(text: str, target: str, used_tokens: int = 0) -> str:
    """Cut *text* to the target's remaining budget at the best nearby boundary.

    Text that already fits is returned unchanged. Otherwise the cut prefers,
    in order: the last paragraph break in the final 30% of the budget, the
    last sentence break in the final 20%, then a hard cut. A visible marker
    is appended whenever anything was removed.
    """
    max_chars = max(get_available_tokens(target, used_tokens), 0) * CHARS_PER_TOKEN
    if len(text) <= max_chars:
        return text

    truncated = text[:max_chars]

    last_paragraph = truncated.rfind("\n\n")
    if last_paragraph > max_chars * PARAGRAPH_CUTOFF:
        truncated = truncated[:last_paragraph]
    else:
        last_sentence = truncated.rfind(". ")
        if last_sentence > max_chars * SENTENCE_CUTOFF:
            truncated = truncated[: last_sentence + 1]

    return truncated + TRUNCATION_MARKER


def split_into_chunks(text: str, target: str) -> Iterator[str]:
    """Yield pieces of *text* no larger than the target's chunk budget.

    Each window breaks at the last paragraph boundary in its second half,
    else the last sentence boundary there, else at the window edge. Chunks
    are stripped and empty ones are skipped.
    """
    chunk_chars = get_token_config(target).chunk_size * CHARS_PER_TOKEN

    if len(text) <= chunk_chars:
        if text.strip():
            yield text.strip()
        return

    remaining = text
    while remaining:
        if len(remaining) <= chunk_chars:
            yield remaining
            return

        break_point = chunk_chars
        paragraph_break = remaining.rfind("\n\n", 0, chunk_chars)
        if paragraph_break > chunk_chars * CHUNK_BOUNDARY_CUTOFF:
            break_point = paragraph_break + 2
        else:
            sentence_break = remaining.rfind(". ", 0, chunk_chars)
            if sentence_break > chunk_chars * CHUNK_BOUNDARY_CUTOFF:
                break_point = sentence_break + 2

        piece = remaining[:break_point].strip()
        if piece:
            yield piece
        remaining = remaining[break_point:].strip()


def get_context_usage(text: str, target: str) -> ContextUsage:
    """Report how much of *target*'s usable window *text* takes up."""
    tokens = estimate_tokens(text)
    config = get_token_config(target)
    available = config.max_tokens - config.reserve_tokens
    percentage = math.floor(tokens / available * 100 + 0.5) if available > 0 else 100
    return ContextUsage(used=tokens, available=available, percentage=percentage)


def is_near_limit(text: str, target: str) -> bool:
    return get_context_usage(text, target).is_near_limit
