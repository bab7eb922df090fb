"""Lossy compression of text blocks through an external summarizer.

Fenced code is lifted out before the text is sent and put back verbatim
afterwards, so code never passes through the model. When the summarizer is
missing, unreachable or returns nothing, the original text is hard-truncated
instead and the result is tagged ``truncation``.
"""

from __future__ import annotations

import logging
import math
import re
from typing import Literal, Protocol

from pydantic import BaseModel

from contextkeeper.context.tokens import CHARS_PER_TOKEN, estimate_tokens

logger = logging.getLogger(__name__)

DEFAULT_MAX_LENGTH = 500

# Compress to this share of a hard limit so the fallback marker and
# downstream formatting still fit.
LIMIT_HEADROOM = 0.8

KEY_POINTS_MIN_TOKENS = 100
KEY_POINTS_FALLBACK_CHARS = 200

FALLBACK_MARKER = "\n\n[...summarization failed, truncated]"

CompressionMethod = Literal["passthrough", "summary", "truncation"]
SummaryFormat = Literal["bullet", "paragraph", "structured"]

_CODE_BLOCK_RE = re.compile(r"```.*?```", re.DOTALL)
_PLACEHOLDER_RE = re.compile(r"\[CODE_BLOCK_(\d+)\]")
_BULLET_RE = re.compile(r"^\s*[-*•]\s*")

SUMMARIZE_PROMPT = """Summarize this content concisely. Preserve:
- Key decisions and conclusions
- Code snippets (if relevant)
- Action items
- Error messages

Placeholders like [CODE_BLOCK_0] stand for code; keep them exactly as written.
{format_instruction}
Keep it under {max_length} words.

Content:
{content}"""

EXTRACT_PROMPT = """Extract the key points from this content as a bullet list.
Focus on:
- Main ideas
- Decisions made
- Action items
- Important details

Content:
{content}"""

FORMAT_INSTRUCTIONS: dict[str, str] = {
    "bullet": "Write the summary as a bullet list.",
    "paragraph": "Write the summary as short paragraphs.",
    "structured": (
        "Organize the summary under the headings Decisions, Code, Action Items and Errors, "
        "omitting empty ones."
    ),
}


class SummarizationService(Protocol):
    """Anything that can turn a prompt into text and report reachability."""

    async def generate(self, prompt: str) -> str: ...

    async def ping(self) -> bool: ...


class CompressionResult(BaseModel):
    """Outcome of one compression attempt, tagged with the path that produced it."""

    summary: str
    original_tokens: int
    summary_tokens: int
    compression_ratio: float
    method: CompressionMethod


def extract_code_blocks(text: str) -> tuple[str, list[str]]:
    """Replace each fenced block with ``[CODE_BLOCK_<n>]``; return text and blocks."""
    blocks: list[str] = []

    def _stash(match: re.Match[str]) -> str:
        blocks.append(match.group(0))
        return f"[CODE_BLOCK_{len(blocks) - 1}]"

    return _CODE_BLOCK_RE.sub(_stash, text), blocks


def restore_code_blocks(summary: str, blocks: list[str]) -> str:
    """Put stashed code back. Blocks whose placeholder was dropped are appended."""
    restored: set[int] = set()

    def _restore(match: re.Match[str]) -> str:
        index = int(match.group(1))
        if index >= len(blocks):
            return match.group(0)
        if index in restored:
            return ""
        restored.add(index)
        return blocks[index]

    result = _PLACEHOLDER_RE.sub(_restore, summary)
    missing = [block for i, block in enumerate(blocks) if i not in restored]
    if missing:
        result = result.rstrip() + "\n\n" + "\n\n".join(missing)
    return result


def _fallback(text: str, max_length: int, original_tokens: int) -> CompressionResult:
    truncated = text[: max_length * CHARS_PER_TOKEN] + FALLBACK_MARKER
    return CompressionResult(
        summary=truncated,
        original_tokens=original_tokens,
        summary_tokens=estimate_tokens(truncated),
        compression_ratio=1,
        method="truncation",
    )


class Compressor:
    """Summarize text through a ``SummarizationService`` with truncation fallback.

    The service may be ``None``; every call then degrades to truncation.
    Service faults are logged and absorbed, never raised.
    """

    def __init__(
        self,
        service: SummarizationService | None,
        *,
        default_max_length: int = DEFAULT_MAX_LENGTH,
    ) -> None:
        self.service = service
        self.default_max_length = default_max_length

    async def compress(
        self,
        text: str,
        *,
        max_length: int | None = None,
        preserve_code: bool = True,
        format: SummaryFormat = "paragraph",  # noqa: A002
    ) -> CompressionResult:
        """Shrink *text* to roughly *max_length* tokens.

        Text already within *max_length* passes through with ratio 1.
        """
        max_length = self.default_max_length if max_length is None else max_length
        original_tokens = estimate_tokens(text)

        if original_tokens <= max_length:
            return CompressionResult(
                summary=text,
                original_tokens=original_tokens,
                summary_tokens=original_tokens,
                compression_ratio=1,
                method="passthrough",
            )

        if self.service is None:
            logger.debug("No summarizer configured, truncating %d tokens", original_tokens)
            return _fallback(text, max_length, original_tokens)

        to_send, blocks = extract_code_blocks(text) if preserve_code else (text, [])
        prompt = SUMMARIZE_PROMPT.format(
            format_instruction=FORMAT_INSTRUCTIONS.get(format, FORMAT_INSTRUCTIONS["paragraph"]),
            max_length=max_length,
            content=to_send,
        )

        try:
            summary = (await self.service.generate(prompt)).strip()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Summarization failed, falling back to truncation: %s", exc)
            return _fallback(text, max_length, original_tokens)

        if not summary:
            logger.warning("Summarizer returned an empty response, falling back to truncation")
            return _fallback(text, max_length, original_tokens)

        if blocks:
            summary = restore_code_blocks(summary, blocks)

        summary_tokens = estimate_tokens(summary)
        logger.debug("Compressed %d -> %d tokens", original_tokens, summary_tokens)
        return CompressionResult(
            summary=summary,
            original_tokens=original_tokens,
            summary_tokens=summary_tokens,
            compression_ratio=original_tokens / summary_tokens,
            method="summary",
        )

    async def compress_to_limit(
        self,
        text: str,
        token_limit: int,
        *,
        preserve_code: bool = True,
        format: SummaryFormat = "paragraph",  # noqa: A002
    ) -> CompressionResult:
        """Compress only when *text* exceeds *token_limit*, aiming at 80% of it."""
        tokens = estimate_tokens(text)
        if tokens <= token_limit:
            return CompressionResult(
                summary=text,
                original_tokens=tokens,
                summary_tokens=tokens,
                compression_ratio=1,
                method="passthrough",
            )
        return await self.compress(
            text,
            max_length=math.floor(token_limit * LIMIT_HEADROOM),
            preserve_code=preserve_code,
            format=format,
        )

    async def compress_if_needed(
        self,
        text: str,
        token_limit: int,
        *,
        preserve_code: bool = True,
        format: SummaryFormat = "paragraph",  # noqa: A002
    ) -> str:
        result = await self.compress_to_limit(
            text, token_limit, preserve_code=preserve_code, format=format
        )
        return result.summary

    async def extract_key_points(self, text: str) -> list[str]:
        """Ask the summarizer for a bullet list and return the bare points."""
        if estimate_tokens(text) < KEY_POINTS_MIN_TOKENS:
            return [text.strip()]

        fallback = [text[:KEY_POINTS_FALLBACK_CHARS] + "..."]
        if self.service is None:
            return fallback

        try:
            response = await self.service.generate(EXTRACT_PROMPT.format(content=text))
        except Exception as exc:  # noqa: BLE001
            logger.warning("Key point extraction failed: %s", exc)
            return fallback

        points = [_BULLET_RE.sub("", line).strip() for line in response.strip().splitlines()]
        points = [p for p in points if p]
        return points or fallback

    async def is_available(self) -> bool:
        """Advisory reachability probe; never raises."""
        if self.service is None:
            return False
        try:
            return await self.service.ping()
        except Exception as exc:  # noqa: BLE001
            logger.debug("Summarizer probe failed: %s", exc)
            return False
