"""Anthropic-backed summarization service.

An alternative to the local Ollama summarizer for hosts without a local
model. Embeddings are not available through this backend.
"""

from __future__ import annotations

import logging

import anthropic

from contextkeeper.config import settings

logger = logging.getLogger(__name__)


class SummarizerError(Exception):
    """The hosted summarization call failed."""


class AnthropicSummarizer:
    """Single-shot Claude calls: no tools, no memory, no streaming."""

    def __init__(
        self,
        api_key: str | None = None,
        *,
        model: str | None = None,
        max_tokens: int = 1024,
        probe_timeout: float | None = None,
    ) -> None:
        self._api_key = api_key if api_key is not None else settings.anthropic_api_key
        self.model = model or settings.anthropic_summary_model
        self.max_tokens = max_tokens
        self.probe_timeout = probe_timeout or settings.probe_timeout
        self._client: anthropic.AsyncAnthropic | None = None

    def _get_client(self) -> anthropic.AsyncAnthropic:
        """Lazily initialize the Anthropic client."""
        if self._client is None:
            self._client = anthropic.AsyncAnthropic(api_key=self._api_key)
        return self._client

    async def generate(self, prompt: str) -> str:
        if not self._api_key:
            msg = "ANTHROPIC_API_KEY is not configured"
            raise SummarizerError(msg)

        client = self._get_client()
        try:
            response = await client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                messages=[{"role": "user", "content": prompt}],
            )
        except anthropic.APIError as exc:
            msg = f"Anthropic summarization failed: {exc}"
            raise SummarizerError(msg) from exc

        return "".join(block.text for block in response.content if block.type == "text")

    async def ping(self) -> bool:
        """Cheap liveness check: list a single model with the probe timeout."""
        if not self._api_key:
            return False
        client = self._get_client().with_options(timeout=self.probe_timeout)
        try:
            await client.models.list(limit=1)
        except anthropic.APIError as exc:
            logger.debug("Anthropic not reachable: %s", exc)
            return False
        return True
