"""Async client for a local Ollama server.

Covers the three calls the memory layer needs: model listing (also used as
the liveness probe), non-streaming generation for summaries, and embeddings.
Every response is validated against a schema; anything unexpected surfaces as
``OllamaError`` so callers can degrade in one place.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import BaseModel, Field, ValidationError

from contextkeeper.config import settings

logger = logging.getLogger(__name__)


class OllamaError(Exception):
    """The Ollama server was unreachable or returned something unusable."""


class OllamaModel(BaseModel):
    name: str


class TagsResponse(BaseModel):
    models: list[OllamaModel] = Field(default_factory=list)


class GenerateResponse(BaseModel):
    response: str


class EmbedResponse(BaseModel):
    embeddings: list[list[float]]


class OllamaClient:
    """Thin async wrapper over the Ollama HTTP API.

    A fresh ``httpx.AsyncClient`` is opened per call; the server is local and
    calls are infrequent enough that pooling is not worth holding state for.
    """

    def __init__(
        self,
        host: str | None = None,
        *,
        model: str | None = None,
        enabled: bool | None = None,
        probe_timeout: float | None = None,
        request_timeout: float | None = None,
    ) -> None:
        self.host = (host or settings.ollama_host).rstrip("/")
        self.model = model or settings.summary_model
        self.enabled = settings.ollama_enabled if enabled is None else enabled
        self.probe_timeout = probe_timeout or settings.probe_timeout
        self.request_timeout = request_timeout or settings.request_timeout

    async def _request(
        self,
        method: str,
        path: str,
        *,
        timeout: float,
        payload: dict[str, Any] | None = None,
    ) -> Any:
        if not self.enabled:
            msg = "Ollama is disabled"
            raise OllamaError(msg)

        try:
            async with httpx.AsyncClient(base_url=self.host, timeout=timeout) as client:
                resp = await client.request(method, path, json=payload)
        except httpx.TimeoutException as exc:
            msg = f"Timeout calling Ollama {path}"
            raise OllamaError(msg) from exc
        except httpx.HTTPError as exc:
            msg = f"Ollama request to {path} failed: {exc}"
            raise OllamaError(msg) from exc

        if resp.status_code != 200:
            msg = f"Ollama {path} returned {resp.status_code}: {resp.text[:200]}"
            raise OllamaError(msg)

        try:
            return resp.json()
        except ValueError as exc:
            msg = f"Ollama {path} returned invalid JSON"
            raise OllamaError(msg) from exc

    # -- Liveness / discovery --------------------------------------------------

    async def list_models(self) -> list[str]:
        """Return the names of locally installed models."""
        data = await self._request("GET", "/api/tags", timeout=self.probe_timeout)
        try:
            tags = TagsResponse.model_validate(data)
        except ValidationError as exc:
            msg = "Unexpected /api/tags response shape"
            raise OllamaError(msg) from exc
        return [m.name for m in tags.models]

    async def ping(self) -> bool:
        """Best-effort reachability check with the short probe timeout."""
        try:
            await self.list_models()
        except OllamaError as exc:
            logger.debug("Ollama not reachable: %s", exc)
            return False
        return True

    # -- Generation ------------------------------------------------------------

    async def generate(self, prompt: str, *, model: str | None = None) -> str:
        """Run a single non-streaming completion and return the response text."""
        data = await self._request(
            "POST",
            "/api/generate",
            timeout=self.request_timeout,
            payload={"model": model or self.model, "prompt": prompt, "stream": False},
        )
        try:
            return GenerateResponse.model_validate(data).response
        except ValidationError as exc:
            msg = "Unexpected /api/generate response shape"
            raise OllamaError(msg) from exc

    async def embed(self, inputs: str | list[str], *, model: str) -> list[list[float]]:
        """Embed one or many inputs. Returns one vector per input."""
        expected = 1 if isinstance(inputs, str) else len(inputs)
        data = await self._request(
            "POST",
            "/api/embed",
            timeout=self.request_timeout,
            payload={"model": model, "input": inputs},
        )
        try:
            vectors = EmbedResponse.model_validate(data).embeddings
        except ValidationError as exc:
            msg = "Unexpected /api/embed response shape"
            raise OllamaError(msg) from exc
        if len(vectors) != expected:
            msg = f"Expected {expected} embeddings, got {len(vectors)}"
            raise OllamaError(msg)
        return vectors
