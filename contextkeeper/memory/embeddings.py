"""Optional semantic embeddings via a local Ollama server.

Keyword search is always available; embeddings are layered on top only when
an embedding model is installed. Detection runs once per provider instance
and is cached until ``reset()``.
"""

from __future__ import annotations

import logging
import math
import struct
from typing import TYPE_CHECKING

from contextkeeper.llm.ollama import OllamaError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from contextkeeper.llm.ollama import OllamaClient

logger = logging.getLogger(__name__)

# Preferred models, matched by name prefix so tagged variants count.
DEFAULT_EMBEDDING_MODELS = ("nomic-embed-text", "mxbai-embed", "all-minilm")


class EmbeddingProvider:
    """Detects an installed embedding model and embeds text with it.

    ``embed`` and ``embed_batch`` never raise; failures come back as ``None``.
    """

    def __init__(
        self,
        client: OllamaClient | None,
        models: Sequence[str] = DEFAULT_EMBEDDING_MODELS,
    ) -> None:
        self._client = client
        self._models = tuple(models)
        self._available: bool | None = None
        self._model: str | None = None

    @property
    def available(self) -> bool:
        return bool(self._available)

    @property
    def model(self) -> str | None:
        return self._model

    @property
    def name(self) -> str:
        return "ollama" if self.available else "fts5"

    async def initialize(self) -> bool:
        """Probe the model list once and cache whether embeddings are usable."""
        if self._available is not None:
            return self._available

        self._available = False
        if self._client is None or not self._models:
            return False

        try:
            installed = await self._client.list_models()
        except OllamaError as exc:
            logger.info("Embeddings unavailable, using keyword search only: %s", exc)
            return False

        for preferred in self._models:
            found = next((name for name in installed if name.startswith(preferred)), None)
            if found:
                self._model = found
                self._available = True
                logger.info("Using embedding model %s", found)
                break
        else:
            logger.info("No embedding model installed, using keyword search only")

        return self._available

    def reset(self) -> None:
        """Forget the cached detection so the next ``initialize`` probes again."""
        self._available = None
        self._model = None

    async def embed(self, text: str) -> list[float] | None:
        if not self.available or self._client is None or self._model is None:
            return None
        try:
            vectors = await self._client.embed(text, model=self._model)
        except OllamaError as exc:
            logger.warning("Embedding failed: %s", exc)
            return None
        return vectors[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float] | None]:
        if not texts:
            return []
        if not self.available or self._client is None or self._model is None:
            return [None] * len(texts)
        try:
            return list(await self._client.embed(texts, model=self._model))
        except OllamaError as exc:
            logger.warning("Batch embedding failed: %s", exc)
            return [None] * len(texts)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine of the angle between *a* and *b*; ``0.0`` if either is all zeros."""
    if len(a) != len(b):
        msg = f"Vectors must have the same length ({len(a)} != {len(b)})"
        raise ValueError(msg)

    dot = sum(x * y for x, y in zip(a, b, strict=True))
    magnitude = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    if magnitude == 0:
        return 0.0
    return dot / magnitude


def encode_embedding(vector: Sequence[float]) -> bytes:
    """Pack as little-endian float32."""
    return struct.pack(f"<{len(vector)}f", *vector)


def decode_embedding(blob: bytes) -> list[float]:
    if len(blob) % 4:
        msg = f"Embedding blob length {len(blob)} is not a multiple of 4"
        raise ValueError(msg)
    return list(struct.unpack(f"<{len(blob) // 4}f", blob))
