"""MemoryRuntime: builds and owns every component of the context/memory stack."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from contextkeeper.config import Settings, settings as default_settings
from contextkeeper.context.compressor import Compressor
from contextkeeper.context.pipeline_memory import PipelineMemory
from contextkeeper.llm.client import AnthropicSummarizer
from contextkeeper.llm.ollama import OllamaClient
from contextkeeper.memory.embeddings import EmbeddingProvider
from contextkeeper.memory.injector import Injector
from contextkeeper.memory.retriever import Retriever
from contextkeeper.memory.sessions import SessionStore
from contextkeeper.memory.store import MemoryStore

if TYPE_CHECKING:
    from pathlib import Path

    from contextkeeper.context.compressor import SummarizationService

logger = logging.getLogger(__name__)

SUMMARIZER_BACKENDS = ("ollama", "anthropic")


class MemoryRuntime:
    """Wires service clients, caches and stores together.

    Singleton accessed via ``MemoryRuntime.get()``. Pass explicit *db_path* and
    *sessions_dir* for test isolation.
    """

    _instance: MemoryRuntime | None = None

    def __init__(
        self,
        config: Settings | None = None,
        *,
        db_path: Path | None = None,
        sessions_dir: Path | None = None,
    ) -> None:
        self.settings = config or default_settings
        s = self.settings

        self.ollama = OllamaClient(
            s.ollama_host,
            model=s.summary_model,
            enabled=s.ollama_enabled,
            probe_timeout=s.probe_timeout,
            request_timeout=s.request_timeout,
        )
        self.summarizer = self._build_summarizer()
        self.compressor = Compressor(self.summarizer)
        self.embeddings = EmbeddingProvider(
            self.ollama if s.ollama_enabled else None,
            s.get_embedding_models(),
        )
        self.store = MemoryStore(db_path or s.database_path, self.embeddings)
        self.sessions = SessionStore(sessions_dir or s.sessions_dir, self.compressor)
        self.pipeline = PipelineMemory(self.compressor)
        self.retriever = Retriever(self.store)
        self.injector = Injector(self.retriever)
        self._initialised = False

    @classmethod
    def get(cls) -> MemoryRuntime:
        """Return the shared runtime instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def _reset(cls) -> None:
        """Reset the singleton (for testing)."""
        cls._instance = None

    def _build_summarizer(self) -> SummarizationService:
        backend = self.settings.summarizer_backend.lower()
        if backend not in SUMMARIZER_BACKENDS:
            msg = f"Unknown summarizer backend {backend!r}; expected one of {SUMMARIZER_BACKENDS}"
            raise ValueError(msg)
        if backend == "anthropic":
            return AnthropicSummarizer(
                self.settings.anthropic_api_key,
                model=self.settings.anthropic_summary_model,
                probe_timeout=self.settings.probe_timeout,
            )
        return self.ollama

    @property
    def initialised(self) -> bool:
        return self._initialised

    async def initialize(self) -> None:
        """Detect the embedding provider and create the store schema."""
        if self._initialised:
            return
        await self.embeddings.initialize()
        await self.store.initialize()
        self._initialised = True
        logger.info(
            "Memory runtime ready (summarizer=%s, search=%s)",
            self.settings.summarizer_backend,
            self.embeddings.name,
        )

    async def shutdown(self) -> None:
        """Drop cached provider detection; a later ``initialize`` re-probes."""
        self.embeddings.reset()
        self._initialised = False
        logger.info("Memory runtime shut down")
