"""Shared test fixtures."""

from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from contextkeeper.context.compressor import Compressor
from contextkeeper.memory.sessions import SessionStore
from contextkeeper.memory.store import MemoryStore


@pytest.fixture
def service() -> AsyncMock:
    """A reachable summarization service that answers with a fixed summary."""
    svc = AsyncMock()
    svc.generate.return_value = "A short summary."
    svc.ping.return_value = True
    return svc


@pytest.fixture
def compressor(service: AsyncMock) -> Compressor:
    return Compressor(service)


@pytest.fixture
def offline_compressor() -> Compressor:
    """A compressor with no summarization service at all."""
    return Compressor(None)


@pytest.fixture
def sessions(tmp_path: Path) -> SessionStore:
    """A SessionStore rooted in a temporary directory, without a summarizer."""
    return SessionStore(sessions_dir=tmp_path / "sessions")


@pytest.fixture
async def store(tmp_path: Path) -> MemoryStore:
    """A keyword-only MemoryStore backed by a temp database."""
    return MemoryStore(db_path=tmp_path / "test.db")
