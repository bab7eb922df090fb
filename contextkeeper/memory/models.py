"""Data models for long-term memory storage and retrieval."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, get_args

from pydantic import BaseModel, ConfigDict, Field

MemoryType = Literal["conversation", "code", "decision", "pattern", "context"]
MEMORY_TYPES: tuple[str, ...] = get_args(MemoryType)

SearchMethod = Literal["vector", "keyword"]


class MemoryItem(BaseModel):
    """A stored memory record. Content never changes after insert."""

    model_config = ConfigDict(frozen=True)

    id: int | None = None
    type: MemoryType
    content: str
    metadata: dict[str, Any] | None = None
    embedding: list[float] | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class SearchResult(BaseModel):
    item: MemoryItem
    score: float


class SearchOutcome(BaseModel):
    """Search results tagged with the method that actually produced them."""

    results: list[SearchResult] = Field(default_factory=list)
    method: SearchMethod


class MemoryStats(BaseModel):
    total: int
    by_type: dict[str, int]
    has_vector_search: bool
