"""Ranked, token-bounded retrieval over the memory store."""

from __future__ import annotations

import logging
import math
from typing import TYPE_CHECKING, Literal

from pydantic import BaseModel

from contextkeeper.context.tokens import estimate_tokens
from contextkeeper.memory.models import MEMORY_TYPES, MemoryItem, MemoryType, SearchResult

if TYPE_CHECKING:
    from collections.abc import Iterable

    from contextkeeper.memory.store import MemoryStore

logger = logging.getLogger(__name__)

RetrievalMethod = Literal["vector", "keyword", "recency"]

DEFAULT_LIMIT = 10
DEFAULT_MIN_SCORE = 0.1
DEFAULT_MAX_TOKENS = 4000
CONTEXT_LIMIT = 20

# Score given to items included only because they are recent.
RECENCY_SCORE = 0.05


class RetrievalResult(BaseModel):
    items: list[MemoryItem]
    total_tokens: int
    method: RetrievalMethod


class ContextBundle(BaseModel):
    items: list[MemoryItem]
    total_tokens: int
    breakdown: dict[str, int]


def pack_tokens(items: Iterable[MemoryItem], max_tokens: int) -> tuple[list[MemoryItem], int]:
    """Take items in order until the next one would exceed *max_tokens*."""
    packed: list[MemoryItem] = []
    total = 0
    for item in items:
        tokens = estimate_tokens(item.content)
        if total + tokens > max_tokens:
            break
        packed.append(item)
        total += tokens
    return packed, total


class Retriever:
    def __init__(self, store: MemoryStore) -> None:
        self._store = store

    async def retrieve(  # noqa: PLR0913
        self,
        query: str,
        *,
        limit: int = DEFAULT_LIMIT,
        types: list[MemoryType] | None = None,
        include_recent: bool = True,
        min_score: float = DEFAULT_MIN_SCORE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ) -> RetrievalResult:
        """Search, rank, backfill with recent items, then pack into *max_tokens*.

        With *types*, each type is searched separately with an even share of
        *limit*. Items found more than once keep their best score.
        """
        per_search = math.ceil(limit / len(types)) if types else limit
        searches = [(t, per_search) for t in types] if types else [(None, limit)]

        best: dict[int | None, SearchResult] = {}
        unidentified: list[SearchResult] = []
        all_vector = True
        for memory_type, search_limit in searches:
            outcome = await self._store.search(query, memory_type, search_limit)
            all_vector = all_vector and outcome.method == "vector"
            for result in outcome.results:
                if result.item.id is None:
                    unidentified.append(result)
                    continue
                current = best.get(result.item.id)
                if current is None or result.score > current.score:
                    best[result.item.id] = result

        ranked = [r for r in [*best.values(), *unidentified] if r.score >= min_score]
        ranked.sort(key=lambda r: r.score, reverse=True)

        if include_recent and len(ranked) < limit:
            seen = {r.item.id for r in ranked}
            for memory_type in types or [None]:
                room = limit - len(ranked)
                if room <= 0:
                    break
                for item in await self._store.get_recent(memory_type, room):
                    if item.id not in seen:
                        ranked.append(SearchResult(item=item, score=RECENCY_SCORE))
                        seen.add(item.id)

        items, total = pack_tokens((r.item for r in ranked[:limit]), max_tokens)
        method: RetrievalMethod = "vector" if all_vector else "keyword"
        logger.debug("Retrieved %d items (%d tokens) via %s", len(items), total, method)
        return RetrievalResult(items=items, total_tokens=total, method=method)

    async def retrieve_by_type(
        self,
        type: MemoryType,  # noqa: A002
        limit: int = DEFAULT_LIMIT,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ) -> RetrievalResult:
        """Most recent items of one type, no query involved."""
        recent = await self._store.get_recent(type, limit)
        items, total = pack_tokens(recent, max_tokens)
        return RetrievalResult(items=items, total_tokens=total, method="recency")

    # -- Per-type wrappers -----------------------------------------------------

    async def retrieve_conversation_context(
        self, query: str, *, limit: int = DEFAULT_LIMIT, max_tokens: int = DEFAULT_MAX_TOKENS
    ) -> RetrievalResult:
        return await self.retrieve(
            query, limit=limit, max_tokens=max_tokens, types=["conversation"], include_recent=True
        )

    async def retrieve_code_context(
        self, query: str, *, limit: int = DEFAULT_LIMIT, max_tokens: int = DEFAULT_MAX_TOKENS
    ) -> RetrievalResult:
        return await self.retrieve(
            query, limit=limit, max_tokens=max_tokens, types=["code"], include_recent=False
        )

    async def retrieve_decision_context(
        self, query: str, *, limit: int = DEFAULT_LIMIT, max_tokens: int = DEFAULT_MAX_TOKENS
    ) -> RetrievalResult:
        return await self.retrieve(
            query, limit=limit, max_tokens=max_tokens, types=["decision"], include_recent=True
        )

    async def retrieve_pattern_context(
        self, query: str, *, limit: int = DEFAULT_LIMIT, max_tokens: int = DEFAULT_MAX_TOKENS
    ) -> RetrievalResult:
        """User preferences are always relevant, so no score floor applies."""
        return await self.retrieve(
            query,
            limit=limit,
            max_tokens=max_tokens,
            types=["pattern"],
            include_recent=True,
            min_score=0,
        )

    # -- Combined --------------------------------------------------------------

    async def build_context(
        self,
        query: str,
        *,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        include_conversation: bool = True,
        include_code: bool = True,
        include_decisions: bool = True,
        include_patterns: bool = True,
    ) -> ContextBundle:
        """One retrieval across the enabled categories under a shared budget."""
        types: list[MemoryType] = []
        if include_conversation:
            types.append("conversation")
        if include_code:
            types.append("code")
        if include_decisions:
            types.append("decision")
        if include_patterns:
            types.append("pattern")

        breakdown = dict.fromkeys(MEMORY_TYPES, 0)
        if not types:
            return ContextBundle(items=[], total_tokens=0, breakdown=breakdown)

        result = await self.retrieve(query, types=types, max_tokens=max_tokens, limit=CONTEXT_LIMIT)
        for item in result.items:
            breakdown[item.type] += 1
        return ContextBundle(
            items=result.items, total_tokens=result.total_tokens, breakdown=breakdown
        )
