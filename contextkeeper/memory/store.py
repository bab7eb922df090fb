"""MemoryStore: aiosqlite-backed long-term memory with keyword and vector search.

Keyword search (SQLite FTS5, bm25 ranking) always works. When an embedding
provider is active, each record's embedding is also mirrored into a
``memory_vectors`` table and searched by cosine similarity; any failure on that
path falls back to keyword search.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import aiosqlite
from pydantic import ValidationError

from contextkeeper.config import settings
from contextkeeper.memory.embeddings import (
    cosine_similarity,
    decode_embedding,
    encode_embedding,
)
from contextkeeper.memory.models import (
    MEMORY_TYPES,
    MemoryItem,
    MemoryStats,
    MemoryType,
    SearchOutcome,
    SearchResult,
)

if TYPE_CHECKING:
    from pathlib import Path

    from contextkeeper.memory.embeddings import EmbeddingProvider

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 10

_NON_WORD_RE = re.compile(r"[^\w\s]")

_CREATE_SCHEMA = """
CREATE TABLE IF NOT EXISTS memory (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    type TEXT NOT NULL,
    content TEXT NOT NULL,
    metadata TEXT,
    embedding BLOB,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_memory_type ON memory(type);
CREATE INDEX IF NOT EXISTS idx_memory_created ON memory(created_at DESC);

CREATE VIRTUAL TABLE IF NOT EXISTS memory_fts USING fts5(
    content,
    type,
    content='memory',
    content_rowid='id',
    tokenize='porter unicode61'
);

CREATE TRIGGER IF NOT EXISTS memory_ai AFTER INSERT ON memory BEGIN
    INSERT INTO memory_fts(rowid, content, type) VALUES (new.id, new.content, new.type);
END;

CREATE TRIGGER IF NOT EXISTS memory_ad AFTER DELETE ON memory BEGIN
    INSERT INTO memory_fts(memory_fts, rowid, content, type)
    VALUES ('delete', old.id, old.content, old.type);
END;

CREATE TRIGGER IF NOT EXISTS memory_au AFTER UPDATE ON memory BEGIN
    INSERT INTO memory_fts(memory_fts, rowid, content, type)
    VALUES ('delete', old.id, old.content, old.type);
    INSERT INTO memory_fts(rowid, content, type) VALUES (new.id, new.content, new.type);
END;
"""

_CREATE_VECTORS = """
CREATE TABLE IF NOT EXISTS memory_vectors (
    memory_id INTEGER PRIMARY KEY,
    type TEXT NOT NULL,
    content TEXT NOT NULL,
    vector BLOB NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TRIGGER IF NOT EXISTS memory_vectors_ad AFTER DELETE ON memory BEGIN
    DELETE FROM memory_vectors WHERE memory_id = old.id;
END;
"""


def _fts_query(query: str) -> str:
    """Reduce free text to quoted FTS5 terms so operators are never parsed."""
    terms = _NON_WORD_RE.sub(" ", query).split()
    return " ".join(f'"{term}"' for term in terms)


def _row_to_item(row: aiosqlite.Row) -> MemoryItem | None:
    """Build an item from a row, or None when the stored row is malformed."""
    metadata = None
    if row["metadata"]:
        try:
            metadata = json.loads(row["metadata"])
        except ValueError:
            logger.warning("Ignoring malformed metadata on memory %s", row["id"])
    try:
        return MemoryItem(
            id=row["id"],
            type=row["type"],
            content=row["content"],
            metadata=metadata,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
    except ValidationError as exc:
        logger.warning("Skipping malformed memory %s: %s", row["id"], exc)
        return None


class MemoryStore:
    """Persists memory items in SQLite.

    Pass an explicit *db_path* for test isolation (e.g. ``tmp_path / "test.db"``).
    Without a *provider*, or with one that found no embedding model, the store
    is keyword-only.
    """

    def __init__(
        self,
        db_path: Path | None = None,
        provider: EmbeddingProvider | None = None,
    ) -> None:
        self._db_path = db_path or settings.database_path
        self._provider = provider
        self._initialised = False
        self._vectors_ready = False

    @property
    def has_vector_search(self) -> bool:
        return self._vectors_ready and self._provider is not None and self._provider.available

    # -- Internal helpers ------------------------------------------------------

    async def _connect(self) -> aiosqlite.Connection:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        db = await aiosqlite.connect(str(self._db_path))
        db.row_factory = aiosqlite.Row
        if not self._initialised:
            await db.executescript(_CREATE_SCHEMA)
            await db.commit()
            self._initialised = True
        if not self._vectors_ready and self._provider is not None and self._provider.available:
            await db.executescript(_CREATE_VECTORS)
            await db.commit()
            self._vectors_ready = True
            logger.info("Vector index enabled (%s)", self._provider.model)
        return db

    async def initialize(self) -> None:
        """Probe the embedding provider and create the schema now instead of on first use."""
        if self._provider is not None:
            await self._provider.initialize()
        db = await self._connect()
        await db.close()

    async def _ensure_ready(self) -> None:
        if self._provider is not None:
            await self._provider.initialize()
        pending_vectors = self._provider is not None and self._provider.available
        if not self._initialised or (pending_vectors and not self._vectors_ready):
            db = await self._connect()
            await db.close()

    # -- Writes ----------------------------------------------------------------

    async def add_memory(
        self,
        type: MemoryType,  # noqa: A002
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> int:
        """Insert a memory item and return its id.

        The embedding, when one can be computed, is stored on the record and
        mirrored into the vector index. A failed mirror is logged, not raised.
        """
        if type not in MEMORY_TYPES:
            msg = f"Unknown memory type: {type!r}"
            raise ValueError(msg)

        await self._ensure_ready()
        vector = await self._provider.embed(content) if self._provider is not None else None
        blob = encode_embedding(vector) if vector else None
        now = datetime.now(UTC).isoformat()

        db = await self._connect()
        try:
            cursor = await db.execute(
                """
                INSERT INTO memory (type, content, metadata, embedding, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (type, content, json.dumps(metadata) if metadata else None, blob, now, now),
            )
            await db.commit()
            memory_id = cursor.lastrowid

            if blob is not None and self._vectors_ready:
                try:
                    await db.execute(
                        """
                        INSERT OR REPLACE INTO memory_vectors
                            (memory_id, type, content, vector, created_at)
                        VALUES (?, ?, ?, ?, ?)
                        """,
                        (memory_id, type, content, blob, now),
                    )
                    await db.commit()
                except aiosqlite.Error as exc:
                    logger.warning("Vector index write failed for memory %s: %s", memory_id, exc)

            logger.debug("Added %s memory %s", type, memory_id)
            return memory_id
        finally:
            await db.close()

    async def delete_memory(self, memory_id: int) -> bool:
        """Delete a memory item. Returns True if a row was removed."""
        db = await self._connect()
        try:
            cursor = await db.execute("DELETE FROM memory WHERE id = ?", (memory_id,))
            await db.commit()
            return cursor.rowcount > 0
        finally:
            await db.close()

    # -- Search ----------------------------------------------------------------

    async def search_keyword(
        self,
        query: str,
        type: MemoryType | None = None,  # noqa: A002
        limit: int = DEFAULT_LIMIT,
    ) -> list[SearchResult]:
        """bm25-ranked full-text match. Empty or unusable queries give ``[]``."""
        match = _fts_query(query)
        if not match:
            return []

        sql = """
            SELECT m.*, bm25(memory_fts) AS score
            FROM memory_fts
            JOIN memory m ON memory_fts.rowid = m.id
            WHERE memory_fts MATCH ?
        """
        params: list[Any] = [match]
        if type is not None:
            sql += " AND m.type = ?"
            params.append(type)
        sql += " ORDER BY score LIMIT ?"
        params.append(limit)

        db = await self._connect()
        try:
            cursor = await db.execute(sql, params)
            rows = await cursor.fetchall()
        except aiosqlite.Error as exc:
            logger.warning("Keyword search failed for %r: %s", query, exc)
            return []
        finally:
            await db.close()

        results: list[SearchResult] = []
        for row in rows:
            item = _row_to_item(row)
            if item is not None:
                # bm25 is lower-is-better and usually negative.
                results.append(SearchResult(item=item, score=abs(row["score"])))
        return results

    async def search_vector(
        self,
        query: str,
        type: MemoryType | None = None,  # noqa: A002
        limit: int = DEFAULT_LIMIT,
    ) -> SearchOutcome:
        """Nearest neighbours by cosine distance, falling back to keyword search.

        The type filter is applied after the top *limit* are chosen, so a
        filtered search can return fewer than *limit* results.
        """
        await self._ensure_ready()
        if not self.has_vector_search:
            return await self._keyword_outcome(query, type, limit)

        query_vector = await self._provider.embed(query)
        if query_vector is None:
            return await self._keyword_outcome(query, type, limit)

        db = await self._connect()
        try:
            cursor = await db.execute(
                """
                SELECT m.*, v.vector AS vector
                FROM memory_vectors v
                JOIN memory m ON m.id = v.memory_id
                """
            )
            rows = await cursor.fetchall()
        except aiosqlite.Error as exc:
            logger.warning("Vector search failed, using keyword search: %s", exc)
            return await self._keyword_outcome(query, type, limit)
        finally:
            await db.close()

        neighbours: list[tuple[float, aiosqlite.Row]] = []
        try:
            for row in rows:
                similarity = cosine_similarity(query_vector, decode_embedding(row["vector"]))
                neighbours.append((1 - similarity, row))
        except ValueError as exc:
            logger.warning("Vector search failed, using keyword search: %s", exc)
            return await self._keyword_outcome(query, type, limit)

        neighbours.sort(key=lambda pair: pair[0])
        results: list[SearchResult] = []
        for distance, row in neighbours[:limit]:
            if type is not None and row["type"] != type:
                continue
            item = _row_to_item(row)
            if item is not None:
                results.append(SearchResult(item=item, score=1 - distance))
        return SearchOutcome(results=results, method="vector")

    async def _keyword_outcome(
        self,
        query: str,
        type: MemoryType | None,  # noqa: A002
        limit: int,
    ) -> SearchOutcome:
        results = await self.search_keyword(query, type, limit)
        return SearchOutcome(results=results, method="keyword")

    async def search(
        self,
        query: str,
        type: MemoryType | None = None,  # noqa: A002
        limit: int = DEFAULT_LIMIT,
    ) -> SearchOutcome:
        """Vector search when available, otherwise keyword search."""
        await self._ensure_ready()
        if self.has_vector_search:
            return await self.search_vector(query, type, limit)
        return await self._keyword_outcome(query, type, limit)

    # -- Listing / stats -------------------------------------------------------

    async def get_recent(
        self,
        type: MemoryType | None = None,  # noqa: A002
        limit: int = DEFAULT_LIMIT,
    ) -> list[MemoryItem]:
        """Most recently created items first."""
        sql = "SELECT * FROM memory"
        params: list[Any] = []
        if type is not None:
            sql += " WHERE type = ?"
            params.append(type)
        sql += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(limit)

        db = await self._connect()
        try:
            cursor = await db.execute(sql, params)
            rows = await cursor.fetchall()
            items = (_row_to_item(row) for row in rows)
            return [item for item in items if item is not None]
        finally:
            await db.close()

    async def get_memory(self, memory_id: int) -> MemoryItem | None:
        """Fetch one item, including its stored embedding."""
        db = await self._connect()
        try:
            cursor = await db.execute("SELECT * FROM memory WHERE id = ?", (memory_id,))
            row = await cursor.fetchone()
        finally:
            await db.close()
        item = _row_to_item(row) if row is not None else None
        if item is None:
            return None
        if row["embedding"]:
            try:
                embedding = decode_embedding(row["embedding"])
            except ValueError as exc:
                logger.warning("Ignoring malformed embedding on memory %s: %s", memory_id, exc)
            else:
                item = item.model_copy(update={"embedding": embedding})
        return item

    async def get_stats(self) -> MemoryStats:
        db = await self._connect()
        try:
            cursor = await db.execute("SELECT type, COUNT(*) AS count FROM memory GROUP BY type")
            rows = await cursor.fetchall()
        finally:
            await db.close()

        by_type = dict.fromkeys(MEMORY_TYPES, 0)
        for row in rows:
            if row["type"] in by_type:
                by_type[row["type"]] = row["count"]
        return MemoryStats(
            total=sum(by_type.values()),
            by_type=by_type,
            has_vector_search=self.has_vector_search,
        )
