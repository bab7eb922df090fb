"""SessionStore: durable per-agent conversation history.

One JSON document per session under the sessions directory. Once a session's
running token total crosses its ceiling, the oldest turns are folded into a
rolling summary and only the most recent turns are kept verbatim.
"""

from __future__ import annotations

import logging
import math
import os
import re
import secrets
import tempfile
import time
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Literal, get_args

from pydantic import BaseModel, ConfigDict, Field

from contextkeeper.config import settings
from contextkeeper.context.tokens import CHARS_PER_TOKEN, estimate_tokens

if TYPE_CHECKING:
    from contextkeeper.context.compressor import Compressor

logger = logging.getLogger(__name__)

MessageRole = Literal["user", "assistant", "system"]

PREVIEW_CHARS = 100
SUMMARY_BUDGET_SHARE = 0.3

_SAFE_ID_RE = re.compile(r"^[A-Za-z0-9_\-]+$")
_UNSAFE_AGENT_RE = re.compile(r"[^A-Za-z0-9\-]")


class Message(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: MessageRole
    content: str
    tokens: int
    timestamp: datetime


class AgentSession(BaseModel):
    """A conversation with one agent: rolling summary plus recent turns.

    ``message_count`` counts every message ever appended, including the ones
    since folded into ``summary``.
    """

    id: str
    agent: str
    messages: list[Message] = Field(default_factory=list)
    summary: str = ""
    summary_tokens: int = 0
    total_tokens: int = 0
    message_count: int = 0
    created_at: datetime
    updated_at: datetime


class SessionMeta(BaseModel):
    id: str
    agent: str
    message_count: int
    total_tokens: int
    created_at: datetime
    updated_at: datetime
    preview: str


class SessionConfig(BaseModel):
    max_tokens: int = Field(default_factory=lambda: settings.session_max_tokens)
    keep_recent_messages: int = Field(default_factory=lambda: settings.session_keep_recent)
    auto_save: bool = Field(default_factory=lambda: settings.session_auto_save)


class SessionStats(BaseModel):
    message_count: int
    total_tokens: int
    summary_tokens: int
    recent_tokens: int
    compression_ratio: float
    compactable: bool
    oldest_message: datetime | None
    newest_message: datetime | None


def generate_session_id(agent: str) -> str:
    """``<agent>_<hex millis>_<4 hex>``; unsafe agent characters become dashes."""
    millis = int(time.time() * 1000)
    return f"{_UNSAFE_AGENT_RE.sub('-', agent)}_{millis:x}_{secrets.token_hex(2)}"


def _now() -> datetime:
    return datetime.now(UTC)


def _preview(session: AgentSession) -> str:
    first_user = next((m for m in session.messages if m.role == "user"), None)
    source = (first_user.content if first_user else "") or session.summary
    if not source:
        return "(empty)"
    if len(source) > PREVIEW_CHARS:
        return source[:PREVIEW_CHARS] + "..."
    return source


def _meta(session: AgentSession) -> SessionMeta:
    return SessionMeta(
        id=session.id,
        agent=session.agent,
        message_count=session.message_count,
        total_tokens=session.total_tokens,
        created_at=session.created_at,
        updated_at=session.updated_at,
        preview=_preview(session),
    )


def _render_turns(messages: list[Message]) -> str:
    return "\n\n".join(f"{m.role}: {m.content}" for m in messages)


class SessionStore:
    """Reads and writes session documents.

    Pass an explicit *sessions_dir* for test isolation. The *compressor* is
    optional; without one (or when its service is unreachable) compaction
    falls back to plain truncation of the folded text.

    All file operations are synchronous and assume a single writer per
    session id.
    """

    def __init__(
        self,
        sessions_dir: Path | None = None,
        compressor: Compressor | None = None,
    ) -> None:
        self._dir = sessions_dir or settings.sessions_dir
        self._compressor = compressor

    @property
    def sessions_dir(self) -> Path:
        return self._dir

    def _path(self, session_id: str) -> Path | None:
        if not _SAFE_ID_RE.match(session_id):
            return None
        return self._dir / f"{session_id}.json"

    # -- CRUD ------------------------------------------------------------------

    def create(self, agent: str) -> AgentSession:
        """Start an empty session for *agent* and persist it immediately."""
        now = _now()
        session = AgentSession(
            id=generate_session_id(agent),
            agent=agent,
            created_at=now,
            updated_at=now,
        )
        self.save(session)
        logger.info("Created session %s", session.id)
        return session

    def load(self, session_id: str) -> AgentSession | None:
        """Return the stored session, or None if missing, unsafe or malformed."""
        path = self._path(session_id)
        if path is None or not path.is_file():
            return None
        try:
            return AgentSession.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable session file %s: %s", path.name, exc)
            return None

    def save(self, session: AgentSession) -> None:
        """Overwrite the session document atomically. ``OSError`` propagates."""
        path = self._path(session.id)
        if path is None:
            msg = f"Unsafe session id: {session.id!r}"
            raise ValueError(msg)

        self._dir.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self._dir, prefix=f".{session.id}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(session.model_dump_json(indent=2))
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def delete(self, session_id: str) -> bool:
        path = self._path(session_id)
        if path is None or not path.is_file():
            return False
        path.unlink()
        logger.info("Deleted session %s", session_id)
        return True

    def _load_all(self, agent: str | None = None) -> list[AgentSession]:
        """Every readable session (optionally for one agent), newest first."""
        if not self._dir.is_dir():
            return []

        sessions: list[AgentSession] = []
        for path in self._dir.glob("*.json"):
            session = self.load(path.stem)
            if session is None:
                continue
            if agent is not None and session.agent != agent:
                continue
            sessions.append(session)

        sessions.sort(key=lambda s: s.updated_at, reverse=True)
        return sessions

    def list_sessions(self, agent: str | None = None) -> list[SessionMeta]:
        """Summaries of every readable session, most recently updated first."""
        return [_meta(session) for session in self._load_all(agent)]

    def latest_or_create(self, agent: str) -> AgentSession:
        sessions = self._load_all(agent)
        if sessions:
            return sessions[0]
        return self.create(agent)

    # -- Conversation ----------------------------------------------------------

    async def append_message(
        self,
        session: AgentSession,
        role: MessageRole,
        content: str,
        config: SessionConfig | None = None,
    ) -> AgentSession:
        """Append a turn, compacting first if the total crosses ``max_tokens``."""
        if role not in get_args(MessageRole):
            msg = f"Invalid message role: {role!r}"
            raise ValueError(msg)
        config = config or SessionConfig()

        now = _now()
        tokens = estimate_tokens(content)
        session.messages.append(Message(role=role, content=content, tokens=tokens, timestamp=now))
        session.total_tokens += tokens
        session.message_count += 1
        session.updated_at = now

        if session.total_tokens > config.max_tokens:
            await self._compact(session, config)

        if config.auto_save:
            self.save(session)
        return session

    async def _compact(self, session: AgentSession, config: SessionConfig) -> None:
        split = max(0, len(session.messages) - config.keep_recent_messages)
        if split == 0:
            return

        old, recent = session.messages[:split], session.messages[split:]
        old_text = _render_turns(old)
        fold_input = (
            f"Previous summary:\n{session.summary}\n\nNew messages:\n{old_text}"
            if session.summary
            else old_text
        )

        recent_tokens = sum(m.tokens for m in recent)
        target = max(0, math.floor((config.max_tokens - recent_tokens) * SUMMARY_BUDGET_SHARE))
        truncated = fold_input[: target * CHARS_PER_TOKEN]

        summary = truncated
        if self._compressor is not None and await self._compressor.is_available():
            result = await self._compressor.compress_to_limit(fold_input, target)
            summary = truncated if result.method == "truncation" else result.summary

        session.messages = recent
        session.summary = summary
        session.summary_tokens = estimate_tokens(summary)
        session.total_tokens = session.summary_tokens + recent_tokens
        session.updated_at = _now()
        logger.info(
            "Compacted session %s: folded %d messages into %d summary tokens",
            session.id,
            len(old),
            session.summary_tokens,
        )

    def conversation_text(self, session: AgentSession, *, include_system: bool = False) -> str:
        parts: list[str] = []
        if session.summary:
            parts.append(f"<conversation_summary>\n{session.summary}\n</conversation_summary>")
        parts.extend(
            f"{m.role}: {m.content}"
            for m in session.messages
            if include_system or m.role != "system"
        )
        return "\n\n".join(parts)

    def search(self, keyword: str, agent: str | None = None) -> list[SessionMeta]:
        """Full scan: sessions whose messages or summary contain *keyword*."""
        needle = keyword.lower()
        matches: list[SessionMeta] = []
        for session in self._load_all(agent):
            if needle in session.summary.lower() or any(
                needle in m.content.lower() for m in session.messages
            ):
                matches.append(_meta(session))
        return matches

    def stats(self, session: AgentSession, config: SessionConfig | None = None) -> SessionStats:
        config = config or SessionConfig()
        recent_tokens = sum(m.tokens for m in session.messages)
        timestamps = [m.timestamp for m in session.messages]

        ratio = 0.0
        if session.summary_tokens > 0:
            folded = session.total_tokens - recent_tokens + session.summary_tokens
            ratio = 1 - session.summary_tokens / folded

        return SessionStats(
            message_count=session.message_count,
            total_tokens=session.total_tokens,
            summary_tokens=session.summary_tokens,
            recent_tokens=recent_tokens,
            compression_ratio=ratio,
            compactable=len(session.messages) > config.keep_recent_messages,
            oldest_message=min(timestamps) if timestamps else None,
            newest_message=max(timestamps) if timestamps else None,
        )

    def clear_history(self, session: AgentSession) -> AgentSession:
        """Drop all turns and the summary but keep the session's identity."""
        session.messages = []
        session.summary = ""
        session.summary_tokens = 0
        session.total_tokens = 0
        session.message_count = 0
        session.updated_at = _now()
        self.save(session)
        return session
