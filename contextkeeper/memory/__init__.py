"""Durable memory: chat sessions, the searchable memory store and prompt injection."""

from contextkeeper.memory.embeddings import EmbeddingProvider
from contextkeeper.memory.injector import InjectionResult, Injector
from contextkeeper.memory.models import MemoryItem, MemoryStats, SearchOutcome, SearchResult
from contextkeeper.memory.retriever import ContextBundle, RetrievalResult, Retriever
from contextkeeper.memory.sessions import AgentSession, Message, SessionConfig, SessionStore
from contextkeeper.memory.store import MemoryStore

__all__ = [
    "AgentSession",
    "ContextBundle",
    "EmbeddingProvider",
    "InjectionResult",
    "Injector",
    "MemoryItem",
    "MemoryStats",
    "MemoryStore",
    "Message",
    "RetrievalResult",
    "Retriever",
    "SearchOutcome",
    "SearchResult",
    "SessionConfig",
    "SessionStore",
]
