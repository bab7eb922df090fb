"""Clients for the external summarization and embedding services."""

from contextkeeper.llm.client import AnthropicSummarizer, SummarizerError
from contextkeeper.llm.ollama import OllamaClient, OllamaError

__all__ = [
    "AnthropicSummarizer",
    "OllamaClient",
    "OllamaError",
    "SummarizerError",
]
