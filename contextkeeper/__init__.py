"""Token budgeting, compression, session history and long-term memory for LLM prompts."""

__version__ = "0.1.0"
