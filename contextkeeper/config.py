"""Application settings loaded from environment variables."""

import logging
import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _env_file() -> str | None:
    if os.getenv("PYTEST_CURRENT_TEST"):
        return None
    return ".env"


class Settings(BaseSettings):
    """contextkeeper configuration. All values come from environment variables."""

    # Ollama (summarization + embeddings)
    ollama_host: str = Field(default="http://localhost:11434")
    ollama_enabled: bool = Field(default=True)
    summary_model: str = Field(default="llama3.2")
    embedding_models: str = Field(default="nomic-embed-text,mxbai-embed,all-minilm")

    # Summarizer backend: "ollama" or "anthropic"
    summarizer_backend: str = Field(default="ollama")
    anthropic_api_key: str = Field(default="")
    anthropic_summary_model: str = Field(default="claude-3-5-haiku-latest")

    # Timeouts (seconds)
    probe_timeout: float = Field(default=2.0)
    request_timeout: float = Field(default=120.0)

    # Storage
    data_dir: Path = Field(default=Path("data"))
    sessions_dir: Path = Field(default=Path("data/sessions"))
    database_path: Path = Field(default=Path("data/memory.db"))

    # Sessions
    session_max_tokens: int = Field(default=8000)
    session_keep_recent: int = Field(default=10)
    session_auto_save: bool = Field(default=True)

    # Pipeline memory
    pipeline_target: str = Field(default="ollama")
    pipeline_summarize_threshold: int = Field(default=2000)
    pipeline_max_injection_tokens: int = Field(default=4000)

    # Logging
    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(env_file=_env_file(), env_file_encoding="utf-8")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        if os.getenv("PYTEST_CURRENT_TEST"):
            return (init_settings,)
        return (init_settings, env_settings, dotenv_settings, file_secret_settings)

    def get_embedding_models(self) -> list[str]:
        """Parse EMBEDDING_MODELS into an ordered list of model name prefixes."""
        if not self.embedding_models.strip():
            return []
        return [name.strip() for name in self.embedding_models.split(",") if name.strip()]


def configure_logging(level: str | None = None) -> None:
    """Apply the standard log format at the configured level."""
    logging.basicConfig(
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        level=getattr(logging, (level or settings.log_level).upper(), logging.INFO),
    )


settings = Settings()
