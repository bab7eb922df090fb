"""Tests for Settings configuration model."""

from pathlib import Path

import pytest

from contextkeeper.config import Settings


class TestGetEmbeddingModels:
    def test_parses_comma_separated(self):
        s = Settings(embedding_models="nomic-embed-text,all-minilm")
        assert s.get_embedding_models() == ["nomic-embed-text", "all-minilm"]

    def test_handles_spaces(self):
        s = Settings(embedding_models=" nomic-embed-text , mxbai-embed ")
        assert s.get_embedding_models() == ["nomic-embed-text", "mxbai-embed"]

    def test_empty_string_returns_empty_list(self):
        s = Settings(embedding_models="")
        assert s.get_embedding_models() == []

    def test_default_preference_order(self):
        s = Settings()
        assert s.get_embedding_models() == ["nomic-embed-text", "mxbai-embed", "all-minilm"]


class TestDefaults:
    def test_default_ollama_host(self):
        s = Settings()
        assert s.ollama_host == "http://localhost:11434"

    def test_default_summarizer_backend(self):
        s = Settings()
        assert s.summarizer_backend == "ollama"

    def test_default_probe_timeout(self):
        s = Settings()
        assert s.probe_timeout == 2.0

    def test_default_storage_paths(self):
        s = Settings()
        assert s.database_path == Path("data/memory.db")
        assert s.sessions_dir == Path("data/sessions")

    def test_default_session_limits(self):
        s = Settings()
        assert s.session_max_tokens == 8000
        assert s.session_keep_recent == 10
        assert s.session_auto_save is True

    def test_default_pipeline_settings(self):
        s = Settings()
        assert s.pipeline_target == "ollama"
        assert s.pipeline_summarize_threshold == 2000
        assert s.pipeline_max_injection_tokens == 4000


class TestEnvironmentIgnoredUnderPytest:
    def test_env_var_does_not_leak_in(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("OLLAMA_HOST", "http://elsewhere:1234")
        assert Settings().ollama_host == "http://localhost:11434"


class TestExtraForbidden:
    def test_unknown_field_raises(self):
        with pytest.raises(ValueError, match="extra_forbidden"):
            Settings(**{"nonexistent_field": "value"})
