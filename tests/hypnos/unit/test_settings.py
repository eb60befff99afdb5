"""Tests for Hypnos settings."""

import os
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from hypnos.config.settings import (
    EmbeddingSettings,
    EngineSettings,
    LoggingSettings,
    Settings,
    SleepSettings,
    StorageSettings,
    SummarizerSettings,
)
from hypnos.core.constants import SHORT_TERM_CAPACITY


class TestStorageSettings:
    """Test StorageSettings configuration."""

    def test_defaults(self):
        assert StorageSettings().db_path == "./data/hypnos/memory.db"

    def test_env_override(self):
        """Test environment variable override."""
        with patch.dict(os.environ, {"HYPNOS_STORAGE_DB_PATH": "/custom/memory.db"}):
            assert StorageSettings().db_path == "/custom/memory.db"


class TestEngineSettings:
    """Test EngineSettings configuration."""

    def test_defaults(self):
        settings = EngineSettings()
        assert settings.recency_half_life_days == 14.0
        assert settings.drift_probability == 0.03
        assert settings.neighbor_edge_threshold == 0.2
        assert settings.similarity_threshold == 0.35
        assert settings.short_term_capacity == SHORT_TERM_CAPACITY

    def test_env_override(self):
        with patch.dict(os.environ, {"HYPNOS_ENGINE_DRIFT_PROBABILITY": "0.5"}):
            assert EngineSettings().drift_probability == 0.5

    def test_bounds(self):
        with pytest.raises(ValidationError):
            EngineSettings(drift_probability=1.5)
        with pytest.raises(ValidationError):
            EngineSettings(recency_half_life_days=0.5)


class TestSleepSettings:
    """Test SleepSettings configuration."""

    def test_defaults(self):
        settings = SleepSettings()
        assert settings.window_start == "23:00"
        assert settings.window_end == "06:00"
        assert settings.budget_seconds_per_tick == 60.0
        assert settings.enabled is True

    @pytest.mark.parametrize("value", ["25:00", "7pm", "12:60", "1200"])
    def test_invalid_window(self, value):
        with pytest.raises(ValidationError):
            SleepSettings(window_start=value)

    def test_env_override(self):
        with patch.dict(os.environ, {"HYPNOS_SLEEP_WINDOW_END": "05:30", "HYPNOS_SLEEP_ENABLED": "false"}):
            settings = SleepSettings()
            assert settings.window_end == "05:30"
            assert settings.enabled is False


class TestBackendSettings:
    """Test embedding, summarizer and logging settings."""

    def test_embedding_defaults(self):
        settings = EmbeddingSettings()
        assert settings.backend == "hash"
        assert settings.model == "nomic-embed-text"
        assert settings.dimension == 768

    def test_sentence_transformers_defaults(self):
        settings = EmbeddingSettings(backend="sentence-transformers")
        assert settings.model == "all-MiniLM-L6-v2"
        assert settings.dimension == 384

    def test_explicit_model_kept_for_sentence_transformers(self):
        with patch.dict(os.environ, {"HYPNOS_EMBEDDING_BACKEND": "sentence-transformers",
                                     "HYPNOS_EMBEDDING_DIMENSION": "768"}):
            settings = EmbeddingSettings(model="all-mpnet-base-v2")
        assert settings.model == "all-mpnet-base-v2"
        assert settings.dimension == 768

    def test_unknown_backend_rejected(self):
        with pytest.raises(ValidationError):
            EmbeddingSettings(backend="word2vec")
        with pytest.raises(ValidationError):
            SummarizerSettings(backend="gpt")

    def test_logging_env_override(self):
        with patch.dict(os.environ, {"HYPNOS_LOGGING_LEVEL": "DEBUG", "HYPNOS_LOGGING_QUIET": "true"}):
            settings = LoggingSettings()
            assert settings.level == "DEBUG"
            assert settings.quiet is True


class TestRootSettings:
    """Test the root Settings object and its TOML source."""

    def test_defaults_without_config_file(self, temp_dir, monkeypatch):
        monkeypatch.chdir(temp_dir)
        settings = Settings()

        assert settings.storage.db_path == "./data/hypnos/memory.db"
        assert settings.summarizer.backend == "passthrough"

    def test_toml_file_loaded(self, temp_dir, monkeypatch):
        monkeypatch.chdir(temp_dir)
        (temp_dir / "configs").mkdir()
        (temp_dir / "configs" / "hypnos.toml").write_text(
            '[storage]\ndb_path = "/var/lib/hypnos.db"\n\n'
            '[sleep]\nwindow_start = "01:00"\nwindow_end = "04:00"\n'
        )

        settings = Settings()

        assert settings.storage.db_path == "/var/lib/hypnos.db"
        assert settings.sleep.window_start == "01:00"

    def test_init_overrides(self, temp_dir, monkeypatch):
        monkeypatch.chdir(temp_dir)
        settings = Settings(storage=StorageSettings(db_path=":memory:"))
        assert settings.storage.db_path == ":memory:"

    def test_engine_configuration(self, temp_dir, monkeypatch):
        monkeypatch.chdir(temp_dir)
        settings = Settings(
            engine=EngineSettings(drift_probability=0.1, similarity_threshold=0.5),
            sleep=SleepSettings(window_start="01:00", budget_seconds_per_tick=5.0),
        )

        configuration = settings.engine_configuration()

        assert configuration.drift_probability == 0.1
        assert configuration.similarity_threshold == 0.5
        assert configuration.sleep_window_start == "01:00"
        assert configuration.sleep_window_end == "06:00"
        assert configuration.sleep_budget_seconds_per_tick == 5.0
