"""Hypnos configuration module."""

from hypnos.config.settings import (
    EmbeddingSettings,
    EngineSettings,
    LoggingSettings,
    Settings,
    SleepSettings,
    StorageSettings,
    SummarizerSettings,
)

__all__ = [
    "Settings",
    "StorageSettings",
    "EngineSettings",
    "SleepSettings",
    "EmbeddingSettings",
    "SummarizerSettings",
    "LoggingSettings",
]
