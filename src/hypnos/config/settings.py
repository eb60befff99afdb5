"""Pydantic settings models for Hypnos configuration."""

from typing import Literal, Optional, Tuple, Type

from pydantic import Field, field_validator, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

from hypnos.core.constants import SHORT_TERM_CAPACITY
from hypnos.core.models import EngineConfiguration


class StorageSettings(BaseSettings):
    """SQLite storage configuration."""

    db_path: str = Field(
        default="./data/hypnos/memory.db",
        description="SQLite database file, or :memory:",
    )

    model_config = SettingsConfigDict(env_prefix="HYPNOS_STORAGE_")


class EngineSettings(BaseSettings):
    """Retrieval and association tunables."""

    recency_half_life_days: float = Field(
        default=14.0,
        ge=1.0,
        description="Days after which a memory's recency bias halves",
    )
    drift_probability: float = Field(
        default=0.03,
        ge=0.0,
        le=1.0,
        description="Chance per retrieval of injecting a high-importance memory",
    )
    neighbor_edge_threshold: float = Field(
        default=0.2,
        ge=0.0,
        le=1.0,
        description="Minimum edge weight followed during retrieval",
    )
    similarity_threshold: float = Field(
        default=0.35,
        ge=-1.0,
        le=1.0,
        description="Minimum cosine for automatic association edges",
    )
    short_term_capacity: int = Field(
        default=SHORT_TERM_CAPACITY,
        ge=1,
        description="Conversational turns held before an episode commit",
    )

    model_config = SettingsConfigDict(env_prefix="HYPNOS_ENGINE_")


class SleepSettings(BaseSettings):
    """Sleep consolidation schedule."""

    window_start: str = Field(default="23:00", description="Window start, HH:MM (inclusive)")
    window_end: str = Field(default="06:00", description="Window end, HH:MM (exclusive)")
    budget_seconds_per_tick: float = Field(
        default=60.0,
        gt=0.0,
        description="Synthesis time budget for one consolidation pass",
    )
    tick_interval_seconds: float = Field(
        default=900.0,
        gt=0.0,
        description="Seconds between background consolidation attempts",
    )
    enabled: bool = Field(
        default=True,
        description="Run the background sleep loop when serving",
    )

    model_config = SettingsConfigDict(env_prefix="HYPNOS_SLEEP_")

    @field_validator("window_start", "window_end")
    @classmethod
    def validate_clock(cls, v: str) -> str:
        """Require a 24-hour HH:MM time."""
        parts = v.split(":")
        if len(parts) != 2 or not all(p.isdigit() for p in parts):
            raise ValueError(f"Expected HH:MM, got {v!r}")
        hours, minutes = int(parts[0]), int(parts[1])
        if not (0 <= hours < 24 and 0 <= minutes < 60):
            raise ValueError(f"Time out of range: {v!r}")
        return v


# Model and dimension used when a backend is chosen without naming them
EMBEDDING_BACKEND_DEFAULTS = {
    "hash": ("nomic-embed-text", 768),
    "ollama": ("nomic-embed-text", 768),
    "sentence-transformers": ("all-MiniLM-L6-v2", 384),
}


class EmbeddingSettings(BaseSettings):
    """Embedding backend configuration."""

    backend: Literal["hash", "ollama", "sentence-transformers"] = Field(
        default="hash",
        description="Embedding backend: hash (offline), ollama, or sentence-transformers",
    )
    model: Optional[str] = Field(
        default=None,
        description="Model name; defaults to nomic-embed-text for ollama, all-MiniLM-L6-v2 for sentence-transformers",
    )
    base_url: str = Field(
        default="http://127.0.0.1:11434",
        description="Ollama server URL",
    )
    dimension: Optional[int] = Field(
        default=None,
        ge=1,
        description="Embedding dimension; defaults to 768, or 384 for sentence-transformers",
    )
    timeout: float = Field(default=30.0, gt=0.0, description="HTTP timeout in seconds")

    model_config = SettingsConfigDict(env_prefix="HYPNOS_EMBEDDING_")

    @model_validator(mode="after")
    def apply_backend_defaults(self) -> "EmbeddingSettings":
        """Fill in the model and dimension the chosen backend expects."""
        model, dimension = EMBEDDING_BACKEND_DEFAULTS[self.backend]
        if self.model is None:
            self.model = model
        if self.dimension is None:
            self.dimension = dimension
        return self


class SummarizerSettings(BaseSettings):
    """Semantic summarizer configuration."""

    backend: Literal["passthrough", "ollama"] = Field(
        default="passthrough",
        description="Summarizer backend: passthrough or ollama",
    )
    model: str = Field(default="llama3.2", description="Ollama generation model")
    base_url: str = Field(default="http://127.0.0.1:11434", description="Ollama server URL")
    timeout: float = Field(default=60.0, gt=0.0, description="HTTP timeout in seconds")

    model_config = SettingsConfigDict(env_prefix="HYPNOS_SUMMARIZER_")


class LoggingSettings(BaseSettings):
    """Logging configuration."""

    level: str = Field(
        default="INFO",
        description="Log level (DEBUG, INFO, WARNING, ERROR)",
    )
    quiet: bool = Field(
        default=False,
        description="Suppress stderr output (used when running as an MCP subprocess)",
    )
    output_file: Optional[str] = Field(
        default=None,
        description="Optional log file path",
    )
    format: Literal["text", "json"] = Field(
        default="text",
        description="File log format",
    )

    model_config = SettingsConfigDict(env_prefix="HYPNOS_LOGGING_")


class Settings(BaseSettings):
    """Root configuration for Hypnos."""

    storage: StorageSettings = Field(default_factory=StorageSettings)
    engine: EngineSettings = Field(default_factory=EngineSettings)
    sleep: SleepSettings = Field(default_factory=SleepSettings)
    embedding: EmbeddingSettings = Field(default_factory=EmbeddingSettings)
    summarizer: SummarizerSettings = Field(default_factory=SummarizerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    model_config = SettingsConfigDict(
        toml_file="configs/hypnos.toml",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        """Configure settings sources with TOML support.

        Priority (highest to lowest):
        1. Init settings (constructor arguments)
        2. Environment variables
        3. TOML config file
        4. Default values
        """
        return (
            init_settings,
            env_settings,
            TomlConfigSettingsSource(settings_cls),
        )

    def engine_configuration(self) -> EngineConfiguration:
        """Build the engine's runtime configuration."""
        return EngineConfiguration(
            recency_half_life_days=self.engine.recency_half_life_days,
            drift_probability=self.engine.drift_probability,
            neighbor_edge_threshold=self.engine.neighbor_edge_threshold,
            similarity_threshold=self.engine.similarity_threshold,
            sleep_window_start=self.sleep.window_start,
            sleep_window_end=self.sleep.window_end,
            sleep_budget_seconds_per_tick=self.sleep.budget_seconds_per_tick,
        )
