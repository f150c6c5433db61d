"""Configuration settings for the Coachmem memory engine.

This module provides Pydantic Settings for configuration management.
All settings are loaded from environment variables with the COACHMEM_ prefix
(or a .env file in the working directory). Algorithm constants that are not
meant to be tuned per deployment live in coachmem.constants instead.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Closed sets of provider variants, resolved once by the factories
EmbeddingBackend = Literal["ollama", "openai", "none"]
ClassificationBackend = Literal["ollama", "openai", "heuristic", "disabled"]


class CoachmemSettings(BaseSettings):
    """Configuration settings for the Coachmem memory engine.

    Attributes:
        sqlite_path: Path to SQLite database (single source of truth)
        embedding_backend: Embedding backend ('ollama', 'openai' or 'none')
        classification_backend: Classification backend
        dedup_skip_threshold: Similarity at or above which a candidate is skipped
        dedup_merge_threshold: Similarity at or above which a candidate is merged
        dedup_update_threshold: Similarity at or above which a temporal update
            supersedes the matched memory
        dedup_fuzzy_update_threshold: Update tier used when similarity is the
            shared-word ratio (no comparable embeddings)
    """

    model_config = SettingsConfigDict(
        env_prefix="COACHMEM_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # Allow extra env vars without error
    )

    # Storage
    sqlite_path: Path = Field(
        default=Path("~/.coachmem/coachmem.db"),
        description="Path to SQLite database (':memory:' for an ephemeral store)",
    )
    storage_retries: int = Field(
        default=2,
        ge=0,
        le=10,
        description="Retries for synchronous storage operations before failing",
    )

    # Embedding provider
    embedding_backend: EmbeddingBackend = Field(
        default="ollama",
        description="Embedding backend to use ('ollama', 'openai' or 'none')",
    )
    ollama_host: str = Field(
        default="http://localhost:11434", description="Ollama server host URL"
    )
    ollama_embed_model: str = Field(
        default="mxbai-embed-large", description="Embedding model name for Ollama"
    )
    ollama_llm_model: str = Field(
        default="llama3.2", description="LLM model for Ollama classification"
    )
    openai_base_url: str = Field(
        default="https://api.openai.com/v1",
        description="Base URL of an OpenAI-compatible API",
    )
    openai_api_key: str | None = Field(
        default=None, description="API key for the OpenAI-compatible API"
    )
    openai_embed_model: str = Field(
        default="text-embedding-3-small", description="OpenAI embedding model"
    )
    openai_llm_model: str = Field(
        default="gpt-4o-mini", description="OpenAI chat model for classification"
    )

    # Classification provider
    classification_backend: ClassificationBackend = Field(
        default="heuristic",
        description="Classification backend ('ollama', 'openai', 'heuristic', 'disabled')",
    )
    provider_timeout_seconds: float = Field(
        default=15.0, gt=0, description="Timeout for any single provider call"
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    # Detection
    history_limit: int = Field(
        default=3, ge=0, description="Recent messages passed to classification"
    )

    # Deduplication tiers
    dedup_skip_threshold: float = Field(default=0.90, ge=0.0, le=1.0)
    dedup_merge_threshold: float = Field(default=0.80, ge=0.0, le=1.0)
    dedup_update_threshold: float = Field(default=0.60, ge=0.0, le=1.0)
    dedup_fuzzy_update_threshold: float = Field(default=0.40, ge=0.0, le=1.0)
    dedup_recency_window_hours: float = Field(
        default=0.0,
        ge=0.0,
        description="Only compare against memories created within this window (0 = all)",
    )
    temporal_update_window_hours: float = Field(
        default=24.0,
        gt=0.0,
        description="Window after a memory's creation in which an update may supersede it",
    )

    # Retrieval
    expansion_cache_ttl_seconds: float = Field(default=600.0, gt=0.0)
    retrieval_timeout_seconds: float = Field(
        default=2.0, gt=0.0, description="Default latency budget for retrieval"
    )
    default_max_results: int = Field(default=8, ge=1)
    near_duplicate_threshold: float = Field(
        default=0.8,
        gt=0.0,
        le=1.0,
        description="Lexical similarity at which two results count as near-duplicates",
    )
    category_cap_ratio: float = Field(
        default=0.5,
        gt=0.0,
        le=1.0,
        description="Share of max_results one category may occupy",
    )

    # Relationships and consolidation
    relationship_min_confidence: float = Field(default=0.6, ge=0.0, le=1.0)
    relationship_candidate_limit: int = Field(default=5, ge=1)
    relationship_prefilter_similarity: float = Field(default=0.3, ge=0.0, le=1.0)
    contradiction_min_confidence: float = Field(default=0.8, ge=0.0, le=1.0)
    merge_strength_threshold: float = Field(default=0.85, ge=0.0, le=1.0)

    # Background scheduler
    worker_count: int = Field(default=2, ge=1, le=32)
    queue_max_size: int = Field(default=100, ge=1)
    task_max_retries: int = Field(default=3, ge=0, le=10)
    retry_base_delay: float = Field(default=0.5, ge=0.0)
    retry_max_delay: float = Field(default=8.0, ge=0.0)
    task_timeout_seconds: float = Field(default=60.0, gt=0.0)

    @model_validator(mode="after")
    def _check_threshold_order(self) -> "CoachmemSettings":
        if not (
            self.dedup_skip_threshold
            > self.dedup_merge_threshold
            > self.dedup_update_threshold
        ):
            raise ValueError(
                "Deduplication tiers must satisfy skip > merge > update, got "
                f"skip={self.dedup_skip_threshold}, "
                f"merge={self.dedup_merge_threshold}, "
                f"update={self.dedup_update_threshold}"
            )
        if self.dedup_fuzzy_update_threshold >= self.dedup_merge_threshold:
            raise ValueError(
                "dedup_fuzzy_update_threshold must be below dedup_merge_threshold, got "
                f"{self.dedup_fuzzy_update_threshold} >= {self.dedup_merge_threshold}"
            )
        return self

    def get_sqlite_path(self) -> Path:
        """Get the SQLite path, expanding user home."""
        if str(self.sqlite_path) == ":memory:":
            return self.sqlite_path
        return self.sqlite_path.expanduser().resolve()
