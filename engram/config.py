"""
Centralized configuration using Pydantic Settings.

All settings are loaded from environment variables with ENGRAM_ prefix.
Example: ENGRAM_LOG_LEVEL=DEBUG
"""

from typing import Optional
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engram configuration settings."""

    model_config = SettingsConfigDict(
        env_prefix="ENGRAM_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Logging
    log_level: str = "INFO"
    log_json: bool = True  # Structured JSON lines on stderr

    # Embedding Model
    embedding_model: str = "all-MiniLM-L6-v2"

    # Approximate index (HNSW) defaults
    hnsw_space: str = Field(default="cosine", pattern="^(cosine|l2|ip)$")
    hnsw_max_elements: int = Field(default=10_000, ge=1)
    hnsw_m: int = Field(default=16, ge=2)  # Bidirectional links per node
    hnsw_ef_construction: int = Field(default=200, ge=1)  # Candidate list size while building
    hnsw_ef_search: int = Field(default=50, ge=1)
    hnsw_random_seed: int = 100

    # Search tuning
    search_top_k: int = Field(default=10, ge=1)
    search_min_score: float = Field(default=0.5, ge=-1.0, le=1.0)

    # Temporal decay tiers (days since last access)
    decay_hot_days: float = Field(default=7.0, ge=0.0)
    decay_warm_days: float = Field(default=30.0, ge=0.0)
    decay_cold_days: float = Field(default=90.0, ge=0.0)
    decay_archive_days: float = Field(default=365.0, ge=0.0)
    decay_summarize_on_cold: bool = True
    decay_delete_on_expire: bool = False

    # Container encryption (CLI only; library callers pass passphrases explicitly)
    passphrase: Optional[str] = None


# Singleton instance
settings = Settings()
