"""
Configuration management for the entity deduplication engine.

Uses pydantic-settings for type-safe configuration with environment variable support.
Match thresholds live in an immutable snapshot that is swapped as a whole.
"""

import threading
from functools import lru_cache
from pathlib import Path
from typing import Optional

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(
        env_prefix="POSTGRES_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    user: str = "dedup"
    password: str = ""  # Required: Set POSTGRES_PASSWORD in .env
    host: str = "localhost"
    port: int = 5432
    db: str = "dedup"

    # Full URL override (tests point this at SQLite)
    database_url: Optional[str] = Field(default=None, validation_alias="DATABASE_URL")

    @property
    def url(self) -> str:
        """Construct database URL."""
        if self.database_url:
            return self.database_url
        return f"postgresql://{self.user}:{self.password}@{self.host}:{self.port}/{self.db}"


class PipelineSettings(BaseSettings):
    """Engine runtime settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Logging
    log_level: str = "INFO"
    log_file: Optional[Path] = None
    log_rotation: str = "10 MB"
    log_retention: str = "1 week"

    # Worker threads for pairwise scoring and batch detection
    max_workers: int = Field(default=4, ge=1)


class FieldWeights(BaseModel):
    """Per-field weights for the weighted similarity score."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: float = Field(default=0.25, ge=0)
    counterpart_name: float = Field(default=0.25, ge=0)
    vendor_match: float = Field(default=0.15, ge=0)
    value: float = Field(default=0.15, ge=0)
    date: float = Field(default=0.10, ge=0)
    products: float = Field(default=0.05, ge=0)
    contacts: float = Field(default=0.05, ge=0)
    description: float = Field(default=0.00, ge=0)  # Not used by default (expensive)


class MatchSettings(BaseSettings):
    """
    Duplicate detection and merge thresholds.

    Instances are frozen. A running engine never mutates one in place; see
    update_match_config().
    """

    model_config = SettingsConfigDict(
        env_prefix="DUPLICATE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # Confidence thresholds
    auto_merge_threshold: float = Field(default=0.95, ge=0, le=1)
    high_confidence_threshold: float = Field(default=0.85, ge=0, le=1)
    medium_confidence_threshold: float = Field(default=0.70, ge=0, le=1)
    low_confidence_threshold: float = Field(default=0.50, ge=0, le=1)
    minimum_match_threshold: float = Field(default=0.85, ge=0, le=1)

    # Fuzzy matching thresholds (0-100 scale)
    fuzzy_exact_threshold: float = Field(default=95, ge=0, le=100)
    fuzzy_high_threshold: float = Field(default=85, ge=0, le=100)
    fuzzy_medium_threshold: float = Field(default=70, ge=0, le=100)
    fuzzy_low_threshold: float = Field(default=50, ge=0, le=100)

    # Tolerances
    value_tolerance_percent: float = Field(default=10, gt=0)
    date_tolerance_days: float = Field(default=7, gt=0)

    # Batch processing
    batch_size: int = Field(default=100, ge=1)
    candidate_pool_limit: int = Field(default=200, ge=1)

    # Clustering edge threshold, kept apart from detection thresholds
    cluster_threshold: float = Field(default=0.85, ge=0, le=1)

    # Unmerge window
    unmerge_window_hours: float = Field(default=24, ge=0)

    field_weights: FieldWeights = Field(default_factory=FieldWeights)


class Settings(BaseSettings):
    """Main settings class that combines all settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Sub-settings
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    pipeline: PipelineSettings = Field(default_factory=PipelineSettings)
    matching: MatchSettings = Field(default_factory=MatchSettings)


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()


# Convenience function for quick access
settings = get_settings()


# =============================================================================
# Match configuration snapshot
# =============================================================================

_match_config_lock = threading.Lock()
_match_config: MatchSettings = settings.matching


def get_match_config() -> MatchSettings:
    """Return the current match configuration snapshot."""
    return _match_config


def update_match_config(**changes) -> MatchSettings:
    """
    Replace the match configuration with a validated copy carrying `changes`.

    Readers holding the previous snapshot keep seeing it unchanged.
    """
    global _match_config

    changed = sorted(changes)
    unknown = set(changes) - set(MatchSettings.model_fields)
    if unknown:
        raise ValueError(f"Unknown match configuration keys: {sorted(unknown)}")

    with _match_config_lock:
        data = _match_config.model_dump()
        weights = changes.pop("field_weights", None)
        if weights is not None:
            if isinstance(weights, FieldWeights):
                weights = weights.model_dump()
            data["field_weights"] = {**data["field_weights"], **weights}
        data.update(changes)
        new_config = MatchSettings(**data)
        _match_config = new_config

    logger.info(f"Duplicate detection configuration updated: {changed}")
    return new_config


def reset_match_config() -> MatchSettings:
    """Restore the match configuration loaded from the environment."""
    global _match_config

    with _match_config_lock:
        _match_config = MatchSettings()
    return _match_config
