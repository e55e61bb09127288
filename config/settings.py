"""Configuration settings loaded from environment variables."""

from __future__ import annotations

import os
from functools import lru_cache

from dotenv import load_dotenv
from pydantic import BaseModel, Field


load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


class Settings(BaseModel):
    """Engine settings loaded from environment variables."""

    log_level: str = Field(default="INFO", description="Logging level")

    # Predicate / condition evaluation
    max_regex_length: int = Field(
        default=500,
        gt=0,
        description="Longest path regex the hardened matcher will compile",
    )

    # Experiment defaults (used when an experiment omits its own settings)
    default_minimum_sample_size: int = Field(
        default=100,
        ge=0,
        description="Participants required before significance analysis runs",
    )
    default_required_confidence: float = Field(
        default=95.0,
        ge=50.0,
        le=99.99,
        description="Confidence level (percent) a winner must reach",
    )
    persist_assignments: bool = Field(
        default=True,
        description="Keep users in the same variant across calls by default",
    )

    # CLI
    definitions_path: str | None = Field(
        default=None,
        description="Default definitions document for the CLI",
    )

    model_config = {"extra": "ignore"}


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance loaded from environment."""
    return Settings(
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        max_regex_length=int(os.getenv("MAX_REGEX_LENGTH", "500")),
        default_minimum_sample_size=int(os.getenv("DEFAULT_MINIMUM_SAMPLE_SIZE", "100")),
        default_required_confidence=float(os.getenv("DEFAULT_REQUIRED_CONFIDENCE", "95.0")),
        persist_assignments=_env_bool("PERSIST_ASSIGNMENTS", "true"),
        definitions_path=os.getenv("DEFINITIONS_PATH"),
    )
