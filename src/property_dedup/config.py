"""Application configuration using pydantic-settings."""

from typing import Self

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from property_dedup.models import DedupConfig


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="PROPERTY_DEDUP_",
        extra="ignore",
    )

    # Database
    database_path: str = Field(default="data/dedup.db")

    # Batch scheduling
    dedup_enabled: bool = Field(
        default=True,
        description="Master switch for the batch scheduler",
    )
    batch_size: int = Field(
        default=100,
        ge=1,
        description="Maximum pending listings claimed per batch run",
    )
    claim_lease_seconds: int = Field(
        default=300,
        ge=1,
        description="Seconds a claimed listing is withheld from other batch runs",
    )

    # Matching
    distance_threshold_meters: float = Field(
        default=100.0,
        gt=0,
        description="Proximity search radius; reflects expected geocoding jitter",
    )
    max_nearby: int = Field(
        default=10,
        ge=1,
        description="Maximum nearby listings compared per dedup pass",
    )
    auto_match_threshold: float = Field(default=0.90, ge=0, le=1)
    review_threshold: float = Field(default=0.60, ge=0, le=1)

    # Task execution
    task_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Wall-clock limit for one listing's dedup pass",
    )
    task_max_attempts: int = Field(default=3, ge=1, le=10)
    task_retry_base_delay: float = Field(
        default=2.0,
        ge=0,
        description="Seconds before the first retry, doubled on each further retry",
    )

    @model_validator(mode="after")
    def validate_thresholds(self) -> Self:
        """Ensure review_threshold <= auto_match_threshold."""
        if self.review_threshold > self.auto_match_threshold:
            raise ValueError("review_threshold must be <= auto_match_threshold")
        return self

    def get_dedup_config(self) -> DedupConfig:
        """Build the DedupConfig handed to the scorer and decision engine."""
        return DedupConfig(
            distance_threshold_meters=self.distance_threshold_meters,
            max_nearby=self.max_nearby,
            auto_match_threshold=self.auto_match_threshold,
            review_threshold=self.review_threshold,
        )
