"""Configuration models for castvault."""

from __future__ import annotations

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_FRAME_VERSIONS = ("vNext", "2023-12-01", "2024-02-09")


class PricingConfig(BaseModel):
    """Storage pricing used by the cost gate, in USD."""

    upload_base_fee: float = Field(default=0.01, ge=0)
    storage_per_mb: float = Field(default=0.00046, ge=0)
    metadata_fee: float = Field(default=0.001, ge=0)
    thread_fee: float = Field(default=0.0005, ge=0)
    video_multiplier: float = Field(default=1.2, ge=1)
    large_file_multiplier: float = Field(default=1.1, ge=1)
    large_file_threshold_mb: float = Field(default=10.0, gt=0)
    credit_price_usd: float = Field(default=9.50, gt=0)


class PipelineConfig(BaseSettings):
    """Runtime settings for the preservation pipeline.

    Values can be overridden with ``CASTVAULT_*`` environment variables, e.g.
    ``CASTVAULT_MEDIA_BATCH_SIZE=5`` or ``CASTVAULT_PRICING__METADATA_FEE=0.002``.
    """

    model_config = SettingsConfigDict(env_prefix="CASTVAULT_", env_nested_delimiter="__")

    api_base: str = "http://localhost:8888/.netlify/functions"
    user_agent: str = "castvault/0.1"
    request_timeout_seconds: float = Field(default=20.0, gt=0)
    call_timeout_seconds: float = Field(default=30.0, gt=0)
    facet_timeout_seconds: float = Field(default=180.0, gt=0)
    media_batch_size: int = Field(default=3, ge=1)
    bulk_batch_size: int = Field(default=3, ge=1)
    max_media_bytes: int = Field(default=100 * 1024 * 1024, gt=0)
    retry_attempts: int = Field(default=3, ge=1, le=10)
    supported_frame_versions: tuple[str, ...] = DEFAULT_FRAME_VERSIONS
    backup_version: str = "2.0.0"
    pricing: PricingConfig = Field(default_factory=PricingConfig)

    @model_validator(mode="after")
    def validate_timeout_relationship(self) -> "PipelineConfig":
        if self.call_timeout_seconds < self.request_timeout_seconds:
            raise ValueError("call_timeout_seconds should be >= request_timeout_seconds")
        if self.facet_timeout_seconds < self.call_timeout_seconds:
            raise ValueError("facet_timeout_seconds should be >= call_timeout_seconds")
        return self
