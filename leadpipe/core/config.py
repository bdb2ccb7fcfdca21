"""Configuration models and YAML loader for the enrichment pipeline."""

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from leadpipe.core.errors import ConfigurationError


class DatabaseConfig(BaseModel):
    """Database configuration."""

    path: str = "data/leads.db"


class VendorConfig(BaseModel):
    """Scrape vendor API and delivery target."""

    api_base: str = "https://api.brightdata.com"
    dataset_id: str = "gd_l1viktl72bvl7bjuj0"
    api_key_env: str = "BRIGHTDATA_API_KEY"
    bucket: str = "vendor-deliveries"
    directory: str = ""
    request_timeout_s: float = Field(default=30.0, gt=0)

    def api_key(self) -> str:
        """Return the vendor API key from the environment."""
        key = os.environ.get(self.api_key_env)
        if not key:
            msg = f"{self.api_key_env} environment variable is required"
            raise ConfigurationError(msg)
        return key


class PdlConfig(BaseModel):
    """People Data Labs person enrichment, used for profiles the scrape vendor never delivered."""

    api_base: str = "https://api.peopledatalabs.com/v5"
    api_key_env: str = "PDL_API_KEY"
    batch_limit: int = Field(default=10, ge=1)
    request_timeout_s: float = Field(default=30.0, gt=0)

    def api_key(self) -> str | None:
        """Return the PDL key, or None when the pass is not configured."""
        return os.environ.get(self.api_key_env) or None


class ObjectStoreConfig(BaseModel):
    """Where vendor deliveries land."""

    backend: Literal["local", "s3"] = "local"
    path: str = "data/deliveries"
    bucket: str = ""
    prefix: str = ""

    @model_validator(mode="after")
    def s3_needs_bucket(self) -> "ObjectStoreConfig":
        if self.backend == "s3" and not self.bucket:
            msg = "object_store.bucket is required for the s3 backend"
            raise ValueError(msg)
        return self


class PollerConfig(BaseModel):
    """Backoff schedule for waiting on a delivery object."""

    initial_delay_s: float = Field(default=5.0, gt=0)
    backoff_factor: float = Field(default=1.5, ge=1.0)
    max_delay_s: float = Field(default=30.0, gt=0)
    max_attempts: int = Field(default=60, ge=1)
    job_timeout_s: float = Field(default=1800.0, gt=0)

    @model_validator(mode="after")
    def cap_not_below_initial(self) -> "PollerConfig":
        if self.max_delay_s < self.initial_delay_s:
            msg = "max_delay_s must be >= initial_delay_s"
            raise ValueError(msg)
        return self


class ScoringConfig(BaseModel):
    """AI judge settings."""

    llm_provider: str = "anthropic"
    llm_model: str | None = None
    max_tokens: int = Field(default=500, ge=1)
    concurrency: int = Field(default=5, ge=1, le=50)


class QueueConfig(BaseModel):
    """Job queue delivery policy."""

    max_attempts: int = Field(default=3, ge=1)
    visibility_timeout_s: float = Field(default=2400.0, gt=0)
    poll_interval_s: float = Field(default=2.0, gt=0)
    workers: int = Field(default=1, ge=1)


class SweepConfig(BaseModel):
    """Out-of-band delivery sweep."""

    interval_s: float = Field(default=60.0, gt=0)
    pending_limit: int = Field(default=50, ge=1)


class ApiConfig(BaseModel):
    """HTTP surface for reads and internal callbacks."""

    host: str = "127.0.0.1"
    port: int = Field(default=3847, ge=1, le=65535)
    internal_key_env: str = "INTERNAL_API_KEY"

    def internal_key(self) -> str:
        key = os.environ.get(self.internal_key_env)
        if not key:
            msg = f"{self.internal_key_env} environment variable is required"
            raise ConfigurationError(msg)
        return key


class Settings(BaseModel):
    """Top-level settings loaded from YAML."""

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    vendor: VendorConfig = Field(default_factory=VendorConfig)
    pdl: PdlConfig = Field(default_factory=PdlConfig)
    object_store: ObjectStoreConfig = Field(default_factory=ObjectStoreConfig)
    poller: PollerConfig = Field(default_factory=PollerConfig)
    scoring: ScoringConfig = Field(default_factory=ScoringConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    sweep: SweepConfig = Field(default_factory=SweepConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)

    @field_validator("scoring")
    @classmethod
    def known_provider(cls, v: ScoringConfig) -> ScoringConfig:
        from leadpipe.llm import available_providers

        if v.llm_provider not in available_providers():
            msg = (
                f"Unknown LLM provider '{v.llm_provider}'. "
                f"Available: {', '.join(available_providers())}"
            )
            raise ValueError(msg)
        return v

    @classmethod
    def from_yaml(cls, path: str | Path) -> "Settings":
        """Load settings from a YAML file."""
        path = Path(path)
        if not path.exists():
            msg = f"Config file not found: {path}"
            raise FileNotFoundError(msg)
        raw: dict[str, Any] = yaml.safe_load(path.read_text()) or {}
        return cls.model_validate(raw)
