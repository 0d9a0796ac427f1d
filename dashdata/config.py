"""
Configuration loading for dashdata.

Loads non-secret settings from config.yaml, secrets from environment variables.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field, model_validator

CacheKind = Literal["kpi", "insights", "overview"]


class CacheConfig(BaseModel):
    """TTLs (seconds) per kind of data, plus the persistent tier location."""

    kpi_ttl: float = Field(default=300, gt=0)
    insights_ttl: float = Field(default=3600, gt=0)
    overview_ttl: float = Field(default=300, gt=0)
    stale_fraction: float = Field(default=0.8, gt=0, le=1)
    session_store_path: Optional[str] = None


class RateLimitConfig(BaseModel):
    """Backoff settings (seconds) for the insights endpoint."""

    base_backoff: float = Field(default=1, gt=0)
    max_backoff: float = Field(default=60, gt=0)
    quota_floor: float = Field(default=30, ge=0)

    @model_validator(mode="after")
    def validate_backoff_range(self) -> "RateLimitConfig":
        if self.max_backoff < self.base_backoff:
            raise ValueError("max_backoff must be >= base_backoff")
        return self


class AppConfig(BaseModel):
    """Application configuration. Secrets come from env vars, rest from YAML."""

    # Secrets (from environment only)
    dashboard_api_key: Optional[str] = None
    api_key: Optional[str] = None

    # Upstream dashboard API
    api_base_url: str = "http://localhost:3000"

    cache: CacheConfig = Field(default_factory=CacheConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)

    # Debounce before a scheduled prefetch runs
    prefetch_delay: float = Field(default=0.5, ge=0)

    def cache_ttl(self, kind: CacheKind = "kpi") -> float:
        """TTL in seconds for one kind of cached data."""
        if kind == "kpi":
            return self.cache.kpi_ttl
        if kind == "insights":
            return self.cache.insights_ttl
        if kind == "overview":
            return self.cache.overview_ttl
        raise ValueError(f"Unknown cache kind: {kind!r}")


def load_config(config_path: str | None = None) -> AppConfig:
    """
    Load configuration from YAML file + environment variables.

    Args:
        config_path: Path to config.yaml. If None, reads CONFIG_PATH env var
                     (default: config.yaml in current directory).

    Returns:
        Validated AppConfig instance.
    """
    if config_path is None:
        config_path = os.environ.get("CONFIG_PATH", "config.yaml")

    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(path) as f:
        raw = yaml.safe_load(f)

    if raw is None:
        raw = {}

    # Inject secrets from environment (never from YAML)
    config_data = {
        **raw,
        "dashboard_api_key": os.environ.get("DASHBOARD_API_KEY"),
        "api_key": os.environ.get("API_KEY"),
    }

    return AppConfig(**config_data)
