"""Settings loader: reads an optional YAML file, interpolates env vars, validates."""

import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

from portfolio_aggregator.core.models import DiscoveryFilter
from portfolio_aggregator.data.loader import get_default_networks
from portfolio_aggregator.transport.rate_limit import RateLimitPolicy
from portfolio_aggregator.transport.retry import BackoffStrategy

logger = logging.getLogger(__name__)

API_KEY_ENV_VAR = "ZERION_API_KEY"

_ENV_VAR_RE = re.compile(r"\$\{([^}]+)}")


class ZerionSettings(BaseModel):
    """Primary discovery provider settings."""

    api_key: str = ""
    base_url: str = "https://api.zerion.io/v1"
    timeout: float = Field(default=30.0, gt=0)
    page_size: int = Field(default=100, ge=1, le=100)
    max_pages: int = Field(default=50, ge=1)


class RateLimitSettings(BaseModel):
    """Client-side budgets for the primary provider."""

    enabled: bool = True
    requests_per_minute: int = Field(default=100, ge=1)
    requests_per_day: int = Field(default=3000, ge=1)
    policy: RateLimitPolicy = RateLimitPolicy.THROW


class RetrySettings(BaseModel):
    """Retry behaviour for the primary provider."""

    max_attempts: int = Field(default=3, ge=1)
    base_delay: float = Field(default=2.0, ge=0)
    max_delay: float = Field(default=30.0, ge=0)
    strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL


class CacheSettings(BaseModel):
    """Time-to-live of the two cache namespaces, in seconds."""

    enabled: bool = True
    structure_ttl: float = Field(default=300.0, gt=0)
    price_ttl: float = Field(default=60.0, gt=0)


class EnrichmentSettings(BaseModel):
    """Bulkhead width and batch deadline of the enrichment pipeline."""

    width: int = Field(default=10, ge=1)
    timeout: float = Field(default=30.0, gt=0)


class PricingSettings(BaseModel):
    """Secondary price/metadata provider settings."""

    base_url: str = "https://coins.llama.fi"
    timeout: float = Field(default=30.0, gt=0)
    max_attempts: int = Field(default=2, ge=1)


class Settings(BaseModel):
    """
    Application settings.

    Attributes
    ----------
    zerion : ZerionSettings
        Primary discovery provider
    rate_limit : RateLimitSettings
        Client-side rate budgets
    retry : RetrySettings
        Retry policy for discovery calls
    cache : CacheSettings
        Structure/price cache
    enrichment : EnrichmentSettings
        Enrichment bulkhead
    pricing : PricingSettings
        Secondary price provider
    networks : list[str]
        Networks queried when a request names none
    position_filter : DiscoveryFilter
        Filter passed to the discovery provider

    """

    zerion: ZerionSettings = Field(default_factory=ZerionSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    enrichment: EnrichmentSettings = Field(default_factory=EnrichmentSettings)
    pricing: PricingSettings = Field(default_factory=PricingSettings)
    networks: list[str] = Field(default_factory=get_default_networks)
    position_filter: DiscoveryFilter = DiscoveryFilter.ONLY_COMPLEX


def _interpolate_env(value: Any) -> Any:
    """Recursively replace ${VAR} references with environment variable values."""
    if isinstance(value, str):
        return _ENV_VAR_RE.sub(lambda m: os.environ.get(m.group(1), ""), value)
    if isinstance(value, dict):
        return {k: _interpolate_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_interpolate_env(item) for item in value]
    return value


def load_settings(path: str | Path | None = None) -> Settings:
    """
    Load settings from a YAML file and the environment.

    Parameters
    ----------
    path : str | Path | None
        YAML settings file. Built-in defaults are used if None.

    Returns
    -------
    Settings
        Validated settings; the Zerion API key falls back to ``ZERION_API_KEY``

    Raises
    ------
    FileNotFoundError
        If ``path`` does not exist
    pydantic.ValidationError
        If a value is out of range or of the wrong type

    """
    raw: dict[str, Any] = {}
    if path is not None:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
        logger.info("Loaded settings from %s", path)

    settings = Settings.model_validate(_interpolate_env(raw))

    if not settings.zerion.api_key:
        settings.zerion.api_key = os.environ.get(API_KEY_ENV_VAR, "")

    return settings
