"""
Centralized configuration for pricedesk.

This module provides a single source of truth for all configuration values.
Configuration is loaded from environment variables with sensible defaults.

Usage:
    from pricedesk.config import config

    fee = config.pricing.logistics_fee
    page_size = config.filters.items_per_page
"""

import os
from dataclasses import dataclass, field
from datetime import date
from typing import List, Tuple

from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip().lstrip("-").isdigit():
        return default
    return int(raw)


@dataclass(frozen=True)
class PricingConfig:
    """Business policy for target cost and markup ladder."""

    logistics_fee: float = field(default_factory=lambda: _env_float("PRICEDESK_LOGISTICS_FEE", 20.0))
    packaging_fee: float = field(default_factory=lambda: _env_float("PRICEDESK_PACKAGING_FEE", 50.0))
    default_commission: float = field(
        default_factory=lambda: _env_float("PRICEDESK_DEFAULT_COMMISSION", 17.0)
    )
    markup_steps: Tuple[int, ...] = (10, 20, 30, 40, 50, 60, 70, 80, 90, 100)


@dataclass(frozen=True)
class NormalizerConfig:
    """Identifier normalizer memoization."""

    cache_capacity: int = 10_000


@dataclass(frozen=True)
class FilterConfig:
    """Filter/sort/paginate defaults."""

    items_per_page: int = field(default_factory=lambda: _env_int("PRICEDESK_ITEMS_PER_PAGE", 50))
    max_items_per_page: int = 1000
    low_stock_threshold: int = 6
    date_floor: date = date(1900, 1, 1)
    date_ceiling: date = date(2100, 12, 31)


@dataclass(frozen=True)
class FeedConfig:
    """Supplier feed locations and fetch policy."""

    crm_url: str = field(default_factory=lambda: os.getenv("CRM_FEED_URL", ""))
    marketplace_url: str = field(default_factory=lambda: os.getenv("PROM_FEED_URL", ""))
    request_timeout: float = 30.0

    @property
    def proxy_prefixes(self) -> List[str]:
        """Parse CORS proxy prefixes from environment variable."""
        raw = os.getenv("FEED_PROXY_PREFIXES", "")
        return [p.strip() for p in raw.split(",") if p.strip()]


@dataclass(frozen=True)
class PersistenceConfig:
    """Backend document store configuration."""

    api_url: str = field(
        default_factory=lambda: os.getenv("PRICEDESK_API_URL", "http://localhost:3001/api")
    )
    data_dir: str = field(default_factory=lambda: os.getenv("PRICEDESK_DATA_DIR", "data"))
    debounce_seconds: float = 0.1
    max_backups: int = 10
    request_timeout: float = 60.0


@dataclass(frozen=True)
class AppConfig:
    """Main application configuration."""

    version: str = "1.0.0"
    pricing: PricingConfig = field(default_factory=PricingConfig)
    normalizer: NormalizerConfig = field(default_factory=NormalizerConfig)
    filters: FilterConfig = field(default_factory=FilterConfig)
    feeds: FeedConfig = field(default_factory=FeedConfig)
    persistence: PersistenceConfig = field(default_factory=PersistenceConfig)


# Global config instance
config = AppConfig()


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""
    pass


def validate_config(require_feeds: bool = False) -> None:
    """
    Validate that configuration values are usable.

    Call this on application startup to fail fast with clear error messages
    instead of cryptic runtime failures.

    Args:
        require_feeds: If True, both feed URLs must be set

    Raises:
        ConfigurationError: If configuration is missing or invalid
    """
    errors = []

    if not 0 <= config.pricing.default_commission < 100:
        errors.append("PRICEDESK_DEFAULT_COMMISSION must be in [0, 100)")

    if config.pricing.logistics_fee < 0 or config.pricing.packaging_fee < 0:
        errors.append("Fixed fees must not be negative")

    if config.filters.items_per_page < 1:
        errors.append("PRICEDESK_ITEMS_PER_PAGE must be positive")

    if require_feeds:
        if not config.feeds.crm_url:
            errors.append("CRM_FEED_URL is required but not set")
        if not config.feeds.marketplace_url:
            errors.append("PROM_FEED_URL is required but not set")

    if errors:
        error_msg = "Configuration validation failed:\n" + "\n".join(f"  - {e}" for e in errors)
        raise ConfigurationError(error_msg)
