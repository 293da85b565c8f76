"""Configuration loading and management."""

from datetime import timedelta
from pathlib import Path
from typing import Optional

import yaml

from portfolio.models import FactKind

from .config_models import AppConfig, CacheConfig


def find_config() -> Optional[Path]:
    """Find config file in standard locations."""
    locations = [
        Path.cwd() / "config.yaml",
        Path.home() / ".portfolio-chat" / "config.yaml",
    ]
    for loc in locations:
        if loc.exists():
            return loc
    return None


def load_config_model(config_path: Optional[Path] = None) -> AppConfig:
    """Load configuration as Pydantic model with validation."""
    base_config = {}

    path = config_path or find_config()
    if path and path.exists():
        try:
            with open(path) as f:
                base_config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in config file: {e}")

    try:
        return AppConfig.from_dict(base_config)
    except Exception as e:
        raise ValueError(f"Config validation failed: {e}")


def cache_ttls(cache: CacheConfig) -> dict[FactKind, timedelta]:
    """Session cache TTLs keyed by fact kind."""
    return {
        FactKind.PRICE: timedelta(seconds=cache.price_ttl),
        FactKind.TOTAL_VALUE: timedelta(seconds=cache.total_value_ttl),
        FactKind.METRIC: timedelta(seconds=cache.metric_ttl),
        FactKind.HOLDING: timedelta(seconds=cache.holding_ttl),
    }
