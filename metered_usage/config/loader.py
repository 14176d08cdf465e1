"""
Configuration management and loading.

Handles the optional YAML settings file and its defaults.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from metered_usage.core.currency import SUPPORTED_CURRENCIES
from metered_usage.core.unknown_models import DEFAULT_GENERIC_KEYWORDS


LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


@dataclass(frozen=True)
class BillingConfig:
    """Billing period policy."""
    cutoff_day: int = 3
    tracked_model: str = "gpt-4"

    def __post_init__(self):
        """Validate the cutoff day falls inside every month."""
        if not 1 <= self.cutoff_day <= 28:
            raise ValueError("cutoff_day must be between 1 and 28")
        if not self.tracked_model.strip():
            raise ValueError("tracked_model cannot be empty")


@dataclass(frozen=True)
class CurrencyConfig:
    """Display currency and rate cache lifetime."""
    display: str = "USD"
    cache_ttl_hours: int = 24

    def __post_init__(self):
        if self.display not in SUPPORTED_CURRENCIES:
            raise ValueError(f"Unsupported display currency: {self.display}")
        if self.cache_ttl_hours <= 0:
            raise ValueError("cache_ttl_hours must be > 0")


@dataclass(frozen=True)
class ApiConfig:
    """Upstream endpoints."""
    base_url: str = "https://www.cursor.com"
    rates_url: str = "https://latest.currency-api.pages.dev/v1/currencies/usd.json"
    timeout_seconds: float = 30.0

    def __post_init__(self):
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")


@dataclass(frozen=True)
class UsageSettings:
    """Complete settings for a usage refresh."""
    billing: BillingConfig = field(default_factory=BillingConfig)
    currency: CurrencyConfig = field(default_factory=CurrencyConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    generic_keywords: Tuple[str, ...] = DEFAULT_GENERIC_KEYWORDS
    db_path: str = "metered_usage.db"
    log_level: str = "INFO"


_SECTIONS: Dict[str, set] = {
    "billing": {"cutoff_day", "tracked_model"},
    "currency": {"display", "cache_ttl_hours"},
    "unknown_models": {"generic_keywords"},
    "storage": {"db_path"},
    "api": {"base_url", "rates_url", "timeout_seconds"},
    "logging": {"level"},
}


def load_settings(path: Optional[str] = None) -> UsageSettings:
    """Load and validate settings from a YAML file.

    Without a path every value takes its default.

    Args:
        path: Optional path to YAML configuration file

    Returns:
        Validated UsageSettings object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    if path is None:
        return UsageSettings()

    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Settings file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        return UsageSettings()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration root must be a dictionary")

    unknown_keys = set(raw_config.keys()) - set(_SECTIONS)
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    sections = {name: _section(raw_config, name) for name in _SECTIONS}

    billing_data = sections["billing"]
    billing = BillingConfig(
        cutoff_day=_typed(billing_data, "cutoff_day", int, "billing", 3),
        tracked_model=_typed(billing_data, "tracked_model", str, "billing", "gpt-4"),
    )

    currency_data = sections["currency"]
    currency = CurrencyConfig(
        display=_typed(currency_data, "display", str, "currency", "USD").upper(),
        cache_ttl_hours=_typed(currency_data, "cache_ttl_hours", int, "currency", 24),
    )

    api_data = sections["api"]
    api = ApiConfig(
        base_url=_typed(api_data, "base_url", str, "api", ApiConfig.base_url).rstrip("/"),
        rates_url=_typed(api_data, "rates_url", str, "api", ApiConfig.rates_url),
        timeout_seconds=float(
            _typed(api_data, "timeout_seconds", (int, float), "api", ApiConfig.timeout_seconds)
        ),
    )

    keywords = sections["unknown_models"].get("generic_keywords", list(DEFAULT_GENERIC_KEYWORDS))
    if not isinstance(keywords, list) or not all(isinstance(k, str) for k in keywords):
        raise ValueError("'generic_keywords' in unknown_models must be a list of strings")

    level = _typed(sections["logging"], "level", str, "logging", "INFO").upper()
    if level not in LOG_LEVELS:
        raise ValueError(f"'level' in logging must be one of: {list(LOG_LEVELS)}")

    return UsageSettings(
        billing=billing,
        currency=currency,
        api=api,
        generic_keywords=tuple(k.lower() for k in keywords),
        db_path=_typed(sections["storage"], "db_path", str, "storage", "metered_usage.db"),
        log_level=level,
    )


def _section(raw_config: Dict, name: str) -> Dict[str, Any]:
    """Return one validated section, empty when absent."""
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown_keys = set(data.keys()) - _SECTIONS[name]
    if unknown_keys:
        raise ValueError(f"Unknown keys in {name}: {unknown_keys}")
    return data


def _typed(data: Dict, key: str, expected, path: str, default):
    if key not in data:
        return default
    value = data[key]
    # bool is an int subclass; never accept it for numeric settings
    if isinstance(value, bool) or not isinstance(value, expected):
        raise ValueError(f"'{key}' in {path} has invalid type {type(value).__name__}")
    return value
