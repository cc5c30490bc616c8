"""
Scraping configuration: budget, rate and retry policy.

A ScrapingConfig is an explicit, immutable object. Four presets cover the
usual deployment sizes; callers override individual fields with
get_preset(name, **overrides) or from SCRAPEGUARD_* environment variables.
"""

from __future__ import annotations

import dataclasses
import os
from dataclasses import dataclass
from typing import Dict, Optional

from .exceptions import ConfigError
from .models import ConfigValidation

ENV_PREFIX = "SCRAPEGUARD_"

# Full profile requests are billed two units, reduced-data requests one.
FULL_PROFILE_UNITS = 2
REDUCED_PROFILE_UNITS = 1


@dataclass(frozen=True)
class ScrapingConfig:
    # Budget controls
    daily_budget_limit: float = 0.01
    monthly_budget_limit: float = 0.30
    cost_per_unit: float = 0.001

    # Rate limiting
    requests_per_minute: int = 1
    requests_per_hour: int = 60
    inter_request_delay: float = 3.0  # seconds

    # Account selection
    prioritize_owned_accounts: bool = True
    max_accounts_per_session: int = 3
    max_daily_accounts: int = 5

    # Freshness and retries
    skip_recently_scraped: bool = True
    minimum_hours_between_scrapes: float = 24.0
    max_retry_attempts: int = 2
    retry_backoff_base: float = 1.0  # seconds

    use_reduced_data: bool = False

    @property
    def units_per_account(self) -> int:
        return REDUCED_PROFILE_UNITS if self.use_reduced_data else FULL_PROFILE_UNITS

    @property
    def cost_per_account(self) -> float:
        return self.cost_per_unit * self.units_per_account

    def with_overrides(self, **overrides) -> "ScrapingConfig":
        unknown = set(overrides) - {f.name for f in dataclasses.fields(self)}
        if unknown:
            raise ConfigError([f"Unknown configuration option: {name}" for name in sorted(unknown)])
        return dataclasses.replace(self, **overrides)

    def to_dict(self) -> Dict[str, object]:
        return dataclasses.asdict(self)


PRESETS: Dict[str, ScrapingConfig] = {
    # Ultra conservative, for trying things out
    "test": ScrapingConfig(),
    "small": ScrapingConfig(
        daily_budget_limit=0.05,
        monthly_budget_limit=1.50,
        requests_per_minute=5,
        requests_per_hour=300,
        inter_request_delay=2.0,
        max_accounts_per_session=15,
        max_daily_accounts=25,
        minimum_hours_between_scrapes=12.0,
        max_retry_attempts=3,
    ),
    "production": ScrapingConfig(
        daily_budget_limit=0.20,
        monthly_budget_limit=6.00,
        requests_per_minute=10,
        requests_per_hour=800,
        inter_request_delay=1.5,
        max_accounts_per_session=50,
        max_daily_accounts=100,
        minimum_hours_between_scrapes=8.0,
        max_retry_attempts=3,
    ),
    "enterprise": ScrapingConfig(
        daily_budget_limit=1.00,
        monthly_budget_limit=30.00,
        requests_per_minute=25,
        requests_per_hour=1500,
        inter_request_delay=1.0,
        prioritize_owned_accounts=False,
        max_accounts_per_session=200,
        max_daily_accounts=500,
        minimum_hours_between_scrapes=6.0,
        max_retry_attempts=5,
    ),
}


def get_preset(name: str = "test", **overrides) -> ScrapingConfig:
    """Return a preset by name, optionally overriding individual fields."""
    try:
        base = PRESETS[name.strip().lower()]
    except KeyError:
        raise ConfigError([f"Unknown preset '{name}'. Allowed values: {sorted(PRESETS)}."]) from None
    return base.with_overrides(**overrides) if overrides else base


def validate_config(config: ScrapingConfig, strict: bool = False) -> ConfigValidation:
    """Check a configuration for fatal errors and likely operational problems.

    Errors make the configuration unusable. Warnings flag settings likely to
    cause rate limiting or budget overrun. With strict=True a ConfigError is
    raised instead of returning an invalid result.
    """
    errors: list[str] = []
    warnings: list[str] = []

    if config.daily_budget_limit <= 0:
        errors.append("Daily budget limit must be greater than 0")
    if config.monthly_budget_limit <= 0:
        errors.append("Monthly budget limit must be greater than 0")
    if config.cost_per_unit <= 0:
        errors.append("Cost per unit must be greater than 0")
    if config.requests_per_minute <= 0 or config.requests_per_hour <= 0:
        errors.append("Request rate limits must be greater than 0")
    elif config.requests_per_minute * 60 > config.requests_per_hour:
        errors.append("Requests per minute cannot exceed hourly rate divided by 60")
    if config.max_retry_attempts < 0:
        errors.append("Max retry attempts cannot be negative")

    if config.daily_budget_limit > 0 and config.monthly_budget_limit < config.daily_budget_limit * 30:
        warnings.append("Monthly budget may be insufficient for daily budget limit")
    if config.inter_request_delay < 1.0:
        warnings.append("Very short delays may cause rate limiting issues")
    if config.cost_per_account > 0 and config.max_daily_accounts > config.daily_budget_limit / config.cost_per_account:
        warnings.append("Daily account limit exceeds what daily budget allows")
    if config.max_accounts_per_session > config.max_daily_accounts:
        warnings.append("Per-session account limit exceeds the daily account limit")

    if strict and errors:
        raise ConfigError(errors)
    return ConfigValidation(is_valid=not errors, errors=errors, warnings=warnings)


def _get_env(name: str) -> Optional[str]:
    value = os.getenv(ENV_PREFIX + name)
    if value is None:
        return None
    stripped = value.strip()
    return stripped if stripped else None


def _get_bool_env(name: str, default: bool) -> bool:
    raw = _get_env(name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes", "on"}


def _get_int_env(name: str, default: int) -> int:
    raw = _get_env(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _get_float_env(name: str, default: float) -> float:
    raw = _get_env(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def load_config_from_env(base: Optional[ScrapingConfig] = None) -> ScrapingConfig:
    """Build a configuration from SCRAPEGUARD_* environment variables.

    SCRAPEGUARD_PRESET picks the starting preset (unless ``base`` is given);
    every other variable overrides the matching field, falling back to the
    preset value when unset or unparsable.
    """
    if base is None:
        base = get_preset(_get_env("PRESET") or "test")

    overrides = {}
    for f in dataclasses.fields(base):
        env_name = f.name.upper()
        current = getattr(base, f.name)
        if isinstance(current, bool):
            overrides[f.name] = _get_bool_env(env_name, current)
        elif isinstance(current, int):
            overrides[f.name] = _get_int_env(env_name, current)
        else:
            overrides[f.name] = _get_float_env(env_name, current)
    return dataclasses.replace(base, **overrides)


@dataclass(frozen=True)
class ApiSettings:
    """Settings for the HTTP metrics API client."""

    base_url: str = "https://api.hikerapi.com"
    api_key: Optional[str] = None
    timeout_seconds: float = 30.0
    impersonate: Optional[str] = None


def load_api_settings() -> ApiSettings:
    return ApiSettings(
        base_url=_get_env("API_BASE_URL") or ApiSettings.base_url,
        api_key=_get_env("API_KEY"),
        timeout_seconds=max(1.0, _get_float_env("API_TIMEOUT", ApiSettings.timeout_seconds)),
        impersonate=_get_env("API_IMPERSONATE"),
    )
