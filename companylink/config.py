"""
Configuration for company-profile discovery.

All tunables are read once at startup into an immutable DiscoveryConfig
and passed explicitly to each component's constructor.
"""

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import List, Optional, Tuple

from dotenv import load_dotenv

BRAVE_SEARCH_ENDPOINT = "https://api.search.brave.com/res/v1/web/search"

WARMUP_COMPANIES = (
    "Microsoft", "Apple", "Google", "Amazon", "Meta",
    "Netflix", "Tesla", "Spotify", "Uber", "Airbnb",
    "Salesforce", "Adobe", "Oracle", "IBM", "Intel",
)


def _env_int(key: str, default: int) -> int:
    value = os.getenv(key)
    return int(value) if value else default


def _env_float(key: str, default: float) -> float:
    value = os.getenv(key)
    return float(value) if value else default


def _env_bool(key: str, default: bool) -> bool:
    value = os.getenv(key)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_list(key: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    value = os.getenv(key)
    if not value:
        return default
    return tuple(item.strip() for item in value.split(",") if item.strip())


def _env_path(key: str, default: Optional[str] = None) -> Optional[Path]:
    value = os.getenv(key) or default
    return Path(value) if value else None


@dataclass(frozen=True)
class DiscoveryConfig:
    """Immutable settings shared by every discovery component."""

    # Provider
    api_key: Optional[str] = None
    endpoint: str = BRAVE_SEARCH_ENDPOINT
    request_timeout: float = 10.0
    max_results: int = 3

    # Rate limits
    monthly_limit: int = 2000
    daily_limit: int = 66
    per_minute_limit: int = 10
    burst_limit: int = 5
    burst_window_seconds: int = 10

    # Cache
    cache_ttl_days: float = 7
    cache_max_items: int = 100
    compression_enabled: bool = False
    warmup_companies: Tuple[str, ...] = WARMUP_COMPANIES

    # Confidence
    confidence_threshold: float = 0.7
    auto_select_threshold: float = 0.9
    min_search_length: int = 3

    # Features
    discovery_enabled: bool = True
    auto_search: bool = True
    manual_entry: bool = True
    show_confidence: bool = True
    rollout_percentage: int = 100
    experiment_group: str = "control"

    # Monitoring
    monitoring_enabled: bool = True
    health_interval_seconds: float = 300.0
    probe_timeout: float = 5.0
    min_cache_hit_rate: float = 0.5
    min_cache_samples: int = 100
    max_avg_response_ms: float = 3000.0

    # Persistence
    db_path: Optional[Path] = None
    flags_path: Optional[Path] = None
    rate_state_path: Optional[Path] = None

    # Runtime
    environment: str = "development"
    log_level: str = "INFO"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def with_overrides(self, **changes) -> "DiscoveryConfig":
        """Return a copy with the given fields replaced."""
        return replace(self, **changes)

    def validate(self) -> List[str]:
        """
        Check the configuration for inconsistent values.

        Returns:
            List of error messages. Empty list means valid.
        """
        errors: List[str] = []

        if not self.api_key and self.is_production:
            errors.append("BRAVE_SEARCH_API_KEY is required in production")

        for name in ("monthly_limit", "daily_limit", "per_minute_limit", "burst_limit"):
            if getattr(self, name) <= 0:
                errors.append(f"{name} must be positive")

        if not 0 <= self.confidence_threshold <= 1:
            errors.append("confidence_threshold must be between 0 and 1")
        if not 0 <= self.auto_select_threshold <= 1:
            errors.append("auto_select_threshold must be between 0 and 1")
        if not 0 <= self.rollout_percentage <= 100:
            errors.append("rollout_percentage must be between 0 and 100")
        if self.cache_ttl_days <= 0:
            errors.append("cache_ttl_days must be positive")
        if self.health_interval_seconds <= 0:
            errors.append("health_interval_seconds must be positive")

        return errors


def load_config(env_file: Optional[Path] = None) -> DiscoveryConfig:
    """
    Assemble the configuration from the environment.

    Loads .env from the working directory (or env_file) first; variables
    already set in the process environment take precedence.

    Args:
        env_file: Optional explicit path to a .env file

    Returns:
        DiscoveryConfig instance
    """
    env_path = env_file or (Path.cwd() / ".env")
    if env_path.exists():
        load_dotenv(dotenv_path=env_path)

    monthly = _env_int("BRAVE_API_RATE_LIMIT", 2000)
    environment = os.getenv("COMPANYLINK_ENV", "development")

    return DiscoveryConfig(
        api_key=os.getenv("BRAVE_SEARCH_API_KEY") or None,
        endpoint=os.getenv("BRAVE_SEARCH_ENDPOINT", BRAVE_SEARCH_ENDPOINT),
        request_timeout=_env_float("COMPANYLINK_REQUEST_TIMEOUT", 10.0),
        max_results=_env_int("COMPANYLINK_MAX_RESULTS", 3),
        monthly_limit=monthly,
        # Rough daily share of the monthly quota
        daily_limit=_env_int("COMPANYLINK_DAILY_LIMIT", max(1, monthly // 30)),
        per_minute_limit=_env_int("COMPANYLINK_PER_MINUTE_LIMIT", 10),
        burst_limit=_env_int("COMPANYLINK_BURST_LIMIT", 5),
        cache_ttl_days=_env_float("LINKEDIN_CACHE_TTL_DAYS", 7),
        cache_max_items=_env_int("COMPANYLINK_CACHE_MAX_ITEMS", 100),
        compression_enabled=_env_bool("COMPANYLINK_CACHE_COMPRESSION", environment == "production"),
        warmup_companies=_env_list("COMPANYLINK_WARMUP_COMPANIES", WARMUP_COMPANIES),
        confidence_threshold=_env_float("LINKEDIN_CONFIDENCE_THRESHOLD", 0.7),
        discovery_enabled=_env_bool("LINKEDIN_DISCOVERY_ENABLED", True),
        rollout_percentage=_env_int("LINKEDIN_ROLLOUT", 100),
        experiment_group=os.getenv("LINKEDIN_EXPERIMENT_GROUP", "control"),
        monitoring_enabled=_env_bool("COMPANYLINK_MONITORING_ENABLED", True),
        health_interval_seconds=_env_float("COMPANYLINK_HEALTH_INTERVAL", 300.0),
        db_path=_env_path("COMPANYLINK_DB_PATH", "data/companylink.db"),
        flags_path=_env_path("COMPANYLINK_FLAGS_PATH", "data/feature_flags.json"),
        rate_state_path=_env_path("COMPANYLINK_STATE_PATH", "data/rate_limit_state.json"),
        environment=environment,
        log_level=os.getenv("COMPANYLINK_LOG_LEVEL", "INFO"),
    )
