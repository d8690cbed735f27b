"""
Pytest configuration and shared fixtures.
"""

import pytest
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from companylink.cache import ResultCache
from companylink.config import DiscoveryConfig
from companylink.discovery import DiscoveryService
from companylink.flags import FeatureFlagEvaluator, default_flags
from companylink.logger import get_logger, reset_logger
from companylink.models import SearchHit
from companylink.monitoring import Monitor
from companylink.rate_limit import RateLimiter


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)

    def set(self, now: datetime) -> None:
        self.now = now


class FakeProvider:
    """Stands in for BraveSearchProvider; records every search."""

    def __init__(self, hits: Optional[List[SearchHit]] = None, errors: Optional[List[Exception]] = None):
        self.hits = hits or []
        self.errors = list(errors or [])
        self.calls: List[str] = []

    def search(self, company_name: str) -> List[SearchHit]:
        self.calls.append(company_name)
        if self.errors:
            raise self.errors.pop(0)
        return list(self.hits)

    def ping(self) -> bool:
        return True


@pytest.fixture(autouse=True)
def quiet_logger(tmp_path):
    """Route the global logger to a temp dir with console output off."""
    reset_logger()
    get_logger(log_dir=tmp_path / "logs", enable_console=False)
    yield
    reset_logger()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2025, 3, 15, 12, 0, 0))


@pytest.fixture
def config() -> DiscoveryConfig:
    return DiscoveryConfig(api_key="test-key", db_path=None)


@pytest.fixture
def microsoft_hit() -> SearchHit:
    return SearchHit(
        title="Microsoft | LinkedIn",
        url="https://www.linkedin.com/company/microsoft",
        description="Microsoft | 24,000,000 followers on LinkedIn. Every company has a mission.",
    )


@pytest.fixture
def brave_payload() -> Dict[str, Any]:
    """Body of a Brave web-search response with mixed results."""
    return {
        "type": "search",
        "web": {
            "results": [
                {
                    "title": "Acme Corp | LinkedIn",
                    "url": "https://www.linkedin.com/company/acme-corp",
                    "description": "<strong>Acme</strong> Corp builds anvils.",
                },
                {
                    "title": "Jane Doe - Engineer - Acme Corp | LinkedIn",
                    "url": "https://www.linkedin.com/in/jane-doe",
                    "description": "Engineer at Acme.",
                },
                {
                    "title": "Acme Holdings | LinkedIn",
                    "url": "https://www.linkedin.com/company/acme-holdings/",
                    "description": "Holding company.",
                },
                {
                    "title": "Acme Labs | LinkedIn",
                    "url": "https://www.linkedin.com/company/acme-labs",
                    "description": "Fourth result, never considered.",
                },
            ]
        },
    }


@pytest.fixture
def make_provider():
    def _make(hits=None, errors=None) -> FakeProvider:
        return FakeProvider(hits=hits, errors=errors)
    return _make


@pytest.fixture
def make_service(config, clock):
    """
    Build a DiscoveryService from real components and a fake provider.

    Keyword overrides are applied to the config before wiring.
    """
    def _make(provider=None, analytics=None, sleep=None, **overrides) -> DiscoveryService:
        cfg = config.with_overrides(**overrides) if overrides else config
        monitor = Monitor(clock=clock)
        cache = ResultCache(
            ttl_days=cfg.cache_ttl_days,
            max_memory_items=cfg.cache_max_items,
            clock=clock,
            on_evict=monitor.record_cache_eviction,
        )
        monitor.probes["cache"] = cache.probe
        return DiscoveryService(
            config=cfg,
            flags=FeatureFlagEvaluator(default_flags(cfg), clock=clock),
            cache=cache,
            limiter=RateLimiter.from_config(cfg, clock=clock),
            provider=provider or FakeProvider(),
            monitor=monitor,
            analytics=analytics,
            sleep=sleep or (lambda seconds: None),
        )
    return _make
