"""
Tests for the TTL result cache.
"""

from unittest.mock import Mock

import pytest
from sqlalchemy.exc import OperationalError

from companylink.cache import ResultCache
from companylink.models import Candidate
from companylink.repositories import CacheRepository


@pytest.fixture
def candidates():
    return [
        Candidate(
            url="https://www.linkedin.com/company/microsoft",
            display_name="Microsoft",
            normalized_slug="microsoft",
            description="Software company",
            confidence=0.95,
        ),
        Candidate(
            url="https://www.linkedin.com/company/microsoft-research",
            display_name="Microsoft Research",
            normalized_slug="microsoft-research",
            description="",
            confidence=0.85,
        ),
    ]


class TestGetPut:
    """Test basic cache reads and writes."""

    def test_miss_on_empty_cache(self, clock):
        assert ResultCache(clock=clock).get("microsoft") is None

    def test_put_then_get(self, clock, candidates):
        cache = ResultCache(clock=clock)
        cache.put("Microsoft", candidates)
        assert cache.get("Microsoft") == candidates

    def test_key_is_normalized(self, clock, candidates):
        cache = ResultCache(clock=clock)
        cache.put("  MICROSOFT ", candidates)
        assert cache.get("microsoft") == candidates

    def test_empty_result_list_is_cached(self, clock):
        cache = ResultCache(clock=clock)
        cache.put("Nobody Inc", [])
        assert cache.get("Nobody Inc") == []

    def test_last_write_wins(self, clock, candidates):
        cache = ResultCache(clock=clock)
        cache.put("microsoft", candidates)
        cache.put("microsoft", candidates[:1])
        assert cache.get("microsoft") == candidates[:1]

    def test_compression_is_transparent(self, clock, candidates):
        cache = ResultCache(clock=clock, compression_enabled=True)
        cache.put("microsoft", candidates)

        assert cache.get("microsoft") == candidates
        assert not cache._entries["microsoft"].payload.startswith("[")


class TestExpiry:
    """Test TTL handling."""

    def test_expired_entry_is_a_miss(self, clock, candidates):
        cache = ResultCache(ttl_days=7, clock=clock)
        cache.put("microsoft", candidates)

        clock.advance(days=7, seconds=1)

        assert cache.get("microsoft") is None
        assert cache.stats()["misses"] == 1
        assert cache.stats()["entries"] == 0

    def test_entry_alive_at_exact_ttl(self, clock, candidates):
        cache = ResultCache(ttl_days=7, clock=clock)
        cache.put("microsoft", candidates)

        clock.advance(days=7)

        assert cache.get("microsoft") == candidates

    def test_per_entry_ttl(self, clock, candidates):
        cache = ResultCache(ttl_days=7, clock=clock)
        cache.put("microsoft", candidates, ttl_days=1)

        clock.advance(days=2)

        assert cache.get("microsoft") is None

    def test_sweep_removes_expired(self, clock, candidates):
        cache = ResultCache(ttl_days=1, clock=clock)
        cache.put("old one", candidates)
        cache.put("old two", candidates)
        clock.advance(days=2)
        cache.put("fresh", candidates)

        assert cache.sweep() == 2
        assert cache.stats()["entries"] == 1


class TestEvictionAndStats:
    """Test memory bounds and counters."""

    def test_oldest_inserted_entry_is_evicted(self, clock, candidates):
        evicted = []
        cache = ResultCache(max_memory_items=2, clock=clock, on_evict=lambda: evicted.append(1))
        cache.put("a", candidates)
        cache.put("b", candidates)
        cache.put("c", candidates)

        assert cache.get("a") is None
        assert cache.get("b") == candidates
        assert cache.stats()["evictions"] == 1
        assert len(evicted) == 1

    def test_hit_rate(self, clock, candidates):
        cache = ResultCache(clock=clock)
        cache.put("acme", candidates)
        cache.get("acme")
        cache.get("acme")
        cache.get("globex")

        stats = cache.stats()
        assert stats["hits"] == 2
        assert stats["misses"] == 1
        assert stats["hit_rate"] == pytest.approx(0.6667, abs=1e-4)

    def test_invalidate(self, clock, candidates):
        cache = ResultCache(clock=clock)
        cache.put("acme", candidates)
        cache.invalidate("ACME")
        assert cache.get("acme") is None

    def test_clear(self, clock, candidates):
        cache = ResultCache(clock=clock)
        cache.put("acme", candidates)
        cache.clear()
        assert cache.stats()["entries"] == 0

    def test_probe(self, clock):
        cache = ResultCache(clock=clock, compression_enabled=True)
        assert cache.probe() is True
        assert cache.stats()["entries"] == 0


class TestPersistentTier:
    """Test the SQLite-backed tier."""

    def test_store_hit_is_promoted(self, clock, candidates, tmp_path):
        repo = CacheRepository(tmp_path / "cache.db")
        ResultCache(repository=repo, clock=clock).put("Microsoft", candidates)

        fresh = ResultCache(repository=repo, clock=clock)
        assert fresh.get("microsoft") == candidates
        assert fresh.stats()["entries"] == 1
        assert fresh.stats()["hits"] == 1

    def test_store_hit_bumps_search_count(self, clock, candidates, tmp_path):
        repo = CacheRepository(tmp_path / "cache.db")
        ResultCache(repository=repo, clock=clock).put("microsoft", candidates)

        ResultCache(repository=repo, clock=clock).get("microsoft")

        row = repo.get("microsoft", clock())
        # put=1, promoted read=2, this read=3
        assert row.search_count == 3

    def test_expired_store_row_is_a_miss(self, clock, candidates, tmp_path):
        repo = CacheRepository(tmp_path / "cache.db")
        ResultCache(repository=repo, clock=clock).put("microsoft", candidates)
        clock.advance(days=8)

        assert ResultCache(repository=repo, clock=clock).get("microsoft") is None

    def test_store_row_alive_at_exact_ttl(self, clock, candidates, tmp_path):
        repo = CacheRepository(tmp_path / "cache.db")
        ResultCache(ttl_days=7, repository=repo, clock=clock).put("microsoft", candidates)
        clock.advance(days=7)

        assert ResultCache(ttl_days=7, repository=repo, clock=clock).get("microsoft") == candidates

    def test_compressed_payload_round_trips_through_store(self, clock, candidates, tmp_path):
        repo = CacheRepository(tmp_path / "cache.db")
        ResultCache(repository=repo, clock=clock, compression_enabled=True).put("microsoft", candidates)

        assert ResultCache(repository=repo, clock=clock).get("microsoft") == candidates

    def test_store_failure_is_a_miss(self, clock):
        repo = Mock()
        repo.get.side_effect = OperationalError("SELECT", {}, Exception("disk I/O error"))
        cache = ResultCache(repository=repo, clock=clock)

        assert cache.get("microsoft") is None
        assert cache.stats()["misses"] == 1

    def test_store_write_failure_keeps_memory_entry(self, clock, candidates):
        repo = Mock()
        repo.upsert.side_effect = OperationalError("INSERT", {}, Exception("database is locked"))
        cache = ResultCache(repository=repo, clock=clock)

        cache.put("microsoft", candidates)

        assert cache.get("microsoft") == candidates
