"""
Tests for four-window admission control.
"""

import json
import threading
from datetime import datetime

import pytest

from companylink.rate_limit import RateLimiter, WindowKind, first_of_next_month, next_midnight


def used(limiter: RateLimiter) -> dict:
    return {w["kind"]: w["used"] for w in limiter.get_status()["windows"]}


def roomy(clock, **limits) -> RateLimiter:
    """Limiter where only the windows named in limits are tight."""
    defaults = dict(monthly_limit=100000, daily_limit=100000, per_minute_limit=100000, burst_limit=100000)
    defaults.update(limits)
    return RateLimiter(clock=clock, **defaults)


class TestAdmission:
    """Test try_admit across the four windows."""

    def test_admits_and_consumes_every_window(self, clock):
        limiter = RateLimiter(clock=clock)
        result = limiter.try_admit()

        assert result.admitted is True
        assert result.denied_window is None
        assert used(limiter) == {"monthly": 1, "daily": 1, "per_minute": 1, "burst": 1}

    def test_default_daily_limit_is_share_of_monthly(self, clock):
        limiter = RateLimiter(monthly_limit=3000, clock=clock)
        daily = next(w for w in limiter.get_windows() if w.kind == WindowKind.DAILY)
        assert daily.limit == 100

    def test_burst_denial(self, clock):
        limiter = roomy(clock, burst_limit=5)
        for _ in range(5):
            assert limiter.try_admit().admitted

        result = limiter.try_admit()
        assert result.admitted is False
        assert result.denied_window == WindowKind.BURST
        assert result.retry_after_seconds == 10

    def test_burst_window_rolls_over(self, clock):
        limiter = roomy(clock, burst_limit=1)
        assert limiter.try_admit().admitted
        assert not limiter.try_admit().admitted

        clock.advance(seconds=10)
        assert limiter.try_admit().admitted

    def test_per_minute_denial(self, clock):
        limiter = roomy(clock, per_minute_limit=10)
        for _ in range(10):
            limiter.try_admit()

        assert limiter.try_admit().denied_window == WindowKind.PER_MINUTE

        clock.advance(seconds=60)
        assert limiter.try_admit().admitted

    def test_daily_resets_at_midnight(self, clock):
        clock.set(datetime(2025, 3, 15, 23, 59, 0))
        limiter = roomy(clock, daily_limit=2)
        limiter.try_admit()
        limiter.try_admit()
        assert limiter.try_admit().denied_window == WindowKind.DAILY

        clock.set(datetime(2025, 3, 16, 0, 0, 1))
        assert limiter.try_admit().admitted

    def test_monthly_exhausted_is_reported_first(self, clock, tmp_path):
        """Monthly 1000/1000 is denied as monthly even when other windows are also full."""
        state = tmp_path / "state.json"
        state.write_text(json.dumps({
            "windows": {
                "monthly": {"used": 1000, "reset_at": "2025-04-01T00:00:00"},
                "burst": {"used": 5, "reset_at": "2025-03-15T12:00:10"},
            }
        }))
        limiter = RateLimiter(
            monthly_limit=1000, daily_limit=1000, per_minute_limit=10, burst_limit=5,
            state_path=state, clock=clock,
        )

        result = limiter.try_admit()
        assert result.admitted is False
        assert result.denied_window == WindowKind.MONTHLY

    def test_monthly_denial_with_other_windows_free(self, clock, tmp_path):
        state = tmp_path / "state.json"
        state.write_text(json.dumps({
            "windows": {"monthly": {"used": 1000, "reset_at": "2025-04-01T00:00:00"}}
        }))
        limiter = RateLimiter(monthly_limit=1000, daily_limit=1000, state_path=state, clock=clock)

        result = limiter.try_admit()
        assert result.denied_window == WindowKind.MONTHLY
        assert result.retry_after_seconds == int((datetime(2025, 4, 1) - clock()).total_seconds())

    def test_denial_consumes_nothing(self, clock):
        limiter = roomy(clock, burst_limit=2)
        limiter.try_admit()
        limiter.try_admit()
        before = used(limiter)

        limiter.try_admit()
        limiter.try_admit()

        assert used(limiter) == before

    def test_cost_larger_than_remaining_is_denied_in_full(self, clock):
        limiter = roomy(clock, burst_limit=3)
        limiter.try_admit()

        result = limiter.try_admit(cost=3)
        assert result.admitted is False
        assert used(limiter)["burst"] == 1

    def test_used_never_exceeds_limit(self, clock):
        limiter = RateLimiter(monthly_limit=60, daily_limit=20, per_minute_limit=7, burst_limit=3, clock=clock)
        for _ in range(200):
            limiter.try_admit()
            clock.advance(seconds=3)
            for w in limiter.get_windows():
                assert 0 <= w.used <= w.limit

    def test_concurrent_admissions_respect_limit(self, clock):
        limiter = roomy(clock, burst_limit=5)
        results = []
        lock = threading.Lock()

        def worker():
            r = limiter.try_admit()
            with lock:
                results.append(r.admitted)

        threads = [threading.Thread(target=worker) for _ in range(40)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 5
        assert used(limiter)["burst"] == 5


class TestRollover:
    """Test window boundary helpers."""

    def test_next_midnight(self):
        assert next_midnight(datetime(2025, 3, 15, 23, 59, 59)) == datetime(2025, 3, 16)

    def test_first_of_next_month(self):
        assert first_of_next_month(datetime(2025, 3, 15, 12)) == datetime(2025, 4, 1)

    def test_first_of_next_month_december(self):
        assert first_of_next_month(datetime(2025, 12, 31, 23)) == datetime(2026, 1, 1)

    def test_reset_at_strictly_increases(self, clock):
        limiter = roomy(clock, burst_limit=1)
        first = next(w for w in limiter.get_windows() if w.kind == WindowKind.BURST).reset_at

        clock.advance(seconds=11)
        limiter.try_admit()
        second = next(w for w in limiter.get_windows() if w.kind == WindowKind.BURST).reset_at

        assert second > first


class TestStatusAndWarnings:
    """Test status reporting and utilization warnings."""

    def test_status_shape(self, clock):
        limiter = RateLimiter(clock=clock)
        limiter.try_admit()
        windows = limiter.get_status()["windows"]

        assert [w["kind"] for w in windows] == ["monthly", "daily", "per_minute", "burst"]
        burst = windows[-1]
        assert burst["limit"] == 5
        assert burst["remaining"] == 4
        assert burst["utilization_pct"] == 20.0
        assert "reset_at" in burst

    def test_no_warnings_when_idle(self, clock):
        assert RateLimiter(clock=clock).get_warning_levels() == []

    def test_warning_at_75_percent(self, clock):
        limiter = roomy(clock, per_minute_limit=4)
        for _ in range(3):
            limiter.try_admit()

        warnings = limiter.get_warning_levels()
        assert len(warnings) == 1
        assert warnings[0]["window"] == WindowKind.PER_MINUTE
        assert warnings[0]["level"] == "warning"

    def test_critical_at_90_percent(self, clock):
        limiter = roomy(clock, per_minute_limit=4)
        for _ in range(4):
            limiter.try_admit()

        assert limiter.get_warning_levels()[0]["level"] == "critical"

    def test_multiple_windows_warn_independently(self, clock):
        limiter = roomy(clock, per_minute_limit=4, burst_limit=4)
        for _ in range(3):
            limiter.try_admit()

        windows = {w["window"] for w in limiter.get_warning_levels()}
        assert windows == {WindowKind.PER_MINUTE, WindowKind.BURST}


class TestRequestStats:
    """Test request history statistics."""

    def test_stats_over_range(self, clock):
        limiter = RateLimiter(clock=clock)
        limiter.try_admit()
        limiter.record_completion(True, 100.0)
        limiter.try_admit()
        limiter.record_completion(False, 300.0)

        stats = limiter.get_request_stats("1h")
        assert stats["total_requests"] == 2
        assert stats["successful_requests"] == 1
        assert stats["failed_requests"] == 1
        assert stats["success_rate"] == 50.0
        assert stats["avg_response_time_ms"] == 200.0
        assert stats["requests_per_hour"] == 2.0

    def test_old_requests_fall_out_of_range(self, clock):
        limiter = RateLimiter(clock=clock)
        limiter.try_admit()
        limiter.record_completion(True, 50.0)
        clock.advance(hours=2)

        assert limiter.get_request_stats("1h")["total_requests"] == 0
        assert limiter.get_request_stats("24h")["total_requests"] == 1

    def test_unknown_range(self, clock):
        with pytest.raises(ValueError):
            RateLimiter(clock=clock).get_request_stats("90d")

    def test_completion_without_pending_request(self, clock):
        limiter = RateLimiter(clock=clock)
        limiter.record_completion(True, 10.0)
        assert limiter.get_request_stats("1h")["total_requests"] == 0


class TestAdministration:
    """Test quota reset and state persistence."""

    def test_reset_single_window(self, clock):
        limiter = RateLimiter(clock=clock)
        limiter.try_admit()
        limiter.reset_quota(WindowKind.DAILY)

        counts = used(limiter)
        assert counts["daily"] == 0
        assert counts["monthly"] == 1

    def test_reset_all_windows(self, clock):
        limiter = RateLimiter(clock=clock)
        limiter.try_admit()
        limiter.reset_quota()
        assert set(used(limiter).values()) == {0}

    def test_reset_unknown_window(self, clock):
        with pytest.raises(ValueError):
            RateLimiter(clock=clock).reset_quota("weekly")

    def test_state_survives_restart(self, clock, tmp_path):
        state = tmp_path / "rate_state.json"
        first = RateLimiter(state_path=state, clock=clock)
        first.try_admit()
        first.try_admit()

        second = RateLimiter(state_path=state, clock=clock)
        assert used(second)["monthly"] == 2

    def test_loaded_usage_clamped_to_lowered_limit(self, clock, tmp_path):
        state = tmp_path / "rate_state.json"
        state.write_text(json.dumps({
            "windows": {"monthly": {"used": 500, "reset_at": "2025-04-01T00:00:00"}}
        }))
        limiter = RateLimiter(monthly_limit=100, daily_limit=100, state_path=state, clock=clock)
        assert used(limiter)["monthly"] == 100

    def test_corrupt_state_is_ignored(self, clock, tmp_path):
        state = tmp_path / "rate_state.json"
        state.write_text("{not json")
        limiter = RateLimiter(state_path=state, clock=clock)
        assert used(limiter)["monthly"] == 0
