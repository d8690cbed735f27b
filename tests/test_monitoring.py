"""
Tests for health checks, metrics and alerting.
"""

import threading

import pytest

from companylink.monitoring import DEGRADED, HEALTHY, UNHEALTHY, Monitor, compute_path_probe


@pytest.fixture
def monitor(clock):
    return Monitor(clock=clock, probe_timeout=2.0)


class TestRecording:
    """Test counter updates."""

    def test_request_counters(self, monitor):
        monitor.record_request(True, 100.0)
        monitor.record_request(False, 300.0)

        req = monitor.get_metrics().requests
        assert req.total == 2
        assert req.successful == 1
        assert req.failed == 1
        assert req.avg_response_time_ms == 200.0

    def test_average_covers_last_100_requests(self, monitor):
        for _ in range(50):
            monitor.record_request(True, 1000.0)
        for _ in range(100):
            monitor.record_request(True, 10.0)

        assert monitor.get_metrics().requests.avg_response_time_ms == 10.0

    def test_cache_hit_rate(self, monitor):
        monitor.record_cache_lookup(True)
        monitor.record_cache_lookup(True)
        monitor.record_cache_lookup(False)
        monitor.record_cache_lookup(True)

        cache = monitor.get_metrics().cache
        assert cache.hits == 3
        assert cache.misses == 1
        assert cache.hit_rate == 0.75

    def test_evictions(self, monitor):
        monitor.record_cache_eviction()
        assert monitor.get_metrics().cache.evictions == 1

    def test_recent_errors_keep_last_ten(self, monitor):
        for i in range(15):
            monitor.record_error("provider_unavailable", f"failure {i}", {"attempt": i})

        errors = monitor.get_metrics().errors
        assert errors.total == 15
        assert errors.by_type == {"provider_unavailable": 15}
        assert len(errors.recent_errors) == 10
        assert errors.recent_errors[0].message == "failure 5"
        assert errors.recent_errors[-1].context == {"attempt": 14}

    def test_summary_errors_drop_context(self, clock):
        monitor = Monitor(detailed=False, clock=clock)
        monitor.record_error("rate_limit_exceeded", "burst", {"window": "burst", "term": "Microsoft"})

        errors = monitor.get_metrics().errors
        assert errors.by_type == {"rate_limit_exceeded": 1}
        assert errors.recent_errors[-1].message == "burst"
        assert errors.recent_errors[-1].context == {}

    def test_quota_and_rate_limit_hits(self, monitor):
        monitor.update_quota(used=12, remaining=1988)
        monitor.record_provider_rate_limit()

        api = monitor.get_metrics().api
        assert api.quota_used == 12
        assert api.quota_remaining == 1988
        assert api.rate_limit_hits == 1

    def test_snapshot_is_a_copy(self, monitor):
        monitor.record_error("validation_error", "too short")
        snapshot = monitor.get_metrics()
        snapshot.errors.recent_errors.clear()
        snapshot.requests.total = 99

        fresh = monitor.get_metrics()
        assert len(fresh.errors.recent_errors) == 1
        assert fresh.requests.total == 0

    def test_reset(self, monitor):
        monitor.record_request(True, 10.0)
        monitor.perform_health_check()
        monitor.reset()

        assert monitor.get_metrics().requests.total == 0
        assert monitor.last_health is None

    def test_to_dict(self, monitor):
        monitor.record_error("rate_limit_exceeded", "burst")
        data = monitor.get_metrics().to_dict()
        assert set(data) == {"requests", "cache", "api", "errors"}
        assert data["errors"]["recent_errors"][0]["kind"] == "rate_limit_exceeded"


class TestHealthCheck:
    """Test probe aggregation."""

    def test_compute_path_probe(self):
        assert compute_path_probe() is True

    def test_healthy(self, monitor, clock):
        result = monitor.perform_health_check()

        assert result.status == HEALTHY
        assert result.checks == {"store": True, "provider": True, "cache": True, "compute_path": True}
        assert result.errors == []
        assert result.timestamp == clock()
        assert monitor.last_health is result

    def test_failed_probe_is_unhealthy(self, clock):
        monitor = Monitor(store_probe=lambda: False, clock=clock)
        result = monitor.perform_health_check()

        assert result.status == UNHEALTHY
        assert result.checks["store"] is False
        assert result.errors == ["store: probe failed"]

    def test_raising_probe_is_unhealthy(self, clock):
        def broken():
            raise ConnectionError("connection refused")

        result = Monitor(provider_probe=broken, clock=clock).perform_health_check()

        assert result.status == UNHEALTHY
        assert result.checks["provider"] is False
        assert "connection refused" in result.errors[0]

    def test_hung_probe_times_out(self, clock):
        release = threading.Event()
        monitor = Monitor(cache_probe=lambda: release.wait(30), probe_timeout=0.2, clock=clock)
        try:
            result = monitor.perform_health_check()
        finally:
            release.set()

        assert result.status == UNHEALTHY
        assert result.checks["cache"] is False
        assert result.checks["store"] is True
        assert "timed out" in result.errors[0]

    def test_low_hit_rate_is_degraded(self, monitor):
        for _ in range(100):
            monitor.record_cache_lookup(False)

        assert monitor.perform_health_check().status == DEGRADED

    def test_low_hit_rate_needs_enough_samples(self, monitor):
        for _ in range(99):
            monitor.record_cache_lookup(False)

        assert monitor.perform_health_check().status == HEALTHY

    def test_slow_responses_are_degraded(self, monitor):
        monitor.record_request(True, 4000.0)
        assert monitor.perform_health_check().status == DEGRADED

    def test_health_to_dict(self, monitor):
        data = monitor.perform_health_check().to_dict()
        assert data["status"] == HEALTHY
        assert "metrics" in data


class TestAlerts:
    """Test alert derivation."""

    def test_no_alerts_when_quiet(self, monitor):
        assert monitor.check_alerts() == []

    def test_rate_limit_warnings_pass_through(self, monitor):
        alerts = monitor.check_alerts([
            {"window": "daily", "level": "critical", "message": "daily quota at 95.0%"},
        ])
        assert alerts == [{"level": "critical", "message": "Rate limit: daily quota at 95.0%"}]

    def test_high_error_rate(self, monitor):
        monitor.record_request(False, 10.0)
        for _ in range(4):
            monitor.record_request(True, 10.0)

        alerts = monitor.check_alerts()
        assert alerts == [{"level": "critical", "message": "High error rate: 20.0%"}]

    def test_elevated_error_rate(self, monitor):
        monitor.record_request(False, 10.0)
        for _ in range(14):
            monitor.record_request(True, 10.0)

        alerts = monitor.check_alerts()
        assert alerts[0]["level"] == "warning"
        assert alerts[0]["message"].startswith("Elevated error rate")

    def test_response_time(self, monitor):
        monitor.record_request(True, 6000.0)
        assert {"level": "critical", "message": "High response time: 6000ms"} in monitor.check_alerts()

    def test_provider_rate_limit_hits(self, monitor):
        monitor.record_provider_rate_limit()
        assert monitor.check_alerts() == [{"level": "warning", "message": "Provider rate limit hits: 1"}]

    def test_low_cache_hit_rate(self, monitor):
        for _ in range(101):
            monitor.record_cache_lookup(False)

        messages = [a["message"] for a in monitor.check_alerts()]
        assert "Low cache hit rate: 0.0%" in messages


class TestExport:
    """Test metric export and summaries."""

    def test_export_lines(self, monitor, clock):
        monitor.record_request(True, 120.0)
        lines = monitor.export_metrics().splitlines()
        ts = str(int(clock().timestamp() * 1000))

        assert len(lines) == 13
        assert "companylink_requests_total 1 " + ts in lines
        assert all(line.endswith(ts) for line in lines)

    def test_export_health_value(self, clock):
        monitor = Monitor(store_probe=lambda: False, clock=clock)
        monitor.perform_health_check()
        assert monitor.export_metrics().splitlines()[-1].startswith("companylink_health_status 0 ")

    def test_log_summary(self, monitor, tmp_path):
        monitor.record_request(True, 50.0)
        monitor.record_error("timeout", "slow")
        monitor.log_summary()

        log_text = "".join(p.read_text() for p in (tmp_path / "logs").glob("*.log"))
        assert "=== Discovery Metrics ===" in log_text
        assert "timeout: 1" in log_text


class TestBackgroundLoop:
    """Test periodic probing."""

    def test_start_and_stop(self, clock):
        probed = threading.Event()

        def probe():
            probed.set()
            return True

        monitor = Monitor(store_probe=probe, clock=clock)
        monitor.start(interval_seconds=60)
        try:
            assert probed.wait(5)
        finally:
            monitor.stop()

        assert monitor._thread is None

    def test_start_twice_is_a_noop(self, clock):
        monitor = Monitor(clock=clock)
        monitor.start(interval_seconds=60)
        thread = monitor._thread
        monitor.start(interval_seconds=60)
        try:
            assert monitor._thread is thread
        finally:
            monitor.stop()
