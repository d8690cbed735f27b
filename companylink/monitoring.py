"""
Health and metrics monitoring for the discovery pipeline.

The Monitor keeps running counters fed by the discovery service, probes
the pipeline's dependencies on demand or on a background thread, and
derives alerts from the counters plus rate-limit warning levels. It only
reads other components; it never changes their state.
"""

import copy
import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable, Deque, Dict, List, Optional

from .logger import get_logger
from .models import SearchHit
from .scoring import MAX_CONFIDENCE, score

RESPONSE_TIME_WINDOW = 100
RECENT_ERRORS = 10

HEALTHY = "healthy"
DEGRADED = "degraded"
UNHEALTHY = "unhealthy"

CRITICAL_ERROR_RATE = 0.10
WARNING_ERROR_RATE = 0.05
CRITICAL_RESPONSE_MS = 5000.0
WARNING_RESPONSE_MS = 3000.0

# Fixed input for the compute-path probe; must score the maximum
PROBE_HIT = SearchHit(
    title="Microsoft | LinkedIn",
    url="https://www.linkedin.com/company/microsoft",
    description="",
)
PROBE_TERM = "Microsoft"


@dataclass
class RequestMetrics:
    total: int = 0
    successful: int = 0
    failed: int = 0
    avg_response_time_ms: float = 0.0


@dataclass
class CacheMetrics:
    hits: int = 0
    misses: int = 0
    hit_rate: float = 0.0
    evictions: int = 0


@dataclass
class ApiMetrics:
    quota_used: int = 0
    quota_remaining: int = 0
    rate_limit_hits: int = 0


@dataclass
class ErrorRecord:
    kind: str
    message: str
    timestamp: datetime
    context: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ErrorMetrics:
    total: int = 0
    by_type: Dict[str, int] = field(default_factory=dict)
    recent_errors: List[ErrorRecord] = field(default_factory=list)


@dataclass
class MonitoringMetrics:
    requests: RequestMetrics = field(default_factory=RequestMetrics)
    cache: CacheMetrics = field(default_factory=CacheMetrics)
    api: ApiMetrics = field(default_factory=ApiMetrics)
    errors: ErrorMetrics = field(default_factory=ErrorMetrics)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class HealthCheckResult:
    status: str
    checks: Dict[str, bool]
    metrics: MonitoringMetrics
    timestamp: datetime
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "checks": dict(self.checks),
            "metrics": self.metrics.to_dict(),
            "timestamp": self.timestamp.isoformat(),
            "errors": list(self.errors),
        }


def compute_path_probe() -> bool:
    return score(PROBE_HIT, PROBE_TERM, 0) == MAX_CONFIDENCE


class Monitor:
    """
    Running metrics, dependency probes and alerting.

    Probes (each returns bool, exceptions count as failure):
        store         SELECT 1 against the database
        provider      search endpoint reachable with a key configured
        cache         ResultCache write/read/remove round trip
        compute_path  scorer returns the expected value for a fixed input
    An unconfigured dependency passes its probe.

    With detailed=False, recorded errors keep only kind, message and time.
    """

    def __init__(
        self,
        store_probe: Optional[Callable[[], bool]] = None,
        provider_probe: Optional[Callable[[], bool]] = None,
        cache_probe: Optional[Callable[[], bool]] = None,
        min_cache_hit_rate: float = 0.5,
        min_cache_samples: int = 100,
        max_avg_response_ms: float = 3000.0,
        probe_timeout: float = 5.0,
        detailed: bool = True,
        clock: Callable[[], datetime] = datetime.now,
        logger=None,
    ):
        self.probes: Dict[str, Callable[[], bool]] = {
            "store": store_probe or (lambda: True),
            "provider": provider_probe or (lambda: True),
            "cache": cache_probe or (lambda: True),
            "compute_path": compute_path_probe,
        }
        self.min_cache_hit_rate = min_cache_hit_rate
        self.min_cache_samples = min_cache_samples
        self.max_avg_response_ms = max_avg_response_ms
        self.probe_timeout = probe_timeout
        self.detailed = detailed
        self._clock = clock
        self._logger = logger or get_logger()

        self._lock = threading.Lock()
        self._metrics = MonitoringMetrics()
        self._response_times: Deque[float] = deque(maxlen=RESPONSE_TIME_WINDOW)
        self._last_health: Optional[HealthCheckResult] = None

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # Recording

    def record_request(self, success: bool, response_time_ms: float) -> None:
        with self._lock:
            req = self._metrics.requests
            req.total += 1
            if success:
                req.successful += 1
            else:
                req.failed += 1
            self._response_times.append(response_time_ms)
            req.avg_response_time_ms = round(sum(self._response_times) / len(self._response_times), 1)

    def record_cache_lookup(self, hit: bool) -> None:
        with self._lock:
            cache = self._metrics.cache
            if hit:
                cache.hits += 1
            else:
                cache.misses += 1
            cache.hit_rate = round(cache.hits / (cache.hits + cache.misses), 4)

    def record_cache_eviction(self) -> None:
        with self._lock:
            self._metrics.cache.evictions += 1

    def record_error(self, kind: str, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        context = dict(context or {}) if self.detailed else {}
        with self._lock:
            errors = self._metrics.errors
            errors.total += 1
            errors.by_type[kind] = errors.by_type.get(kind, 0) + 1
            errors.recent_errors.append(ErrorRecord(kind, message, self._clock(), context))
            del errors.recent_errors[:-RECENT_ERRORS]
        self._logger.warning("Discovery error recorded", kind=kind, error=message, context=context)

    def update_quota(self, used: int, remaining: int) -> None:
        with self._lock:
            self._metrics.api.quota_used = used
            self._metrics.api.quota_remaining = remaining

    def record_provider_rate_limit(self) -> None:
        with self._lock:
            self._metrics.api.rate_limit_hits += 1

    def reset(self) -> None:
        with self._lock:
            self._metrics = MonitoringMetrics()
            self._response_times.clear()
            self._last_health = None

    # Reading

    def get_metrics(self) -> MonitoringMetrics:
        with self._lock:
            return copy.deepcopy(self._metrics)

    @property
    def last_health(self) -> Optional[HealthCheckResult]:
        return self._last_health

    def error_rate(self) -> float:
        with self._lock:
            req = self._metrics.requests
            return req.failed / req.total if req.total else 0.0

    def perform_health_check(self) -> HealthCheckResult:
        """Run all probes concurrently and aggregate them into one status."""
        checks: Dict[str, bool] = {}
        errors: List[str] = []

        executor = ThreadPoolExecutor(max_workers=len(self.probes), thread_name_prefix="health-probe")
        try:
            futures = {name: executor.submit(probe) for name, probe in self.probes.items()}
            deadline = time.monotonic() + self.probe_timeout
            for name, future in futures.items():
                try:
                    ok = bool(future.result(timeout=max(0.0, deadline - time.monotonic())))
                    if not ok:
                        errors.append(f"{name}: probe failed")
                except FutureTimeout:
                    ok = False
                    errors.append(f"{name}: timed out after {self.probe_timeout}s")
                except Exception as e:
                    ok = False
                    errors.append(f"{name}: {e}")
                checks[name] = ok
        finally:
            # A hung probe must not hold up the result
            executor.shutdown(wait=False, cancel_futures=True)

        metrics = self.get_metrics()
        if not all(checks.values()):
            status = UNHEALTHY
        elif self._soft_threshold_breached(metrics):
            status = DEGRADED
        else:
            status = HEALTHY

        result = HealthCheckResult(
            status=status,
            checks=checks,
            metrics=metrics,
            timestamp=self._clock(),
            errors=errors,
        )
        self._last_health = result

        if status == HEALTHY:
            self._logger.debug("Health check passed", checks=checks)
        else:
            self._logger.warning("Health check not healthy", status=status, checks=checks, errors=errors)
        return result

    def _soft_threshold_breached(self, metrics: MonitoringMetrics) -> bool:
        cache = metrics.cache
        lookups = cache.hits + cache.misses
        if lookups >= self.min_cache_samples and cache.hit_rate < self.min_cache_hit_rate:
            return True
        return metrics.requests.avg_response_time_ms > self.max_avg_response_ms

    def check_alerts(self, warning_levels: Optional[List[Dict[str, Any]]] = None) -> List[Dict[str, str]]:
        """
        Derive alerts from current metrics and rate-limit warning levels.

        Returns:
            List of {level, message}
        """
        alerts: List[Dict[str, str]] = []

        for warning in warning_levels or []:
            alerts.append({"level": warning["level"], "message": f"Rate limit: {warning['message']}"})

        metrics = self.get_metrics()
        rate = self.error_rate()
        if rate > CRITICAL_ERROR_RATE:
            alerts.append({"level": "critical", "message": f"High error rate: {rate * 100:.1f}%"})
        elif rate > WARNING_ERROR_RATE:
            alerts.append({"level": "warning", "message": f"Elevated error rate: {rate * 100:.1f}%"})

        cache = metrics.cache
        if cache.hit_rate < self.min_cache_hit_rate and cache.hits + cache.misses > self.min_cache_samples:
            alerts.append({"level": "warning", "message": f"Low cache hit rate: {cache.hit_rate * 100:.1f}%"})

        avg = metrics.requests.avg_response_time_ms
        if avg > CRITICAL_RESPONSE_MS:
            alerts.append({"level": "critical", "message": f"High response time: {avg:.0f}ms"})
        elif avg > WARNING_RESPONSE_MS:
            alerts.append({"level": "warning", "message": f"Elevated response time: {avg:.0f}ms"})

        if metrics.api.rate_limit_hits > 0:
            alerts.append({"level": "warning", "message": f"Provider rate limit hits: {metrics.api.rate_limit_hits}"})

        return alerts

    def export_metrics(self) -> str:
        """Plain-text 'name value timestamp' lines for external scrapers."""
        ts = int(self._clock().timestamp() * 1000)
        m = self.get_metrics()
        health = self._last_health.status if self._last_health else HEALTHY
        health_value = {HEALTHY: 1, DEGRADED: 0.5}.get(health, 0)

        lines = [
            ("companylink_requests_total", m.requests.total),
            ("companylink_requests_successful", m.requests.successful),
            ("companylink_requests_failed", m.requests.failed),
            ("companylink_response_time_avg", m.requests.avg_response_time_ms),
            ("companylink_cache_hits", m.cache.hits),
            ("companylink_cache_misses", m.cache.misses),
            ("companylink_cache_hit_rate", m.cache.hit_rate),
            ("companylink_cache_evictions", m.cache.evictions),
            ("companylink_api_rate_limit_hits", m.api.rate_limit_hits),
            ("companylink_api_quota_used", m.api.quota_used),
            ("companylink_api_quota_remaining", m.api.quota_remaining),
            ("companylink_errors_total", m.errors.total),
            ("companylink_health_status", health_value),
        ]
        return "\n".join(f"{name} {value} {ts}" for name, value in lines)

    def log_summary(self) -> None:
        self._logger.log_metrics_summary(self.get_metrics().to_dict())

    # Background probing

    def start(self, interval_seconds: float = 300.0) -> None:
        """Probe every interval_seconds on a daemon thread until stop()."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, args=(interval_seconds,), name="companylink-monitor", daemon=True,
        )
        self._thread.start()
        self._logger.info("Health monitor started", interval_seconds=interval_seconds)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        self._logger.info("Health monitor stopped")

    def _run(self, interval_seconds: float) -> None:
        while not self._stop_event.is_set():
            try:
                self.perform_health_check()
            except Exception as e:
                self._logger.error("Periodic health check crashed", error=str(e))
            self._stop_event.wait(interval_seconds)
