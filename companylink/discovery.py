"""
Discovery Orchestrator.

Responsibilities:
- Run one discover() cycle: validate, flag check, cache, admission,
  provider call, scoring, cache write, metrics.
- Convert every expected failure into a typed DiscoveryResult.
- Hand confirmed selections back to the caller and log user decisions.

Non-Responsibilities:
- No persistence of the selected profile (the caller owns that).
- No debouncing of user input.

Invariant:
Every discover() call ends with either a results list or a typed error.
"""

import threading
import time
from datetime import datetime
from functools import partial
from typing import Any, Callable, Dict, Iterable, Optional, Union

from sqlalchemy.exc import SQLAlchemyError

from .cache import ResultCache
from .config import DiscoveryConfig
from .database import ping
from .errors import (
    DiscoveryError,
    FeatureDisabled,
    ProviderRejected,
    ProviderUnavailable,
    RateLimitExceeded,
    ValidationError,
)
from .flags import (
    ADVANCED_CACHING_FLAG,
    AUTO_SEARCH_FLAG,
    DETAILED_MONITORING_FLAG,
    DISCOVERY_FLAG,
    MANUAL_ENTRY_FLAG,
    STRICT_RATE_LIMIT_FLAG,
    FeatureFlagEvaluator,
)
from .logger import get_logger
from .models import DiscoveryResult, ErrorInfo, Selection, UserContext
from .monitoring import Monitor
from .normalize import normalize_search_term
from .provider import BraveSearchProvider
from .rate_limit import RateLimiter, WindowKind
from .repositories import AnalyticsRepository, CacheRepository
from .retry import RetryError, exponential_backoff
from .schema import validate_profile_url, validate_search_term
from .scoring import rank_candidates, should_auto_select

MAX_DISCOVERY_ATTEMPTS = 3


class _RetryableOutcome(Exception):
    """Carries a recoverable DiscoveryResult through the backoff decorator."""

    def __init__(self, result: DiscoveryResult):
        super().__init__(result.error.message if result.error else "retryable outcome")
        self.result = result


def error_info(error: DiscoveryError) -> ErrorInfo:
    return ErrorInfo(
        kind=error.kind,
        message=error.message,
        window=getattr(error, "window", None),
        retryable=error.retryable,
        retry_after_seconds=getattr(error, "retry_after_seconds", None),
        error_type=getattr(error, "error_type", None),
        status_code=getattr(error, "status_code", None),
    )


class DiscoveryService:
    """Composes flags, cache, limiter, provider, scorer and monitor."""

    def __init__(
        self,
        config: DiscoveryConfig,
        flags: FeatureFlagEvaluator,
        cache: ResultCache,
        limiter: RateLimiter,
        provider: BraveSearchProvider,
        monitor: Monitor,
        analytics: Optional[AnalyticsRepository] = None,
        timer: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        logger=None,
    ):
        self.config = config
        self.flags = flags
        self.cache = cache
        self.limiter = limiter
        self.provider = provider
        self.monitor = monitor
        self.analytics = analytics
        self._timer = timer
        self._sleep = sleep
        self._logger = logger or get_logger()

    def discover(self, company_name: str, context: Optional[UserContext] = None) -> DiscoveryResult:
        """
        Find candidate profile URLs for a company name.

        Args:
            company_name: Free-text company name
            context: Identity used for feature-flag evaluation

        Returns:
            DiscoveryResult with ranked candidates or a typed error
        """
        errors = validate_search_term(company_name, self.config.min_search_length)
        if errors:
            term = company_name.strip() if isinstance(company_name, str) else ""
            return self._failure(term, ValidationError(errors[0]))

        term = company_name.strip()

        evaluation = self.flags.evaluate(DISCOVERY_FLAG, context)
        if not evaluation.enabled:
            self._logger.info("Discovery disabled for context", term=term, reason=evaluation.reason)
            return self._failure(term, FeatureDisabled(f"Company discovery is not available ({evaluation.reason})"))

        cached = self.cache.get(term)
        self.monitor.record_cache_lookup(cached is not None)
        if cached is not None:
            return self._success(term, cached, cached=True)

        admission = self.limiter.try_admit()
        self._sync_quota()
        if not admission.admitted:
            label = admission.denied_window.replace("_", "-")
            error = RateLimitExceeded(
                f"{label} search limit reached; try again later or enter the URL manually",
                window=admission.denied_window,
                retry_after_seconds=admission.retry_after_seconds,
            )
            self.monitor.record_error(error.kind, error.message, {"window": error.window, "term": term})
            return self._failure(term, error)

        started = self._timer()
        try:
            hits = self.provider.search(term)
        except (ProviderUnavailable, ProviderRejected) as e:
            elapsed_ms = (self._timer() - started) * 1000
            self.limiter.record_completion(False, elapsed_ms)
            self.monitor.record_request(False, elapsed_ms)
            if isinstance(e, ProviderRejected) and e.status_code == 429:
                self.monitor.record_provider_rate_limit()
            self.monitor.record_error(e.kind, e.message, {
                "term": term,
                "error_type": getattr(e, "error_type", None),
                "status_code": getattr(e, "status_code", None),
            })
            return self._failure(term, e)

        elapsed_ms = (self._timer() - started) * 1000
        candidates = rank_candidates(hits, term, self.config.max_results)
        self.cache.put(term, candidates)
        self.limiter.record_completion(True, elapsed_ms)
        self.monitor.record_request(True, elapsed_ms)

        self._logger.info(
            "Discovery completed",
            term=term,
            candidates=len(candidates),
            top_confidence=candidates[0].confidence if candidates else None,
            response_time_ms=round(elapsed_ms, 1),
        )
        return self._success(term, candidates, cached=False)

    def _success(self, term: str, candidates, cached: bool) -> DiscoveryResult:
        auto = candidates[0] if should_auto_select(candidates, self.config.auto_select_threshold) else None
        return DiscoveryResult(
            success=True,
            search_term=term,
            results=list(candidates),
            cached=cached,
            auto_selected=auto,
        )

    def _failure(self, term: str, error: DiscoveryError) -> DiscoveryResult:
        return DiscoveryResult(success=False, search_term=term, error=error_info(error))

    def _sync_quota(self) -> None:
        monthly = next(w for w in self.limiter.get_windows() if w.kind == WindowKind.MONTHLY)
        self.monitor.update_quota(monthly.used, monthly.remaining)

    def discover_with_retry(
        self,
        company_name: str,
        context: Optional[UserContext] = None,
        attempts: int = MAX_DISCOVERY_ATTEMPTS,
        base_delay: float = 1.0,
    ) -> DiscoveryResult:
        """
        discover(), repeated with exponential backoff while the outcome is
        a recoverable provider outage. At most three attempts, and a single
        one when strict rate limiting is on for the context.
        """
        attempts = max(1, min(attempts, MAX_DISCOVERY_ATTEMPTS))
        if attempts > 1 and self.flags.is_enabled(STRICT_RATE_LIMIT_FLAG, context):
            self._logger.debug("Strict rate limiting; retries disabled", term=company_name)
            attempts = 1

        def on_retry(attempt, exc, delay):
            self._logger.info("Retrying discovery", term=company_name, attempt=attempt, delay=delay)

        @exponential_backoff(
            max_retries=attempts - 1,
            base_delay=base_delay,
            exceptions=(_RetryableOutcome,),
            on_retry=on_retry,
            sleep=self._sleep,
        )
        def attempt_once() -> DiscoveryResult:
            result = self.discover(company_name, context)
            if result.error is not None and result.error.retryable:
                raise _RetryableOutcome(result)
            return result

        try:
            return attempt_once()
        except RetryError as e:
            return e.__cause__.result

    def discover_many(
        self,
        company_names: Iterable[str],
        context: Optional[UserContext] = None,
    ) -> Dict[str, DiscoveryResult]:
        """
        Run discover() for each name in turn, sharing the limiter.

        Names that normalize to the same search term are discovered once
        and share the result. A failure for one name never stops the rest.

        Returns:
            Results keyed by the name as given, in input order
        """
        results: Dict[str, DiscoveryResult] = {}
        by_term: Dict[str, DiscoveryResult] = {}
        for name in company_names:
            if name in results:
                continue
            term = normalize_search_term(name) if isinstance(name, str) else ""
            if term and term in by_term:
                results[name] = by_term[term]
                continue
            result = self.discover(name, context)
            results[name] = result
            if term:
                by_term[term] = result

        failed = sum(1 for r in results.values() if not r.success)
        self._logger.info("Batch discovery completed", companies=len(results), failed=failed)
        return results

    def warm_up(
        self,
        company_names: Optional[Iterable[str]] = None,
        context: Optional[UserContext] = None,
    ) -> int:
        """
        Discover each name so later lookups are cache hits.

        Defaults to config.warmup_companies. Names already cached cost no
        quota. Stops at the first rate-limit denial.

        Returns:
            Number of names newly cached
        """
        names = self.config.warmup_companies if company_names is None else company_names
        warmed = 0
        for name in names:
            result = self.discover(name, context)
            if result.success:
                if not result.cached:
                    warmed += 1
            elif result.error.kind == RateLimitExceeded.kind:
                self._logger.warning("Cache warm-up stopped by rate limit", term=name, window=result.error.window)
                break

        self._logger.info("Cache warm-up finished", warmed=warmed)
        return warmed

    def get_rate_limit_status(self) -> Dict[str, Any]:
        return self.limiter.get_status()

    def get_health(self, payload: Optional[Dict[str, Any]] = None):
        """
        Liveness endpoint. Accepts an optional {"healthCheck": true} payload.

        Raises:
            ValidationError: Payload present but not a health-check request
        """
        if payload is not None and not (isinstance(payload, dict) and payload.get("healthCheck") is True):
            raise ValidationError("Health payload must be {\"healthCheck\": true}")
        return self.monitor.perform_health_check()

    def confirm_selection(
        self,
        search_term: str,
        url: str,
        confidence: Optional[float] = None,
        standardized_name: Optional[str] = None,
        method: str = "auto",
        context: Optional[UserContext] = None,
        results_count: int = 0,
    ) -> Selection:
        """
        Build the selection handed back to the caller and log it.

        Raises:
            ValidationError: Unknown method, or a manual URL that is not a
                company-profile URL
        """
        if method not in ("auto", "manual"):
            raise ValidationError(f"Unknown selection method: {method}")
        if method == "manual":
            errors = validate_profile_url(url)
            if errors:
                raise ValidationError(errors[0])

        selection = Selection(
            url=url.strip(),
            confidence=confidence,
            standardized_name=standardized_name,
            method=method,
        )
        self._record_action(
            search_term,
            "selected" if method == "auto" else "manual_entry",
            context,
            results_count=results_count,
            selected_url=selection.url,
            selection_confidence=confidence,
        )
        self._logger.info("Profile selected", term=search_term, url=selection.url, method=method)
        return selection

    def submit_manual_url(
        self,
        search_term: str,
        url: str,
        context: Optional[UserContext] = None,
    ) -> Union[Selection, ErrorInfo]:
        """Validate and confirm a hand-entered URL. Never touches the rate limiter."""
        if not self.flags.is_enabled(MANUAL_ENTRY_FLAG, context):
            return error_info(FeatureDisabled("Manual profile entry is not available"))
        try:
            return self.confirm_selection(search_term, url, method="manual", context=context)
        except ValidationError as e:
            return error_info(e)

    def skip(self, search_term: str, context: Optional[UserContext] = None, results_count: int = 0) -> None:
        self._record_action(search_term, "skipped", context, results_count=results_count)

    def _record_action(self, search_term: str, action: str, context: Optional[UserContext], **fields) -> None:
        if self.analytics is None:
            return
        try:
            self.analytics.record(
                search_term=search_term.strip(),
                user_action=action,
                user_id=context.user_id if context else None,
                **fields,
            )
        except SQLAlchemyError as e:
            self._logger.error("Failed to record selection analytics", term=search_term, action=action, error=str(e))


class SearchSession:
    """
    Last-query-wins wrapper for interactive callers.

    Each search() takes a ticket. When a newer search has started by the
    time an older one finishes, the older result is discarded and search()
    returns None.
    """

    def __init__(self, service: DiscoveryService, context: Optional[UserContext] = None):
        self.service = service
        self.context = context
        self._lock = threading.Lock()
        self._latest_ticket = 0
        self.latest_result: Optional[DiscoveryResult] = None

    def search(self, company_name: str) -> Optional[DiscoveryResult]:
        with self._lock:
            self._latest_ticket += 1
            ticket = self._latest_ticket

        result = self.service.discover(company_name, self.context)

        with self._lock:
            if ticket != self._latest_ticket:
                self.service._logger.debug("Discarding stale discovery result", term=company_name)
                return None
            self.latest_result = result
        return result

    def on_input(self, text: str) -> Optional[DiscoveryResult]:
        """
        Search as the user types, when auto search is on for this session.

        Input shorter than the minimum search length is ignored rather than
        reported as a validation error. Returns None whenever no search ran
        or its result went stale.
        """
        if not self.service.flags.is_enabled(AUTO_SEARCH_FLAG, self.context):
            return None
        if not isinstance(text, str) or len(text.strip()) < self.service.config.min_search_length:
            return None
        return self.search(text)


def build_service(
    config: DiscoveryConfig,
    clock: Callable[[], datetime] = datetime.now,
    logger=None,
) -> DiscoveryService:
    """Construct every component once and wire them together."""
    logger = logger or get_logger(level=config.log_level)

    flags = FeatureFlagEvaluator.from_config(config, clock=clock, logger=logger)
    limiter = RateLimiter.from_config(config, clock=clock, logger=logger)
    provider = BraveSearchProvider.from_config(config)

    cache_repo = None
    analytics = None
    if config.db_path is not None:
        analytics = AnalyticsRepository(config.db_path)
        if flags.is_enabled(ADVANCED_CACHING_FLAG):
            cache_repo = CacheRepository(config.db_path)

    monitor = Monitor(
        store_probe=partial(ping, config.db_path) if config.db_path is not None else None,
        provider_probe=provider.ping,
        min_cache_hit_rate=config.min_cache_hit_rate,
        min_cache_samples=config.min_cache_samples,
        max_avg_response_ms=config.max_avg_response_ms,
        probe_timeout=config.probe_timeout,
        detailed=flags.is_enabled(DETAILED_MONITORING_FLAG, UserContext(custom={"environment": config.environment})),
        clock=clock,
        logger=logger,
    )
    cache = ResultCache(
        ttl_days=config.cache_ttl_days,
        max_memory_items=config.cache_max_items,
        compression_enabled=config.compression_enabled,
        repository=cache_repo,
        clock=clock,
        on_evict=monitor.record_cache_eviction,
        logger=logger,
    )
    monitor.probes["cache"] = cache.probe

    return DiscoveryService(
        config=config,
        flags=flags,
        cache=cache,
        limiter=limiter,
        provider=provider,
        monitor=monitor,
        analytics=analytics,
        logger=logger,
    )
