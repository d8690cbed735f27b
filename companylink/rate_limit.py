"""
Four-window admission control for the search provider.

Every provider call must first be admitted by RateLimiter.try_admit().
A request is admitted only when each window (monthly, daily, per-minute,
burst) still has room for it; admission then consumes budget in all four
windows inside one critical section, so two concurrent callers can never
both take the last unit of a window.
"""

import math
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional

from .logger import get_logger
from .storage import load_json, save_json


class WindowKind:
    BURST = "burst"
    PER_MINUTE = "per_minute"
    DAILY = "daily"
    MONTHLY = "monthly"

    # Longest-lived first; the first exhausted window names the denial
    CHECK_ORDER = (MONTHLY, DAILY, PER_MINUTE, BURST)


WARNING_THRESHOLD_PCT = 75.0
CRITICAL_THRESHOLD_PCT = 90.0
MAX_HISTORY = 1000

STATS_RANGES = {
    "1h": timedelta(hours=1),
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
}


@dataclass
class RateWindow:
    kind: str
    limit: int
    used: int
    reset_at: datetime

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)

    @property
    def utilization_pct(self) -> float:
        if self.limit <= 0:
            return 100.0
        return round(self.used / self.limit * 100, 1)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "used": self.used,
            "limit": self.limit,
            "remaining": self.remaining,
            "reset_at": self.reset_at.isoformat(),
            "utilization_pct": self.utilization_pct,
        }


@dataclass
class AdmissionResult:
    admitted: bool
    denied_window: Optional[str] = None
    retry_after_seconds: Optional[int] = None
    remaining: Dict[str, int] = field(default_factory=dict)


@dataclass
class RequestRecord:
    timestamp: datetime
    success: Optional[bool] = None
    response_time_ms: Optional[float] = None


def next_midnight(now: datetime) -> datetime:
    return datetime(now.year, now.month, now.day) + timedelta(days=1)


def first_of_next_month(now: datetime) -> datetime:
    if now.month == 12:
        return datetime(now.year + 1, 1, 1)
    return datetime(now.year, now.month + 1, 1)


class RateLimiter:
    """
    Tracks provider consumption across burst, per-minute, daily and
    monthly windows.

    Windows roll over lazily on every call: burst every
    burst_window_seconds, per-minute every 60 s, daily at local midnight,
    monthly on the first of the month.
    """

    def __init__(
        self,
        monthly_limit: int = 2000,
        daily_limit: Optional[int] = None,
        per_minute_limit: int = 10,
        burst_limit: int = 5,
        burst_window_seconds: int = 10,
        state_path: Optional[Path] = None,
        clock: Callable[[], datetime] = datetime.now,
        logger=None,
    ):
        self._clock = clock
        self._logger = logger or get_logger()
        self._lock = threading.Lock()
        self._save_lock = threading.Lock()
        self.state_path = state_path
        self.burst_window = timedelta(seconds=burst_window_seconds)

        now = clock()
        limits = {
            WindowKind.MONTHLY: monthly_limit,
            WindowKind.DAILY: daily_limit if daily_limit is not None else max(1, monthly_limit // 30),
            WindowKind.PER_MINUTE: per_minute_limit,
            WindowKind.BURST: burst_limit,
        }
        self._windows: Dict[str, RateWindow] = {
            kind: RateWindow(kind=kind, limit=limit, used=0, reset_at=self._next_reset(kind, now))
            for kind, limit in limits.items()
        }
        self._history: Deque[RequestRecord] = deque(maxlen=MAX_HISTORY)

        if state_path is not None:
            self._load_state(state_path)

    @classmethod
    def from_config(cls, config, clock: Callable[[], datetime] = datetime.now, logger=None) -> "RateLimiter":
        return cls(
            monthly_limit=config.monthly_limit,
            daily_limit=config.daily_limit,
            per_minute_limit=config.per_minute_limit,
            burst_limit=config.burst_limit,
            burst_window_seconds=config.burst_window_seconds,
            state_path=config.rate_state_path,
            clock=clock,
            logger=logger,
        )

    def _next_reset(self, kind: str, now: datetime) -> datetime:
        if kind == WindowKind.BURST:
            return now + self.burst_window
        if kind == WindowKind.PER_MINUTE:
            return now + timedelta(minutes=1)
        if kind == WindowKind.DAILY:
            return next_midnight(now)
        return first_of_next_month(now)

    def _roll_windows(self, now: datetime) -> None:
        """Reset every window whose reset time has passed. Caller holds the lock."""
        for window in self._windows.values():
            if now >= window.reset_at:
                window.used = 0
                window.reset_at = self._next_reset(window.kind, now)

    def try_admit(self, cost: int = 1) -> AdmissionResult:
        """
        Admit a request if every window has room for it.

        A denial consumes nothing. Never raises.
        """
        cost = max(0, int(cost))
        with self._lock:
            now = self._clock()
            self._roll_windows(now)

            for kind in WindowKind.CHECK_ORDER:
                window = self._windows[kind]
                if window.limit - window.used < cost:
                    retry_after = math.ceil((window.reset_at - now).total_seconds())
                    result = AdmissionResult(
                        admitted=False,
                        denied_window=kind,
                        retry_after_seconds=max(1, retry_after),
                        remaining=self._remaining(),
                    )
                    break
            else:
                for window in self._windows.values():
                    window.used += cost
                self._history.append(RequestRecord(timestamp=now))
                result = AdmissionResult(admitted=True, remaining=self._remaining())
            snapshot = self._snapshot() if result.admitted and self.state_path else None

        if not result.admitted:
            self._logger.warning(
                "Rate limit denied request",
                window=result.denied_window,
                retry_after_seconds=result.retry_after_seconds,
            )
        if snapshot is not None:
            self._write_state(snapshot)
        return result

    def _remaining(self) -> Dict[str, int]:
        return {kind: w.remaining for kind, w in self._windows.items()}

    def record_completion(self, success: bool, response_time_ms: float) -> None:
        """Complete the most recent admitted request that has no outcome yet."""
        with self._lock:
            for record in reversed(self._history):
                if record.success is None:
                    record.success = success
                    record.response_time_ms = response_time_ms
                    return
        self._logger.debug("No pending request to complete", success=success)

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            self._roll_windows(self._clock())
            return {
                "windows": [self._windows[kind].to_dict() for kind in WindowKind.CHECK_ORDER],
            }

    def get_windows(self) -> List[RateWindow]:
        """Copies of the current windows, longest-lived first."""
        with self._lock:
            self._roll_windows(self._clock())
            return [
                RateWindow(w.kind, w.limit, w.used, w.reset_at)
                for w in (self._windows[kind] for kind in WindowKind.CHECK_ORDER)
            ]

    def get_warning_levels(self) -> List[Dict[str, Any]]:
        """
        Per-window utilization warnings.

        Returns:
            List of {window, level, message, utilization_pct}; zero, one or
            many entries.
        """
        warnings = []
        for window in self.get_windows():
            pct = window.utilization_pct
            if pct >= CRITICAL_THRESHOLD_PCT:
                level = "critical"
            elif pct >= WARNING_THRESHOLD_PCT:
                level = "warning"
            else:
                continue
            label = window.kind.replace("_", "-")
            warnings.append({
                "window": window.kind,
                "level": level,
                "message": f"{label} limit {pct:.0f}% used ({window.used}/{window.limit})",
                "utilization_pct": pct,
            })
        return warnings

    def get_request_stats(self, time_range: str = "24h") -> Dict[str, Any]:
        if time_range not in STATS_RANGES:
            raise ValueError(f"time_range must be one of {sorted(STATS_RANGES)}, got {time_range!r}")
        span = STATS_RANGES[time_range]

        with self._lock:
            cutoff = self._clock() - span
            records = [r for r in self._history if r.timestamp >= cutoff]

        completed = [r for r in records if r.success is not None]
        successful = sum(1 for r in completed if r.success)
        failed = len(completed) - successful
        times = [r.response_time_ms for r in completed if r.response_time_ms is not None]
        hours = span.total_seconds() / 3600

        return {
            "time_range": time_range,
            "total_requests": len(records),
            "successful_requests": successful,
            "failed_requests": failed,
            "success_rate": round(successful / len(completed) * 100, 1) if completed else 0.0,
            "avg_response_time_ms": round(sum(times) / len(times), 1) if times else 0.0,
            "requests_per_hour": round(len(records) / hours, 2),
        }

    def reset_quota(self, window: Optional[str] = None) -> None:
        """Administrative reset of one window, or all of them."""
        if window is not None and window not in self._windows:
            raise ValueError(f"Unknown window: {window}")

        with self._lock:
            now = self._clock()
            kinds = [window] if window else list(self._windows)
            for kind in kinds:
                self._windows[kind].used = 0
                self._windows[kind].reset_at = self._next_reset(kind, now)
            snapshot = self._snapshot() if self.state_path else None

        self._logger.info("Rate limit quota reset", window=window or "all")
        if snapshot is not None:
            self._write_state(snapshot)

    def save_state(self) -> None:
        if self.state_path is None:
            return
        with self._lock:
            snapshot = self._snapshot()
        self._write_state(snapshot)

    def _snapshot(self) -> Dict[str, Any]:
        return {
            "windows": {
                kind: {"used": w.used, "reset_at": w.reset_at.isoformat()}
                for kind, w in self._windows.items()
            },
            "saved_at": self._clock().isoformat(),
        }

    def _write_state(self, snapshot: Dict[str, Any]) -> None:
        with self._save_lock:
            try:
                save_json(self.state_path, snapshot)
            except OSError as e:
                self._logger.error("Failed to save rate limit state", path=str(self.state_path), error=str(e))

    def _load_state(self, path: Path) -> None:
        state = load_json(path, default={})
        for kind, saved in (state.get("windows") or {}).items():
            window = self._windows.get(kind)
            if window is None:
                continue
            try:
                reset_at = datetime.fromisoformat(saved["reset_at"])
                used = int(saved["used"])
            except (KeyError, TypeError, ValueError) as e:
                self._logger.warning("Ignoring invalid rate limit state", window=kind, error=str(e))
                continue
            # Limits may have been lowered since the state was written
            window.used = min(max(0, used), window.limit)
            window.reset_at = reset_at
        self._logger.debug("Loaded rate limit state", path=str(path))
