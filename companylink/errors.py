"""
Error taxonomy for company-profile discovery.

The provider client and validators raise these exceptions; the discovery
service converts them into typed results so callers never see a crash for
an expected outcome (quota exhausted, outage, bad input).
"""

from typing import Optional


class ErrorKind:
    """String constants identifying each outcome class."""

    VALIDATION = "validation_error"
    FEATURE_DISABLED = "feature_disabled"
    RATE_LIMITED = "rate_limit_exceeded"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    PROVIDER_REJECTED = "provider_rejected"


class DiscoveryError(Exception):
    """Base class for all discovery errors."""

    kind = "discovery_error"
    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(DiscoveryError):
    """Input rejected locally; never reaches the network."""

    kind = ErrorKind.VALIDATION


class FeatureDisabled(DiscoveryError):
    """Discovery is switched off for this context."""

    kind = ErrorKind.FEATURE_DISABLED


class RateLimitExceeded(DiscoveryError):
    """A rate-limit window has no remaining budget."""

    kind = ErrorKind.RATE_LIMITED

    def __init__(self, message: str, window: str, retry_after_seconds: Optional[int] = None):
        super().__init__(message)
        self.window = window
        self.retry_after_seconds = retry_after_seconds


class ProviderUnavailable(DiscoveryError):
    """Network failure, timeout, server error or open circuit."""

    kind = ErrorKind.PROVIDER_UNAVAILABLE
    retryable = True

    def __init__(self, message: str, error_type: str = "network"):
        super().__init__(message)
        self.error_type = error_type


class ProviderRejected(DiscoveryError):
    """Upstream answered with a non-success 4xx status (including its own 429)."""

    kind = ErrorKind.PROVIDER_REJECTED

    def __init__(self, message: str, status_code: int):
        super().__init__(message)
        self.status_code = status_code
