"""
Data model shared across discovery components.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class SearchHit:
    """One ranked result from the upstream provider."""

    title: str
    url: str
    description: str


@dataclass(frozen=True)
class Candidate:
    """A scored company-profile URL. Immutable once built."""

    url: str
    display_name: str
    normalized_slug: str
    description: str
    confidence: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Candidate":
        return cls(
            url=data["url"],
            display_name=data.get("display_name", ""),
            normalized_slug=data.get("normalized_slug", ""),
            description=data.get("description", ""),
            confidence=float(data.get("confidence", 0.0)),
        )


@dataclass
class UserContext:
    """Per-evaluation identity used for flag targeting and rollout."""

    user_id: Optional[str] = None
    email: Optional[str] = None
    custom: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ErrorInfo:
    """Typed error surfaced on a failed discovery."""

    kind: str
    message: str
    window: Optional[str] = None
    retryable: bool = False
    retry_after_seconds: Optional[int] = None
    error_type: Optional[str] = None  # timeout, network, server_error, ...
    status_code: Optional[int] = None


@dataclass
class DiscoveryResult:
    """Terminal outcome of one discover() call."""

    success: bool
    search_term: str
    results: List[Candidate] = field(default_factory=list)
    error: Optional[ErrorInfo] = None
    cached: bool = False
    auto_selected: Optional[Candidate] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "search_term": self.search_term,
            "results": [c.to_dict() for c in self.results],
            "error": asdict(self.error) if self.error else None,
            "cached": self.cached,
            "auto_selected": self.auto_selected.to_dict() if self.auto_selected else None,
        }


@dataclass(frozen=True)
class Selection:
    """Confirmed profile handed back to the caller for persistence."""

    url: str
    confidence: Optional[float] = None
    standardized_name: Optional[str] = None
    method: str = "auto"  # auto, manual
    confirmed_at: datetime = field(default_factory=datetime.now)
