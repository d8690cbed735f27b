from typing import Any, Dict, List, Optional

import requests

from .config import BRAVE_SEARCH_ENDPOINT
from .errors import ProviderRejected, ProviderUnavailable
from .models import SearchHit
from .retry import CircuitBreaker, CircuitOpenError, should_retry_http_status

PROFILE_SITE_FILTER = "site:linkedin.com/company"


def build_query(company_name: str) -> str:
    """Restrict the web search to company-profile pages."""
    return f"{PROFILE_SITE_FILTER} {company_name.strip()}"


def parse_results(data: Any) -> List[SearchHit]:
    """
    Pull (title, url, description) triples out of a Brave web-search body.

    Expected shape: {"web": {"results": [{"title", "url", "description"}]}}.
    A body without "web" has no results. Results without a URL are skipped.

    Raises:
        ProviderUnavailable: Body does not have the expected shape
    """
    if not isinstance(data, dict):
        raise _unexpected_shape("body is not an object")
    web = data.get("web") or {}
    if not isinstance(web, dict):
        raise _unexpected_shape("'web' is not an object")
    results = web.get("results") or []
    if not isinstance(results, list):
        raise _unexpected_shape("'web.results' is not a list")

    hits = []
    for item in results:
        if not isinstance(item, dict):
            raise _unexpected_shape("search result is not an object")
        url = item.get("url")
        if not url or not isinstance(url, str):
            continue
        hits.append(SearchHit(
            title=_text(item.get("title")),
            url=url,
            description=_text(item.get("description")),
        ))
    return hits


def _text(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _unexpected_shape(detail: str) -> ProviderUnavailable:
    return ProviderUnavailable(f"Search provider returned an unexpected response: {detail}", error_type="invalid_response")


class BraveSearchProvider:
    """
    Client for the Brave Search web API.

    Raises ProviderUnavailable for network errors, timeouts, retryable HTTP
    statuses (408 and 5xx except 501) and an open circuit; ProviderRejected
    for any other non-success status, the provider's own 429 included.
    """

    def __init__(
        self,
        api_key: Optional[str],
        endpoint: str = BRAVE_SEARCH_ENDPOINT,
        timeout: float = 10.0,
        count: int = 3,
        session: Optional[requests.Session] = None,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.api_key = api_key
        self.endpoint = endpoint
        self.timeout = timeout
        self.count = count
        self.session = session or requests.Session()
        self.breaker = breaker or CircuitBreaker(
            failure_threshold=5,
            recovery_timeout=60,
            expected_exception=ProviderUnavailable,
        )

    @classmethod
    def from_config(cls, config) -> "BraveSearchProvider":
        return cls(
            api_key=config.api_key,
            endpoint=config.endpoint,
            timeout=config.request_timeout,
            count=config.max_results,
        )

    def _headers(self) -> Dict[str, str]:
        return {
            "Accept": "application/json",
            "X-Subscription-Token": self.api_key or "",
        }

    def search(self, company_name: str) -> List[SearchHit]:
        """
        Run a company-profile search.

        Returns:
            Provider-ranked hits, best first
        """
        if not self.api_key:
            raise ProviderUnavailable("Search API key is not configured", error_type="configuration")

        try:
            return self.breaker.call(self._search, company_name)
        except CircuitOpenError as e:
            raise ProviderUnavailable(str(e), error_type="circuit_open") from e

    def _search(self, company_name: str) -> List[SearchHit]:
        params = {"q": build_query(company_name), "count": self.count}
        try:
            r = self.session.get(self.endpoint, params=params, headers=self._headers(), timeout=self.timeout)
        except requests.Timeout as e:
            raise ProviderUnavailable(f"Search request timed out after {self.timeout}s", error_type="timeout") from e
        except requests.RequestException as e:
            raise ProviderUnavailable(f"Search request failed: {e}", error_type="network") from e

        if should_retry_http_status(r.status_code):
            error_type = "timeout" if r.status_code == 408 else "server_error"
            raise ProviderUnavailable(f"Search provider error: HTTP {r.status_code}", error_type=error_type)
        if r.status_code == 429:
            raise ProviderRejected("Search provider rate limit exceeded", status_code=429)
        if not r.ok:
            raise ProviderRejected(f"Search provider rejected request: HTTP {r.status_code}", status_code=r.status_code)

        try:
            data = r.json()
        except ValueError as e:
            raise ProviderUnavailable("Search provider returned invalid JSON", error_type="invalid_response") from e
        return parse_results(data)

    def ping(self) -> bool:
        """
        Reachability check that spends no search quota.

        True when an API key is configured and the endpoint answers with
        any status below 500.
        """
        if not self.api_key:
            return False
        try:
            r = self.session.head(self.endpoint, headers=self._headers(), timeout=self.timeout)
        except requests.RequestException:
            return False
        return r.status_code < 500
