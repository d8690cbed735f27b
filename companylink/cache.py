"""
Result cache for discovery lookups.

Avoids repeated provider calls for the same company name. Entries live in
a bounded memory tier and, when a CacheRepository is supplied, in the
search_cache table so results survive restarts.
"""

import base64
import json
import threading
import zlib
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from .logger import get_logger
from .models import Candidate
from .normalize import normalize_search_term
from .repositories import CacheRepository

PROBE_KEY = "__companylink_cache_probe__"


@dataclass
class CacheEntry:
    """One cached lookup. payload is JSON text, possibly compressed."""

    key: str
    payload: str
    compressed: bool
    created_at: datetime
    ttl: timedelta
    hits: int = 0

    def is_expired(self, now: datetime) -> bool:
        return now > self.created_at + self.ttl


def encode_candidates(candidates: List[Candidate], compress: bool) -> str:
    raw = json.dumps([c.to_dict() for c in candidates], ensure_ascii=False)
    if not compress:
        return raw
    return base64.b64encode(zlib.compress(raw.encode("utf-8"))).decode("ascii")


def decode_candidates(payload: str, compressed: bool) -> List[Candidate]:
    raw = zlib.decompress(base64.b64decode(payload)).decode("utf-8") if compressed else payload
    return [Candidate.from_dict(item) for item in json.loads(raw)]


class ResultCache:
    """
    TTL cache of ranked candidates keyed by normalized search term.

    Features:
    - Lazy expiry on read, optional sweep()
    - Bounded memory tier (oldest-inserted entry evicted first)
    - Optional zlib compression of payloads
    - Optional persistent tier; a store hit is promoted into memory
    - Thread-safe; concurrent writes to one key are last-write-wins
    """

    def __init__(
        self,
        ttl_days: float = 7,
        max_memory_items: int = 100,
        compression_enabled: bool = False,
        repository: Optional[CacheRepository] = None,
        clock: Callable[[], datetime] = datetime.now,
        on_evict: Optional[Callable[[], None]] = None,
        logger=None,
    ):
        self.ttl = timedelta(days=ttl_days)
        self.max_memory_items = max_memory_items
        self.compression_enabled = compression_enabled
        self.repository = repository
        self._clock = clock
        self._on_evict = on_evict
        self._logger = logger or get_logger()

        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.Lock()

        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def get(self, term: str) -> Optional[List[Candidate]]:
        """
        Look up candidates for a search term.

        Returns:
            Cached candidates, or None on a miss (absent or expired)
        """
        key = normalize_search_term(term)
        now = self._clock()

        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.is_expired(now):
                del self._entries[key]
                entry = None
            if entry is not None:
                entry.hits += 1
                self._hits += 1
                payload, compressed = entry.payload, entry.compressed

        if entry is not None:
            self._logger.debug("Cache hit", term=key, tier="memory")
            return decode_candidates(payload, compressed)

        candidates = self._load_from_store(key, now)

        with self._lock:
            if candidates is None:
                self._misses += 1
            else:
                self._hits += 1
        return candidates

    def put(self, term: str, candidates: List[Candidate], ttl_days: Optional[float] = None) -> None:
        key = normalize_search_term(term)
        ttl = timedelta(days=ttl_days) if ttl_days is not None else self.ttl
        now = self._clock()
        payload = encode_candidates(candidates, self.compression_enabled)

        self._store_in_memory(CacheEntry(
            key=key,
            payload=payload,
            compressed=self.compression_enabled,
            created_at=now,
            ttl=ttl,
        ))

        if self.repository is not None:
            try:
                self.repository.upsert(key, payload, self.compression_enabled, now, now + ttl)
            except SQLAlchemyError as e:
                self._logger.warning("Cache store write failed", term=key, error=str(e))

        self._logger.debug("Cache put", term=key, candidates=len(candidates))

    def invalidate(self, term: str) -> None:
        key = normalize_search_term(term)
        with self._lock:
            self._entries.pop(key, None)
        if self.repository is not None:
            try:
                self.repository.delete(key)
            except SQLAlchemyError as e:
                self._logger.warning("Cache store delete failed", term=key, error=str(e))

    def sweep(self) -> int:
        """Remove expired entries from both tiers. Returns count removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for k in expired:
                del self._entries[k]
        removed = len(expired)

        if self.repository is not None:
            try:
                removed += self.repository.delete_expired(now)
            except SQLAlchemyError as e:
                self._logger.warning("Cache store sweep failed", error=str(e))

        if removed:
            self._logger.info("Cache sweep complete", removed=removed)
        return removed

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
        if self.repository is not None:
            self.repository.clear()

    def stats(self) -> Dict[str, float]:
        with self._lock:
            total = self._hits + self._misses
            return {
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": round(self._hits / total, 4) if total else 0.0,
                "evictions": self._evictions,
                "entries": len(self._entries),
            }

    def probe(self) -> bool:
        """Write, read back and remove a sentinel entry in the memory tier."""
        sentinel = Candidate(
            url="https://www.linkedin.com/company/probe",
            display_name="probe",
            normalized_slug="probe",
            description="",
            confidence=0.0,
        )
        entry = CacheEntry(
            key=PROBE_KEY,
            payload=encode_candidates([sentinel], self.compression_enabled),
            compressed=self.compression_enabled,
            created_at=self._clock(),
            ttl=timedelta(seconds=60),
        )
        with self._lock:
            self._entries[PROBE_KEY] = entry
            stored = self._entries.pop(PROBE_KEY, None)
        if stored is None:
            return False
        return decode_candidates(stored.payload, stored.compressed) == [sentinel]

    def _store_in_memory(self, entry: CacheEntry) -> None:
        evicted = 0
        with self._lock:
            self._entries.pop(entry.key, None)
            while len(self._entries) >= self.max_memory_items > 0:
                self._entries.popitem(last=False)
                self._evictions += 1
                evicted += 1
            self._entries[entry.key] = entry

        if self._on_evict is not None:
            for _ in range(evicted):
                self._on_evict()

    def _load_from_store(self, key: str, now: datetime) -> Optional[List[Candidate]]:
        if self.repository is None:
            return None
        try:
            row = self.repository.get(key, now)
        except SQLAlchemyError as e:
            self._logger.warning("Cache store read failed", term=key, error=str(e))
            return None
        if row is None:
            return None

        compressed = bool(row.compressed)
        self._store_in_memory(CacheEntry(
            key=key,
            payload=row.results,
            compressed=compressed,
            created_at=row.created_at,
            ttl=row.expires_at - row.created_at,
        ))
        self._logger.debug("Cache hit", term=key, tier="store", search_count=row.search_count)
        return decode_candidates(row.results, compressed)
