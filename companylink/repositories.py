"""
Cache and Analytics Repositories.

Responsibilities:
- Read/write rows of the search_cache and search_metrics tables.
- Transaction-safe writes (commit or roll back per call).

Non-Responsibilities:
- No TTL policy beyond storing expires_at.
- No scoring.
- No flag or rate-limit decisions.

Invariant:
Repositories must not encode domain decisions.
"""

from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from .database import SearchCacheEntry, SearchMetric, USER_ACTIONS, get_session, init_database, ping


class CacheRepository:
    """Persistent tier of the result cache."""

    def __init__(self, db_path: Path):
        self.db_path = db_path
        init_database(db_path)

    def get(self, search_term: str, now: datetime) -> Optional[SearchCacheEntry]:
        """
        Fetch a live row and bump its search count.

        Returns None when the term is absent or expired. A row is still live
        at exactly expires_at.
        """
        session = get_session(self.db_path)
        try:
            row = session.query(SearchCacheEntry).filter_by(search_term=search_term).first()
            if row is None or row.expires_at < now:
                return None
            row.search_count += 1
            session.commit()
            session.refresh(row)
            session.expunge(row)
            return row
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def upsert(self, search_term: str, payload: str, compressed: bool, created_at: datetime, expires_at: datetime) -> None:
        session = get_session(self.db_path)
        try:
            row = session.query(SearchCacheEntry).filter_by(search_term=search_term).first()
            if row is None:
                session.add(SearchCacheEntry(
                    search_term=search_term,
                    results=payload,
                    compressed=int(compressed),
                    created_at=created_at,
                    expires_at=expires_at,
                    search_count=1,
                ))
            else:
                row.results = payload
                row.compressed = int(compressed)
                row.created_at = created_at
                row.expires_at = expires_at
                row.search_count += 1
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def delete(self, search_term: str) -> int:
        session = get_session(self.db_path)
        try:
            removed = session.query(SearchCacheEntry).filter_by(search_term=search_term).delete()
            session.commit()
            return removed
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def delete_expired(self, now: datetime) -> int:
        """Remove every row whose expires_at is strictly before now."""
        session = get_session(self.db_path)
        try:
            removed = (
                session.query(SearchCacheEntry)
                .filter(SearchCacheEntry.expires_at < now)
                .delete(synchronize_session=False)
            )
            session.commit()
            return removed
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def clear(self) -> int:
        session = get_session(self.db_path)
        try:
            removed = session.query(SearchCacheEntry).delete()
            session.commit()
            return removed
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def count(self) -> int:
        session = get_session(self.db_path)
        try:
            return session.query(SearchCacheEntry).count()
        finally:
            session.close()

    def ping(self) -> bool:
        return ping(self.db_path)


class AnalyticsRepository:
    """Append-only log of what users did with discovery results."""

    def __init__(self, db_path: Path):
        self.db_path = db_path
        init_database(db_path)

    def record(
        self,
        search_term: str,
        user_action: str,
        results_count: int = 0,
        selected_url: Optional[str] = None,
        selection_confidence: Optional[float] = None,
        user_id: Optional[str] = None,
    ) -> None:
        if user_action not in USER_ACTIONS:
            raise ValueError(f"user_action must be one of {USER_ACTIONS}, got {user_action!r}")

        session = get_session(self.db_path)
        try:
            session.add(SearchMetric(
                user_id=user_id,
                search_term=search_term,
                results_count=results_count,
                selected_url=selected_url,
                selection_confidence=selection_confidence,
                user_action=user_action,
            ))
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def list_recent(self, limit: int = 50) -> List[Dict[str, Any]]:
        session = get_session(self.db_path)
        try:
            rows = (
                session.query(SearchMetric)
                .order_by(SearchMetric.created_at.desc(), SearchMetric.id.desc())
                .limit(limit)
                .all()
            )
            return [
                {
                    "search_term": r.search_term,
                    "user_action": r.user_action,
                    "results_count": r.results_count,
                    "selected_url": r.selected_url,
                    "selection_confidence": r.selection_confidence,
                    "user_id": r.user_id,
                    "created_at": r.created_at,
                }
                for r in rows
            ]
        finally:
            session.close()

    def action_counts(self) -> Dict[str, int]:
        session = get_session(self.db_path)
        try:
            counts = {action: 0 for action in USER_ACTIONS}
            for action, in session.query(SearchMetric.user_action).all():
                counts[action] = counts.get(action, 0) + 1
            return counts
        finally:
            session.close()
