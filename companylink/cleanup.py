"""
Cleanup module for removing expired cache entries.

Expired entries are already ignored on read; sweeping them keeps the
memory tier and the search_cache table from accumulating dead rows.
"""

from typing import Tuple

from sqlalchemy.exc import SQLAlchemyError

from .cache import ResultCache
from .logger import get_logger


def _entry_count(cache: ResultCache) -> int:
    count = cache.stats()["entries"]
    if cache.repository is not None:
        count += cache.repository.count()
    return count


def cleanup_expired_cache(cache: ResultCache, logger=None) -> Tuple[int, int]:
    """
    Remove expired entries from both cache tiers.

    Args:
        cache: The ResultCache to sweep

    Returns:
        Tuple of (entries_removed, entries_remaining)
    """
    logger = logger or get_logger()

    removed = cache.sweep()
    try:
        remaining = _entry_count(cache)
    except SQLAlchemyError as e:
        logger.error("Could not count cache entries after cleanup", error=str(e))
        remaining = cache.stats()["entries"]

    logger.info(
        f"Cleanup complete: {removed} removed, {remaining} remaining",
        entries_removed=removed,
        entries_remaining=remaining,
        ttl_days=cache.ttl.days,
    )
    return (removed, remaining)
