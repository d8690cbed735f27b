"""
Database schema and connection management.

Uses SQLite with SQLAlchemy for the persistent cache tier and selection
analytics.
"""

from datetime import datetime
from pathlib import Path
from typing import Dict

from sqlalchemy import CheckConstraint, Column, DateTime, Float, Integer, String, Text, create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

Base = declarative_base()

USER_ACTIONS = ("selected", "manual_entry", "skipped")

_engines: Dict[str, Engine] = {}


class SearchCacheEntry(Base):
    """Cached provider results for one normalized search term."""

    __tablename__ = "search_cache"

    id = Column(Integer, primary_key=True, autoincrement=True)
    search_term = Column(String, nullable=False, unique=True, index=True)
    results = Column(Text, nullable=False)  # JSON, optionally zlib+base64
    compressed = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=datetime.now)
    expires_at = Column(DateTime, nullable=False, index=True)
    search_count = Column(Integer, nullable=False, default=1)


class SearchMetric(Base):
    """One user decision on a discovery result."""

    __tablename__ = "search_metrics"
    __table_args__ = (
        CheckConstraint(
            "user_action IN ('selected', 'manual_entry', 'skipped')",
            name="ck_search_metrics_user_action",
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=True)
    search_term = Column(String, nullable=False, index=True)
    results_count = Column(Integer, nullable=False, default=0)
    selected_url = Column(String, nullable=True)
    selection_confidence = Column(Float, nullable=True)
    user_action = Column(String, nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.now)


def get_engine(db_path: Path) -> Engine:
    """Return a shared engine for the SQLite file at db_path."""
    url = f"sqlite:///{db_path}"
    engine = _engines.get(url)
    if engine is None:
        engine = create_engine(url, connect_args={"check_same_thread": False})
        _engines[url] = engine
    return engine


def init_database(db_path: Path) -> None:
    """
    Initialize database and create tables.

    Args:
        db_path: Path to SQLite database file
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)
    Base.metadata.create_all(get_engine(db_path))


def get_session(db_path: Path):
    """
    Get database session.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLAlchemy session
    """
    Session = sessionmaker(bind=get_engine(db_path))
    return Session()


def ping(db_path: Path) -> bool:
    """Run SELECT 1 against the database. Raises on connection failure."""
    with get_engine(db_path).connect() as conn:
        return conn.execute(text("SELECT 1")).scalar() == 1


def dispose_engines() -> None:
    """Close pooled connections (used by tests between databases)."""
    for engine in _engines.values():
        engine.dispose()
    _engines.clear()
