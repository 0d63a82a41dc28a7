"""Utility modules."""

from arena.utils.clock import ensure_utc, utcnow
from arena.utils.db import atomic, get_db_session, get_session_factory

__all__ = [
    "atomic",
    "ensure_utc",
    "get_db_session",
    "get_session_factory",
    "utcnow",
]
