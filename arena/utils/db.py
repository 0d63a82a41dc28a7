"""Database connection and session management."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from arena.config import get_settings
from arena.logging_config import get_logger
from arena.utils.errors import ConcurrencyConflictError, IntegrityBugError

logger = get_logger(__name__)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def get_engine() -> AsyncEngine:
    """Get (and lazily create) the shared async engine."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(
            settings.database_url,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_recycle=settings.db_pool_recycle,
            pool_pre_ping=True,
            echo=settings.app_debug,
        )
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get the shared session factory."""
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            bind=get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
    return _session_factory


def create_task_session_factory() -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """Engine + session factory for short-lived worker processes (Celery).

    Uses NullPool so nothing outlives the event loop that created it.
    Caller disposes the engine.
    """
    settings = get_settings()
    engine = create_async_engine(settings.database_url, poolclass=NullPool)
    factory = async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    return engine, factory


@asynccontextmanager
async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Context manager for getting async database session.

    Usage:
        async with get_db_session() as session:
            await HoldLedger(session).release_hold(hold_id, "Released by admin")
    """
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def apply_lock_timeout(session: AsyncSession) -> None:
    """Bound row-lock waits for the current transaction (PostgreSQL only)."""
    if session.get_bind().dialect.name != "postgresql":
        return
    timeout_ms = int(get_settings().db_lock_timeout_ms)
    await session.execute(text(f"SET LOCAL lock_timeout = '{timeout_ms}ms'"))


# unique_violation, serialization_failure, deadlock_detected, lock_not_available
CONFLICT_SQLSTATES = frozenset({"23505", "40001", "40P01", "55P03"})


def is_concurrency_conflict(exc: DBAPIError) -> bool:
    """True for lost unique-index races and lock waits, False for other failures."""
    orig = exc.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate:
        return sqlstate in CONFLICT_SQLSTATES
    # SQLite reports no SQLSTATE
    message = str(orig)
    return message.startswith("UNIQUE constraint failed") or "database is locked" in message


@asynccontextmanager
async def atomic(session: AsyncSession) -> AsyncGenerator[AsyncSession, None]:
    """Run one multi-step mutation as a single transaction.

    Commits on success, rolls back on any error. Lock timeouts and lost
    unique-index races surface as ConcurrencyConflictError so the caller
    can retry the whole operation. Any other constraint violation (check,
    not-null, foreign key) is an IntegrityBugError.
    """
    try:
        await apply_lock_timeout(session)
        yield session
        await session.commit()
    except (OperationalError, IntegrityError) as exc:
        await session.rollback()
        if is_concurrency_conflict(exc):
            logger.warning("transaction_conflict", error=str(exc.orig))
            raise ConcurrencyConflictError() from exc
        if isinstance(exc, IntegrityError):
            logger.error("constraint_violation", error=str(exc.orig))
            raise IntegrityBugError(
                "Database constraint violated", details={"error": str(exc.orig)}
            ) from exc
        raise
    except BaseException:
        await session.rollback()
        raise


async def close_db() -> None:
    """Close database connection pool."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None
