"""Shared test fixtures.

Service tests run against an in-memory SQLite database (aiosqlite). Row
locks are no-ops there, so concurrency is covered by ordering tests rather
than by racing real transactions.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")

from collections.abc import AsyncGenerator
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from arena.models import (
    Base,
    Team,
    TeamMember,
    Tournament,
    TournamentStatus,
    TournamentType,
    User,
)
from arena.services.notifications import NotificationDispatcher
from arena.utils.clock import utcnow

GAME_TYPE = "valorant"


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest_asyncio.fixture(scope="function")
async def test_engine():
    """Fresh in-memory database per test. StaticPool keeps one connection alive."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    """Factory configured like the production one."""
    return async_sessionmaker(
        bind=test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture(scope="function")
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Test database session.

    Services commit their own transactions; fixtures commit seed data so a
    second session (sweeper, auto-finalize) sees it.
    """
    async with session_factory() as session:
        yield session


# =============================================================================
# Notifications
# =============================================================================


@pytest.fixture
def notifier():
    """Dispatcher double that records calls and reports success."""
    mock = MagicMock(spec=NotificationDispatcher)
    for name in (
        "send",
        "registration_confirmed",
        "waitlist_joined",
        "checkin_open",
        "promoted",
        "slot_forfeited",
    ):
        setattr(mock, name, AsyncMock(return_value=True))
    return mock


# =============================================================================
# Factories
# =============================================================================


@pytest.fixture
def make_user(db):
    """Create and commit a user with a game identity and wallet balance."""

    async def _make_user(
        username: str | None = None,
        *,
        balance: int = 0,
        game_ids: dict | None = None,
    ) -> User:
        username = username or f"user_{uuid4().hex[:8]}"
        user = User(
            username=username,
            wallet_balance=balance,
            hold_balance=0,
            in_game_ids=game_ids if game_ids is not None else {GAME_TYPE: f"{username}#KR1"},
        )
        db.add(user)
        await db.commit()
        return user

    return _make_user


@pytest.fixture
def make_tournament(db):
    """Create and commit a tournament starting a day from now by default."""

    async def _make_tournament(
        *,
        max_teams: int = 2,
        entry_fee: int = 0,
        starts_in: timedelta = timedelta(days=1),
        tournament_type: TournamentType = TournamentType.SOLO,
        status: TournamentStatus = TournamentStatus.REGISTRATION_OPEN,
        name: str = "Weekend Cup",
    ) -> Tournament:
        tournament = Tournament(
            tournament_name=name,
            game_type=GAME_TYPE,
            tournament_type=tournament_type.value,
            entry_fee=entry_fee,
            status=status.value,
            tournament_start_date=utcnow() + starts_in,
            current_teams=0,
            max_teams=max_teams,
        )
        db.add(tournament)
        await db.commit()
        return tournament

    return _make_tournament


@pytest.fixture
def make_team(db):
    """Create and commit a team with the given members (captain first)."""

    async def _make_team(members: list[User], name: str = "Night Owls") -> Team:
        team = Team(team_name=name, game_type=GAME_TYPE, captain_id=members[0].id)
        db.add(team)
        await db.flush()
        for member in members:
            db.add(TeamMember(team_id=team.id, user_id=member.id))
        await db.commit()
        return team

    return _make_team
