"""Tournament occupancy and check-in settings models."""

from datetime import datetime
from enum import Enum

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    String,
)
from sqlalchemy.orm import Mapped, mapped_column

from arena.models.base import Base, TimestampMixin, UUIDMixin


DEFAULT_CHECKIN_WINDOW_MINUTES = 30


class TournamentStatus(str, Enum):
    """Tournament lifecycle status."""

    UPCOMING = "upcoming"
    REGISTRATION_OPEN = "registration_open"
    REGISTRATION_CLOSED = "registration_closed"
    ONGOING = "ongoing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Statuses in which new entrants are accepted
OPEN_FOR_REGISTRATION = frozenset(
    {TournamentStatus.UPCOMING.value, TournamentStatus.REGISTRATION_OPEN.value}
)


class TournamentType(str, Enum):
    """Entrant shape."""

    SOLO = "solo"
    DUO = "duo"
    SQUAD = "squad"


class Tournament(Base, UUIDMixin, TimestampMixin):
    """Tournament entity (occupancy counters are owned by the core)."""

    __tablename__ = "tournaments"

    tournament_name: Mapped[str] = mapped_column(String(200), nullable=False)
    host_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    game_type: Mapped[str] = mapped_column(String(30), nullable=False)
    tournament_type: Mapped[str] = mapped_column(
        String(10),
        default=TournamentType.SOLO.value,
        nullable=False,
    )
    entry_fee: Mapped[int] = mapped_column(
        BigInteger,
        default=0,
        nullable=False,
        comment="Entry fee in minor currency units",
    )
    status: Mapped[str] = mapped_column(
        String(30),
        default=TournamentStatus.UPCOMING.value,
        nullable=False,
        index=True,
    )
    tournament_start_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
    )

    # Occupancy - only written under the tournament row lock
    current_teams: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_teams: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        CheckConstraint("current_teams >= 0", name="ck_tournaments_current_teams_non_negative"),
        CheckConstraint("current_teams <= max_teams", name="ck_tournaments_capacity"),
        CheckConstraint("entry_fee >= 0", name="ck_tournaments_entry_fee_non_negative"),
    )

    @property
    def is_team_mode(self) -> bool:
        return self.tournament_type != TournamentType.SOLO.value

    @property
    def accepts_registrations(self) -> bool:
        return self.status in OPEN_FOR_REGISTRATION

    def __repr__(self) -> str:
        return f"<Tournament {self.tournament_name} {self.current_teams}/{self.max_teams}>"


class TournamentCheckinSettings(Base, UUIDMixin, TimestampMixin):
    """Per-tournament check-in override and finalization marker.

    A missing row means default window, auto-finalize on, not finalized.
    """

    __tablename__ = "tournament_checkin_settings"

    tournament_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("tournaments.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    checkin_window_minutes: Mapped[int] = mapped_column(
        Integer,
        default=DEFAULT_CHECKIN_WINDOW_MINUTES,
        nullable=False,
        comment="Minutes before tournament start when check-in opens",
    )
    auto_finalize: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
        comment="Finalize check-ins automatically at tournament start",
    )
    finalized_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="When check-in was finalized (slots reassigned)",
    )

    __table_args__ = (
        CheckConstraint("checkin_window_minutes > 0", name="ck_checkin_window_positive"),
    )
