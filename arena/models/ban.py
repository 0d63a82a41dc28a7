"""Moderation ban list keyed by (game_type, game_id)."""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from arena.models.base import Base, TimestampMixin, UUIDMixin


class BannedGameId(Base, UUIDMixin, TimestampMixin):
    """A banned in-game identity. Owned by the moderation subsystem."""

    __tablename__ = "banned_game_ids"

    game_id: Mapped[str] = mapped_column(String(100), nullable=False)
    game_type: Mapped[str] = mapped_column(String(30), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_permanent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    ban_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (
        Index("ix_banned_game_ids_lookup", "game_type", "game_id"),
    )

    def __repr__(self) -> str:
        return f"<BannedGameId {self.game_type}:{self.game_id}>"
