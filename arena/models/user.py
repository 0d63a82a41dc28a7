"""User wallet projection.

The core reads and writes only the balance columns; profile data is owned
elsewhere.
"""

from sqlalchemy import JSON, BigInteger, CheckConstraint, String
from sqlalchemy.orm import Mapped, mapped_column

from arena.models.base import Base, TimestampMixin, UUIDMixin


class User(Base, UUIDMixin, TimestampMixin):
    """User account with wallet balances."""

    __tablename__ = "users"

    username: Mapped[str] = mapped_column(
        String(50),
        unique=True,
        nullable=False,
        index=True,
    )
    email: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )

    # Per-game identities, e.g. {"valorant": "Name#TAG"}
    in_game_ids: Mapped[dict] = mapped_column(
        JSON,
        default=dict,
        nullable=False,
    )

    wallet_balance: Mapped[int] = mapped_column(
        BigInteger,
        default=0,
        nullable=False,
        comment="Wallet balance in minor currency units",
    )
    hold_balance: Mapped[int] = mapped_column(
        BigInteger,
        default=0,
        nullable=False,
        comment="Sum of active balance holds (not available for use)",
    )

    __table_args__ = (
        CheckConstraint("hold_balance >= 0", name="ck_users_hold_balance_non_negative"),
    )

    @property
    def available_balance(self) -> int:
        """Wallet balance minus currently held funds."""
        return max(0, self.wallet_balance - self.hold_balance)

    def game_id_for(self, game_type: str) -> str | None:
        return (self.in_game_ids or {}).get(game_type) or None

    def __repr__(self) -> str:
        return f"<User {self.username}>"
