"""Balance hold model.

A hold reserves part of a user's wallet without debiting it. The sum of a
user's active holds is mirrored in ``users.hold_balance``.
"""

from datetime import datetime
from enum import Enum

from sqlalchemy import BigInteger, CheckConstraint, DateTime, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from arena.models.base import Base, TimestampMixin, UUIDMixin


HOLD_REFERENCE_REGISTRATION = "tournament_registration"


class HoldType(str, Enum):
    """Why the funds are reserved."""

    WAITLIST_ENTRY_FEE = "waitlist_entry_fee"
    PENDING_WITHDRAWAL = "pending_withdrawal"
    DISPUTE = "dispute"


class HoldStatus(str, Enum):
    ACTIVE = "active"
    RELEASED = "released"
    CONFIRMED = "confirmed"
    EXPIRED = "expired"


class BalanceHold(Base, UUIDMixin, TimestampMixin):
    """Reserved funds tied (optionally) to a registration."""

    __tablename__ = "balance_holds"

    user_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    amount: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        comment="Held amount in minor currency units",
    )
    hold_type: Mapped[str] = mapped_column(String(30), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20),
        default=HoldStatus.ACTIVE.value,
        nullable=False,
        index=True,
    )

    reference_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    reference_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    released_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    confirmed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    transaction_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("wallet_transactions.id", ondelete="SET NULL"),
        nullable=True,
        comment="Wallet debit created when the hold was confirmed",
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_balance_holds_amount_positive"),
        Index("ix_balance_holds_reference", "reference_type", "reference_id"),
        Index("ix_balance_holds_status_expires", "status", "expires_at"),
    )

    @property
    def is_active(self) -> bool:
        return self.status == HoldStatus.ACTIVE.value

    def __repr__(self) -> str:
        return f"<BalanceHold {self.hold_type} {self.amount} {self.status}>"
