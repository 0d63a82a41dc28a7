"""Wallet transaction model.

Every balance change made by the core is recorded here with:
- Signed amount (+credit/-debit) and balances before/after
- A reference back to the registration or hold that caused it
- Integrity hash for tamper detection
"""

from enum import Enum

from sqlalchemy import BigInteger, ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column

from arena.models.base import Base, TimestampMixin, UUIDMixin


class TransactionType(str, Enum):
    """Transaction types for wallet operations."""

    ENTRY_FEE = "entry_fee"
    ENTRY_FEE_REFUND = "entry_fee_refund"
    HOLD_CONFIRMATION = "hold_confirmation"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class WalletTransaction(Base, UUIDMixin, TimestampMixin):
    """Wallet transaction record with full audit trail."""

    __tablename__ = "wallet_transactions"

    user_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    tx_type: Mapped[str] = mapped_column(String(30), nullable=False, index=True)
    status: Mapped[str] = mapped_column(
        String(20),
        default=TransactionStatus.COMPLETED.value,
        nullable=False,
    )

    amount: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        comment="Transaction amount (+credit/-debit)",
    )
    balance_before: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        comment="Wallet balance before transaction",
    )
    balance_after: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        comment="Wallet balance after transaction",
    )

    reference_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    reference_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)

    integrity_hash: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        comment="SHA-256 hash for tamper detection",
    )

    def __repr__(self) -> str:
        return (
            f"<WalletTransaction {self.id[:8]}... "
            f"type={self.tx_type} amount={self.amount}>"
        )
