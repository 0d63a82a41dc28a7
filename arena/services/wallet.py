"""Wallet Service for entry-fee debits and refunds.

Features:
- Row-locked balance updates (SELECT ... FOR UPDATE on the user row)
- Full transaction logging with integrity hash
- Never commits: writes are flushed into the caller's transaction
"""

import hashlib

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from arena.logging_config import get_logger
from arena.models.user import User
from arena.models.wallet import (
    TransactionStatus,
    TransactionType,
    WalletTransaction,
)
from arena.utils.errors import (
    InsufficientBalanceError,
    RequestValidationError,
    UserNotFoundError,
)

logger = get_logger(__name__)


class WalletService:
    """Wallet service for balance operations.

    Concurrent writers serialise on the user row lock, which is held until
    the surrounding transaction ends.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def lock_user(self, user_id: str) -> User:
        """Load the user row with a write lock.

        Raises:
            UserNotFoundError: If the user does not exist
        """
        result = await self.session.execute(
            select(User)
            .where(User.id == user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        user = result.scalar_one_or_none()
        if user is None:
            raise UserNotFoundError(user_id)
        return user

    async def transfer(
        self,
        user_id: str,
        amount: int,
        tx_type: TransactionType,
        *,
        reference_type: str | None = None,
        reference_id: str | None = None,
        description: str | None = None,
        respect_holds: bool = True,
    ) -> WalletTransaction:
        """Credit or debit the wallet.

        Args:
            user_id: User ID
            amount: Amount to transfer (positive = credit, negative = debit)
            tx_type: Transaction type for logging
            reference_type: What caused the transfer (e.g. tournament_registration)
            reference_id: ID of the causing entity
            description: Optional description
            respect_holds: Debits must fit in the available balance
                (wallet minus holds). Hold confirmations pass False since the
                funds being debited are the held ones.

        Returns:
            WalletTransaction record

        Raises:
            InsufficientBalanceError: If debit exceeds the spendable balance
        """
        if amount == 0:
            raise RequestValidationError("Amount cannot be zero")

        user = await self.lock_user(user_id)
        balance_before = user.wallet_balance

        if amount < 0:
            spendable = user.available_balance if respect_holds else user.wallet_balance
            if spendable < -amount:
                raise InsufficientBalanceError(required=-amount, available=spendable)

        balance_after = balance_before + amount
        user.wallet_balance = balance_after

        tx = WalletTransaction(
            user_id=user_id,
            tx_type=tx_type.value,
            status=TransactionStatus.COMPLETED.value,
            amount=amount,
            balance_before=balance_before,
            balance_after=balance_after,
            reference_type=reference_type,
            reference_id=reference_id,
            description=description,
            integrity_hash=self._compute_integrity_hash(
                user_id=user_id,
                tx_type=tx_type.value,
                amount=amount,
                balance_before=balance_before,
                balance_after=balance_after,
            ),
        )
        self.session.add(tx)
        await self.session.flush()

        logger.info(
            "wallet_transfer",
            user_id=user_id,
            tx_type=tx_type.value,
            amount=amount,
            balance_before=balance_before,
            balance_after=balance_after,
        )
        return tx

    async def debit_entry_fee(
        self,
        user_id: str,
        amount: int,
        *,
        reference_type: str,
        reference_id: str,
        tournament_name: str,
    ) -> WalletTransaction:
        if amount <= 0:
            raise RequestValidationError("Entry fee must be positive")

        return await self.transfer(
            user_id=user_id,
            amount=-amount,  # Debit
            tx_type=TransactionType.ENTRY_FEE,
            reference_type=reference_type,
            reference_id=reference_id,
            description=f"Entry fee for {tournament_name}",
        )

    async def refund_entry_fee(
        self,
        user_id: str,
        amount: int,
        *,
        reference_type: str,
        reference_id: str,
        tournament_name: str,
    ) -> WalletTransaction:
        if amount <= 0:
            raise RequestValidationError("Refund amount must be positive")

        return await self.transfer(
            user_id=user_id,
            amount=amount,  # Credit
            tx_type=TransactionType.ENTRY_FEE_REFUND,
            reference_type=reference_type,
            reference_id=reference_id,
            description=f"Entry fee refund for {tournament_name}",
        )

    async def get_transactions(
        self,
        user_id: str,
        *,
        limit: int = 50,
        offset: int = 0,
        tx_type: TransactionType | None = None,
    ) -> list[WalletTransaction]:
        """Get user's transaction history, newest first."""
        query = (
            select(WalletTransaction)
            .where(WalletTransaction.user_id == user_id)
            .order_by(WalletTransaction.created_at.desc())
            .offset(offset)
            .limit(limit)
        )

        if tx_type:
            query = query.where(WalletTransaction.tx_type == tx_type.value)

        result = await self.session.execute(query)
        return list(result.scalars().all())

    @staticmethod
    def _compute_integrity_hash(
        user_id: str,
        tx_type: str,
        amount: int,
        balance_before: int,
        balance_after: int,
    ) -> str:
        """Compute SHA-256 integrity hash for transaction.

        This hash can be verified later to detect tampering.
        """
        data = f"{user_id}:{tx_type}:{amount}:{balance_before}:{balance_after}"
        return hashlib.sha256(data.encode()).hexdigest()

    @staticmethod
    def verify_integrity(tx: WalletTransaction) -> bool:
        """Verify transaction integrity hash."""
        expected = WalletService._compute_integrity_hash(
            user_id=tx.user_id,
            tx_type=tx.tx_type,
            amount=tx.amount,
            balance_before=tx.balance_before,
            balance_after=tx.balance_after,
        )
        return tx.integrity_hash == expected
