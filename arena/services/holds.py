"""Balance hold ledger.

Reserves funds against a user's wallet without debiting them and keeps
``users.hold_balance`` equal to the sum of the user's active holds.

Lock order is always hold row first, then the owner's user row. The ledger
never commits; it flushes into the caller's transaction so that a hold
operation and the registration change that caused it land together.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from arena.logging_config import get_logger
from arena.models.hold import BalanceHold, HoldStatus, HoldType
from arena.models.user import User
from arena.models.wallet import TransactionType
from arena.services.wallet import WalletService
from arena.utils.clock import utcnow
from arena.utils.errors import (
    HoldNotActiveError,
    HoldNotFoundError,
    InsufficientBalanceError,
    IntegrityBugError,
    RequestValidationError,
    UserNotFoundError,
)

logger = get_logger(__name__)

EXPIRY_NOTE = "Expired automatically"


def _append_note(description: str | None, note: str) -> str:
    if not description:
        return note
    return f"{description} - {note}"


class HoldLedger:
    """Create, release, confirm and expire balance holds."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self.wallet = WalletService(session)

    # =========================================================================
    # Locking helpers
    # =========================================================================

    async def _lock_hold(self, hold_id: str, *, skip_locked: bool = False) -> BalanceHold | None:
        result = await self.session.execute(
            select(BalanceHold)
            .where(BalanceHold.id == hold_id)
            .with_for_update(skip_locked=skip_locked)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _lock_active_hold(self, hold_id: str) -> BalanceHold:
        hold = await self._lock_hold(hold_id)
        if hold is None:
            raise HoldNotFoundError(hold_id)
        if not hold.is_active:
            raise HoldNotActiveError(hold_id, hold.status)
        return hold

    def _take_off_hold_balance(self, user: User, hold: BalanceHold) -> None:
        remaining = user.hold_balance - hold.amount
        if remaining < 0:
            logger.error(
                "hold_balance_underflow",
                user_id=user.id,
                hold_id=hold.id,
                hold_balance=user.hold_balance,
                amount=hold.amount,
            )
            raise IntegrityBugError(
                "Hold balance would become negative",
                details={
                    "userId": user.id,
                    "holdId": hold.id,
                    "holdBalance": user.hold_balance,
                    "amount": hold.amount,
                },
            )
        user.hold_balance = remaining

    async def _terminate(
        self,
        hold: BalanceHold,
        status: HoldStatus,
        now: datetime,
        note: str | None,
    ) -> BalanceHold:
        """Move an active, locked hold to released/expired."""
        user = await self.wallet.lock_user(hold.user_id)
        self._take_off_hold_balance(user, hold)
        hold.status = status.value
        hold.released_at = now
        if note:
            hold.description = _append_note(hold.description, note)
        await self.session.flush()
        return hold

    # =========================================================================
    # Mutations
    # =========================================================================

    async def create_hold(
        self,
        user_id: str,
        amount: int,
        hold_type: HoldType,
        *,
        reference_type: str | None = None,
        reference_id: str | None = None,
        description: str | None = None,
        expires_at: datetime | None = None,
    ) -> BalanceHold:
        """Reserve ``amount`` of the user's available balance.

        Raises:
            RequestValidationError: Non-positive amount
            UserNotFoundError: Unknown user
            InsufficientBalanceError: Available balance cannot cover the hold
        """
        if amount <= 0:
            raise RequestValidationError(
                "Hold amount must be positive", details={"amount": amount}
            )

        user = await self.wallet.lock_user(user_id)
        if user.available_balance < amount:
            raise InsufficientBalanceError(required=amount, available=user.available_balance)

        hold = BalanceHold(
            user_id=user_id,
            amount=amount,
            hold_type=hold_type.value,
            status=HoldStatus.ACTIVE.value,
            reference_type=reference_type,
            reference_id=reference_id,
            description=description,
            expires_at=expires_at,
        )
        user.hold_balance += amount
        self.session.add(hold)
        await self.session.flush()

        logger.info(
            "hold_created",
            hold_id=hold.id,
            user_id=user_id,
            amount=amount,
            hold_type=hold_type.value,
            reference_id=reference_id,
        )
        return hold

    async def release_hold(
        self,
        hold_id: str,
        reason: str | None = None,
        *,
        now: datetime | None = None,
    ) -> BalanceHold:
        """Return held funds to the available balance. No wallet debit."""
        hold = await self._lock_active_hold(hold_id)
        await self._terminate(hold, HoldStatus.RELEASED, now or utcnow(), reason)

        logger.info(
            "hold_released",
            hold_id=hold.id,
            user_id=hold.user_id,
            amount=hold.amount,
            reason=reason,
        )
        return hold

    async def expire_hold(
        self,
        hold_id: str,
        *,
        now: datetime | None = None,
        skip_locked: bool = False,
    ) -> BalanceHold | None:
        """Time-based release of a single hold.

        With ``skip_locked`` a hold currently locked by another transaction
        is skipped and None is returned.
        """
        hold = await self._lock_hold(hold_id, skip_locked=skip_locked)
        if hold is None:
            if skip_locked:
                return None
            raise HoldNotFoundError(hold_id)
        if not hold.is_active:
            raise HoldNotActiveError(hold_id, hold.status)

        await self._terminate(hold, HoldStatus.EXPIRED, now or utcnow(), EXPIRY_NOTE)
        logger.info(
            "hold_expired",
            hold_id=hold.id,
            user_id=hold.user_id,
            amount=hold.amount,
        )
        return hold

    async def expire_holds(
        self,
        now: datetime | None = None,
        limit: int | None = None,
    ) -> list[BalanceHold]:
        """Expire every active hold whose ``expires_at`` has passed.

        Runs inside the caller's transaction. Rows locked elsewhere are
        skipped and picked up on the next run.
        """
        now = now or utcnow()
        query = (
            select(BalanceHold)
            .where(
                BalanceHold.status == HoldStatus.ACTIVE.value,
                BalanceHold.expires_at.is_not(None),
                BalanceHold.expires_at < now,
            )
            .order_by(BalanceHold.expires_at)
            .with_for_update(skip_locked=True)
            .execution_options(populate_existing=True)
        )
        if limit:
            query = query.limit(limit)

        result = await self.session.execute(query)
        holds = list(result.scalars().all())

        for hold in holds:
            await self._terminate(hold, HoldStatus.EXPIRED, now, EXPIRY_NOTE)

        if holds:
            logger.info(
                "holds_expired",
                count=len(holds),
                total_released=sum(h.amount for h in holds),
            )
        return holds

    async def confirm_hold(
        self,
        hold_id: str,
        description: str | None = None,
        *,
        now: datetime | None = None,
    ) -> BalanceHold:
        """Turn the reservation into a real wallet debit.

        Raises:
            IntegrityBugError: The wallet no longer covers a held amount
        """
        hold = await self._lock_active_hold(hold_id)
        user = await self.wallet.lock_user(hold.user_id)

        if user.wallet_balance < hold.amount:
            logger.error(
                "hold_not_covered",
                hold_id=hold.id,
                user_id=user.id,
                wallet_balance=user.wallet_balance,
                amount=hold.amount,
            )
            raise IntegrityBugError(
                "Wallet balance does not cover an active hold",
                details={
                    "holdId": hold.id,
                    "userId": user.id,
                    "walletBalance": user.wallet_balance,
                    "amount": hold.amount,
                },
            )

        # Debit first: lock_user re-reads the row and would drop unflushed edits
        tx = await self.wallet.transfer(
            user_id=hold.user_id,
            amount=-hold.amount,
            tx_type=TransactionType.HOLD_CONFIRMATION,
            reference_type=hold.reference_type,
            reference_id=hold.reference_id,
            description=description or hold.description,
            respect_holds=False,
        )
        self._take_off_hold_balance(user, hold)
        hold.status = HoldStatus.CONFIRMED.value
        hold.confirmed_at = now or utcnow()
        hold.transaction_id = tx.id
        await self.session.flush()

        logger.info(
            "hold_confirmed",
            hold_id=hold.id,
            user_id=hold.user_id,
            amount=hold.amount,
            transaction_id=tx.id,
        )
        return hold

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_hold(self, hold_id: str) -> BalanceHold:
        hold = await self.session.get(BalanceHold, hold_id)
        if hold is None:
            raise HoldNotFoundError(hold_id)
        return hold

    async def get_active_holds(self, user_id: str) -> list[BalanceHold]:
        result = await self.session.execute(
            select(BalanceHold)
            .where(
                BalanceHold.user_id == user_id,
                BalanceHold.status == HoldStatus.ACTIVE.value,
            )
            .order_by(BalanceHold.created_at.desc())
        )
        return list(result.scalars().all())

    async def get_user_holds(
        self,
        user_id: str,
        status: HoldStatus | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[BalanceHold], int]:
        """Paginated hold history, newest first.

        Returns:
            (holds on the page, total matching holds)
        """
        page = max(1, page)
        limit = min(max(1, limit), 100)

        conditions = [BalanceHold.user_id == user_id]
        if status is not None:
            conditions.append(BalanceHold.status == status.value)

        total = await self.session.scalar(
            select(func.count()).select_from(BalanceHold).where(*conditions)
        )
        result = await self.session.execute(
            select(BalanceHold)
            .where(*conditions)
            .order_by(BalanceHold.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return list(result.scalars().all()), int(total or 0)

    async def find_active_hold(
        self,
        reference_type: str,
        reference_id: str,
    ) -> BalanceHold | None:
        result = await self.session.execute(
            select(BalanceHold)
            .where(
                BalanceHold.reference_type == reference_type,
                BalanceHold.reference_id == reference_id,
                BalanceHold.status == HoldStatus.ACTIVE.value,
            )
            .order_by(BalanceHold.created_at)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_balance_summary(self, user_id: str) -> dict[str, Any]:
        user = await self.session.get(User, user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        return {
            "wallet_balance": user.wallet_balance,
            "hold_balance": user.hold_balance,
            "available_balance": user.available_balance,
        }

    async def verify_hold_balance(self, user_id: str) -> int:
        """Check ``hold_balance`` against the sum of active holds.

        Returns:
            The verified hold balance

        Raises:
            IntegrityBugError: On mismatch
        """
        await self.session.flush()
        user = await self.session.get(User, user_id)
        if user is None:
            raise UserNotFoundError(user_id)

        active_sum = await self.session.scalar(
            select(func.coalesce(func.sum(BalanceHold.amount), 0)).where(
                BalanceHold.user_id == user_id,
                BalanceHold.status == HoldStatus.ACTIVE.value,
            )
        )
        active_sum = int(active_sum or 0)
        if user.hold_balance != active_sum:
            logger.error(
                "hold_balance_mismatch",
                user_id=user_id,
                hold_balance=user.hold_balance,
                active_sum=active_sum,
            )
            raise IntegrityBugError(
                "Hold balance does not match active holds",
                details={
                    "userId": user_id,
                    "holdBalance": user.hold_balance,
                    "activeHolds": active_sum,
                },
            )
        return active_sum
