"""Merchant-initiated point adjustments and kickback-to-points conversion."""

from __future__ import annotations

from decimal import ROUND_FLOOR, Decimal
from uuid import UUID

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_engine.models.loyalty import (
    KickbackEvent,
    LoyaltyPointTransaction,
    LoyaltyRedemption,
    LoyaltyRedemptionStatus,
    LoyaltyTransactionType,
)
from loyalty_engine.observability.loyalty import get_loyalty_store

from .concurrency import run_with_retry
from .errors import (
    DuplicateAwardError,
    KickbackNotFoundError,
    LoyaltyValidationError,
    UnauthorizedAdjustmentError,
)
from .ledger import LedgerStore, TransactionLinkage

ADJUSTABLE_TYPES = {
    LoyaltyTransactionType.BONUS,
    LoyaltyTransactionType.ADJUSTED,
    LoyaltyTransactionType.REFUNDED,
}
MIN_REASON_LENGTH = 5
MAX_REASON_LENGTH = 500


def _validate_reason(reason: str | None) -> str:
    value = (reason or "").strip()
    if len(value) < MIN_REASON_LENGTH or len(value) > MAX_REASON_LENGTH:
        raise LoyaltyValidationError(
            f"Reason must be between {MIN_REASON_LENGTH} and {MAX_REASON_LENGTH} characters"
        )
    return value


def _resolve_type(points: int, requested: LoyaltyTransactionType | str | None) -> LoyaltyTransactionType:
    if requested is None:
        return LoyaltyTransactionType.BONUS if points > 0 else LoyaltyTransactionType.ADJUSTED
    try:
        resolved = LoyaltyTransactionType(requested)
    except ValueError as exc:
        raise LoyaltyValidationError(f"Unknown transaction type {requested!r}") from exc
    if resolved not in ADJUSTABLE_TYPES:
        raise LoyaltyValidationError(
            f"Adjustments may only use BONUS, ADJUSTED, or REFUNDED, not {resolved.value}"
        )
    return resolved


class AdjustmentService:
    """Manual credits and debits for customers the merchant already knows."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session
        self._ledger = LedgerStore(db_session)
        self._observability = get_loyalty_store()

    async def adjust(
        self,
        merchant_id: UUID,
        user_id: UUID,
        points: int,
        reason: str,
        type: LoyaltyTransactionType | str | None = None,
    ) -> LoyaltyPointTransaction:
        if isinstance(points, bool) or not isinstance(points, int) or points == 0:
            raise LoyaltyValidationError("points must be a non-zero integer")
        reason = _validate_reason(reason)
        transaction_type = _resolve_type(points, type)

        async def _operation() -> LoyaltyPointTransaction:
            await self._require_relationship(user_id, merchant_id)
            if transaction_type == LoyaltyTransactionType.REFUNDED:
                await self._check_refund_headroom(user_id, merchant_id, points)
            return await self._ledger.stage_transaction(
                user_id,
                merchant_id,
                transaction_type,
                points,
                f"Merchant adjustment: {reason}",
                metadata={
                    "adjustedBy": "merchant",
                    "merchantId": str(merchant_id),
                    "reason": reason,
                },
            )

        transaction = await run_with_retry(self._db, _operation, label="adjust")
        self._observability.record_workflow("adjustment.applied")
        logger.info(
            "Applied merchant point adjustment",
            merchant_id=str(merchant_id),
            user_id=str(user_id),
            type=transaction_type.value,
            points=points,
        )
        return transaction

    async def convert_kickback(
        self,
        kickback_event_id: UUID,
        points: int | None = None,
    ) -> LoyaltyPointTransaction:
        """
        Credit a kickback event to the referrer as an explicit BONUS.

        Without ``points`` the amount is ``floor(amount_earned * points_per_dollar)``.
        Each event converts at most once.
        """
        if points is not None and (isinstance(points, bool) or not isinstance(points, int) or points <= 0):
            raise LoyaltyValidationError("points must be a positive integer")

        async def _operation() -> LoyaltyPointTransaction:
            event = await self._db.get(KickbackEvent, kickback_event_id, populate_existing=True)
            if event is None:
                raise KickbackNotFoundError(kickback_event_id)

            stmt = select(LoyaltyPointTransaction.id).where(
                LoyaltyPointTransaction.kickback_event_id == kickback_event_id
            )
            if (await self._db.execute(stmt)).scalar_one_or_none() is not None:
                self._observability.record_rejection(DuplicateAwardError.code)
                raise DuplicateAwardError(f"Kickback event {kickback_event_id} was already converted")

            await self._require_relationship(event.user_id, event.merchant_id)
            program = await self._ledger.require_program(event.merchant_id)
            awarded = points
            if awarded is None:
                awarded = int(
                    (Decimal(event.amount_earned) * Decimal(program.points_per_dollar)).to_integral_value(
                        rounding=ROUND_FLOOR
                    )
                )
            if awarded <= 0:
                raise LoyaltyValidationError("Kickback amount converts to zero points")

            return await self._ledger.stage_transaction(
                event.user_id,
                event.merchant_id,
                LoyaltyTransactionType.BONUS,
                awarded,
                f"Kickback bonus for ${event.amount_earned} referral earnings",
                metadata={
                    "source": "kickback",
                    "kickbackEventId": str(kickback_event_id),
                    "amountEarned": str(event.amount_earned),
                    "dealId": event.deal_id,
                },
                linkage=TransactionLinkage(kickback_event_id=kickback_event_id),
                program=program,
            )

        transaction = await run_with_retry(self._db, _operation, label="convert_kickback")
        self._observability.record_workflow("kickback.converted")
        logger.info(
            "Converted kickback to bonus points",
            kickback_event_id=str(kickback_event_id),
            transaction_id=str(transaction.id),
            points=transaction.points,
        )
        return transaction

    async def _require_relationship(self, user_id: UUID, merchant_id: UUID) -> None:
        if await self._ledger.find_snapshot(user_id, merchant_id) is None:
            self._observability.record_rejection(UnauthorizedAdjustmentError.code)
            raise UnauthorizedAdjustmentError(user_id, merchant_id)

    async def _check_refund_headroom(self, user_id: UUID, merchant_id: UUID, points: int) -> None:
        """
        Manual refunds may only reverse redeemed points no ACTIVE redemption still owns.

        Cancelling an ACTIVE redemption refunds its full amount, so that share of
        ``lifetime_redeemed`` stays reserved for the cancel.
        """
        snapshot = await self._ledger.lock_snapshot(user_id, merchant_id)
        if snapshot is None:
            raise UnauthorizedAdjustmentError(user_id, merchant_id)

        stmt = select(func.coalesce(func.sum(LoyaltyRedemption.points_redeemed), 0)).where(
            LoyaltyRedemption.user_id == user_id,
            LoyaltyRedemption.merchant_id == merchant_id,
            LoyaltyRedemption.status == LoyaltyRedemptionStatus.ACTIVE,
        )
        reserved = int((await self._db.execute(stmt)).scalar_one())
        headroom = snapshot.lifetime_redeemed - reserved
        if points > headroom:
            raise LoyaltyValidationError(
                f"Refund of {points} points exceeds refundable redeemed points ({max(headroom, 0)}); "
                "cancel the redemption instead"
            )


__all__ = ["ADJUSTABLE_TYPES", "AdjustmentService"]
