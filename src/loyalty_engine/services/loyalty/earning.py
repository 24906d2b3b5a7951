"""Purchase point awards and referral kickback events."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_engine.models.loyalty import (
    KickbackEvent,
    LoyaltyPointTransaction,
    LoyaltyTransactionType,
)
from loyalty_engine.observability.loyalty import get_loyalty_store

from .concurrency import run_with_retry
from .errors import DuplicateAwardError, LoyaltyValidationError
from .ledger import LedgerStore, TransactionLinkage

_CENT = Decimal("0.01")


class SkipReason(str, Enum):
    PROGRAM_INACTIVE = "PROGRAM_INACTIVE"
    BELOW_MINIMUM_PURCHASE = "BELOW_MINIMUM_PURCHASE"
    DISCOUNTED_NOT_ELIGIBLE = "DISCOUNTED_NOT_ELIGIBLE"
    NO_POINTS = "NO_POINTS"


@dataclass(frozen=True)
class EarningSkipped:
    """Policy-excluded purchase; nothing was written to the ledger."""

    reason: SkipReason
    merchant_id: UUID
    user_id: UUID
    purchase_amount: Decimal
    detail: str | None = None


@dataclass(frozen=True)
class PointCalculation:
    amount: Decimal
    points_per_dollar: Decimal
    points: int
    calculation: str


def to_decimal(value: Any, field: str) -> Decimal:
    if isinstance(value, bool):
        raise LoyaltyValidationError(f"{field} must be numeric")
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise LoyaltyValidationError(f"{field} must be numeric") from exc
    if not result.is_finite():
        raise LoyaltyValidationError(f"{field} must be finite")
    return result


def calculate_points(amount: Any, points_per_dollar: Any) -> PointCalculation:
    """Floor ``amount * points_per_dollar``; fractional points are never awarded."""

    amount_value = to_decimal(amount, "amount")
    rate = to_decimal(points_per_dollar, "points_per_dollar")
    if amount_value <= 0:
        return PointCalculation(amount_value, rate, 0, "Amount must be greater than 0")
    points = int((amount_value * rate).to_integral_value(rounding=ROUND_FLOOR))
    return PointCalculation(
        amount=amount_value,
        points_per_dollar=rate,
        points=points,
        calculation=f"floor({amount_value} x {rate}) = {points} points",
    )


def calculate_kickback(invitee_spend_total: Any, kickback_rate: Any) -> Decimal:
    total = to_decimal(invitee_spend_total, "invitee_spend_total")
    rate = to_decimal(kickback_rate, "kickback_rate")
    return (total * rate).quantize(_CENT, rounding=ROUND_HALF_UP)


class EarningEngine:
    """Turns completed purchases into EARNED ledger entries and records kickbacks."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session
        self._ledger = LedgerStore(db_session)
        self._observability = get_loyalty_store()

    async def award_purchase_points(
        self,
        user_id: UUID,
        merchant_id: UUID,
        purchase_amount: Any,
        is_discounted: bool = False,
        *,
        order_id: str | None = None,
        description: str | None = None,
    ) -> LoyaltyPointTransaction | EarningSkipped:
        amount = to_decimal(purchase_amount, "purchase_amount")
        if amount < 0:
            raise LoyaltyValidationError("purchase_amount must be non-negative")

        async def _operation() -> LoyaltyPointTransaction | EarningSkipped:
            program = await self._ledger.require_program(merchant_id)
            if not program.is_active:
                return self._skip(SkipReason.PROGRAM_INACTIVE, user_id, merchant_id, amount)
            if amount < program.minimum_purchase:
                return self._skip(
                    SkipReason.BELOW_MINIMUM_PURCHASE,
                    user_id,
                    merchant_id,
                    amount,
                    detail=f"Minimum purchase is {program.minimum_purchase}",
                )
            if is_discounted and not program.earn_on_discounted:
                return self._skip(SkipReason.DISCOUNTED_NOT_ELIGIBLE, user_id, merchant_id, amount)

            calculation = calculate_points(amount, program.points_per_dollar)
            if calculation.points == 0:
                return self._skip(
                    SkipReason.NO_POINTS,
                    user_id,
                    merchant_id,
                    amount,
                    detail=calculation.calculation,
                )

            if order_id is not None:
                await self._guard_duplicate_order(merchant_id, order_id)

            return await self._ledger.stage_transaction(
                user_id,
                merchant_id,
                LoyaltyTransactionType.EARNED,
                calculation.points,
                description
                or f"Earned {calculation.points} points from ${amount.quantize(_CENT)} purchase",
                metadata={
                    "orderAmount": str(amount),
                    "calculation": calculation.calculation,
                    "isDiscounted": bool(is_discounted),
                },
                linkage=TransactionLinkage(order_id=order_id),
                program=program,
            )

        return await run_with_retry(self._db, _operation, label="earn")

    async def award_kickback(
        self,
        merchant_id: UUID,
        referrer_user_id: UUID,
        deal_id: str | None,
        invitee_spend_total: Any,
        invitee_count: int,
        kickback_rate: Any,
    ) -> KickbackEvent:
        """
        Record a currency kickback for the referrer.

        This channel never touches the points ledger; converting a kickback
        into points is an explicit BONUS through ``AdjustmentService``.
        """
        total = to_decimal(invitee_spend_total, "invitee_spend_total")
        rate = to_decimal(kickback_rate, "kickback_rate")
        if total < 0:
            raise LoyaltyValidationError("invitee_spend_total must be non-negative")
        if rate < 0 or rate > 1:
            raise LoyaltyValidationError("kickback_rate must be between 0 and 1")
        if isinstance(invitee_count, bool) or not isinstance(invitee_count, int) or invitee_count < 0:
            raise LoyaltyValidationError("invitee_count must be a non-negative integer")

        event = KickbackEvent(
            merchant_id=merchant_id,
            user_id=referrer_user_id,
            deal_id=deal_id,
            source_amount_spent=total.quantize(_CENT, rounding=ROUND_HALF_UP),
            kickback_rate=rate,
            amount_earned=calculate_kickback(total, rate),
            invitee_count=invitee_count,
        )
        self._db.add(event)
        try:
            await self._db.commit()
        except Exception:
            await self._db.rollback()
            raise
        await self._db.refresh(event)

        self._observability.record_workflow("kickback.recorded")
        logger.info(
            "Recorded kickback event",
            kickback_event_id=str(event.id),
            merchant_id=str(merchant_id),
            user_id=str(referrer_user_id),
            deal_id=deal_id,
            amount_earned=str(event.amount_earned),
            invitee_count=invitee_count,
        )
        return event

    async def list_kickback_events(
        self,
        merchant_id: UUID,
        user_id: UUID | None = None,
    ) -> list[KickbackEvent]:
        stmt = select(KickbackEvent).where(KickbackEvent.merchant_id == merchant_id)
        if user_id is not None:
            stmt = stmt.where(KickbackEvent.user_id == user_id)
        stmt = stmt.order_by(KickbackEvent.created_at.desc(), KickbackEvent.id.desc())
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def _guard_duplicate_order(self, merchant_id: UUID, order_id: str) -> None:
        stmt = select(LoyaltyPointTransaction.id).where(
            LoyaltyPointTransaction.merchant_id == merchant_id,
            LoyaltyPointTransaction.order_id == order_id,
            LoyaltyPointTransaction.type == LoyaltyTransactionType.EARNED,
        )
        existing = (await self._db.execute(stmt.limit(1))).scalar_one_or_none()
        if existing is not None:
            self._observability.record_rejection(DuplicateAwardError.code)
            raise DuplicateAwardError(f"Points were already awarded for order {order_id}")

    def _skip(
        self,
        reason: SkipReason,
        user_id: UUID,
        merchant_id: UUID,
        amount: Decimal,
        *,
        detail: str | None = None,
    ) -> EarningSkipped:
        self._observability.record_skip(reason.value)
        logger.debug(
            "Skipped loyalty earning",
            reason=reason.value,
            user_id=str(user_id),
            merchant_id=str(merchant_id),
            purchase_amount=str(amount),
        )
        return EarningSkipped(
            reason=reason,
            merchant_id=merchant_id,
            user_id=user_id,
            purchase_amount=amount,
            detail=detail,
        )


__all__ = [
    "EarningEngine",
    "EarningSkipped",
    "PointCalculation",
    "SkipReason",
    "calculate_kickback",
    "calculate_points",
    "to_decimal",
]
