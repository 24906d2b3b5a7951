"""Redemption workflow: ACTIVE redemptions may be cancelled exactly once."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_engine.models.loyalty import (
    LoyaltyPointTransaction,
    LoyaltyProgram,
    LoyaltyRedemption,
    LoyaltyRedemptionStatus,
    LoyaltyTransactionType,
)
from loyalty_engine.observability.loyalty import get_loyalty_store

from .concurrency import lock_for_update, run_with_retry
from .earning import to_decimal
from .errors import (
    AlreadyCancelledError,
    BelowMinimumError,
    LoyaltyValidationError,
    ProgramInactiveError,
    RedemptionNotFoundError,
)
from .ledger import LedgerStore, TransactionLinkage
from .programs import ProgramRegistry

_CENT = Decimal("0.01")


@dataclass(frozen=True)
class RedemptionQuote:
    points: int
    discount_value: Decimal
    minimum_redemption: int
    meets_minimum: bool
    calculation: str


@dataclass
class CancellationResult:
    refund_transaction: LoyaltyPointTransaction
    redemption: LoyaltyRedemption


def _validate_points(points: Any) -> int:
    if isinstance(points, bool) or not isinstance(points, int):
        raise LoyaltyValidationError("points_to_redeem must be an integer")
    if points <= 0:
        raise LoyaltyValidationError("points_to_redeem must be positive")
    return points


def _build_quote(program: LoyaltyProgram, points: int) -> RedemptionQuote:
    discount = (Decimal(points) * Decimal(program.redemption_value)).quantize(_CENT, rounding=ROUND_HALF_UP)
    minimum = int(program.minimum_redemption)
    if points < minimum:
        calculation = f"Minimum {minimum} points required"
    else:
        calculation = f"{points} x ${program.redemption_value} = ${discount}"
    return RedemptionQuote(
        points=points,
        discount_value=discount,
        minimum_redemption=minimum,
        meets_minimum=points >= minimum,
        calculation=calculation,
    )


class RedemptionWorkflow:
    """Debits points for rewards and credits them back on cancellation."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session
        self._ledger = LedgerStore(db_session)
        self._programs = ProgramRegistry(db_session)
        self._observability = get_loyalty_store()

    async def quote(self, merchant_id: UUID, points: int) -> RedemptionQuote:
        points = _validate_points(points)
        program = await self._programs.get(merchant_id)
        return _build_quote(program, points)

    async def redeem(
        self,
        user_id: UUID,
        merchant_id: UUID,
        points_to_redeem: int,
        *,
        order_id: str | None = None,
        order_amount: Any = None,
    ) -> LoyaltyRedemption:
        points = _validate_points(points_to_redeem)
        amount = to_decimal(order_amount, "order_amount") if order_amount is not None else None
        if amount is not None and amount < 0:
            raise LoyaltyValidationError("order_amount must be non-negative")

        async def _operation() -> LoyaltyRedemption:
            program = await self._ledger.require_program(merchant_id)
            if not program.is_active:
                raise ProgramInactiveError(merchant_id)

            quote = _build_quote(program, points)
            if not quote.meets_minimum:
                self._observability.record_rejection(BelowMinimumError.code)
                raise BelowMinimumError(quote.minimum_redemption, points)
            if amount is not None and quote.discount_value > amount:
                raise LoyaltyValidationError(
                    f"Discount ${quote.discount_value} exceeds order amount ${amount}"
                )

            redemption_id = uuid4()
            debit = await self._ledger.stage_transaction(
                user_id,
                merchant_id,
                LoyaltyTransactionType.REDEEMED,
                -points,
                f"Redeemed {points} points for ${quote.discount_value} discount",
                metadata={
                    "discountValue": str(quote.discount_value),
                    "calculation": quote.calculation,
                },
                linkage=TransactionLinkage(order_id=order_id, redemption_id=redemption_id),
                program=program,
            )
            redemption = LoyaltyRedemption(
                id=redemption_id,
                user_id=user_id,
                merchant_id=merchant_id,
                loyalty_program_id=program.id,
                user_loyalty_id=debit.user_loyalty_id,
                points_redeemed=points,
                discount_value=quote.discount_value,
                redemption_transaction_id=debit.id,
                order_id=order_id,
                status=LoyaltyRedemptionStatus.ACTIVE,
                metadata_json={
                    "calculation": quote.calculation,
                    "orderAmount": str(amount) if amount is not None else None,
                },
            )
            self._db.add(redemption)
            await self._db.flush()
            return redemption

        redemption = await run_with_retry(self._db, _operation, label="redeem")
        self._observability.record_workflow("redemption.created")
        logger.info(
            "Created loyalty redemption",
            redemption_id=str(redemption.id),
            user_id=str(user_id),
            merchant_id=str(merchant_id),
            points=points,
            discount_value=str(redemption.discount_value),
        )
        return redemption

    async def cancel(self, redemption_id: UUID, reason: str) -> CancellationResult:
        """
        Refund exactly ``points_redeemed`` and mark the redemption CANCELLED.

        The state guard and the refund append share one atomic scope, so a
        second cancel fails with ``AlreadyCancelledError`` instead of crediting twice.
        """
        reason = (reason or "").strip()
        if not reason:
            raise LoyaltyValidationError("A cancellation reason is required")

        async def _operation() -> CancellationResult:
            stmt = lock_for_update(
                select(LoyaltyRedemption).where(LoyaltyRedemption.id == redemption_id)
            ).execution_options(populate_existing=True)
            redemption = (await self._db.execute(stmt)).scalar_one_or_none()
            if redemption is None:
                raise RedemptionNotFoundError(redemption_id)
            if redemption.status == LoyaltyRedemptionStatus.CANCELLED:
                self._observability.record_rejection(AlreadyCancelledError.code)
                raise AlreadyCancelledError(redemption_id)

            refund = await self._ledger.stage_transaction(
                redemption.user_id,
                redemption.merchant_id,
                LoyaltyTransactionType.REFUNDED,
                redemption.points_redeemed,
                f"Points refunded from cancelled redemption: {reason}",
                metadata={"originalRedemptionId": str(redemption_id), "reason": reason},
                linkage=TransactionLinkage(order_id=redemption.order_id, redemption_id=redemption_id),
            )
            redemption.status = LoyaltyRedemptionStatus.CANCELLED
            redemption.cancelled_at = datetime.now(timezone.utc)
            redemption.cancellation_reason = reason
            await self._db.flush()
            return CancellationResult(refund_transaction=refund, redemption=redemption)

        result = await run_with_retry(self._db, _operation, label="cancel_redemption")
        self._observability.record_workflow("redemption.cancelled")
        logger.info(
            "Cancelled loyalty redemption",
            redemption_id=str(redemption_id),
            refund_transaction_id=str(result.refund_transaction.id),
            points=result.refund_transaction.points,
        )
        return result

    async def get(self, redemption_id: UUID) -> LoyaltyRedemption:
        redemption = await self._db.get(LoyaltyRedemption, redemption_id)
        if redemption is None:
            raise RedemptionNotFoundError(redemption_id)
        return redemption

    async def list_for_user(self, user_id: UUID, merchant_id: UUID) -> list[LoyaltyRedemption]:
        stmt = (
            select(LoyaltyRedemption)
            .where(
                LoyaltyRedemption.user_id == user_id,
                LoyaltyRedemption.merchant_id == merchant_id,
            )
            .order_by(LoyaltyRedemption.created_at.desc(), LoyaltyRedemption.id.desc())
        )
        result = await self._db.execute(stmt)
        return list(result.scalars().all())


__all__ = ["CancellationResult", "RedemptionQuote", "RedemptionWorkflow"]
