"""Batch expiration of aged credits for programs with an expiration window."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from uuid import UUID

from loguru import logger
from sqlalchemy import and_, case, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_engine.models.loyalty import (
    LoyaltyPointTransaction,
    LoyaltyProgram,
    LoyaltyTransactionType,
    UserMerchantLoyalty,
)
from loyalty_engine.observability.loyalty import get_loyalty_store

from .concurrency import run_with_retry
from .ledger import LedgerStore

_CREDIT_TYPES = (
    LoyaltyTransactionType.EARNED,
    LoyaltyTransactionType.BONUS,
    LoyaltyTransactionType.ADJUSTED,
)


@dataclass
class ExpirationSweepResult:
    programs_scanned: int = 0
    balances_scanned: int = 0
    balances_expired: int = 0
    points_expired: int = 0
    failures: list[dict[str, str]] = field(default_factory=list)

    def as_dict(self) -> dict[str, object]:
        return {
            "programs_scanned": self.programs_scanned,
            "balances_scanned": self.balances_scanned,
            "balances_expired": self.balances_expired,
            "points_expired": self.points_expired,
            "failures": len(self.failures),
        }


class PointExpirationService:
    """
    Expire credits older than a program's ``point_expiration_days``.

    Debits consume the oldest credits first: the expirable amount for a
    balance is the credits created on or before the cutoff minus everything
    debited since the chain began (redemptions, expirations, and negative
    adjustments, net of refunds), capped at the current balance.
    """

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session
        self._ledger = LedgerStore(db_session)
        self._observability = get_loyalty_store()

    async def expire_balance(
        self,
        user_id: UUID,
        merchant_id: UUID,
        *,
        now: datetime | None = None,
    ) -> LoyaltyPointTransaction | None:
        current = now or datetime.now(timezone.utc)

        async def _operation() -> LoyaltyPointTransaction | None:
            program = await self._ledger.require_program(merchant_id)
            if not program.is_active or not program.point_expiration_days:
                return None
            snapshot = await self._ledger.lock_snapshot(user_id, merchant_id)
            if snapshot is None or snapshot.current_balance <= 0:
                return None

            cutoff = current - timedelta(days=int(program.point_expiration_days))
            outstanding = await self._outstanding_aged_credits(snapshot.id, cutoff)
            expiring = min(outstanding, snapshot.current_balance)
            if expiring <= 0:
                return None

            return await self._ledger.stage_transaction(
                user_id,
                merchant_id,
                LoyaltyTransactionType.EXPIRED,
                -expiring,
                f"{expiring} points expired after {program.point_expiration_days} days",
                metadata={
                    "cutoff": cutoff.isoformat(),
                    "expirationDays": int(program.point_expiration_days),
                },
                program=program,
            )

        return await run_with_retry(self._db, _operation, label="expire")

    async def sweep(self, *, now: datetime | None = None) -> ExpirationSweepResult:
        current = now or datetime.now(timezone.utc)
        result = ExpirationSweepResult()

        programs_stmt = select(LoyaltyProgram.merchant_id).where(
            LoyaltyProgram.is_active.is_(True),
            LoyaltyProgram.point_expiration_days.is_not(None),
        )
        merchant_ids = list((await self._db.execute(programs_stmt)).scalars().all())

        for merchant_id in merchant_ids:
            result.programs_scanned += 1
            balances_stmt = (
                select(UserMerchantLoyalty.user_id)
                .where(
                    UserMerchantLoyalty.merchant_id == merchant_id,
                    UserMerchantLoyalty.current_balance > 0,
                )
                .order_by(UserMerchantLoyalty.user_id)
            )
            user_ids = list((await self._db.execute(balances_stmt)).scalars().all())
            # release the read transaction before per-balance units begin
            await self._db.commit()

            for user_id in user_ids:
                result.balances_scanned += 1
                try:
                    transaction = await self.expire_balance(user_id, merchant_id, now=current)
                except Exception as exc:
                    logger.exception(
                        "Point expiration failed for balance",
                        user_id=str(user_id),
                        merchant_id=str(merchant_id),
                        error=str(exc),
                    )
                    result.failures.append(
                        {"user_id": str(user_id), "merchant_id": str(merchant_id), "error": str(exc)}
                    )
                    continue
                if transaction is not None:
                    result.balances_expired += 1
                    result.points_expired += abs(transaction.points)

        self._observability.record_workflow("expiration.sweep")
        logger.bind(summary=result.as_dict()).info("Point expiration sweep completed")
        return result

    async def _outstanding_aged_credits(self, user_loyalty_id: UUID, cutoff: datetime) -> int:
        points = LoyaltyPointTransaction.points
        kind = LoyaltyPointTransaction.type
        aged_credit = case(
            (
                and_(
                    kind.in_(_CREDIT_TYPES),
                    points > 0,
                    LoyaltyPointTransaction.created_at <= cutoff,
                ),
                points,
            ),
            else_=0,
        )
        consumed = case(
            (
                or_(
                    kind.in_((LoyaltyTransactionType.REDEEMED, LoyaltyTransactionType.EXPIRED)),
                    and_(kind == LoyaltyTransactionType.ADJUSTED, points < 0),
                ),
                -points,
            ),
            (kind == LoyaltyTransactionType.REFUNDED, -points),
            else_=0,
        )
        stmt = select(
            func.coalesce(func.sum(aged_credit), 0),
            func.coalesce(func.sum(consumed), 0),
        ).where(LoyaltyPointTransaction.user_loyalty_id == user_loyalty_id)
        aged, spent = (await self._db.execute(stmt)).one()
        return max(0, int(aged) - int(spent))


__all__ = ["ExpirationSweepResult", "PointExpirationService"]
