"""Append-only points ledger with a materialized per-(user, merchant) snapshot."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_engine.core.settings import settings
from loyalty_engine.models.loyalty import (
    LoyaltyPointTransaction,
    LoyaltyProgram,
    LoyaltyTransactionType,
    UserMerchantLoyalty,
)
from loyalty_engine.observability.loyalty import get_loyalty_store

from .concurrency import lock_for_update, run_with_retry
from .errors import (
    InsufficientBalanceError,
    LoyaltyValidationError,
    ProgramNotFoundError,
)


_CREDIT_ONLY = {
    LoyaltyTransactionType.EARNED,
    LoyaltyTransactionType.BONUS,
    LoyaltyTransactionType.REFUNDED,
}
_DEBIT_ONLY = {
    LoyaltyTransactionType.REDEEMED,
    LoyaltyTransactionType.EXPIRED,
}


@dataclass
class TransactionLinkage:
    """Optional references from a ledger entry to the event that caused it."""

    order_id: str | None = None
    redemption_id: UUID | None = None
    kickback_event_id: UUID | None = None


@dataclass
class BalanceSnapshot:
    """Serializable balance view; zero-valued when no history exists."""

    user_id: UUID
    merchant_id: UUID
    current_balance: int = 0
    lifetime_earned: int = 0
    lifetime_redeemed: int = 0
    last_earned_at: datetime | None = None
    last_redeemed_at: datetime | None = None
    tier: str | None = None
    transaction_count: int = 0

    @classmethod
    def from_model(cls, record: UserMerchantLoyalty) -> "BalanceSnapshot":
        return cls(
            user_id=record.user_id,
            merchant_id=record.merchant_id,
            current_balance=record.current_balance,
            lifetime_earned=record.lifetime_earned,
            lifetime_redeemed=record.lifetime_redeemed,
            last_earned_at=record.last_earned_at,
            last_redeemed_at=record.last_redeemed_at,
            tier=record.tier,
            transaction_count=record.transaction_count,
        )


@dataclass
class TransactionFilter:
    merchant_id: UUID | None = None
    user_id: UUID | None = None
    types: Sequence[LoyaltyTransactionType] | None = None
    created_from: datetime | None = None
    created_to: datetime | None = None
    limit: int = 50
    offset: int = 0
    ascending: bool = False


@dataclass
class TransactionPage:
    transactions: list[LoyaltyPointTransaction]
    total: int
    limit: int
    offset: int

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.transactions) < self.total


@dataclass
class LedgerReconciliation:
    """Result of replaying a chain against its snapshot."""

    user_id: UUID
    merchant_id: UUID
    snapshot_balance: int
    replayed_balance: int
    snapshot_transaction_count: int
    transaction_count: int
    broken_links: list[UUID] = field(default_factory=list)

    @property
    def is_consistent(self) -> bool:
        return (
            not self.broken_links
            and self.snapshot_balance == self.replayed_balance
            and self.snapshot_transaction_count == self.transaction_count
        )


def resolve_tier(lifetime_earned: int, thresholds: Mapping[str, int] | None = None) -> str | None:
    """Highest tier whose threshold is met by lifetime earned points."""

    tiers = sorted((thresholds or settings.loyalty_tier_thresholds).items(), key=lambda item: item[1])
    current: str | None = None
    for name, threshold in tiers:
        if lifetime_earned >= threshold:
            current = name
    return current


def validate_points(transaction_type: LoyaltyTransactionType, points: int) -> None:
    if isinstance(points, bool) or not isinstance(points, int):
        raise LoyaltyValidationError("Ledger points must be an integer")
    if points == 0:
        raise LoyaltyValidationError("Ledger entries require a non-zero amount")
    if transaction_type in _CREDIT_ONLY and points < 0:
        raise LoyaltyValidationError(f"{transaction_type.value} transactions must credit points")
    if transaction_type in _DEBIT_ONLY and points > 0:
        raise LoyaltyValidationError(f"{transaction_type.value} transactions must debit points")


class LedgerStore:
    """Sole writer of ledger transactions and balance snapshots."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session
        self._observability = get_loyalty_store()

    async def append_transaction(
        self,
        user_id: UUID,
        merchant_id: UUID,
        transaction_type: LoyaltyTransactionType,
        points: int,
        description: str,
        metadata: dict[str, Any] | None = None,
        linkage: TransactionLinkage | None = None,
    ) -> LoyaltyPointTransaction:
        """Append one entry and update the snapshot as a single committed unit."""

        validate_points(transaction_type, points)

        async def _operation() -> LoyaltyPointTransaction:
            return await self.stage_transaction(
                user_id,
                merchant_id,
                transaction_type,
                points,
                description,
                metadata=metadata,
                linkage=linkage,
            )

        return await run_with_retry(
            self._db,
            _operation,
            label=f"append:{transaction_type.value.lower()}",
        )

    async def stage_transaction(
        self,
        user_id: UUID,
        merchant_id: UUID,
        transaction_type: LoyaltyTransactionType,
        points: int,
        description: str,
        *,
        metadata: dict[str, Any] | None = None,
        linkage: TransactionLinkage | None = None,
        program: LoyaltyProgram | None = None,
    ) -> LoyaltyPointTransaction:
        """
        Append inside the caller's atomic scope without committing.

        The snapshot row is locked before the balance is read; the caller's
        ``run_with_retry`` owns commit, rollback, and contention retries.
        """
        validate_points(transaction_type, points)
        if program is None:
            program = await self.require_program(merchant_id)

        snapshot = await self.lock_snapshot(user_id, merchant_id)
        if snapshot is None:
            snapshot = UserMerchantLoyalty(
                user_id=user_id,
                merchant_id=merchant_id,
                loyalty_program_id=program.id,
                current_balance=0,
                lifetime_earned=0,
                lifetime_redeemed=0,
                transaction_count=0,
            )
            self._db.add(snapshot)
            await self._db.flush()
            logger.info(
                "Created loyalty balance snapshot",
                user_id=str(user_id),
                merchant_id=str(merchant_id),
            )

        balance_before = snapshot.current_balance
        balance_after = balance_before + points
        if balance_after < 0:
            self._observability.record_rejection(InsufficientBalanceError.code)
            raise InsufficientBalanceError(balance_before, abs(points))

        if transaction_type == LoyaltyTransactionType.REFUNDED and points > snapshot.lifetime_redeemed:
            raise LoyaltyValidationError(
                f"Refund of {points} points exceeds lifetime redeemed ({snapshot.lifetime_redeemed})"
            )

        now = datetime.now(timezone.utc)
        self._apply_counters(snapshot, transaction_type, points, now)
        snapshot.current_balance = balance_after
        snapshot.transaction_count = snapshot.transaction_count + 1

        linkage = linkage or TransactionLinkage()
        transaction = LoyaltyPointTransaction(
            user_id=user_id,
            merchant_id=merchant_id,
            loyalty_program_id=program.id,
            user_loyalty_id=snapshot.id,
            sequence=snapshot.transaction_count,
            type=transaction_type,
            points=points,
            balance_before=balance_before,
            balance_after=balance_after,
            description=description,
            metadata_json=dict(metadata or {}),
            order_id=linkage.order_id,
            redemption_id=linkage.redemption_id,
            kickback_event_id=linkage.kickback_event_id,
            created_at=now,
        )
        self._db.add(transaction)
        await self._db.flush()

        self._observability.record_transaction(transaction_type.value, points)
        logger.info(
            "Appended loyalty transaction",
            user_id=str(user_id),
            merchant_id=str(merchant_id),
            transaction_id=str(transaction.id),
            type=transaction_type.value,
            points=points,
            balance_before=balance_before,
            balance_after=balance_after,
        )
        return transaction

    async def require_program(self, merchant_id: UUID) -> LoyaltyProgram:
        stmt = select(LoyaltyProgram).where(LoyaltyProgram.merchant_id == merchant_id)
        result = await self._db.execute(stmt)
        program = result.scalar_one_or_none()
        if program is None:
            raise ProgramNotFoundError(merchant_id)
        return program

    async def lock_snapshot(self, user_id: UUID, merchant_id: UUID) -> UserMerchantLoyalty | None:
        stmt = lock_for_update(
            select(UserMerchantLoyalty).where(
                UserMerchantLoyalty.user_id == user_id,
                UserMerchantLoyalty.merchant_id == merchant_id,
            )
        ).execution_options(populate_existing=True)
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def find_snapshot(self, user_id: UUID, merchant_id: UUID) -> UserMerchantLoyalty | None:
        stmt = select(UserMerchantLoyalty).where(
            UserMerchantLoyalty.user_id == user_id,
            UserMerchantLoyalty.merchant_id == merchant_id,
        )
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_balance(self, user_id: UUID, merchant_id: UUID) -> BalanceSnapshot:
        """Current snapshot, or a zero-valued one when the pair has no history."""

        record = await self.find_snapshot(user_id, merchant_id)
        if record is None:
            return BalanceSnapshot(user_id=user_id, merchant_id=merchant_id)
        return BalanceSnapshot.from_model(record)

    async def list_balances(self, user_id: UUID) -> list[BalanceSnapshot]:
        """All of a user's merchant balances, largest first."""

        stmt = (
            select(UserMerchantLoyalty)
            .where(UserMerchantLoyalty.user_id == user_id)
            .order_by(UserMerchantLoyalty.current_balance.desc(), UserMerchantLoyalty.merchant_id)
        )
        result = await self._db.execute(stmt)
        return [BalanceSnapshot.from_model(record) for record in result.scalars().all()]

    async def list_transactions(self, criteria: TransactionFilter) -> TransactionPage:
        """Filtered page ordered by creation time, ties broken by chain sequence then id."""

        if criteria.offset < 0:
            raise LoyaltyValidationError("offset must be non-negative")
        if (
            criteria.created_from is not None
            and criteria.created_to is not None
            and criteria.created_from > criteria.created_to
        ):
            raise LoyaltyValidationError("created_from must not be after created_to")
        bounded_limit = max(1, min(criteria.limit, settings.ledger_page_size_limit))

        conditions = []
        if criteria.merchant_id is not None:
            conditions.append(LoyaltyPointTransaction.merchant_id == criteria.merchant_id)
        if criteria.user_id is not None:
            conditions.append(LoyaltyPointTransaction.user_id == criteria.user_id)
        if criteria.types:
            conditions.append(LoyaltyPointTransaction.type.in_(list(criteria.types)))
        if criteria.created_from is not None:
            conditions.append(LoyaltyPointTransaction.created_at >= criteria.created_from)
        if criteria.created_to is not None:
            conditions.append(LoyaltyPointTransaction.created_at <= criteria.created_to)

        if criteria.ascending:
            ordering = (
                LoyaltyPointTransaction.created_at.asc(),
                LoyaltyPointTransaction.sequence.asc(),
                LoyaltyPointTransaction.id.asc(),
            )
        else:
            ordering = (
                LoyaltyPointTransaction.created_at.desc(),
                LoyaltyPointTransaction.sequence.desc(),
                LoyaltyPointTransaction.id.desc(),
            )

        stmt = (
            select(LoyaltyPointTransaction)
            .where(*conditions)
            .order_by(*ordering)
            .limit(bounded_limit)
            .offset(criteria.offset)
        )
        count_stmt = select(func.count()).select_from(LoyaltyPointTransaction).where(*conditions)

        rows = (await self._db.execute(stmt)).scalars().all()
        total = (await self._db.execute(count_stmt)).scalar_one()
        return TransactionPage(
            transactions=list(rows),
            total=int(total),
            limit=bounded_limit,
            offset=criteria.offset,
        )

    async def list_chain(self, user_id: UUID, merchant_id: UUID) -> list[LoyaltyPointTransaction]:
        stmt = (
            select(LoyaltyPointTransaction)
            .where(
                LoyaltyPointTransaction.user_id == user_id,
                LoyaltyPointTransaction.merchant_id == merchant_id,
            )
            .order_by(LoyaltyPointTransaction.sequence.asc())
        )
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def reconcile(self, user_id: UUID, merchant_id: UUID) -> LedgerReconciliation:
        """Replay the chain from zero and compare it with the stored snapshot."""

        snapshot = await self.get_balance(user_id, merchant_id)
        chain = await self.list_chain(user_id, merchant_id)

        running = 0
        broken: list[UUID] = []
        for entry in chain:
            if entry.balance_before != running or entry.balance_after != entry.balance_before + entry.points:
                broken.append(entry.id)
            running += entry.points

        reconciliation = LedgerReconciliation(
            user_id=user_id,
            merchant_id=merchant_id,
            snapshot_balance=snapshot.current_balance,
            replayed_balance=running,
            snapshot_transaction_count=snapshot.transaction_count,
            transaction_count=len(chain),
            broken_links=broken,
        )
        if not reconciliation.is_consistent:
            logger.error(
                "Loyalty ledger diverged from snapshot",
                user_id=str(user_id),
                merchant_id=str(merchant_id),
                snapshot_balance=snapshot.current_balance,
                replayed_balance=running,
                broken_links=[str(item) for item in broken],
            )
        return reconciliation

    @staticmethod
    def _apply_counters(
        snapshot: UserMerchantLoyalty,
        transaction_type: LoyaltyTransactionType,
        points: int,
        now: datetime,
    ) -> None:
        if transaction_type in {LoyaltyTransactionType.EARNED, LoyaltyTransactionType.BONUS} or (
            transaction_type == LoyaltyTransactionType.ADJUSTED and points > 0
        ):
            snapshot.lifetime_earned = snapshot.lifetime_earned + points
            snapshot.last_earned_at = now
            snapshot.tier = resolve_tier(snapshot.lifetime_earned)
        elif transaction_type == LoyaltyTransactionType.REDEEMED:
            snapshot.lifetime_redeemed = snapshot.lifetime_redeemed + abs(points)
            snapshot.last_redeemed_at = now
        elif transaction_type == LoyaltyTransactionType.REFUNDED:
            snapshot.lifetime_redeemed = snapshot.lifetime_redeemed - points


__all__ = [
    "BalanceSnapshot",
    "LedgerReconciliation",
    "LedgerStore",
    "TransactionFilter",
    "TransactionLinkage",
    "TransactionPage",
    "resolve_tier",
    "validate_points",
]
