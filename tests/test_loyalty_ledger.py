from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from loyalty_engine.models.loyalty import (
    LoyaltyPointTransaction,
    LoyaltyTransactionType,
    UserMerchantLoyalty,
)
from loyalty_engine.services.loyalty import (
    InsufficientBalanceError,
    LedgerStore,
    LoyaltyValidationError,
    ProgramNotFoundError,
    TransactionFilter,
    TransactionLinkage,
    resolve_tier,
)


async def _transaction_count(session) -> int:
    return (await session.execute(select(func.count()).select_from(LoyaltyPointTransaction))).scalar_one()


@pytest.mark.asyncio
async def test_first_credit_creates_snapshot(session_factory, seed_program, merchant_id, user_id) -> None:
    program = await seed_program(session_factory, merchant_id)

    async with session_factory() as session:
        ledger = LedgerStore(session)
        entry = await ledger.append_transaction(
            user_id,
            merchant_id,
            LoyaltyTransactionType.EARNED,
            120,
            "Welcome purchase",
            metadata={"channel": "pos"},
            linkage=TransactionLinkage(order_id="order-1"),
        )
        balance = await ledger.get_balance(user_id, merchant_id)

    assert entry.sequence == 1
    assert entry.balance_before == 0
    assert entry.balance_after == 120
    assert entry.loyalty_program_id == program.id
    assert entry.order_id == "order-1"
    assert entry.metadata_json == {"channel": "pos"}
    assert balance.current_balance == 120
    assert balance.lifetime_earned == 120
    assert balance.lifetime_redeemed == 0
    assert balance.last_earned_at is not None
    assert balance.tier == "bronze"
    assert balance.transaction_count == 1


@pytest.mark.asyncio
async def test_balance_without_history_is_zero(session_factory, merchant_id, user_id) -> None:
    async with session_factory() as session:
        balance = await LedgerStore(session).get_balance(user_id, merchant_id)

    assert balance.current_balance == 0
    assert balance.lifetime_earned == 0
    assert balance.tier is None
    assert balance.transaction_count == 0


@pytest.mark.asyncio
async def test_append_requires_program(session_factory, merchant_id, user_id) -> None:
    async with session_factory() as session:
        with pytest.raises(ProgramNotFoundError):
            await LedgerStore(session).append_transaction(
                user_id, merchant_id, LoyaltyTransactionType.EARNED, 10, "No program"
            )


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("transaction_type", "points"),
    [
        (LoyaltyTransactionType.EARNED, -5),
        (LoyaltyTransactionType.BONUS, -5),
        (LoyaltyTransactionType.REFUNDED, -5),
        (LoyaltyTransactionType.REDEEMED, 5),
        (LoyaltyTransactionType.EXPIRED, 5),
        (LoyaltyTransactionType.ADJUSTED, 0),
    ],
)
async def test_sign_rules_per_type(
    session_factory, seed_program, merchant_id, user_id, transaction_type, points
) -> None:
    await seed_program(session_factory, merchant_id)

    async with session_factory() as session:
        with pytest.raises(LoyaltyValidationError):
            await LedgerStore(session).append_transaction(
                user_id, merchant_id, transaction_type, points, "Invalid entry"
            )
        assert await _transaction_count(session) == 0


@pytest.mark.asyncio
async def test_debit_below_zero_is_rejected_atomically(
    session_factory, seed_program, merchant_id, user_id, reset_loyalty_store
) -> None:
    await seed_program(session_factory, merchant_id)

    async with session_factory() as session:
        ledger = LedgerStore(session)
        await ledger.append_transaction(user_id, merchant_id, LoyaltyTransactionType.EARNED, 50, "Seed")

        with pytest.raises(InsufficientBalanceError) as excinfo:
            await ledger.append_transaction(
                user_id, merchant_id, LoyaltyTransactionType.REDEEMED, -80, "Too much"
            )

        balance = await ledger.get_balance(user_id, merchant_id)
        assert await _transaction_count(session) == 1

    assert excinfo.value.balance == 50
    assert excinfo.value.requested == 80
    assert balance.current_balance == 50
    assert balance.transaction_count == 1
    assert reset_loyalty_store.snapshot().rejections["insufficient_balance"] == 1


@pytest.mark.asyncio
async def test_lifetime_counters_follow_transaction_type(
    session_factory, seed_program, merchant_id, user_id
) -> None:
    await seed_program(session_factory, merchant_id)

    async with session_factory() as session:
        ledger = LedgerStore(session)
        await ledger.append_transaction(user_id, merchant_id, LoyaltyTransactionType.EARNED, 300, "Earn")
        await ledger.append_transaction(user_id, merchant_id, LoyaltyTransactionType.BONUS, 50, "Bonus")
        await ledger.append_transaction(user_id, merchant_id, LoyaltyTransactionType.ADJUSTED, 25, "Goodwill")
        await ledger.append_transaction(user_id, merchant_id, LoyaltyTransactionType.REDEEMED, -100, "Redeem")
        await ledger.append_transaction(user_id, merchant_id, LoyaltyTransactionType.REFUNDED, 40, "Refund")
        await ledger.append_transaction(user_id, merchant_id, LoyaltyTransactionType.ADJUSTED, -15, "Correction")
        await ledger.append_transaction(user_id, merchant_id, LoyaltyTransactionType.EXPIRED, -10, "Expired")
        balance = await ledger.get_balance(user_id, merchant_id)

    assert balance.lifetime_earned == 375
    assert balance.lifetime_redeemed == 60
    assert balance.current_balance == 300 + 50 + 25 - 100 + 40 - 15 - 10
    assert balance.last_redeemed_at is not None
    assert balance.transaction_count == 7


@pytest.mark.asyncio
async def test_refund_cannot_exceed_lifetime_redeemed(
    session_factory, seed_program, merchant_id, user_id
) -> None:
    await seed_program(session_factory, merchant_id)

    async with session_factory() as session:
        ledger = LedgerStore(session)
        await ledger.append_transaction(user_id, merchant_id, LoyaltyTransactionType.EARNED, 100, "Earn")
        await ledger.append_transaction(user_id, merchant_id, LoyaltyTransactionType.REDEEMED, -20, "Redeem")

        with pytest.raises(LoyaltyValidationError):
            await ledger.append_transaction(
                user_id, merchant_id, LoyaltyTransactionType.REFUNDED, 30, "Over refund"
            )

        balance = await ledger.get_balance(user_id, merchant_id)

    assert balance.current_balance == 80
    assert balance.lifetime_redeemed == 20


@pytest.mark.asyncio
async def test_chain_folds_to_snapshot(session_factory, seed_program, merchant_id, user_id) -> None:
    await seed_program(session_factory, merchant_id)
    operations = [
        (LoyaltyTransactionType.EARNED, 90),
        (LoyaltyTransactionType.REDEEMED, -40),
        (LoyaltyTransactionType.BONUS, 15),
        (LoyaltyTransactionType.REFUNDED, 40),
        (LoyaltyTransactionType.ADJUSTED, -60),
        (LoyaltyTransactionType.EARNED, 7),
    ]

    async with session_factory() as session:
        ledger = LedgerStore(session)
        for transaction_type, points in operations:
            await ledger.append_transaction(user_id, merchant_id, transaction_type, points, "Step")

        chain = await ledger.list_chain(user_id, merchant_id)
        balance = await ledger.get_balance(user_id, merchant_id)
        reconciliation = await ledger.reconcile(user_id, merchant_id)

    running = 0
    for entry in chain:
        assert entry.balance_before == running
        assert entry.balance_after == entry.balance_before + entry.points
        running = entry.balance_after

    assert [entry.sequence for entry in chain] == list(range(1, len(operations) + 1))
    assert running == balance.current_balance == 52
    assert reconciliation.is_consistent
    assert reconciliation.replayed_balance == 52
    assert reconciliation.broken_links == []


@pytest.mark.asyncio
async def test_reconcile_flags_divergent_snapshot(session_factory, seed_program, merchant_id, user_id) -> None:
    await seed_program(session_factory, merchant_id)

    async with session_factory() as session:
        ledger = LedgerStore(session)
        await ledger.append_transaction(user_id, merchant_id, LoyaltyTransactionType.EARNED, 30, "Earn")

        snapshot = (
            await session.execute(
                select(UserMerchantLoyalty).where(UserMerchantLoyalty.user_id == user_id)
            )
        ).scalar_one()
        snapshot.current_balance = 45
        await session.commit()

        reconciliation = await ledger.reconcile(user_id, merchant_id)

    assert not reconciliation.is_consistent
    assert reconciliation.snapshot_balance == 45
    assert reconciliation.replayed_balance == 30


@pytest.mark.asyncio
async def test_list_transactions_filters_and_pages(session_factory, seed_program, merchant_id, user_id) -> None:
    other_user = uuid4()
    await seed_program(session_factory, merchant_id)

    async with session_factory() as session:
        ledger = LedgerStore(session)
        await ledger.append_transaction(user_id, merchant_id, LoyaltyTransactionType.EARNED, 100, "One")
        await ledger.append_transaction(user_id, merchant_id, LoyaltyTransactionType.REDEEMED, -10, "Two")
        await ledger.append_transaction(user_id, merchant_id, LoyaltyTransactionType.BONUS, 5, "Three")
        await ledger.append_transaction(other_user, merchant_id, LoyaltyTransactionType.EARNED, 8, "Other")

        newest_first = await ledger.list_transactions(
            TransactionFilter(merchant_id=merchant_id, user_id=user_id)
        )
        oldest_first = await ledger.list_transactions(
            TransactionFilter(user_id=user_id, ascending=True)
        )
        credits = await ledger.list_transactions(
            TransactionFilter(
                merchant_id=merchant_id,
                types=[LoyaltyTransactionType.EARNED, LoyaltyTransactionType.BONUS],
            )
        )
        first_page = await ledger.list_transactions(
            TransactionFilter(merchant_id=merchant_id, limit=2)
        )
        second_page = await ledger.list_transactions(
            TransactionFilter(merchant_id=merchant_id, limit=2, offset=2)
        )
        future = await ledger.list_transactions(
            TransactionFilter(
                merchant_id=merchant_id,
                created_from=datetime.now(timezone.utc) + timedelta(hours=1),
            )
        )

    assert [entry.description for entry in newest_first.transactions] == ["Three", "Two", "One"]
    assert [entry.sequence for entry in oldest_first.transactions] == [1, 2, 3]
    assert credits.total == 3
    assert {entry.type for entry in credits.transactions} == {
        LoyaltyTransactionType.EARNED,
        LoyaltyTransactionType.BONUS,
    }
    assert first_page.total == 4
    assert len(first_page.transactions) == 2
    assert first_page.has_more is True
    assert len(second_page.transactions) == 2
    assert second_page.has_more is False
    assert future.total == 0


@pytest.mark.asyncio
async def test_list_transactions_rejects_inverted_range(session_factory) -> None:
    now = datetime.now(timezone.utc)
    async with session_factory() as session:
        with pytest.raises(LoyaltyValidationError):
            await LedgerStore(session).list_transactions(
                TransactionFilter(created_from=now, created_to=now - timedelta(days=1))
            )


@pytest.mark.asyncio
async def test_list_balances_orders_by_balance(session_factory, seed_program, user_id) -> None:
    small_merchant, large_merchant = uuid4(), uuid4()
    await seed_program(session_factory, small_merchant)
    await seed_program(session_factory, large_merchant)

    async with session_factory() as session:
        ledger = LedgerStore(session)
        await ledger.append_transaction(user_id, small_merchant, LoyaltyTransactionType.EARNED, 10, "Small")
        await ledger.append_transaction(user_id, large_merchant, LoyaltyTransactionType.EARNED, 900, "Large")
        balances = await ledger.list_balances(user_id)

    assert [item.merchant_id for item in balances] == [large_merchant, small_merchant]
    assert balances[0].tier == "silver"


def test_resolve_tier_uses_highest_threshold_met() -> None:
    thresholds = {"bronze": 0, "silver": 500, "gold": 2000}

    assert resolve_tier(0, thresholds) == "bronze"
    assert resolve_tier(499, thresholds) == "bronze"
    assert resolve_tier(500, thresholds) == "silver"
    assert resolve_tier(10_000, thresholds) == "gold"
    assert resolve_tier(5, {"insider": 10}) is None
