from decimal import Decimal
from uuid import uuid4

import pytest
import pytest_asyncio
from sqlalchemy import func, select

from loyalty_engine.models.loyalty import (
    LoyaltyPointTransaction,
    LoyaltyRedemption,
    LoyaltyRedemptionStatus,
    LoyaltyTransactionType,
)
from loyalty_engine.services.loyalty import (
    AlreadyCancelledError,
    BelowMinimumError,
    InsufficientBalanceError,
    LedgerStore,
    LoyaltyValidationError,
    ProgramInactiveError,
    ProgramRegistry,
    RedemptionNotFoundError,
    RedemptionWorkflow,
)


@pytest_asyncio.fixture
async def funded_member(session_factory, seed_program, seed_points, merchant_id, user_id):
    await seed_program(session_factory, merchant_id, minimum_redemption=100, redemption_value=Decimal("0.01"))
    await seed_points(session_factory, user_id, merchant_id, 1000)
    return user_id, merchant_id


@pytest.mark.asyncio
async def test_redeem_debits_balance_and_links_transaction(session_factory, funded_member) -> None:
    user_id, merchant_id = funded_member

    async with session_factory() as session:
        redemption = await RedemptionWorkflow(session).redeem(user_id, merchant_id, 500, order_id="order-1")
        balance = await LedgerStore(session).get_balance(user_id, merchant_id)
        debit = await session.get(LoyaltyPointTransaction, redemption.redemption_transaction_id)

    assert redemption.status == LoyaltyRedemptionStatus.ACTIVE
    assert redemption.points_redeemed == 500
    assert Decimal(redemption.discount_value) == Decimal("5.00")
    assert debit.type == LoyaltyTransactionType.REDEEMED
    assert debit.points == -500
    assert debit.redemption_id == redemption.id
    assert debit.order_id == "order-1"
    assert balance.current_balance == 500
    assert balance.lifetime_redeemed == 500


@pytest.mark.asyncio
async def test_cancel_is_exact_inverse_of_redeem(session_factory, funded_member) -> None:
    user_id, merchant_id = funded_member

    async with session_factory() as session:
        ledger = LedgerStore(session)
        workflow = RedemptionWorkflow(session)
        before = await ledger.get_balance(user_id, merchant_id)

        redemption = await workflow.redeem(user_id, merchant_id, 500)
        result = await workflow.cancel(redemption.id, "Customer changed their mind")
        after = await ledger.get_balance(user_id, merchant_id)
        reconciliation = await ledger.reconcile(user_id, merchant_id)

    assert result.refund_transaction.type == LoyaltyTransactionType.REFUNDED
    assert result.refund_transaction.points == 500
    assert result.refund_transaction.redemption_id == redemption.id
    assert result.redemption.status == LoyaltyRedemptionStatus.CANCELLED
    assert result.redemption.cancellation_reason == "Customer changed their mind"
    assert result.redemption.cancelled_at is not None
    assert after.current_balance == before.current_balance
    assert after.lifetime_redeemed == before.lifetime_redeemed
    assert after.lifetime_earned == before.lifetime_earned
    assert reconciliation.is_consistent


@pytest.mark.asyncio
async def test_second_cancel_fails_without_crediting(session_factory, funded_member) -> None:
    user_id, merchant_id = funded_member

    async with session_factory() as session:
        ledger = LedgerStore(session)
        workflow = RedemptionWorkflow(session)
        redemption = await workflow.redeem(user_id, merchant_id, 200)
        await workflow.cancel(redemption.id, "First cancel")
        balance_after_first = await ledger.get_balance(user_id, merchant_id)

        with pytest.raises(AlreadyCancelledError):
            await workflow.cancel(redemption.id, "Second cancel")

        balance_after_second = await ledger.get_balance(user_id, merchant_id)
        refunds = (
            await session.execute(
                select(func.count())
                .select_from(LoyaltyPointTransaction)
                .where(LoyaltyPointTransaction.type == LoyaltyTransactionType.REFUNDED)
            )
        ).scalar_one()

    assert balance_after_second.current_balance == balance_after_first.current_balance == 1000
    assert refunds == 1


@pytest.mark.asyncio
async def test_redeem_below_minimum(session_factory, funded_member, reset_loyalty_store) -> None:
    user_id, merchant_id = funded_member

    async with session_factory() as session:
        with pytest.raises(BelowMinimumError) as excinfo:
            await RedemptionWorkflow(session).redeem(user_id, merchant_id, 99)
        balance = await LedgerStore(session).get_balance(user_id, merchant_id)

    assert excinfo.value.minimum == 100
    assert balance.current_balance == 1000
    assert reset_loyalty_store.snapshot().rejections["below_minimum"] == 1


@pytest.mark.asyncio
async def test_redeem_more_than_balance_leaves_no_redemption(session_factory, funded_member) -> None:
    user_id, merchant_id = funded_member

    async with session_factory() as session:
        with pytest.raises(InsufficientBalanceError):
            await RedemptionWorkflow(session).redeem(user_id, merchant_id, 1500)

        redemptions = (await session.execute(select(LoyaltyRedemption))).scalars().all()
        balance = await LedgerStore(session).get_balance(user_id, merchant_id)

    assert redemptions == []
    assert balance.current_balance == 1000
    assert balance.lifetime_redeemed == 0


@pytest.mark.asyncio
async def test_redeem_against_inactive_program(session_factory, funded_member) -> None:
    user_id, merchant_id = funded_member

    async with session_factory() as session:
        await ProgramRegistry(session).set_status(merchant_id, False)
        with pytest.raises(ProgramInactiveError):
            await RedemptionWorkflow(session).redeem(user_id, merchant_id, 200)


@pytest.mark.asyncio
async def test_cancel_still_refunds_after_deactivation(session_factory, funded_member) -> None:
    user_id, merchant_id = funded_member

    async with session_factory() as session:
        workflow = RedemptionWorkflow(session)
        redemption = await workflow.redeem(user_id, merchant_id, 300)
        await ProgramRegistry(session).set_status(merchant_id, False)

        await workflow.cancel(redemption.id, "Program closing")
        balance = await LedgerStore(session).get_balance(user_id, merchant_id)

    assert balance.current_balance == 1000


@pytest.mark.asyncio
async def test_redeem_input_validation(session_factory, funded_member) -> None:
    user_id, merchant_id = funded_member

    async with session_factory() as session:
        workflow = RedemptionWorkflow(session)
        with pytest.raises(LoyaltyValidationError):
            await workflow.redeem(user_id, merchant_id, 0)
        with pytest.raises(LoyaltyValidationError):
            await workflow.redeem(user_id, merchant_id, 500, order_amount=Decimal("4.99"))
        with pytest.raises(RedemptionNotFoundError):
            await workflow.cancel(uuid4(), "Unknown")
        with pytest.raises(LoyaltyValidationError):
            await workflow.cancel(uuid4(), "   ")


@pytest.mark.asyncio
async def test_quote_and_listing(session_factory, funded_member) -> None:
    user_id, merchant_id = funded_member

    async with session_factory() as session:
        workflow = RedemptionWorkflow(session)
        quote = await workflow.quote(merchant_id, 250)
        short_quote = await workflow.quote(merchant_id, 50)
        first = await workflow.redeem(user_id, merchant_id, 100)
        second = await workflow.redeem(user_id, merchant_id, 150)
        listed = await workflow.list_for_user(user_id, merchant_id)
        fetched = await workflow.get(first.id)

    assert quote.discount_value == Decimal("2.50")
    assert quote.meets_minimum is True
    assert short_quote.meets_minimum is False
    assert {item.id for item in listed} == {first.id, second.id}
    assert fetched.id == first.id
