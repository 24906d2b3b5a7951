import asyncio
from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from loyalty_engine.core.settings import settings
from loyalty_engine.services.loyalty import (
    ContentionError,
    EarningEngine,
    InsufficientBalanceError,
    LedgerStore,
    LoyaltyValidationError,
    RedemptionWorkflow,
    run_with_retry,
)
from loyalty_engine.services.loyalty.concurrency import is_contention_error


def _locked_error() -> OperationalError:
    return OperationalError("UPDATE user_merchant_loyalty", {}, Exception("database is locked"))


@pytest.mark.asyncio
async def test_concurrent_redemptions_never_overdraw(
    file_session_factory, seed_program, seed_points, merchant_id, user_id, monkeypatch
) -> None:
    monkeypatch.setattr(settings, "ledger_retry_attempts", 6)
    monkeypatch.setattr(settings, "ledger_retry_backoff_seconds", 0.01)

    await seed_program(file_session_factory, merchant_id, minimum_redemption=10)
    await seed_points(file_session_factory, user_id, merchant_id, 100)

    async def _redeem():
        async with file_session_factory() as session:
            redemption = await RedemptionWorkflow(session).redeem(user_id, merchant_id, 80)
            return redemption.id

    outcomes = await asyncio.gather(_redeem(), _redeem(), return_exceptions=True)

    succeeded = [item for item in outcomes if not isinstance(item, BaseException)]
    failed = [item for item in outcomes if isinstance(item, BaseException)]
    assert len(succeeded) == 1
    assert len(failed) == 1
    assert isinstance(failed[0], InsufficientBalanceError)

    async with file_session_factory() as session:
        ledger = LedgerStore(session)
        balance = await ledger.get_balance(user_id, merchant_id)
        reconciliation = await ledger.reconcile(user_id, merchant_id)

    assert balance.current_balance == 20
    assert balance.lifetime_redeemed == 80
    assert reconciliation.is_consistent


@pytest.mark.asyncio
async def test_concurrent_earning_keeps_every_credit(
    file_session_factory, seed_program, seed_points, merchant_id, user_id, monkeypatch
) -> None:
    monkeypatch.setattr(settings, "ledger_retry_attempts", 10)
    monkeypatch.setattr(settings, "ledger_retry_backoff_seconds", 0.01)

    await seed_program(file_session_factory, merchant_id)
    await seed_points(file_session_factory, user_id, merchant_id, 10)

    async def _earn(amount):
        async with file_session_factory() as session:
            return await EarningEngine(session).award_purchase_points(user_id, merchant_id, amount)

    outcomes = await asyncio.gather(
        *(_earn(Decimal(value)) for value in ("5", "7", "11")),
        return_exceptions=True,
    )
    assert not [outcome for outcome in outcomes if isinstance(outcome, BaseException)]
    assert sorted(outcome.points for outcome in outcomes) == [5, 7, 11]

    async with file_session_factory() as session:
        ledger = LedgerStore(session)
        balance = await ledger.get_balance(user_id, merchant_id)
        reconciliation = await ledger.reconcile(user_id, merchant_id)

    assert balance.current_balance == 10 + 5 + 7 + 11
    assert reconciliation.is_consistent


@pytest.mark.asyncio
async def test_retry_recovers_from_transient_contention(session_factory, reset_loyalty_store) -> None:
    calls = {"count": 0}

    async def _operation():
        calls["count"] += 1
        if calls["count"] < 3:
            raise _locked_error()
        return "committed"

    async with session_factory() as session:
        result = await run_with_retry(session, _operation, attempts=3, backoff_base=0, label="probe")

    contention = reset_loyalty_store.snapshot().contention
    assert result == "committed"
    assert calls["count"] == 3
    assert contention["retries"] == 2
    assert contention["label:probe"] == 2
    assert "exhausted" not in contention


@pytest.mark.asyncio
async def test_retry_exhaustion_raises_contention_error(session_factory, reset_loyalty_store) -> None:
    async def _operation():
        raise _locked_error()

    async with session_factory() as session:
        with pytest.raises(ContentionError) as excinfo:
            await run_with_retry(session, _operation, attempts=2, backoff_base=0, label="probe")

    assert excinfo.value.attempts == 2
    assert excinfo.value.retryable is True
    assert isinstance(excinfo.value.__cause__, OperationalError)
    assert reset_loyalty_store.snapshot().contention["exhausted"] == 1


@pytest.mark.asyncio
async def test_business_errors_are_not_retried(session_factory, reset_loyalty_store) -> None:
    calls = {"count": 0}

    async def _operation():
        calls["count"] += 1
        raise LoyaltyValidationError("bad input")

    async with session_factory() as session:
        with pytest.raises(LoyaltyValidationError):
            await run_with_retry(session, _operation, attempts=5, backoff_base=0)

    assert calls["count"] == 1
    assert reset_loyalty_store.snapshot().contention == {}


class _UniqueViolation(Exception):
    def __init__(self, constraint_name: str) -> None:
        super().__init__(f'duplicate key value violates unique constraint "{constraint_name}"')
        self.constraint_name = constraint_name


def _integrity_error(orig: Exception) -> IntegrityError:
    return IntegrityError("INSERT INTO loyalty_point_transactions", {}, orig)


@pytest.mark.parametrize(
    "orig, expected",
    [
        (
            Exception(
                "UNIQUE constraint failed: loyalty_point_transactions.user_loyalty_id, "
                "loyalty_point_transactions.sequence"
            ),
            True,
        ),
        (
            Exception(
                "UNIQUE constraint failed: user_merchant_loyalty.user_id, user_merchant_loyalty.merchant_id"
            ),
            True,
        ),
        (Exception("UNIQUE constraint failed: loyalty_point_transactions.kickback_event_id"), True),
        (_UniqueViolation("uq_loyalty_point_transactions_sequence"), True),
        (_UniqueViolation("uq_loyalty_programs_merchant_id"), False),
        (Exception("CHECK constraint failed: ck_user_merchant_loyalty_balance"), False),
        (Exception("FOREIGN KEY constraint failed"), False),
    ],
)
def test_only_writer_race_integrity_errors_count_as_contention(orig, expected) -> None:
    assert is_contention_error(_integrity_error(orig)) is expected


@pytest.mark.asyncio
async def test_constraint_violations_propagate_without_retry(session_factory, reset_loyalty_store) -> None:
    calls = {"count": 0}

    async def _operation():
        calls["count"] += 1
        raise _integrity_error(Exception("CHECK constraint failed: ck_loyalty_point_transactions_fold"))

    async with session_factory() as session:
        with pytest.raises(IntegrityError):
            await run_with_retry(session, _operation, attempts=5, backoff_base=0)

    assert calls["count"] == 1
    assert reset_loyalty_store.snapshot().contention == {}
