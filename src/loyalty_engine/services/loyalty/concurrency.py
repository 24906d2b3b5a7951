"""Unit-of-work helpers for ledger writes: row locks and bounded retry."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, TypeVar

from loguru import logger
from sqlalchemy import Select, text
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from loyalty_engine.core.settings import settings
from loyalty_engine.observability.loyalty import get_loyalty_store
from loyalty_engine.observability.tracing import get_ledger_tracer

from .errors import ContentionError

T = TypeVar("T")

# serialization_failure, deadlock_detected, lock_not_available
_RETRYABLE_SQLSTATES = {"40001", "40P01", "55P03"}


# Unique keys a concurrent writer can trip; PostgreSQL names the constraint, SQLite lists its columns.
_CONTENTION_CONSTRAINTS = {
    "uq_user_merchant_loyalty_user_merchant": "user_merchant_loyalty.user_id, user_merchant_loyalty.merchant_id",
    "uq_loyalty_point_transactions_sequence": (
        "loyalty_point_transactions.user_loyalty_id, loyalty_point_transactions.sequence"
    ),
    "uq_loyalty_point_transactions_kickback": "loyalty_point_transactions.kickback_event_id",
}


def _is_contention_conflict(exc: IntegrityError) -> bool:
    orig = getattr(exc, "orig", None)
    cause = getattr(orig, "__cause__", None)
    constraint = getattr(orig, "constraint_name", None) or getattr(cause, "constraint_name", None)
    if constraint is not None:
        return constraint in _CONTENTION_CONSTRAINTS
    message = str(orig if orig is not None else exc)
    return any(
        name in message or f"UNIQUE constraint failed: {columns}" in message
        for name, columns in _CONTENTION_CONSTRAINTS.items()
    )


def lock_for_update(stmt: Select) -> Select:
    """
    Apply row-level locking to a snapshot read.

    NOTE: SQLite ignores SELECT ... FOR UPDATE; the version column and the
    per-chain sequence constraint still reject conflicting writers there.
    """
    return stmt.with_for_update()


def is_contention_error(exc: BaseException) -> bool:
    if isinstance(exc, IntegrityError):
        return _is_contention_conflict(exc)
    if isinstance(exc, (OperationalError, StaleDataError)):
        return True
    if isinstance(exc, DBAPIError):
        orig = getattr(exc, "orig", None)
        state = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
        return state in _RETRYABLE_SQLSTATES
    return False


async def apply_lock_timeout(session: AsyncSession) -> None:
    """Bound lock waits so a stuck writer surfaces as contention, not a hang."""

    bind = session.get_bind()
    if bind.dialect.name != "postgresql":
        return
    timeout_ms = int(settings.ledger_lock_timeout_ms)
    await session.execute(text(f"SET LOCAL lock_timeout = {timeout_ms}"))


async def run_with_retry(
    session: AsyncSession,
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int | None = None,
    backoff_base: float | None = None,
    label: str = "ledger_write",
) -> T:
    """
    Run ``operation`` as one atomic unit and commit it.

    Lock, version, and sequence conflicts roll back and retry with exponential
    backoff. Every other exception rolls back and propagates unchanged, so a
    balance-changing call is never partially visible.
    """
    max_attempts = max(1, attempts or settings.ledger_retry_attempts)
    base = settings.ledger_retry_backoff_seconds if backoff_base is None else backoff_base
    store = get_loyalty_store()

    tracer = get_ledger_tracer()

    for attempt in range(1, max_attempts + 1):
        try:
            with tracer.start_as_current_span(f"loyalty.{label}") as span:
                span.set_attribute("loyalty.attempt", attempt)
                await apply_lock_timeout(session)
                result = await operation()
                await session.commit()
            return result
        except Exception as exc:
            await session.rollback()
            if not is_contention_error(exc):
                raise
            store.record_contention(label, exhausted=attempt >= max_attempts)
            if attempt >= max_attempts:
                logger.error(
                    "Ledger contention retries exhausted",
                    label=label,
                    attempts=attempt,
                    error=str(exc),
                )
                raise ContentionError(attempt) from exc
            logger.warning(
                "Retrying ledger write after contention",
                label=label,
                attempt=attempt,
                error=str(exc),
            )
            await asyncio.sleep(base * (2 ** (attempt - 1)))

    raise ContentionError(max_attempts)  # pragma: no cover - loop always returns or raises
