"""Job that expires aged loyalty credits."""

# meta: job: loyalty-point-expiration

from __future__ import annotations

import datetime as dt
from typing import Any, Awaitable, Callable, Dict

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_engine.services.loyalty import PointExpirationService

SessionFactory = Callable[[], AsyncSession] | Callable[[], Awaitable[AsyncSession]]


async def run_point_expiration_sweep(
    *,
    session_factory: SessionFactory,
    now: dt.datetime | None = None,
) -> Dict[str, Any]:
    """Sweep every program with an expiration window and expire aged credits."""

    maybe_session = session_factory()
    session: AsyncSession
    if isinstance(maybe_session, AsyncSession):
        session = maybe_session
    else:
        session = await maybe_session

    async with session as managed_session:
        service = PointExpirationService(managed_session)
        result = await service.sweep(now=now or dt.datetime.now(dt.timezone.utc))

    summary = result.as_dict()
    logger.bind(summary=summary).info("Loyalty point expiration job completed")
    return summary


__all__ = ["run_point_expiration_sweep"]
