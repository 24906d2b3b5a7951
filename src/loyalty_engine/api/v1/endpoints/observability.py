"""Observability endpoints for ledger telemetry."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from loyalty_engine.api.dependencies.security import require_loyalty_api_key
from loyalty_engine.observability.loyalty import get_loyalty_store


router = APIRouter(prefix="/observability", tags=["Observability"])


@router.get(
    "/loyalty",
    dependencies=[Depends(require_loyalty_api_key)],
    summary="Loyalty ledger observability snapshot",
)
async def get_loyalty_snapshot() -> dict[str, object]:
    """Counters for appended transactions, skips, rejections, and contention."""
    store = get_loyalty_store()
    return store.snapshot().as_dict()
