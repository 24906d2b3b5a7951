"""Program registry: one loyalty configuration per merchant."""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Mapping
from uuid import UUID

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_engine.core.settings import settings
from loyalty_engine.models.loyalty import LoyaltyProgram

from .errors import (
    LoyaltyValidationError,
    ProgramAlreadyExistsError,
    ProgramNotFoundError,
)


class ProgramConfig(BaseModel):
    """Partial program configuration; omitted fields keep their current value."""

    model_config = ConfigDict(extra="forbid")

    points_per_dollar: Decimal | None = Field(None, gt=0)
    minimum_purchase: Decimal | None = Field(None, ge=0)
    minimum_redemption: int | None = Field(None, gt=0)
    redemption_value: Decimal | None = Field(None, gt=0)
    point_expiration_days: int | None = Field(None, gt=0)
    allow_combine_with_deals: bool | None = None
    earn_on_discounted: bool | None = None

    def explicit_values(self) -> dict[str, Any]:
        """Fields the caller set; only the expiration window may be cleared to null."""

        values = self.model_dump(exclude_unset=True)
        for field, value in values.items():
            if value is None and field != "point_expiration_days":
                raise LoyaltyValidationError(f"{field} cannot be null")
        return values


def _default_values() -> dict[str, Any]:
    return {
        "points_per_dollar": Decimal(str(settings.default_points_per_dollar)),
        "minimum_purchase": Decimal(str(settings.default_minimum_purchase)),
        "minimum_redemption": int(settings.default_minimum_redemption),
        "redemption_value": Decimal(str(settings.default_redemption_value)),
        "point_expiration_days": None,
        "allow_combine_with_deals": True,
        "earn_on_discounted": True,
    }


def parse_program_config(config: ProgramConfig | Mapping[str, Any] | None) -> ProgramConfig:
    if config is None:
        return ProgramConfig()
    if isinstance(config, ProgramConfig):
        return config
    if "merchant_id" in config or "merchantId" in config:
        raise LoyaltyValidationError("merchantId cannot be changed on a loyalty program")
    try:
        return ProgramConfig.model_validate(dict(config))
    except ValidationError as exc:
        raise LoyaltyValidationError(f"Invalid loyalty program configuration: {exc}") from exc


class ProgramRegistry:
    """Creates, reads, and reconfigures merchant loyalty programs."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def initialize(
        self,
        merchant_id: UUID,
        config: ProgramConfig | Mapping[str, Any] | None = None,
    ) -> LoyaltyProgram:
        """Create the merchant's program, filling defaults for omitted fields."""

        parsed = parse_program_config(config)
        existing = await self.find(merchant_id)
        if existing is not None:
            raise ProgramAlreadyExistsError(merchant_id)

        values = _default_values()
        values.update(parsed.explicit_values())
        program = LoyaltyProgram(merchant_id=merchant_id, is_active=True, **values)
        self._db.add(program)
        try:
            await self._db.commit()
        except IntegrityError as exc:
            await self._db.rollback()
            logger.warning("Detected race when creating loyalty program", merchant_id=str(merchant_id))
            raise ProgramAlreadyExistsError(merchant_id) from exc

        await self._db.refresh(program)
        logger.info(
            "Initialized loyalty program",
            merchant_id=str(merchant_id),
            program_id=str(program.id),
            points_per_dollar=str(program.points_per_dollar),
        )
        return program

    async def find(self, merchant_id: UUID) -> LoyaltyProgram | None:
        stmt = select(LoyaltyProgram).where(LoyaltyProgram.merchant_id == merchant_id)
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def get(self, merchant_id: UUID) -> LoyaltyProgram:
        program = await self.find(merchant_id)
        if program is None:
            raise ProgramNotFoundError(merchant_id)
        return program

    async def update(
        self,
        merchant_id: UUID,
        changes: ProgramConfig | Mapping[str, Any],
    ) -> LoyaltyProgram:
        """Apply only the provided fields."""

        parsed = parse_program_config(changes)
        program = await self.get(merchant_id)
        updates = parsed.explicit_values()
        for field, value in updates.items():
            setattr(program, field, value)

        await self._db.commit()
        await self._db.refresh(program)
        logger.info(
            "Updated loyalty program",
            merchant_id=str(merchant_id),
            fields=sorted(updates),
        )
        return program

    async def set_status(self, merchant_id: UUID, is_active: bool) -> LoyaltyProgram:
        """Toggle earning and redemption; balances are left untouched."""

        program = await self.get(merchant_id)
        program.is_active = is_active
        await self._db.commit()
        await self._db.refresh(program)
        logger.info(
            "Changed loyalty program status",
            merchant_id=str(merchant_id),
            is_active=is_active,
        )
        return program


__all__ = ["ProgramConfig", "ProgramRegistry", "parse_program_config"]
