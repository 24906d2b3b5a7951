"""Merchant loyalty program, ledger, redemption, and kickback models."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from loyalty_engine.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LoyaltyTransactionType(str, Enum):
    """Balance-changing event kinds recorded on the ledger."""

    EARNED = "EARNED"
    BONUS = "BONUS"
    ADJUSTED = "ADJUSTED"
    REDEEMED = "REDEEMED"
    REFUNDED = "REFUNDED"
    EXPIRED = "EXPIRED"


class LoyaltyRedemptionStatus(str, Enum):
    """Redemptions start ACTIVE and may be cancelled exactly once."""

    ACTIVE = "ACTIVE"
    CANCELLED = "CANCELLED"


class LoyaltyProgram(Base):
    """Per-merchant earning and redemption configuration."""

    __tablename__ = "loyalty_programs"
    __table_args__ = (
        UniqueConstraint("merchant_id", name="uq_loyalty_programs_merchant_id"),
        CheckConstraint("points_per_dollar > 0", name="ck_loyalty_programs_points_per_dollar"),
        CheckConstraint("minimum_purchase >= 0", name="ck_loyalty_programs_minimum_purchase"),
        CheckConstraint("minimum_redemption > 0", name="ck_loyalty_programs_minimum_redemption"),
        CheckConstraint("redemption_value > 0", name="ck_loyalty_programs_redemption_value"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    merchant_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    points_per_dollar = Column(Numeric(10, 4), nullable=False)
    minimum_purchase = Column(Numeric(12, 2), nullable=False)
    minimum_redemption = Column(Integer, nullable=False)
    redemption_value = Column(Numeric(10, 4), nullable=False)
    point_expiration_days = Column(Integer, nullable=True)
    allow_combine_with_deals = Column(Boolean, nullable=False, default=True, server_default="true")
    earn_on_discounted = Column(Boolean, nullable=False, default=True, server_default="true")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    memberships = relationship("UserMerchantLoyalty", back_populates="program")


class UserMerchantLoyalty(Base):
    """Materialized balance snapshot folded from a (user, merchant) ledger chain."""

    __tablename__ = "user_merchant_loyalty"
    __table_args__ = (
        UniqueConstraint("user_id", "merchant_id", name="uq_user_merchant_loyalty_user_merchant"),
        CheckConstraint("current_balance >= 0", name="ck_user_merchant_loyalty_balance"),
        CheckConstraint("lifetime_earned >= 0", name="ck_user_merchant_loyalty_lifetime_earned"),
        CheckConstraint("lifetime_redeemed >= 0", name="ck_user_merchant_loyalty_lifetime_redeemed"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    merchant_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    loyalty_program_id = Column(
        UUID(as_uuid=True), ForeignKey("loyalty_programs.id"), nullable=False
    )
    current_balance = Column(Integer, nullable=False, default=0, server_default="0")
    lifetime_earned = Column(Integer, nullable=False, default=0, server_default="0")
    lifetime_redeemed = Column(Integer, nullable=False, default=0, server_default="0")
    last_earned_at = Column(DateTime(timezone=True), nullable=True)
    last_redeemed_at = Column(DateTime(timezone=True), nullable=True)
    tier = Column(String, nullable=True)
    transaction_count = Column(Integer, nullable=False, default=0, server_default="0")
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    program = relationship("LoyaltyProgram", back_populates="memberships")
    transactions = relationship("LoyaltyPointTransaction", back_populates="user_loyalty")

    __mapper_args__ = {"version_id_col": version}


class LoyaltyPointTransaction(Base):
    """Immutable ledger entry; ``balance_after`` always equals ``balance_before + points``."""

    __tablename__ = "loyalty_point_transactions"
    __table_args__ = (
        UniqueConstraint("user_loyalty_id", "sequence", name="uq_loyalty_point_transactions_sequence"),
        UniqueConstraint("kickback_event_id", name="uq_loyalty_point_transactions_kickback"),
        CheckConstraint(
            "balance_after = balance_before + points",
            name="ck_loyalty_point_transactions_fold",
        ),
        CheckConstraint("points <> 0", name="ck_loyalty_point_transactions_points"),
        Index("ix_loyalty_point_transactions_merchant_created", "merchant_id", "created_at"),
        Index("ix_loyalty_point_transactions_user_merchant", "user_id", "merchant_id"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), nullable=False)
    merchant_id = Column(UUID(as_uuid=True), nullable=False)
    loyalty_program_id = Column(
        UUID(as_uuid=True), ForeignKey("loyalty_programs.id"), nullable=False
    )
    user_loyalty_id = Column(
        UUID(as_uuid=True), ForeignKey("user_merchant_loyalty.id"), nullable=False
    )
    sequence = Column(Integer, nullable=False)
    type = Column(
        SqlEnum(LoyaltyTransactionType, name="loyalty_transaction_type"),
        nullable=False,
    )
    points = Column(Integer, nullable=False)
    balance_before = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    description = Column(Text, nullable=False)
    metadata_json = Column("metadata", JSON, nullable=False, default=dict)
    order_id = Column(String, nullable=True, index=True)
    redemption_id = Column(UUID(as_uuid=True), nullable=True, index=True)
    kickback_event_id = Column(
        UUID(as_uuid=True), ForeignKey("kickback_events.id"), nullable=True
    )
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    user_loyalty = relationship("UserMerchantLoyalty", back_populates="transactions")


class LoyaltyRedemption(Base):
    """Points claimed against a reward; refunded in full on cancellation."""

    __tablename__ = "loyalty_redemptions"
    __table_args__ = (
        CheckConstraint("points_redeemed > 0", name="ck_loyalty_redemptions_points"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    merchant_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    loyalty_program_id = Column(
        UUID(as_uuid=True), ForeignKey("loyalty_programs.id"), nullable=False
    )
    user_loyalty_id = Column(
        UUID(as_uuid=True), ForeignKey("user_merchant_loyalty.id"), nullable=False
    )
    points_redeemed = Column(Integer, nullable=False)
    discount_value = Column(Numeric(12, 2), nullable=False)
    redemption_transaction_id = Column(
        UUID(as_uuid=True), ForeignKey("loyalty_point_transactions.id"), nullable=False
    )
    order_id = Column(String, nullable=True)
    status = Column(
        SqlEnum(LoyaltyRedemptionStatus, name="loyalty_redemption_status"),
        nullable=False,
        default=LoyaltyRedemptionStatus.ACTIVE,
        server_default=LoyaltyRedemptionStatus.ACTIVE.value,
    )
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    redemption_transaction = relationship("LoyaltyPointTransaction")


class KickbackEvent(Base):
    """Currency-denominated referral reward earned from invitee spend."""

    __tablename__ = "kickback_events"
    __table_args__ = (
        CheckConstraint("amount_earned >= 0", name="ck_kickback_events_amount"),
        CheckConstraint("invitee_count >= 0", name="ck_kickback_events_invitees"),
        Index("ix_kickback_events_merchant_user", "merchant_id", "user_id"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    merchant_id = Column(UUID(as_uuid=True), nullable=False)
    user_id = Column(UUID(as_uuid=True), nullable=False)
    deal_id = Column(String, nullable=True)
    source_amount_spent = Column(Numeric(12, 2), nullable=False)
    kickback_rate = Column(Numeric(6, 4), nullable=False)
    amount_earned = Column(Numeric(12, 2), nullable=False)
    invitee_count = Column(Integer, nullable=False, default=0, server_default="0")
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
