"""SQLAlchemy models package."""

from .loyalty import (  # noqa: F401
    KickbackEvent,
    LoyaltyPointTransaction,
    LoyaltyProgram,
    LoyaltyRedemption,
    LoyaltyRedemptionStatus,
    LoyaltyTransactionType,
    UserMerchantLoyalty,
)
