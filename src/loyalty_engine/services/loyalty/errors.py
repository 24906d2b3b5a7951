"""Typed failures surfaced by the loyalty engine."""

from __future__ import annotations

from uuid import UUID


class LoyaltyError(RuntimeError):
    """Base exception for loyalty ledger failures."""

    code = "loyalty_error"
    retryable = False


class NotFoundError(LoyaltyError):
    code = "not_found"


class ProgramNotFoundError(NotFoundError):
    def __init__(self, merchant_id: UUID) -> None:
        super().__init__(f"Loyalty program not found for merchant {merchant_id}")
        self.merchant_id = merchant_id


class RedemptionNotFoundError(NotFoundError):
    def __init__(self, redemption_id: UUID) -> None:
        super().__init__(f"Redemption {redemption_id} not found")
        self.redemption_id = redemption_id


class KickbackNotFoundError(NotFoundError):
    def __init__(self, kickback_event_id: UUID) -> None:
        super().__init__(f"Kickback event {kickback_event_id} not found")
        self.kickback_event_id = kickback_event_id


class AlreadyExistsError(LoyaltyError):
    code = "already_exists"


class ProgramAlreadyExistsError(AlreadyExistsError):
    def __init__(self, merchant_id: UUID) -> None:
        super().__init__(f"Loyalty program already exists for merchant {merchant_id}")
        self.merchant_id = merchant_id


class DuplicateAwardError(AlreadyExistsError):
    """Raised when an order or kickback event has already produced points."""


class InsufficientBalanceError(LoyaltyError):
    code = "insufficient_balance"

    def __init__(self, balance: int, requested: int) -> None:
        super().__init__(
            f"Insufficient points. Balance is {balance}, operation requires {requested}"
        )
        self.balance = balance
        self.requested = requested


class BelowMinimumError(LoyaltyError):
    code = "below_minimum"

    def __init__(self, minimum: int, requested: int) -> None:
        super().__init__(f"Minimum {minimum} points required for redemption, got {requested}")
        self.minimum = minimum
        self.requested = requested


class AlreadyCancelledError(LoyaltyError):
    code = "already_cancelled"

    def __init__(self, redemption_id: UUID) -> None:
        super().__init__(f"Redemption {redemption_id} already cancelled")
        self.redemption_id = redemption_id


class UnauthorizedAdjustmentError(LoyaltyError):
    code = "unauthorized"

    def __init__(self, user_id: UUID, merchant_id: UUID) -> None:
        super().__init__(
            f"User {user_id} has no loyalty history with merchant {merchant_id}; "
            "points can only be adjusted for existing customers"
        )
        self.user_id = user_id
        self.merchant_id = merchant_id


class ProgramInactiveError(LoyaltyError):
    code = "program_inactive"

    def __init__(self, merchant_id: UUID) -> None:
        super().__init__(f"Loyalty program for merchant {merchant_id} is not active")
        self.merchant_id = merchant_id


class ContentionError(LoyaltyError):
    """Lock or version conflicts persisted past the configured retry attempts."""

    code = "contention"
    retryable = True

    def __init__(self, attempts: int) -> None:
        super().__init__(f"Ledger write contention persisted after {attempts} attempts")
        self.attempts = attempts


class LoyaltyValidationError(LoyaltyError):
    code = "validation_error"


__all__ = [
    "AlreadyCancelledError",
    "AlreadyExistsError",
    "BelowMinimumError",
    "ContentionError",
    "DuplicateAwardError",
    "InsufficientBalanceError",
    "KickbackNotFoundError",
    "LoyaltyError",
    "LoyaltyValidationError",
    "NotFoundError",
    "ProgramAlreadyExistsError",
    "ProgramInactiveError",
    "ProgramNotFoundError",
    "RedemptionNotFoundError",
    "UnauthorizedAdjustmentError",
]
