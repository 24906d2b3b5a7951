"""Loyalty service exports."""

from .adjustments import ADJUSTABLE_TYPES, AdjustmentService  # noqa: F401
from .concurrency import lock_for_update, run_with_retry  # noqa: F401
from .earning import (  # noqa: F401
    EarningEngine,
    EarningSkipped,
    PointCalculation,
    SkipReason,
    calculate_kickback,
    calculate_points,
)
from .errors import *  # noqa: F401,F403
from .errors import __all__ as _error_names
from .expiration import ExpirationSweepResult, PointExpirationService  # noqa: F401
from .ledger import (  # noqa: F401
    BalanceSnapshot,
    LedgerReconciliation,
    LedgerStore,
    TransactionFilter,
    TransactionLinkage,
    TransactionPage,
    resolve_tier,
)
from .programs import ProgramConfig, ProgramRegistry  # noqa: F401
from .redemptions import CancellationResult, RedemptionQuote, RedemptionWorkflow  # noqa: F401

__all__ = [
    "ADJUSTABLE_TYPES",
    "AdjustmentService",
    "BalanceSnapshot",
    "CancellationResult",
    "EarningEngine",
    "EarningSkipped",
    "ExpirationSweepResult",
    "LedgerReconciliation",
    "LedgerStore",
    "PointCalculation",
    "PointExpirationService",
    "ProgramConfig",
    "ProgramRegistry",
    "RedemptionQuote",
    "RedemptionWorkflow",
    "SkipReason",
    "TransactionFilter",
    "TransactionLinkage",
    "TransactionPage",
    "calculate_kickback",
    "calculate_points",
    "lock_for_update",
    "resolve_tier",
    "run_with_retry",
    *_error_names,
]
