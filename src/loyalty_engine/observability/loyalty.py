from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Dict


@dataclass
class LoyaltySnapshot:
    transactions: Dict[str, int]
    points: Dict[str, int]
    skips: Dict[str, int]
    rejections: Dict[str, int]
    contention: Dict[str, int]
    workflows: Dict[str, int]

    def as_dict(self) -> Dict[str, object]:
        return {
            "transactions": dict(self.transactions),
            "points": dict(self.points),
            "skips": dict(self.skips),
            "rejections": dict(self.rejections),
            "contention": dict(self.contention),
            "workflows": dict(self.workflows),
        }


class LoyaltyObservabilityStore:
    """Collect ledger telemetry for dashboards and alerting."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._transactions: Dict[str, int] = defaultdict(int)
        self._points: Dict[str, int] = defaultdict(int)
        self._skips: Dict[str, int] = defaultdict(int)
        self._rejections: Dict[str, int] = defaultdict(int)
        self._contention: Dict[str, int] = defaultdict(int)
        self._workflows: Dict[str, int] = defaultdict(int)

    def record_transaction(self, transaction_type: str, points: int) -> None:
        with self._lock:
            self._transactions[transaction_type] += 1
            self._points[transaction_type] += points

    def record_skip(self, reason: str) -> None:
        with self._lock:
            self._skips[reason] += 1

    def record_rejection(self, code: str) -> None:
        with self._lock:
            self._rejections[code] += 1

    def record_contention(self, label: str, *, exhausted: bool = False) -> None:
        with self._lock:
            self._contention["retries"] += 1
            self._contention[f"label:{label}"] += 1
            if exhausted:
                self._contention["exhausted"] += 1

    def record_workflow(self, event: str) -> None:
        with self._lock:
            self._workflows[event] += 1

    def snapshot(self) -> LoyaltySnapshot:
        with self._lock:
            return LoyaltySnapshot(
                transactions=dict(self._transactions),
                points=dict(self._points),
                skips=dict(self._skips),
                rejections=dict(self._rejections),
                contention=dict(self._contention),
                workflows=dict(self._workflows),
            )

    def reset(self) -> None:
        with self._lock:
            self._transactions.clear()
            self._points.clear()
            self._skips.clear()
            self._rejections.clear()
            self._contention.clear()
            self._workflows.clear()


_STORE = LoyaltyObservabilityStore()


def get_loyalty_store() -> LoyaltyObservabilityStore:
    return _STORE


__all__ = ["get_loyalty_store", "LoyaltyObservabilityStore", "LoyaltySnapshot"]
