from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Dict


@dataclass
class SyncSnapshot:
    outcomes: Dict[str, int]
    operations: Dict[str, Dict[str, int]]
    notifications: Dict[str, int]

    def as_dict(self) -> Dict[str, object]:
        return {
            "outcomes": dict(self.outcomes),
            "operations": {key: dict(value) for key, value in self.operations.items()},
            "notifications": dict(self.notifications),
        }


class SyncObservabilityStore:
    """Count CRM propagation and push delivery outcomes for the health endpoint."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._outcomes: Dict[str, int] = defaultdict(int)
        self._operations: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._notifications: Dict[str, int] = defaultdict(int)

    def record_sync(self, operation: str, outcome: str) -> None:
        """``outcome`` is one of direct, enqueued, succeeded, retry, terminal, enqueue_failed."""

        with self._lock:
            self._outcomes[outcome] += 1
            self._operations[operation][outcome] += 1

    def record_notification(self, outcome: str) -> None:
        with self._lock:
            self._notifications[outcome] += 1

    def snapshot(self) -> SyncSnapshot:
        with self._lock:
            outcomes = dict(self._outcomes)
            operations = {key: dict(value) for key, value in self._operations.items()}
            notifications = dict(self._notifications)
        return SyncSnapshot(outcomes=outcomes, operations=operations, notifications=notifications)

    def reset(self) -> None:
        with self._lock:
            self._outcomes.clear()
            self._operations.clear()
            self._notifications.clear()


_STORE = SyncObservabilityStore()


def get_sync_store() -> SyncObservabilityStore:
    return _STORE


__all__ = ["SyncObservabilityStore", "SyncSnapshot", "get_sync_store"]
