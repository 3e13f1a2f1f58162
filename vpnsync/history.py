"""Bounded in-memory history of reconciliation runs."""
from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, List, Optional

from .models import SyncRun

DEFAULT_HISTORY_SIZE = 10


@dataclass(frozen=True)
class RunStatistics:
    total: int
    successful: int
    failed: int

    @property
    def success_rate(self) -> str:
        if self.total == 0:
            return "0%"
        return f"{self.successful / self.total * 100:.2f}%"

    def to_dict(self) -> Dict[str, object]:
        return {
            "totalSyncs": self.total,
            "successfulSyncs": self.successful,
            "failedSyncs": self.failed,
            "successRate": self.success_rate,
        }


class SyncHistory:
    """Stores finished runs most-recent-first, evicting the oldest beyond the cap."""

    def __init__(self, *, max_entries: int = DEFAULT_HISTORY_SIZE) -> None:
        if max_entries < 1:
            raise ValueError("History must retain at least one run")
        self._max_entries = max_entries
        self._runs: Deque[SyncRun] = deque(maxlen=max_entries)
        self._total = 0
        self._successful = 0
        self._failed = 0
        self._lock = threading.Lock()

    @property
    def max_entries(self) -> int:
        return self._max_entries

    def append(self, run: SyncRun) -> None:
        with self._lock:
            self._runs.appendleft(run)
            self._total += 1
            if run.succeeded:
                self._successful += 1
            else:
                self._failed += 1

    def recent(self, limit: Optional[int] = None) -> List[SyncRun]:
        with self._lock:
            runs = list(self._runs)
        if limit is not None:
            return runs[: max(limit, 0)]
        return runs

    def latest(self) -> Optional[SyncRun]:
        with self._lock:
            return self._runs[0] if self._runs else None

    def statistics(self) -> RunStatistics:
        with self._lock:
            return RunStatistics(total=self._total, successful=self._successful, failed=self._failed)

    def clear(self) -> None:
        with self._lock:
            self._runs.clear()
            self._total = 0
            self._successful = 0
            self._failed = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._runs)


__all__ = ["SyncHistory", "RunStatistics", "DEFAULT_HISTORY_SIZE"]
