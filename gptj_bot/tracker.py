"""Idempotency tracking for messages already used as inference input."""
from __future__ import annotations

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Optional

from .models import RunStatus

logger = logging.getLogger(__name__)


@dataclass
class _Entry:
    status: RunStatus
    created_at: float


class IdempotencyTracker:
    """Records which source ids were admitted and how their jobs ended.

    Retention is bounded: once ``capacity`` is exceeded the oldest finished
    entries are dropped, and with ``max_age_seconds`` set entries older than
    the window are forgotten. Running entries are never evicted.
    """

    def __init__(
        self,
        capacity: int = 10000,
        max_age_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self._capacity = capacity
        self._max_age = max_age_seconds
        self._clock = clock
        self._entries: "OrderedDict[str, _Entry]" = OrderedDict()

    def try_begin(self, source_id: str) -> bool:
        """Admit ``source_id`` once; later attempts are rejected untouched."""

        self._expire()
        if source_id in self._entries:
            return False
        self._entries[source_id] = _Entry(RunStatus.RUNNING, self._clock())
        self._evict_overflow()
        return True

    def mark_success(self, source_id: str) -> None:
        self._transition(source_id, RunStatus.SUCCESS)

    def mark_error(self, source_id: str) -> None:
        self._transition(source_id, RunStatus.ERROR)

    def status(self, source_id: str) -> Optional[RunStatus]:
        self._expire()
        entry = self._entries.get(source_id)
        return entry.status if entry else None

    def __contains__(self, source_id: object) -> bool:
        self._expire()
        return source_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def _transition(self, source_id: str, status: RunStatus) -> None:
        entry = self._entries.get(source_id)
        if entry is None:
            logger.debug("Ignoring %s for untracked source %s", status.value, source_id)
            return
        entry.status = status

    def _expire(self) -> None:
        if self._max_age is None:
            return
        cutoff = self._clock() - self._max_age
        stale = [
            key
            for key, entry in self._entries.items()
            if entry.created_at < cutoff and entry.status is not RunStatus.RUNNING
        ]
        for key in stale:
            del self._entries[key]

    def _evict_overflow(self) -> None:
        overflow = len(self._entries) - self._capacity
        if overflow <= 0:
            return
        finished = [
            key for key, entry in self._entries.items() if entry.status is not RunStatus.RUNNING
        ]
        for key in finished[:overflow]:
            del self._entries[key]
        logger.debug("Tracker evicted %d entries", min(overflow, len(finished)))


__all__ = ["IdempotencyTracker"]
