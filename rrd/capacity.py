"""
Capacity tracking for the round-robin store.

The tracker keeps the number of stored records in process for O(1) fullness
checks. The count only ever grows, capped at max_records: an eviction is
always followed by an admission that brings the size back to the cap, so
evictions are not counted separately. Every admission persists the new value
in a detached background task whose failure is logged and never reaches the
writer.
"""

import asyncio
import threading
from typing import Awaitable, Callable, Optional, Set

from .logger import get_logger


class CapacityTracker:
    """Advisory record count with an atomic increment-with-cap."""

    def __init__(self, max_records: int, persist: Optional[Callable[[int], Awaitable[None]]] = None,
                 initial: int = 0):
        if max_records <= 0:
            raise ValueError(f"max_records must be positive, got {max_records}")
        self.max_records = max_records
        self._persist = persist
        self._lock = threading.Lock()
        self._count = self._clamp(initial)
        self._pending: Set[asyncio.Task] = set()
        self.persist_failures = 0
        self.logger = get_logger("CapacityTracker")

    def _clamp(self, value: int) -> int:
        return max(0, min(value, self.max_records))

    @property
    def count(self) -> int:
        return self._count

    def snapshot(self) -> int:
        """Current count. Reading an int needs no lock."""
        return self._count

    def is_full(self) -> bool:
        return self._count >= self.max_records

    def reset(self, value: int):
        """Set the count at startup, clamped to [0, max_records]."""
        with self._lock:
            self._count = self._clamp(value)

    def record_admitted(self) -> bool:
        """
        Count one new record if the tracker is below capacity.
        Returns True if the count changed (and a persist was scheduled).
        """
        with self._lock:
            if self._count >= self.max_records:
                return False
            self._count += 1
            value = self._count

        self._schedule_persist(value)
        return True

    def record_evicted(self):
        """Evictions do not change the count; the following admission nets to zero."""
        self.logger.debug(f"Eviction at count={self._count}, count unchanged")

    def _schedule_persist(self, value: int):
        if self._persist is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.logger.warning(f"No running event loop, count {value} not persisted")
            return

        task = loop.create_task(self._persist_count(value))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _persist_count(self, value: int):
        # The latest count supersedes values queued behind it
        value = max(value, self._count)
        try:
            await self._persist(value)
        except Exception as e:
            # Advisory state: a stale persisted count is accepted, the write already succeeded
            self.persist_failures += 1
            self.logger.error(f"Failed to persist record count {value}: {e}")

    @property
    def pending_persists(self) -> int:
        return len(self._pending)

    async def drain(self):
        """Wait for every in-flight persist task."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def get_stats(self) -> dict:
        return {
            "count": self._count,
            "max_records": self.max_records,
            "capacity_used_pct": (self._count / self.max_records) * 100,
            "pending_persists": len(self._pending),
            "persist_failures": self.persist_failures,
        }
