"""
Oldest-record eviction.
Runs when the capacity tracker reports full: find the global minimum
timestamp with the backend's reduction and delete that record. Any failure
propagates so the pending write is never inserted.
"""

from typing import Optional

from .capacity import CapacityTracker
from .context import OperationContext
from .errors import RRDError
from .record_store import RecordStore
from .logger import get_logger


class EvictionManager:
    """Removes exactly one oldest record per call."""

    def __init__(self, record_store: RecordStore, tracker: CapacityTracker):
        self.record_store = record_store
        self.tracker = tracker
        self.evictions = 0
        self.drift_events = 0
        self.logger = get_logger("EvictionManager")

    async def evict_oldest(self, ctx: Optional[OperationContext] = None) -> Optional[int]:
        """
        Evict the record with the smallest timestamp.
        Returns the evicted timestamp, or None when the set turned out to be empty.
        """
        try:
            oldest = await self.record_store.minimum_key(ctx)
            if oldest is None:
                # Tracker says full but the store is empty: the counter drifted
                self.drift_events += 1
                self.logger.warning(f"Drift: tracker count={self.tracker.count} at capacity "
                                    f"{self.tracker.max_records} but no record to evict")
                return None

            await self.record_store.delete_by_key(ctx, oldest)
        except RRDError as e:
            self.logger.error(f"Eviction failed, write aborted: {e}")
            raise

        self.tracker.record_evicted()
        self.evictions += 1
        self.logger.debug(f"Evicted record {oldest}")
        return oldest
