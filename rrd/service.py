"""
Service layer between the transport and the store.

Applies the "no bounds" convention of the read API and turns store errors
into the two uniform failures callers see.
"""

import time
from typing import Callable, List, Optional

from .rrd import RoundRobinStore
from .context import OperationContext
from .errors import RRDError, RecordNotCreated, RangeQueryFailed
from .models import Record


def now_micros() -> int:
    return time.time_ns() // 1000


class RRDService:
    """Create and range-read records."""

    def __init__(self, store: RoundRobinStore, clock: Callable[[], int] = now_micros):
        self.store = store
        self.clock = clock

    async def create(self, record: Record, ctx: Optional[OperationContext] = None):
        try:
            await self.store.set(record, ctx)
        except RRDError as e:
            raise RecordNotCreated("create", f"record not created: {e}", str(record.timestamp)) from e

    async def get_by_range(self, start: int, end: int, ctx: Optional[OperationContext] = None) -> List[Record]:
        """
        Records with start <= timestamp <= end. start == end == 0 means no
        bounds were given and selects everything up to now.
        """
        if start == 0 and end == 0:
            end = self.clock()
        try:
            return await self.store.get_by_range(start, end, ctx)
        except RRDError as e:
            raise RangeQueryFailed("get_by_range", f"range query failed: {e}", f"{start}..{end}") from e
