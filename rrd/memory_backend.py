"""
In-process backing store.
Keeps named sets of keyed records in dictionaries, with sorted secondary
indexes for range scans and a registry of named reductions.
"""

import bisect
import math
from typing import Dict, List, Optional, Tuple, AsyncIterator

from .interfaces import RecordBackend, RangeFilter, Reduction, Bins
from .errors import BackendError, BackendUnavailable
from .logger import get_logger


class SortedIndex:
    """Numeric secondary index: (value, key) pairs kept sorted."""

    def __init__(self, bin_name: str):
        self.bin_name = bin_name
        self._entries: List[Tuple[int, int]] = []

    def _value(self, bins: Bins) -> Optional[int]:
        value = bins.get(self.bin_name)
        if isinstance(value, bool) or not isinstance(value, int):
            return None  # non-numeric bins are not indexed
        return value

    def add(self, bins: Bins, key: int):
        value = self._value(bins)
        if value is not None:
            bisect.insort(self._entries, (value, key))

    def remove(self, bins: Bins, key: int):
        value = self._value(bins)
        if value is None:
            return
        pos = bisect.bisect_left(self._entries, (value, key))
        if pos < len(self._entries) and self._entries[pos] == (value, key):
            del self._entries[pos]

    def keys_in_range(self, low: int, high: int) -> List[int]:
        if low > high:
            return []
        start = bisect.bisect_left(self._entries, (low, -math.inf))
        end = bisect.bisect_right(self._entries, (high, math.inf))
        return [key for _, key in self._entries[start:end]]

    def first(self) -> Optional[Tuple[int, int]]:
        return self._entries[0] if self._entries else None

    def __len__(self) -> int:
        return len(self._entries)


class MemoryBackend(RecordBackend):
    """Dictionary-backed store. Data survives close()/connect() on the same instance."""

    backend_name = "memory"

    def __init__(self):
        self._sets: Dict[str, Dict[int, Bins]] = {}
        self._indexes: Dict[str, Dict[str, SortedIndex]] = {}
        self._reductions: Dict[str, Reduction] = {}
        self.connected = False
        self.logger = get_logger(type(self).__name__)

    def _ensure_connected(self, operation: str, set_name: Optional[str] = None):
        if not self.connected:
            raise BackendUnavailable(operation, "backend is not connected", set_name)

    async def connect(self):
        self.connected = True
        self.logger.debug(f"{self.backend_name} backend connected")

    # Mutations are split into _apply_* helpers so durable subclasses can replay them

    def _apply_put(self, set_name: str, key: int, bins: Bins) -> bool:
        records = self._sets.setdefault(set_name, {})
        indexes = self._indexes.get(set_name, {})
        previous = records.get(key)
        if previous is not None:
            for index in indexes.values():
                index.remove(previous, key)

        stored = dict(bins)
        records[key] = stored
        for index in indexes.values():
            index.add(stored, key)
        return previous is None

    def _apply_delete(self, set_name: str, key: int) -> bool:
        records = self._sets.get(set_name)
        if not records or key not in records:
            return False
        previous = records.pop(key)
        for index in self._indexes.get(set_name, {}).values():
            index.remove(previous, key)
        return True

    async def put(self, set_name: str, key: int, bins: Bins) -> bool:
        self._ensure_connected("put", set_name)
        return self._apply_put(set_name, key, bins)

    async def get(self, set_name: str, key: int) -> Optional[Bins]:
        self._ensure_connected("get", set_name)
        bins = self._sets.get(set_name, {}).get(key)
        return dict(bins) if bins is not None else None

    async def delete(self, set_name: str, key: int) -> bool:
        self._ensure_connected("delete", set_name)
        return self._apply_delete(set_name, key)

    async def scan(self, set_name: str, range_filter: Optional[RangeFilter] = None) -> AsyncIterator[Bins]:
        self._ensure_connected("scan", set_name)
        records = self._sets.get(set_name, {})

        if range_filter is None:
            keys = list(records)
        else:
            index = self._indexes.get(set_name, {}).get(range_filter.bin_name)
            if index is None:
                raise BackendError("scan", f"no index on bin {range_filter.bin_name!r}", set_name)
            keys = index.keys_in_range(range_filter.low, range_filter.high)

        for key in keys:
            bins = records.get(key)
            if bins is None:
                continue  # deleted while scanning
            yield dict(bins)

    async def create_index(self, set_name: str, bin_name: str):
        self._ensure_connected("create_index", set_name)
        indexes = self._indexes.setdefault(set_name, {})
        if bin_name in indexes:
            return
        index = SortedIndex(bin_name)
        for key, bins in self._sets.get(set_name, {}).items():
            index.add(bins, key)
        indexes[bin_name] = index
        self.logger.debug(f"Created index on {set_name}.{bin_name} ({len(index)} entries)")

    def register_reduction(self, name: str, reduction: Reduction):
        self._reductions[name] = reduction

    async def run_reduction(self, set_name: str, name: str) -> Optional[Bins]:
        self._ensure_connected("run_reduction", set_name)
        reduction = self._reductions.get(name)
        if reduction is None:
            raise BackendError("run_reduction", f"reduction {name!r} is not registered", set_name)

        records = list(self._sets.get(set_name, {}).values())
        try:
            result = reduction(records)
        except Exception as e:
            raise BackendError("run_reduction", f"reduction {name!r} failed: {e}", set_name) from e
        return dict(result) if result is not None else None

    async def count(self, set_name: str) -> int:
        self._ensure_connected("count", set_name)
        return len(self._sets.get(set_name, {}))

    async def get_stats(self) -> dict:
        return {
            "backend": self.backend_name,
            "connected": self.connected,
            "sets": {name: len(records) for name, records in self._sets.items()},
            "indexes": {name: sorted(indexes) for name, indexes in self._indexes.items()},
            "reductions": sorted(self._reductions),
        }

    async def close(self):
        self.connected = False
        self.logger.debug(f"{self.backend_name} backend closed")
