"""
Backing store interface for the round-robin store.
Any engine that offers point writes, point reads, point deletes, indexed
range scans and named server-side reductions can back the record store.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, Iterable, Optional

Bins = Dict[str, Any]

# A named fold over every record of a set, returning one result or None
Reduction = Callable[[Iterable[Bins]], Optional[Bins]]


@dataclass(frozen=True)
class RangeFilter:
    """Inclusive [low, high] filter on a numeric, indexed bin."""
    bin_name: str
    low: int
    high: int

    def matches(self, bins: Bins) -> bool:
        value = bins.get(self.bin_name)
        if isinstance(value, bool) or not isinstance(value, int):
            return False
        return self.low <= value <= self.high


class RecordBackend(ABC):
    """Base interface for all backing stores."""

    @abstractmethod
    async def connect(self):
        """Set up the store. Raises BackendUnavailable on failure."""
        pass

    @abstractmethod
    async def put(self, set_name: str, key: int, bins: Bins) -> bool:
        """
        Upsert a record with no expiration.
        Returns True if the key was created, False if an existing record was replaced.
        """
        pass

    @abstractmethod
    async def get(self, set_name: str, key: int) -> Optional[Bins]:
        """Read a record, None if absent."""
        pass

    @abstractmethod
    async def delete(self, set_name: str, key: int) -> bool:
        """Delete a record. Deleting an absent key is not an error; returns whether it existed."""
        pass

    @abstractmethod
    def scan(self, set_name: str, range_filter: Optional[RangeFilter] = None) -> AsyncIterator[Bins]:
        """
        Stream records of a set, optionally filtered by an indexed bin range.
        Order is unspecified.
        """
        pass

    @abstractmethod
    async def create_index(self, set_name: str, bin_name: str):
        """Create a numeric secondary index. Idempotent."""
        pass

    @abstractmethod
    def register_reduction(self, name: str, reduction: Reduction):
        """Register a named fold usable by run_reduction."""
        pass

    @abstractmethod
    async def run_reduction(self, set_name: str, name: str) -> Optional[Bins]:
        """Run a registered fold over every record of a set."""
        pass

    @abstractmethod
    async def count(self, set_name: str) -> int:
        """True number of records in a set."""
        pass

    @abstractmethod
    async def get_stats(self) -> dict:
        """Get backend statistics (record counts, storage usage, etc.)."""
        pass

    @abstractmethod
    async def close(self):
        """Release resources."""
        pass
