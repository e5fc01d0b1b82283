"""
Built-in reductions registered on every backend by the record store.
"""

from typing import Iterable, Optional

from .interfaces import Bins

FIND_OLDEST = "find_oldest"

TIMESTAMP_BIN = "timestamp"


def find_oldest(records: Iterable[Bins]) -> Optional[Bins]:
    """Return the record with the smallest timestamp, or None for an empty set."""
    oldest = None
    oldest_ts = None
    for bins in records:
        ts = bins.get(TIMESTAMP_BIN)
        if isinstance(ts, bool) or not isinstance(ts, int):
            continue
        if oldest_ts is None or ts < oldest_ts:
            oldest, oldest_ts = bins, ts
    return dict(oldest) if oldest is not None else None
