"""
Round-Robin Metric Store

A fixed-capacity time-series point store:
- Records are (timestamp, metric_value) pairs keyed by microsecond timestamp
- Capacity is a maximum record count; once full, each new write evicts the oldest record
- Reads return every record in an inclusive timestamp range

Backing stores: in-memory, or durable (Arrow WAL + Parquet snapshots).
"""

from .rrd import RoundRobinStore, create_backend
from .service import RRDService
from .models import Record, MetricValue
from .context import OperationContext
from .interfaces import RecordBackend, RangeFilter
from .memory_backend import MemoryBackend
from .arrow_backend import ArrowBackend
from .record_store import RecordStore
from .capacity import CapacityTracker
from .eviction import EvictionManager
from .errors import (
    RRDError,
    Cancelled,
    BackendUnavailable,
    BackendError,
    RecordNotCreated,
    RangeQueryFailed,
)

__all__ = [
    'RoundRobinStore',
    'create_backend',
    'RRDService',
    'Record',
    'MetricValue',
    'OperationContext',
    'RecordBackend',
    'RangeFilter',
    'MemoryBackend',
    'ArrowBackend',
    'RecordStore',
    'CapacityTracker',
    'EvictionManager',
    'RRDError',
    'Cancelled',
    'BackendUnavailable',
    'BackendError',
    'RecordNotCreated',
    'RangeQueryFailed',
]
