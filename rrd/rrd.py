"""
Round-robin store coordinator.

Wires the record store adapter, the capacity tracker and the eviction
manager into the write path (check fullness -> evict oldest -> insert ->
count) and the range read.

Writers are not serialised: the fullness check, the eviction and the insert
are separate steps, so concurrent writers that all see "not full" can push
the store past max_records by one record each. The counter stops growing at
the cap, and later writes at capacity evict one record each.
"""

from typing import List, Optional

from .interfaces import RecordBackend
from .memory_backend import MemoryBackend
from .arrow_backend import ArrowBackend
from .record_store import RecordStore
from .capacity import CapacityTracker
from .eviction import EvictionManager
from .context import OperationContext
from .errors import Cancelled, RRDError
from .models import Record
from .logger import get_logger
from .config import get_config, RRDConfig


def create_backend(config: RRDConfig, storage_path: Optional[str] = None) -> RecordBackend:
    """Build the backend named by config.storage.backend."""
    if config.storage.backend == "memory":
        return MemoryBackend()
    if storage_path is not None:
        return ArrowBackend(
            storage_path=storage_path,
            fsync=config.wal.fsync,
            max_segment_size_mb=config.wal.max_segment_size_mb,
            snapshot_interval=config.wal.snapshot_interval,
            compression=config.wal.compression
        )
    return ArrowBackend(config=config)


class RoundRobinStore:
    """
    Fixed-capacity time-series point store.
    Once max_records records are held, each new timestamp evicts the oldest one.
    """

    def __init__(self, max_records: int = None, backend: RecordBackend = None, storage_path: str = None,
                 reconcile_on_startup: bool = None, config: RRDConfig = None):
        """
        Initialize the store with configuration support.

        Args:
            max_records: Override capacity (uses config if None)
            backend: Pre-built backing store (built from config if None)
            storage_path: Override storage path for the arrow backend
            reconcile_on_startup: Override startup reconciliation (uses config if None)
            config: Pre-loaded config object
        """
        self.config = config if config is not None else get_config()
        self.max_records = max_records if max_records is not None else self.config.capacity.max_records
        self.reconcile_on_startup = (reconcile_on_startup if reconcile_on_startup is not None
                                     else self.config.capacity.reconcile_on_startup)
        self.logger = get_logger("RoundRobinStore")

        self.backend = backend if backend is not None else create_backend(self.config, storage_path)
        self.record_store = RecordStore(self.backend)
        self.tracker = CapacityTracker(self.max_records, persist=self._persist_count)
        self.eviction = EvictionManager(self.record_store, self.tracker)
        self.opened = False

        self.logger.info(f"Initialized round-robin store: max_records={self.max_records:,}, "
                         f"backend={type(self.backend).__name__}")

    async def open(self, ctx: Optional[OperationContext] = None):
        """Set up the backend and load the record count."""
        if self.opened:
            return
        await self.record_store.setup()
        await self._load_counter(ctx)
        self.opened = True

    async def _load_counter(self, ctx: Optional[OperationContext]):
        try:
            persisted = await self.record_store.load_counter(ctx)
        except Cancelled:
            raise
        except RRDError as e:
            self.logger.warning(f"Could not load persisted record count, starting from 0: {e}")
            persisted = None

        count = persisted if persisted is not None else 0
        self.logger.info(f"Loaded record count: {count:,} (persisted={persisted is not None})")

        if self.reconcile_on_startup:
            actual = await self.record_store.cardinality(ctx)
            if actual != count:
                self.logger.warning(f"Drift: persisted count {count:,} != stored records {actual:,}, "
                                    f"using stored records")
            count = actual

        if count > self.max_records:
            self.logger.warning(f"Record count {count:,} exceeds capacity {self.max_records:,}, "
                                f"clamping; oldest records are evicted one per write")
        self.tracker.reset(count)

    async def _persist_count(self, value: int):
        # Detached from the writer's context
        await self.record_store.save_counter(None, value)

    async def set(self, record: Record, ctx: Optional[OperationContext] = None) -> bool:
        """
        Write a record, evicting the oldest one first when the store is full.
        Returns True if the timestamp was new, False if it replaced a stored record.
        """
        ctx = ctx or OperationContext.background()
        ctx.check("set", str(record.timestamp))

        insert_ctx = ctx
        if self.tracker.is_full():
            # An overwrite does not grow the store, so nothing needs evicting
            if await self.record_store.contains(ctx, record.timestamp):
                self.logger.debug(f"Overwrite of {record.timestamp} at capacity, no eviction")
            elif await self.eviction.evict_oldest(ctx) is not None:
                # A record is gone: the write is committed and must not stop half way
                insert_ctx = OperationContext.background()

        created = await self.record_store.insert(insert_ctx, record)
        if created:
            self.tracker.record_admitted()
        return created

    async def get_by_range(self, low: int, high: int, ctx: Optional[OperationContext] = None) -> List[Record]:
        """Records with low <= timestamp <= high, unordered."""
        return await self.record_store.range_query(ctx, low, high)

    @property
    def count(self) -> int:
        return self.tracker.count

    async def get_stats(self) -> dict:
        """Get statistics for the tracker, eviction and backend."""
        return {
            "capacity": self.tracker.get_stats(),
            "evictions": self.eviction.evictions,
            "drift_events": self.eviction.drift_events,
            "backend": await self.record_store.get_stats(),
        }

    async def cleanup(self):
        """Flush pending counter writes and close the backend."""
        await self.tracker.drain()
        await self.record_store.close()
        self.opened = False
        self.logger.info("Cleanup complete")

    async def __aenter__(self):
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.cleanup()
