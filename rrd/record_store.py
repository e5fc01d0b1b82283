"""
Record store adapter.

Translates the domain operations (insert, range read, delete by key, find
oldest, counter load/save) onto the primitives of a RecordBackend. Every
operation checks its context before touching the backend and wraps backend
failures with the operation name and the key or range involved.
"""

from typing import Awaitable, Callable, List, Optional, TypeVar

from .interfaces import RecordBackend, RangeFilter, Bins
from .context import OperationContext
from .errors import RRDError, BackendError
from .models import Record, is_metric_value, is_timestamp
from .reductions import FIND_OLDEST, find_oldest
from .logger import get_logger

T = TypeVar("T")

METRICS_SET = "metrics"
COUNTER_SET = "counter"
TIMESTAMP_BIN = "timestamp"
METRIC_VALUE_BIN = "metric_value"
COUNTER_BIN = "counter"
COUNTER_KEY = 0


def encode_record(record: Record) -> Bins:
    return {TIMESTAMP_BIN: record.timestamp, METRIC_VALUE_BIN: record.metric_value}


def decode_record(bins: Bins) -> Record:
    """Decode stored bins. Missing or wrongly-typed fields raise BackendError."""
    timestamp = bins.get(TIMESTAMP_BIN)
    if not is_timestamp(timestamp):
        raise BackendError("decode", f"bin {TIMESTAMP_BIN!r} is missing or not an int: {timestamp!r}")
    if METRIC_VALUE_BIN not in bins:
        raise BackendError("decode", f"bin {METRIC_VALUE_BIN!r} is missing", str(timestamp))
    metric_value = bins[METRIC_VALUE_BIN]
    if not is_metric_value(metric_value):
        raise BackendError("decode", f"bin {METRIC_VALUE_BIN!r} is not numeric: {metric_value!r}", str(timestamp))
    return Record(timestamp=timestamp, metric_value=metric_value)


class RecordStore:
    """Domain operations over a backing store."""

    def __init__(self, backend: RecordBackend):
        self.backend = backend
        self.logger = get_logger("RecordStore")

    async def setup(self):
        """Connect the backend, create the timestamp index and register the oldest-record reduction."""
        await self.backend.connect()
        await self.backend.create_index(METRICS_SET, TIMESTAMP_BIN)
        self.backend.register_reduction(FIND_OLDEST, find_oldest)
        self.logger.info(f"Record store ready on {type(self.backend).__name__}")

    async def _run(self, ctx: Optional[OperationContext], operation: str, target: str,
                   call: Callable[[], Awaitable[T]], mutation: bool = False) -> T:
        """
        Check the context, then await the backend call. Reads are bounded by
        the context deadline. A mutation that passed the check runs to
        completion, so its reported outcome always matches the store.
        """
        ctx = ctx or OperationContext.background()
        ctx.check(operation, target)
        try:
            if mutation:
                return await call()
            return await ctx.run(operation, call(), target)
        except RRDError:
            raise
        except Exception as e:
            raise BackendError(operation, str(e), target) from e

    async def insert(self, ctx: Optional[OperationContext], record: Record) -> bool:
        """
        Upsert a record keyed by its timestamp, no expiration.
        Returns True when the timestamp was new, False when it replaced a record.
        """
        return await self._run(
            ctx, "insert", str(record.timestamp),
            lambda: self.backend.put(METRICS_SET, record.timestamp, encode_record(record)),
            mutation=True
        )

    async def contains(self, ctx: Optional[OperationContext], timestamp: int) -> bool:
        bins = await self._run(
            ctx, "contains", str(timestamp),
            lambda: self.backend.get(METRICS_SET, timestamp)
        )
        return bins is not None

    async def range_query(self, ctx: Optional[OperationContext], low: int, high: int) -> List[Record]:
        """
        All records with low <= timestamp <= high, in no particular order.
        A record that fails to decode fails the whole call.
        """
        async def collect() -> List[Record]:
            results = []
            async for bins in self.backend.scan(METRICS_SET, RangeFilter(TIMESTAMP_BIN, low, high)):
                results.append(decode_record(bins))
            return results

        return await self._run(ctx, "range_query", f"{low}..{high}", collect)

    async def delete_by_key(self, ctx: Optional[OperationContext], timestamp: int):
        """Delete a record. Absent keys are not an error."""
        await self._run(
            ctx, "delete_by_key", str(timestamp),
            lambda: self.backend.delete(METRICS_SET, timestamp),
            mutation=True
        )

    async def minimum_key(self, ctx: Optional[OperationContext]) -> Optional[int]:
        """Timestamp of the oldest record over the whole set, None when the set is empty."""
        result = await self._run(
            ctx, "minimum_key", METRICS_SET,
            lambda: self.backend.run_reduction(METRICS_SET, FIND_OLDEST)
        )
        if result is None:
            return None
        timestamp = result.get(TIMESTAMP_BIN)
        if not is_timestamp(timestamp):
            raise BackendError("minimum_key", f"reduction returned no usable timestamp: {result!r}", METRICS_SET)
        return timestamp

    async def cardinality(self, ctx: Optional[OperationContext]) -> int:
        return await self._run(ctx, "cardinality", METRICS_SET, lambda: self.backend.count(METRICS_SET))

    async def load_counter(self, ctx: Optional[OperationContext]) -> Optional[int]:
        """Last persisted record count, None if it was never saved."""
        bins = await self._run(
            ctx, "load_counter", COUNTER_SET,
            lambda: self.backend.get(COUNTER_SET, COUNTER_KEY)
        )
        if bins is None:
            return None
        value = bins.get(COUNTER_BIN)
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise BackendError("load_counter", f"stored counter is not a non-negative int: {value!r}", COUNTER_SET)
        return value

    async def save_counter(self, ctx: Optional[OperationContext], value: int):
        await self._run(
            ctx, "save_counter", COUNTER_SET,
            lambda: self.backend.put(COUNTER_SET, COUNTER_KEY, {COUNTER_BIN: value}),
            mutation=True
        )

    async def get_stats(self) -> dict:
        return await self.backend.get_stats()

    async def close(self):
        await self.backend.close()
