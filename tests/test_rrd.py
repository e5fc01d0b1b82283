import asyncio
import time

import pytest

from rrd.arrow_backend import ArrowBackend
from rrd.context import OperationContext
from rrd.errors import BackendError, Cancelled
from rrd.memory_backend import MemoryBackend
from rrd.models import Record
from rrd.record_store import COUNTER_SET, COUNTER_KEY
from rrd.rrd import RoundRobinStore, create_backend
from rrd.config import RRDConfig


class ReductionFailsBackend(MemoryBackend):
    async def run_reduction(self, set_name, name):
        raise BackendError("run_reduction", "udf timed out", set_name)


class YieldingBackend(MemoryBackend):
    """Suspends on every mutation and reduction so concurrent writers interleave."""

    async def put(self, set_name, key, bins):
        await asyncio.sleep(0)
        return await super().put(set_name, key, bins)

    async def delete(self, set_name, key):
        await asyncio.sleep(0)
        return await super().delete(set_name, key)

    async def run_reduction(self, set_name, name):
        await asyncio.sleep(0)
        return await super().run_reduction(set_name, name)


class CancelOnDeleteBackend(MemoryBackend):
    cancel_on_delete = None

    async def delete(self, set_name, key):
        if self.cancel_on_delete is not None:
            self.cancel_on_delete.cancel()
        return await super().delete(set_name, key)


async def _timestamps(store, low=0, high=10 ** 6):
    return sorted(record.timestamp for record in await store.get_by_range(low, high))


def test_oldest_record_is_evicted_once_full(memory_config):
    async def scenario():
        async with RoundRobinStore(backend=MemoryBackend(), config=memory_config) as store:
            for ts in range(1, 6):
                assert await store.set(Record(ts, ts * 10))
                assert store.count == ts
            before = await _timestamps(store)

            await store.set(Record(6, 60))
            after = await _timestamps(store)
            stats = await store.get_stats()
            return before, after, store.count, stats

    before, after, count, stats = asyncio.run(scenario())
    assert before == [1, 2, 3, 4, 5]
    assert after == [2, 3, 4, 5, 6]
    assert count == 5
    assert stats["evictions"] == 1


def test_count_never_exceeds_capacity(memory_config):
    async def scenario():
        async with RoundRobinStore(backend=MemoryBackend(), config=memory_config) as store:
            for ts in range(1, 51):
                await store.set(Record(ts, 0))
                assert store.count <= store.max_records
                assert await store.record_store.cardinality(None) <= store.max_records
            return await _timestamps(store)

    assert asyncio.run(scenario()) == [46, 47, 48, 49, 50]


def test_overwrite_does_not_grow_count(memory_config):
    async def scenario():
        async with RoundRobinStore(backend=MemoryBackend(), config=memory_config) as store:
            await store.set(Record(1, 1))
            assert not await store.set(Record(1, 2))
            records = await store.get_by_range(1, 1)
            return store.count, records

    count, records = asyncio.run(scenario())
    assert count == 1
    assert records == [Record(1, 2)]


def test_overwrite_at_capacity_keeps_oldest(memory_config):
    async def scenario():
        async with RoundRobinStore(backend=MemoryBackend(), config=memory_config) as store:
            for ts in range(1, 6):
                await store.set(Record(ts, 0))
            await store.set(Record(3, 99))
            return await _timestamps(store), store.eviction.evictions

    timestamps, evictions = asyncio.run(scenario())
    assert timestamps == [1, 2, 3, 4, 5]
    assert evictions == 0


def test_boundary_timestamps_are_inclusive(memory_config):
    async def scenario():
        async with RoundRobinStore(backend=MemoryBackend(), config=memory_config) as store:
            for ts in (10, 20, 30):
                await store.set(Record(ts, ts))
            return await _timestamps(store, 10, 30), await _timestamps(store, 11, 29), await _timestamps(store, 31, 40)

    assert asyncio.run(scenario()) == ([10, 20, 30], [20], [])


def test_cancelled_context_writes_nothing(memory_config):
    async def scenario():
        async with RoundRobinStore(backend=MemoryBackend(), config=memory_config) as store:
            ctx = OperationContext.background()
            ctx.cancel()
            with pytest.raises(Cancelled):
                await store.set(Record(1, 1), ctx)
            with pytest.raises(Cancelled):
                await store.get_by_range(0, 10, ctx)
            return store.count, await store.record_store.cardinality(None)

    assert asyncio.run(scenario()) == (0, 0)


def test_eviction_failure_aborts_the_write(memory_config):
    async def scenario():
        async with RoundRobinStore(backend=ReductionFailsBackend(), config=memory_config) as store:
            for ts in range(1, 6):
                await store.set(Record(ts, 0))
            with pytest.raises(BackendError, match="udf timed out"):
                await store.set(Record(6, 0))
            return await _timestamps(store)

    assert asyncio.run(scenario()) == [1, 2, 3, 4, 5]


def test_drift_does_not_block_writes(memory_config):
    async def scenario():
        backend = MemoryBackend()
        await backend.connect()
        await backend.put(COUNTER_SET, COUNTER_KEY, {"counter": 5})
        async with RoundRobinStore(backend=backend, config=memory_config) as store:
            assert store.count == 5
            await store.set(Record(1, 1))
            return await _timestamps(store), store.eviction.drift_events

    assert asyncio.run(scenario()) == ([1], 1)


def test_counter_survives_restart(arrow_config):
    async def scenario():
        async with RoundRobinStore(config=arrow_config) as store:
            for ts in range(1, 4):
                await store.set(Record(ts, ts))

        async with RoundRobinStore(config=arrow_config) as store:
            return store.count, await _timestamps(store)

    assert asyncio.run(scenario()) == (3, [1, 2, 3])


def test_persisted_count_above_capacity_is_clamped(memory_config):
    async def scenario():
        backend = MemoryBackend()
        await backend.connect()
        await backend.put(COUNTER_SET, COUNTER_KEY, {"counter": 500})
        async with RoundRobinStore(backend=backend, config=memory_config) as store:
            return store.count

    assert asyncio.run(scenario()) == 5


def test_unreadable_counter_starts_from_zero(memory_config):
    async def scenario():
        backend = MemoryBackend()
        await backend.connect()
        await backend.put(COUNTER_SET, COUNTER_KEY, {"counter": "lots"})
        async with RoundRobinStore(backend=backend, config=memory_config) as store:
            return store.count

    assert asyncio.run(scenario()) == 0


def test_reconcile_on_startup_uses_stored_records(memory_config):
    async def scenario():
        backend = MemoryBackend()
        await backend.connect()
        for ts in (1, 2):
            await backend.put("metrics", ts, {"timestamp": ts, "metric_value": 0})
        await backend.put(COUNTER_SET, COUNTER_KEY, {"counter": 4})
        async with RoundRobinStore(backend=backend, config=memory_config, reconcile_on_startup=True) as store:
            return store.count

    assert asyncio.run(scenario()) == 2


def test_concurrent_writers_overshoot_by_at_most_one_record_each(memory_config):
    writers = 8

    async def scenario():
        async with RoundRobinStore(backend=YieldingBackend(), config=memory_config) as store:
            await asyncio.gather(*(store.set(Record(ts, 0)) for ts in range(1, writers + 1)))
            size_after_burst = await store.record_store.cardinality(None)

            for ts in range(100, 110):
                await store.set(Record(ts, 0))
            size_after_serial = await store.record_store.cardinality(None)
            return store.count, size_after_burst, size_after_serial, await _timestamps(store)

    count, burst, serial, timestamps = asyncio.run(scenario())
    assert count == 5
    assert 5 < burst <= 5 + writers
    # Serial writes at capacity evict one record each, so the store stops growing
    assert serial == burst
    assert timestamps == list(range(110 - burst, 110))


def test_explicit_zero_capacity_is_rejected(memory_config):
    with pytest.raises(ValueError):
        RoundRobinStore(max_records=0, backend=MemoryBackend(), config=memory_config)


def test_slow_write_past_deadline_is_still_counted(memory_config, tmp_path):
    async def scenario():
        backend = ArrowBackend(storage_path=str(tmp_path / "slow"), fsync=False)
        async with RoundRobinStore(backend=backend, config=memory_config) as store:
            fast_append = backend.wal_manager.append
            slow_calls = []

            def slow_append(batch):
                if not slow_calls:
                    slow_calls.append(batch)
                    time.sleep(0.2)
                fast_append(batch)

            backend.wal_manager.append = slow_append
            created = await store.set(Record(1, 1), OperationContext.with_timeout(0.05))
            count_after_slow = store.count

            for ts in range(2, 20):
                await store.set(Record(ts, 0))
            return created, count_after_slow, store.count, await store.record_store.cardinality(None)

    created, count_after_slow, count, size = asyncio.run(scenario())
    assert created is True
    assert count_after_slow == 1
    assert (count, size) == (5, 5)


def test_write_completes_once_eviction_has_deleted(memory_config):
    async def scenario():
        backend = CancelOnDeleteBackend()
        async with RoundRobinStore(backend=backend, config=memory_config) as store:
            for ts in range(1, 6):
                await store.set(Record(ts, 0))
            ctx = OperationContext.background()
            backend.cancel_on_delete = ctx
            created = await store.set(Record(6, 0), ctx)
            return created, ctx.cancelled, await _timestamps(store)

    created, cancelled, timestamps = asyncio.run(scenario())
    assert created
    assert cancelled
    assert timestamps == [2, 3, 4, 5, 6]


def test_failed_snapshots_do_not_break_capacity(memory_config, tmp_path, monkeypatch):
    def broken_snapshot(rows):
        raise OSError("disk full")

    async def scenario():
        backend = ArrowBackend(storage_path=str(tmp_path / "nosnap"), fsync=False, snapshot_interval=2)
        monkeypatch.setattr(backend, "_write_snapshot", broken_snapshot)
        async with RoundRobinStore(backend=backend, config=memory_config) as store:
            for ts in range(1, 8):
                assert await store.set(Record(ts, ts))
            return store.count, await _timestamps(store)

    assert asyncio.run(scenario()) == (5, [3, 4, 5, 6, 7])


def test_create_backend_follows_config(memory_config, arrow_config, tmp_path):
    assert isinstance(create_backend(memory_config), MemoryBackend)
    backend = create_backend(arrow_config)
    assert isinstance(backend, ArrowBackend)
    assert backend.storage_path == tmp_path / "store"

    explicit = create_backend(RRDConfig(), storage_path=str(tmp_path / "explicit"))
    assert explicit.storage_path == tmp_path / "explicit"
