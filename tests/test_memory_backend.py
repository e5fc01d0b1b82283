import asyncio

import pytest

from rrd.errors import BackendError, BackendUnavailable
from rrd.interfaces import RangeFilter
from rrd.memory_backend import MemoryBackend, SortedIndex
from rrd.reductions import FIND_OLDEST, find_oldest


async def _connected_backend() -> MemoryBackend:
    backend = MemoryBackend()
    await backend.connect()
    await backend.create_index("metrics", "timestamp")
    backend.register_reduction(FIND_OLDEST, find_oldest)
    return backend


async def _scan(backend, set_name, range_filter=None):
    return [bins async for bins in backend.scan(set_name, range_filter)]


def test_put_reports_create_versus_replace():
    async def scenario():
        backend = await _connected_backend()
        assert await backend.put("metrics", 1, {"timestamp": 1, "metric_value": 1})
        assert not await backend.put("metrics", 1, {"timestamp": 1, "metric_value": 2})
        assert await backend.get("metrics", 1) == {"timestamp": 1, "metric_value": 2}
        assert await backend.count("metrics") == 1

    asyncio.run(scenario())


def test_delete_absent_key_is_not_an_error():
    async def scenario():
        backend = await _connected_backend()
        await backend.put("metrics", 1, {"timestamp": 1, "metric_value": 1})
        assert await backend.delete("metrics", 1)
        assert not await backend.delete("metrics", 1)
        assert not await backend.delete("never_written", 1)
        assert await backend.get("metrics", 1) is None

    asyncio.run(scenario())


def test_indexed_scan_is_inclusive_and_tracks_overwrites():
    async def scenario():
        backend = await _connected_backend()
        for ts in range(1, 11):
            await backend.put("metrics", ts, {"timestamp": ts, "metric_value": ts})
        await backend.put("metrics", 5, {"timestamp": 5, "metric_value": 50})
        await backend.delete("metrics", 4)

        rows = await _scan(backend, "metrics", RangeFilter("timestamp", 3, 6))
        assert sorted(row["timestamp"] for row in rows) == [3, 5, 6]
        assert {row["timestamp"]: row["metric_value"] for row in rows}[5] == 50
        assert await _scan(backend, "metrics", RangeFilter("timestamp", 7, 6)) == []
        assert len(await _scan(backend, "metrics")) == 9

    asyncio.run(scenario())


def test_scan_without_index_is_a_backend_error():
    async def scenario():
        backend = await _connected_backend()
        await _scan(backend, "metrics", RangeFilter("metric_value", 0, 1))

    with pytest.raises(BackendError, match="no index"):
        asyncio.run(scenario())


def test_index_created_after_writes_covers_existing_records():
    async def scenario():
        backend = MemoryBackend()
        await backend.connect()
        await backend.put("metrics", 2, {"timestamp": 2, "metric_value": 1})
        await backend.create_index("metrics", "timestamp")
        await backend.create_index("metrics", "timestamp")
        return await _scan(backend, "metrics", RangeFilter("timestamp", 0, 10))

    assert asyncio.run(scenario()) == [{"timestamp": 2, "metric_value": 1}]


def test_find_oldest_reduction():
    async def scenario():
        backend = await _connected_backend()
        assert await backend.run_reduction("metrics", FIND_OLDEST) is None
        for ts in (30, 10, 20):
            await backend.put("metrics", ts, {"timestamp": ts, "metric_value": 0})
        return await backend.run_reduction("metrics", FIND_OLDEST)

    assert asyncio.run(scenario())["timestamp"] == 10


def test_unknown_or_failing_reduction_is_a_backend_error():
    def explode(records):
        raise RuntimeError("boom")

    async def scenario(name):
        backend = await _connected_backend()
        backend.register_reduction("explode", explode)
        await backend.put("metrics", 1, {"timestamp": 1, "metric_value": 0})
        await backend.run_reduction("metrics", name)

    with pytest.raises(BackendError, match="not registered"):
        asyncio.run(scenario("missing"))
    with pytest.raises(BackendError, match="boom"):
        asyncio.run(scenario("explode"))


def test_operations_require_connection():
    async def scenario():
        backend = MemoryBackend()
        await backend.put("metrics", 1, {"timestamp": 1})

    with pytest.raises(BackendUnavailable):
        asyncio.run(scenario())


def test_data_survives_reconnect_on_same_instance():
    async def scenario():
        backend = await _connected_backend()
        await backend.put("metrics", 1, {"timestamp": 1, "metric_value": 1})
        await backend.close()
        await backend.connect()
        return await backend.count("metrics")

    assert asyncio.run(scenario()) == 1


def test_sorted_index_ignores_non_integer_values():
    index = SortedIndex("timestamp")
    index.add({"timestamp": "x"}, 1)
    index.add({"timestamp": True}, 2)
    index.add({"timestamp": 5}, 5)
    assert len(index) == 1
    assert index.first() == (5, 5)
    assert index.keys_in_range(0, 10) == [5]


def test_find_oldest_skips_records_without_integer_timestamp():
    records = [{"timestamp": "old"}, {"timestamp": 9}, {"timestamp": 3.0}, {"timestamp": 4}]
    assert find_oldest(records) == {"timestamp": 4}
    assert find_oldest([]) is None
