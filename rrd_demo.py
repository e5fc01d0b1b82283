#!/usr/bin/env python3
"""
RRD Demo
Writes a stream of metric samples into a fixed-capacity store and shows the
round-robin behaviour: once the store is full, every write evicts the oldest
sample.

Usage:
    python rrd_demo.py 5000                        # 5K writes into the default capacity
    python rrd_demo.py 100000 --capacity 10000     # custom capacity
    python rrd_demo.py 20000 --backend memory      # in-memory backend
    python rrd_demo.py 20000 --no-queries          # skip range query tests
"""

import asyncio
import argparse
import time
import shutil
from pathlib import Path
import psutil

from rrd.rrd import RoundRobinStore
from rrd.models import Record
from rrd.service import RRDService, now_micros
from rrd.logger import RRDLogger, get_logger
from rrd.config import RRDConfig


def get_memory_usage():
    """Get current system memory usage."""
    process = psutil.Process()
    memory_info = process.memory_info()
    return {
        'rss_mb': memory_info.rss / (1024 * 1024),
        'vms_mb': memory_info.vms / (1024 * 1024),
        'system_available_mb': psutil.virtual_memory().available / (1024 * 1024)
    }


def generate_record(idx: int, start_ts: int, step_us: int) -> Record:
    """Sample idx: one per step_us microseconds, alternating int and float values."""
    value = idx if idx % 2 == 0 else idx * 0.5
    return Record(timestamp=start_ts + idx * step_us, metric_value=value)


async def run_range_queries(service: RRDService, start_ts: int, step_us: int, total_records: int, capacity: int):
    """Time a few range queries over the surviving window."""
    print(f"\n🔍 RANGE QUERY TESTS")
    print("-" * 40)

    first_kept = max(0, total_records - capacity)
    kept_start = start_ts + first_kept * step_us
    newest = start_ts + (total_records - 1) * step_us
    middle = kept_start + (newest - kept_start) // 2

    test_queries = [
        (0, 0, "No bounds (everything up to now)"),
        (start_ts, kept_start - 1, "Evicted window (expect 0)"),
        (kept_start, middle, "Older half of the surviving window"),
        (middle, newest, "Newer half of the surviving window"),
    ]

    for low, high, description in test_queries:
        if low > high:
            continue
        print(f"\n  Testing: {description}")
        query_start = time.time()
        results = await service.get_by_range(low, high)
        query_time = (time.time() - query_start) * 1000
        throughput = len(results) / (query_time / 1000) if query_time > 0 else 0
        print(f"    Results: {len(results):,} records in {query_time:.1f}ms")
        print(f"    Throughput: {throughput:,.0f} records/sec")


async def demo_rrd(total_records: int, capacity: int = None, backend: str = "arrow",
                   run_queries: bool = True, storage_dir: str = None):
    """Main RRD demonstration function."""
    if storage_dir is None:
        storage_dir = f"./rrd_demo_{total_records//1000}k_storage"

    storage_path = Path(storage_dir)
    if storage_path.exists():
        print(f"🧹 Cleaning previous storage: {storage_path}")
        shutil.rmtree(storage_path)
    storage_path.mkdir(parents=True, exist_ok=True)

    overrides = {"storage": {"backend": backend, "base_path": str(storage_path)}}
    if capacity:
        overrides["capacity"] = {"max_records": capacity}
    config = RRDConfig(overrides=overrides)

    RRDLogger.setup(log_dir=str(config.get_logs_path()), log_level=config.logging.level, console_output=True)
    logger = get_logger("RRDDemo")

    capacity = config.capacity.max_records
    print("🚀 RRD DEMO")
    print("=" * 50)
    print(f"📊 Target: {total_records:,} writes into a store of {capacity:,} records")
    print(f"📁 Storage: {storage_path} ({backend} backend)")
    print(f"📝 Logs: {RRDLogger.get_log_file()}")
    print()

    logger.info(f"=== Starting RRD Demo: {total_records:,} records, capacity {capacity:,} ===")

    step_us = 1_000
    start_ts = now_micros() - total_records * step_us

    async with RoundRobinStore(config=config) as store:
        service = RRDService(store)

        print("📥 INGESTION PHASE")
        print("-" * 25)

        ingestion_start = time.time()
        last_report_time = ingestion_start
        for idx in range(total_records):
            await service.create(generate_record(idx, start_ts, step_us))

            current_time = time.time()
            if current_time - last_report_time >= 5.0 or idx == total_records - 1:
                elapsed = current_time - ingestion_start
                throughput = (idx + 1) / elapsed if elapsed > 0 else 0
                stats = await store.get_stats()
                memory = get_memory_usage()
                print(f"  {idx + 1:8,} writes "
                      f"| {throughput:7.0f} rec/s "
                      f"| count: {stats['capacity']['count']:7,} "
                      f"| evictions: {stats['evictions']:8,} "
                      f"| RAM: {memory['rss_mb']:5.0f}MB")
                last_report_time = current_time

        ingestion_time = time.time() - ingestion_start
        overall_throughput = total_records / ingestion_time if ingestion_time > 0 else 0
        print(f"\n✅ INGESTION COMPLETE")
        print(f"   Wrote: {total_records:,} records in {ingestion_time:.1f}s")
        print(f"   Throughput: {overall_throughput:,.0f} records/sec")
        logger.info(f"Ingestion complete: {total_records:,} records, {overall_throughput:,.0f} rec/s")

        final_stats = await store.get_stats()
        print(f"\n📈 FINAL STATE")
        print("-" * 35)
        print(f"  Count:      {final_stats['capacity']['count']:8,} / {capacity:,}")
        print(f"  Evictions:  {final_stats['evictions']:8,}")
        print(f"  Drift:      {final_stats['drift_events']:8,}")
        backend_stats = final_stats['backend']
        if backend_stats.get('wal'):
            print(f"  WAL:        {backend_stats['wal']['segment_count']} segments, "
                  f"{backend_stats['wal']['total_size_mb']:.2f}MB")
            print(f"  Snapshots:  {backend_stats['snapshots_written']}")

        memory = get_memory_usage()
        print(f"\n💾 MEMORY USAGE")
        print("-" * 20)
        print(f"  Process RAM: {memory['rss_mb']:.1f}MB")
        print(f"  System available: {memory['system_available_mb']:.1f}MB")

        if run_queries:
            await run_range_queries(service, start_ts, step_us, total_records, capacity)

    logger.info("=== RRD Demo Completed Successfully ===")
    print(f"\n🎉 DEMO COMPLETED SUCCESSFULLY!")
    print(f"   📁 Storage location: {storage_path}")


def main():
    """Parse arguments and run the demo."""
    parser = argparse.ArgumentParser(
        description="RRD Demo - round-robin metric store",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python rrd_demo.py 5000                       # Quick test
  python rrd_demo.py 100000 --capacity 10000    # Larger window
  python rrd_demo.py 20000 --backend memory     # No persistence
        """
    )

    parser.add_argument("records", type=int, help="Total number of records to write")
    parser.add_argument("--capacity", type=int, help="Store capacity (config default if not specified)")
    parser.add_argument("--backend", choices=["arrow", "memory"], default="arrow", help="Backing store")
    parser.add_argument("--no-queries", action="store_true", help="Skip range query tests")
    parser.add_argument("--storage", type=str, help="Custom storage directory")

    args = parser.parse_args()

    if args.records <= 0:
        print("Error: Number of records must be positive")
        return

    if args.capacity is not None and args.capacity <= 0:
        print("Error: Capacity must be positive")
        return

    try:
        asyncio.run(demo_rrd(
            total_records=args.records,
            capacity=args.capacity,
            backend=args.backend,
            run_queries=not args.no_queries,
            storage_dir=args.storage
        ))
    except KeyboardInterrupt:
        print("\n⚠️  Demo interrupted by user")
    except Exception as e:
        print(f"\n❌ Demo failed: {e}")
        import traceback
        traceback.print_exc()


if __name__ == "__main__":
    main()
