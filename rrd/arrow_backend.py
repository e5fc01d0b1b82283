"""
Durable backing store.

The in-memory sets of MemoryBackend made persistent with:
- an Arrow IPC write-ahead log (one row per mutation, fsync'd before it is applied)
- periodic Parquet snapshots written to staging and atomically moved into place

Recovery loads the latest snapshot and replays the WAL segments it does not cover.
"""

import asyncio
import json
import shutil
import time
from pathlib import Path
from typing import Dict, List, Optional, Any
import pyarrow as pa
import pyarrow.parquet as pq

from .memory_backend import MemoryBackend, SortedIndex
from .wal_manager import WALManager
from .interfaces import Bins
from .errors import BackendError, BackendUnavailable

WAL_SCHEMA = pa.schema([
    ('op', pa.string()),
    ('set', pa.string()),
    ('key', pa.int64()),
    ('bins', pa.string()),
])

SNAPSHOT_SCHEMA = pa.schema([
    ('set', pa.string()),
    ('key', pa.int64()),
    ('bins', pa.string()),
])

SNAPSHOT_FILE = "latest.parquet"
COVERED_SEGMENT_KEY = b"rrd.covered_wal_segment"

OP_PUT = "put"
OP_DELETE = "delete"


class ArrowBackend(MemoryBackend):
    """WAL + snapshot persistence on top of the in-memory sets."""

    backend_name = "arrow"

    def __init__(self, storage_path: str = "./rrd_data", fsync: bool = True, max_segment_size_mb: int = 16,
                 snapshot_interval: int = 10_000, compression: str = "snappy", config=None):
        super().__init__()
        # Use config values if available, otherwise use parameters
        if config is not None:
            self.storage_path = config.get_storage_path()
            self.wal_path = config.get_wal_path()
            self.snapshot_path = config.get_snapshot_path()
            self.fsync = config.wal.fsync
            self.max_segment_size_mb = config.wal.max_segment_size_mb
            self.snapshot_interval = config.wal.snapshot_interval
            self.compression = config.wal.compression
        else:
            self.storage_path = Path(storage_path)
            self.wal_path = self.storage_path / "wal"
            self.snapshot_path = self.storage_path / "snapshots"
            self.fsync = fsync
            self.max_segment_size_mb = max_segment_size_mb
            self.snapshot_interval = snapshot_interval
            self.compression = compression

        self.staging_path = self.snapshot_path / "staging"
        self.wal_manager: Optional[WALManager] = None
        self.covered_segment: Optional[int] = None
        self.snapshots_written = 0
        self.snapshot_failures = 0
        self._mutations_since_snapshot = 0
        self._write_lock = asyncio.Lock()

    async def connect(self):
        if self.connected:
            return
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._open_storage)
        except (OSError, pa.ArrowInvalid, ValueError) as e:
            raise BackendUnavailable("connect", f"failed to open storage: {e}", str(self.storage_path)) from e
        self.connected = True

    def _open_storage(self):
        """Create directories, load the snapshot and replay the WAL (runs in executor)."""
        self.storage_path.mkdir(parents=True, exist_ok=True)
        self.snapshot_path.mkdir(parents=True, exist_ok=True)
        self.staging_path.mkdir(parents=True, exist_ok=True)

        self._sets.clear()
        self.covered_segment = self._load_snapshot()

        self.wal_manager = WALManager(self.wal_path, "rrd", fsync=self.fsync,
                                      max_segment_size_mb=self.max_segment_size_mb)
        if self.covered_segment is not None:
            self.wal_manager.advance_past(self.covered_segment)

        replayed = 0
        for batch in self.wal_manager.replay(after=self.covered_segment):
            for row in batch.to_pylist():
                self._replay(row)
                replayed += 1

        self._rebuild_indexes()
        self._mutations_since_snapshot = replayed

        total = sum(len(records) for records in self._sets.values())
        self.logger.info(f"Recovered {total:,} records from {self.storage_path} "
                         f"(snapshot covers WAL segment {self.covered_segment}, replayed {replayed:,} WAL entries)")

    def _load_snapshot(self) -> Optional[int]:
        snapshot_file = self.snapshot_path / SNAPSHOT_FILE
        if not snapshot_file.exists():
            self.logger.info("No snapshot to recover")
            return None

        table = pq.read_table(snapshot_file)
        for row in table.to_pylist():
            self._sets.setdefault(row['set'], {})[row['key']] = json.loads(row['bins'])

        metadata = table.schema.metadata or {}
        covered = metadata.get(COVERED_SEGMENT_KEY)
        self.logger.info(f"Loaded snapshot with {table.num_rows:,} records")
        return int(covered) if covered is not None else None

    def _replay(self, row: Dict[str, Any]):
        records = self._sets.setdefault(row['set'], {})
        if row['op'] == OP_PUT:
            records[row['key']] = json.loads(row['bins'])
        elif row['op'] == OP_DELETE:
            records.pop(row['key'], None)
        else:
            self.logger.warning(f"Skipping WAL entry with unknown op {row['op']!r}")

    def _rebuild_indexes(self):
        for set_name, indexes in self._indexes.items():
            records = self._sets.get(set_name, {})
            for bin_name in list(indexes):
                index = SortedIndex(bin_name)
                for key, bins in records.items():
                    index.add(bins, key)
                indexes[bin_name] = index

    async def _log(self, op: str, set_name: str, key: int, payload: Optional[str]):
        """Append one mutation to the WAL (runs in executor)."""
        batch = pa.RecordBatch.from_pydict(
            {'op': [op], 'set': [set_name], 'key': [key], 'bins': [payload]},
            schema=WAL_SCHEMA
        )
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self.wal_manager.append, batch)
        except (OSError, pa.ArrowException) as e:
            raise BackendError(op, f"WAL write failed: {e}", f"{set_name}:{key}") from e

    async def _locked_put(self, set_name: str, key: int, bins: Bins, payload: str) -> bool:
        async with self._write_lock:
            await self._log(OP_PUT, set_name, key, payload)
            created = self._apply_put(set_name, key, bins)
            await self._after_mutation()
            return created

    async def _locked_delete(self, set_name: str, key: int) -> bool:
        async with self._write_lock:
            if key not in self._sets.get(set_name, {}):
                return False
            await self._log(OP_DELETE, set_name, key, None)
            existed = self._apply_delete(set_name, key)
            await self._after_mutation()
            return existed

    async def put(self, set_name: str, key: int, bins: Bins) -> bool:
        self._ensure_connected("put", set_name)
        try:
            payload = json.dumps(bins)
        except (TypeError, ValueError) as e:
            raise BackendError("put", f"bins are not serialisable: {e}", f"{set_name}:{key}") from e
        # Shielded so the WAL and the in-memory view never disagree when the caller gives up
        return await asyncio.shield(self._locked_put(set_name, key, bins, payload))

    async def delete(self, set_name: str, key: int) -> bool:
        self._ensure_connected("delete", set_name)
        return await asyncio.shield(self._locked_delete(set_name, key))

    async def _after_mutation(self):
        self._mutations_since_snapshot += 1
        if self._mutations_since_snapshot < self.snapshot_interval:
            return
        try:
            await self._snapshot_locked()
        except BackendError as e:
            # The mutation is already in the WAL; the next mutation retries the snapshot
            self.snapshot_failures += 1
            self.logger.error(f"Periodic snapshot failed: {e}")

    async def snapshot(self):
        """Write a snapshot now and drop the WAL segments it covers."""
        self._ensure_connected("snapshot")
        async with self._write_lock:
            await self._snapshot_locked()

    async def _snapshot_locked(self):
        rows = [
            {'set': set_name, 'key': key, 'bins': json.dumps(bins)}
            for set_name, records in self._sets.items()
            for key, bins in records.items()
        ]
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._write_snapshot, rows)
        except (OSError, pa.ArrowException) as e:
            raise BackendError("snapshot", f"snapshot failed: {e}", str(self.snapshot_path)) from e
        self._mutations_since_snapshot = 0
        self.snapshots_written += 1

    def _write_snapshot(self, rows: List[Dict[str, Any]]):
        """
        Snapshot transaction (runs in executor):
        1. Roll the WAL and mark every closed segment for disposal
        2. Write the snapshot to staging and atomically move it into place
        3. Confirm and delete the covered segments
        """
        newest = self.wal_manager.roll()
        covered = newest if newest is not None else self.covered_segment
        segments = self.wal_manager.ids_up_to(covered) if covered is not None else []
        self.wal_manager.mark_for_disposal(segments)

        table = pa.Table.from_pylist(rows, schema=SNAPSHOT_SCHEMA)
        if covered is not None:
            table = table.replace_schema_metadata({COVERED_SEGMENT_KEY: str(covered).encode()})

        staging_file = self.staging_path / f"snapshot_{time.time_ns()}.parquet"
        final_file = self.snapshot_path / SNAPSHOT_FILE
        try:
            pq.write_table(table, staging_file, compression=self.compression)
            shutil.move(str(staging_file), str(final_file))
        except Exception:
            if staging_file.exists():
                staging_file.unlink()
            raise

        self.covered_segment = covered
        self.wal_manager.confirm_disposal(segments)
        removed = self.wal_manager.dispose_confirmed()
        self.logger.info(f"Snapshot of {len(rows):,} records written to {final_file}, "
                         f"removed {removed} WAL segments")

    async def get_stats(self) -> dict:
        stats = await super().get_stats()
        stats.update({
            "storage_path": str(self.storage_path),
            "snapshot_file": str(self.snapshot_path / SNAPSHOT_FILE),
            "snapshots_written": self.snapshots_written,
            "snapshot_failures": self.snapshot_failures,
            "mutations_since_snapshot": self._mutations_since_snapshot,
            "wal": self.wal_manager.get_stats() if self.wal_manager else None,
        })
        return stats

    async def close(self):
        """Snapshot pending mutations, close the WAL and disconnect."""
        if not self.connected:
            return
        async with self._write_lock:
            if self._mutations_since_snapshot:
                try:
                    await self._snapshot_locked()
                except BackendError as e:
                    # The WAL still holds every mutation, recovery replays it
                    self.logger.error(f"Snapshot on close failed: {e}")
            self.wal_manager.close()
        await super().close()
