"""
Write-ahead log for the durable backend.

Mutations are appended as Arrow record batches to IPC stream segments named
`<name>_wal_<id>.arrow`. Segment ids only grow. A segment is removed only
after a snapshot covering it has been moved into place: mark, confirm, then
dispose.
"""

import os
from pathlib import Path
from typing import Iterator, List, Optional, Set
import pyarrow as pa
import pyarrow.ipc as ipc

from .logger import get_logger


class WALSegment:
    """One Arrow IPC stream file."""

    def __init__(self, path: Path, fsync: bool = True):
        self.path = path
        self.fsync = fsync
        self._sink = None
        self._writer = None
        self.logger = get_logger("WALSegment")

    @property
    def writable(self) -> bool:
        return self._writer is not None

    def open_writer(self, schema: pa.Schema):
        self._sink = open(self.path, 'ab')
        self._writer = ipc.new_stream(self._sink, schema)

    def append(self, batch: pa.RecordBatch):
        """Append a batch and force it to disk."""
        if not self.writable:
            raise RuntimeError(f"WAL segment {self.path.name} is not open for writing")

        self._writer.write_batch(batch)
        self._sink.flush()
        if self.fsync:
            os.fsync(self._sink.fileno())

    def iter_batches(self) -> Iterator[pa.RecordBatch]:
        """
        Yield every complete batch in the file.
        A missing header or a truncated tail (crash mid-append) ends the
        iteration with a warning; batches before it are still yielded.
        """
        if not self.path.exists():
            return

        with open(self.path, 'rb') as source:
            try:
                reader = ipc.open_stream(source)
            except (pa.ArrowException, OSError) as e:
                self.logger.warning(f"WAL segment {self.path.name} has no readable header: {e}")
                return

            try:
                for batch in reader:
                    yield batch
            except (pa.ArrowException, OSError) as e:
                self.logger.warning(f"WAL segment {self.path.name} truncated, stopping replay: {e}")

    def size_bytes(self) -> int:
        return self.path.stat().st_size if self.path.exists() else 0

    def close(self):
        if self._writer is not None:
            self._writer.close()
            self._writer = None
        if self._sink is not None:
            self._sink.close()
            self._sink = None

    def remove(self):
        self.close()
        if self.path.exists():
            self.path.unlink()


class WALManager:
    """Segment rollover, replay and snapshot-driven disposal for one log."""

    def __init__(self, wal_dir: Path, name: str, fsync: bool = True, max_segment_size_mb: int = 16):
        self.wal_dir = Path(wal_dir)
        self.wal_dir.mkdir(parents=True, exist_ok=True)
        self.name = name
        self.fsync = fsync
        self.max_segment_bytes = max_segment_size_mb * 1024 * 1024
        self.logger = get_logger("WALManager")

        self.active: Optional[WALSegment] = None
        self.active_id: Optional[int] = None
        ids = self.segment_ids()
        self.next_id = ids[-1] + 1 if ids else 0

        self._pending: Set[int] = set()
        self._confirmed: Set[int] = set()

    def segment_path(self, segment_id: int) -> Path:
        return self.wal_dir / f"{self.name}_wal_{segment_id:06d}.arrow"

    def segment_ids(self) -> List[int]:
        """Ids of the segments on disk, oldest first."""
        ids = []
        for path in self.wal_dir.glob(f"{self.name}_wal_*.arrow"):
            suffix = path.stem.rsplit('_', 1)[-1]
            if suffix.isdigit():
                ids.append(int(suffix))
        return sorted(ids)

    def advance_past(self, segment_id: int):
        """Never hand out segment_id or anything below it again."""
        self.next_id = max(self.next_id, segment_id + 1)

    def _start_segment(self, schema: pa.Schema):
        if self.active is not None:
            self.active.close()

        self.active_id = self.next_id
        self.next_id += 1
        self.active = WALSegment(self.segment_path(self.active_id), fsync=self.fsync)
        self.active.open_writer(schema)
        self.logger.debug(f"Started WAL segment {self.active.path.name}")

    def append(self, batch: pa.RecordBatch):
        """Append to the active segment, starting a new one when it is missing or full."""
        if self.active is None or self.active.size_bytes() > self.max_segment_bytes:
            self._start_segment(batch.schema)
        self.active.append(batch)

    def roll(self) -> Optional[int]:
        """
        Close the active segment so the next append starts a new one.
        Returns the newest segment id on disk, None if there are no segments.
        """
        if self.active is not None:
            self.active.close()
            self.active = None
            self.active_id = None

        ids = self.segment_ids()
        return ids[-1] if ids else None

    def replay(self, after: Optional[int] = None) -> Iterator[pa.RecordBatch]:
        """Batches of every segment newer than `after`, in append order."""
        for segment_id in self.segment_ids():
            if after is not None and segment_id <= after:
                continue
            yield from WALSegment(self.segment_path(segment_id)).iter_batches()

    def ids_up_to(self, segment_id: int) -> List[int]:
        return [sid for sid in self.segment_ids() if sid <= segment_id]

    # Disposal: a segment is deleted only once it is both marked and confirmed

    def mark_for_disposal(self, segment_ids: List[int]):
        self._pending.update(segment_ids)

    def confirm_disposal(self, segment_ids: List[int]):
        self._confirmed.update(segment_ids)

    def dispose_confirmed(self) -> int:
        """Delete marked and confirmed segments. Returns how many were removed."""
        ready = sorted(self._pending & self._confirmed)
        for segment_id in ready:
            WALSegment(self.segment_path(segment_id)).remove()
        self._pending.difference_update(ready)
        self._confirmed.difference_update(ready)
        return len(ready)

    def close(self):
        if self.active is not None:
            self.active.close()
            self.active = None
            self.active_id = None

    def get_stats(self) -> dict:
        ids = self.segment_ids()
        size_bytes = sum(WALSegment(self.segment_path(sid)).size_bytes() for sid in ids)
        return {
            "segment_count": len(ids),
            "total_size_mb": size_bytes / (1024 * 1024),
            "active_segment": self.active_id,
            "pending_disposal": len(self._pending),
            "confirmed_safe": len(self._confirmed),
        }
