"""
Durable backlog of records that failed delivery.

Stored as a JSON array of flattened SyncRecords at a fixed path, read once at
startup and rewritten after every mutation. Writes go to a sibling temp file
which is fsynced and then atomically renamed over the real file, so a crash
leaves either the previous array or the new one on disk, never a torn write.

Mutations hold an asyncio.Lock across mutate + persist: an append can never
interleave with a clear, and load() runs before any mutation is accepted.
The write itself runs in the default executor.

If a write fails the in-memory queue stays authoritative for the rest of the
process lifetime; it just won't survive a crash.
"""
import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import List

from tracker.models.record import SyncRecord

logger = logging.getLogger(__name__)


class QueuePersistenceFailed(RuntimeError):
    """Raised when the queue file cannot be written."""


class OfflineQueue:
    """Append-and-drain store of undelivered SyncRecords."""

    def __init__(self, path: Path, endpoint: str):
        """
        Args:
            path: Location of the queue file. Parent dirs are created on write.
            endpoint: Endpoint assigned to records rebuilt from disk.
        """
        self._path = Path(path)
        self._endpoint = endpoint
        self._records: List[SyncRecord] = []
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def __len__(self) -> int:
        return len(self._records)

    def count(self) -> int:
        return len(self._records)

    def records(self) -> List[SyncRecord]:
        """Snapshot of the queued records, oldest first."""
        return list(self._records)

    # ─── Persistence ─────────────────────────────────────────────────────────

    def load(self) -> int:
        """
        Replace the in-memory queue with the persisted one.

        A missing file is an empty queue. A corrupt file is logged and treated
        as empty; it is overwritten by the next mutation.

        Returns:
            Number of records restored.
        """
        if not self._path.exists():
            self._records = []
            return 0

        try:
            raw = json.loads(self._path.read_text())
            records = [SyncRecord.from_wire(item, self._endpoint) for item in raw]
        except (OSError, ValueError, KeyError, TypeError) as exc:
            logger.error("Offline queue at %s is unreadable, starting empty: %s", self._path, exc)
            records = []

        self._records = records
        logger.info("Offline queue restored: %d items", len(records))
        return len(records)

    def persist(self) -> None:
        """
        Write the current queue to disk atomically.

        Raises:
            QueuePersistenceFailed: if the file cannot be written.
        """
        payload = json.dumps([r.to_wire() for r in self._records])
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self._path.name}.", dir=str(self._path.parent)
            )
            try:
                with os.fdopen(fd, "w") as f:
                    f.write(payload)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_name, self._path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            raise QueuePersistenceFailed(f"Could not write {self._path}: {exc}") from exc

    async def _run(self, fn, *args, **kwargs):
        """Run a blocking call in the default executor."""
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, lambda: fn(*args, **kwargs))

    async def _persist_logged(self) -> bool:
        try:
            await self._run(self.persist)
            return True
        except QueuePersistenceFailed as exc:
            logger.error("%s (in-memory queue kept, %d items)", exc, len(self._records))
            return False

    # ─── Mutations ───────────────────────────────────────────────────────────

    async def append(self, record: SyncRecord) -> int:
        """Append and persist. Returns the new queue length."""
        async with self._lock:
            self._records.append(record)
            await self._persist_logged()
            logger.info("Payload added to offline queue (%d queued)", len(self._records))
            return len(self._records)

    async def clear_all(self) -> int:
        """Drop every queued record and persist the empty queue. Returns how many were dropped."""
        async with self._lock:
            dropped = len(self._records)
            self._records = []
            await self._persist_logged()
            if dropped:
                logger.info("Offline queue cleared (%d dropped)", dropped)
            return dropped

    async def drop_first(self, n: int) -> int:
        """Drop the n oldest records and persist. Returns the remaining length."""
        async with self._lock:
            del self._records[:n]
            await self._persist_logged()
            return len(self._records)
