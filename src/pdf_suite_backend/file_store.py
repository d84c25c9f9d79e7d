"""
Ephemeral tracked-file storage with automatic expiry.

This module owns the lifecycle of every file the service keeps on disk:
- Registration of uploads and generated outputs as FileRecords
- Lookup by opaque file id
- Explicit deletion and time-based expiry
- A background sweeper that removes expired files on a fixed interval

State is in memory only; nothing survives a restart. Records are spread over
a fixed number of shards, each guarded by its own lock, so unrelated uploads
and downloads never queue behind each other. No lock is ever held while
touching the disk.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple
from uuid import uuid4

from .errors import NotFoundError
from .utils import FileKind, ensure_directory

logger = logging.getLogger(__name__)

UPLOAD_AREA = "upload"
OUTPUT_AREA = "output"

_STORED_NAME_PATTERN = re.compile(r"^[0-9a-f]{32}\.(pdf|jpg|png)$")


@dataclass(frozen=True)
class FileRecord:
    """
    Tracked metadata for one physical file.

    Attributes:
        id: Opaque identifier (hex UUID, also the stem of the stored file)
        storage_path: Location of the backing file
        owner_session: Upload session that created the file, or "output"
        original_name: Name the client uploaded, or the generated download name
        size_bytes: Size of the backing file when it was registered
        created_at: Registration time (epoch seconds)
        expires_at: Expiry time (epoch seconds)
        kind: Detected file kind
    """

    id: str
    storage_path: Path
    owner_session: str
    original_name: str
    size_bytes: int
    created_at: float
    expires_at: float
    kind: FileKind

    def remaining_seconds(self, now: float) -> int:
        return max(0, int(self.expires_at - now))


class _Shard:
    __slots__ = ("lock", "records")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.records: Dict[str, FileRecord] = {}


class TrackedFileStore:
    """
    Process-wide registry of ephemeral files.

    Lifecycle:
        Create once at startup, call ``purge_orphans()`` and ``start()``;
        call ``close()`` on shutdown to stop the sweeper and remove every
        tracked file.

    Thread Safety:
        Every mutation happens under the lock of the record's shard. Delete and
        sweep both remove the record first and unlink the file afterwards, so a
        record is never visible once its file is gone and exactly one caller
        performs the unlink.

    Attributes:
        upload_root: Directory holding uploaded files
        output_root: Directory holding generated files
        ttl_seconds: Lifetime of every tracked file
    """

    def __init__(
        self,
        upload_root: Path,
        output_root: Path,
        ttl_seconds: float = 30 * 60,
        sweep_interval_seconds: float = 60.0,
        shard_count: int = 16,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize the store.

        Args:
            upload_root: Base directory for uploads
            output_root: Base directory for generated outputs
            ttl_seconds: Expiry window applied on put and retrack (default: 30 minutes)
            sweep_interval_seconds: Pause between background sweeps (default: 60 seconds)
            shard_count: Number of independently locked record shards
            clock: Time source, replaceable in tests
        """
        if shard_count < 1:
            raise ValueError("shard_count must be at least 1")
        self.upload_root = ensure_directory(Path(upload_root))
        self.output_root = ensure_directory(Path(output_root))
        self.ttl_seconds = ttl_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock
        self._shards = [_Shard() for _ in range(shard_count)]
        self._stop_event = threading.Event()
        self._sweeper: Optional[threading.Thread] = None

    def _shard(self, file_id: str) -> _Shard:
        return self._shards[hash(file_id) % len(self._shards)]

    def now(self) -> float:
        return self._clock()

    def allocate(self, kind: FileKind, area: str = OUTPUT_AREA) -> Tuple[str, Path]:
        """
        Reserve a fresh id and storage path for a file about to be written.

        Nothing is tracked until ``put`` is called with the returned path.

        Args:
            kind: Kind of the file, which decides the extension
            area: ``"upload"`` or ``"output"``

        Returns:
            Tuple of (file id, path inside the area's directory)
        """
        if area == UPLOAD_AREA:
            root = self.upload_root
        elif area == OUTPUT_AREA:
            root = self.output_root
        else:
            raise ValueError(f"Unknown storage area '{area}'")
        file_id = uuid4().hex
        return file_id, root / f"{file_id}{kind.extension}"

    def put(self, storage_path: Path, owner_session: str, original_name: str, kind: FileKind) -> FileRecord:
        """
        Register an existing file and start its expiry clock.

        Args:
            storage_path: Path of the file to track; its stem becomes the id
            owner_session: Upload session (or "output") owning the file
            original_name: Name to report to the client
            kind: Detected file kind

        Returns:
            The newly created FileRecord

        Raises:
            FileNotFoundError: If nothing exists at ``storage_path``
            ValueError: If the id is already tracked
        """
        storage_path = Path(storage_path)
        size_bytes = storage_path.stat().st_size
        created_at = self.now()
        record = FileRecord(
            id=storage_path.stem,
            storage_path=storage_path,
            owner_session=owner_session,
            original_name=original_name,
            size_bytes=size_bytes,
            created_at=created_at,
            expires_at=created_at + self.ttl_seconds,
            kind=kind,
        )
        shard = self._shard(record.id)
        with shard.lock:
            if record.id in shard.records:
                raise ValueError(f"File {record.id} is already tracked")
            shard.records[record.id] = record
        logger.debug(f"Tracking {kind.value} file {record.id} ({size_bytes} bytes)")
        return record

    def get(self, file_id: str) -> FileRecord:
        """
        Look up a live record.

        Records past their expiry are treated as gone even before the sweeper
        has removed them.

        Raises:
            NotFoundError: If the id is unknown or expired
        """
        shard = self._shard(file_id)
        with shard.lock:
            record = shard.records.get(file_id)
        if record is None or record.expires_at <= self.now():
            raise NotFoundError("File not found or expired.")
        return record

    def retrack(self, file_id: str) -> FileRecord:
        """
        Extend a live record's expiry to a full TTL from now.

        Raises:
            NotFoundError: If the id is unknown or already expired
        """
        shard = self._shard(file_id)
        now = self.now()
        with shard.lock:
            record = shard.records.get(file_id)
            if record is None or record.expires_at <= now:
                raise NotFoundError("File not found or expired.")
            renewed = replace(record, expires_at=now + self.ttl_seconds)
            shard.records[file_id] = renewed
        return renewed

    def delete(self, file_id: str) -> bool:
        """
        Stop tracking a file and remove it from disk.

        Idempotent: a second delete of the same id, or a delete racing the
        sweeper, returns False instead of raising. An expired record that the
        sweeper has not reached yet is removed as well but reported as absent,
        the same way ``get`` treats it.

        Returns:
            True if this call removed a live record, False otherwise
        """
        shard = self._shard(file_id)
        with shard.lock:
            record = shard.records.pop(file_id, None)
        if record is None:
            return False
        self._unlink(record)
        if record.expires_at <= self.now():
            logger.info(f"Removed expired file {file_id} on delete")
            return False
        logger.info(f"Deleted file {file_id}")
        return True

    def sweep(self, now: Optional[float] = None) -> int:
        """
        Remove every record whose expiry is at or before ``now``.

        Records are dropped from tracking first, then their files unlinked.
        A file that cannot be removed is logged and left behind; its record is
        dropped regardless.

        Args:
            now: Reference time (default: the store clock)

        Returns:
            Number of records removed
        """
        now = self.now() if now is None else now
        expired: List[FileRecord] = []
        for shard in self._shards:
            with shard.lock:
                stale = [file_id for file_id, record in shard.records.items() if record.expires_at <= now]
                for file_id in stale:
                    expired.append(shard.records.pop(file_id))
        for record in expired:
            self._unlink(record)
        if expired:
            logger.info(f"Expiry sweep removed {len(expired)} file(s)")
        return len(expired)

    def _unlink(self, record: FileRecord) -> None:
        try:
            record.storage_path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning(f"Could not delete {record.storage_path.name} for file {record.id}: {exc}")

    def __len__(self) -> int:
        total = 0
        for shard in self._shards:
            with shard.lock:
                total += len(shard.records)
        return total

    def purge_orphans(self) -> int:
        """
        Remove stored files that no record tracks, e.g. leftovers of a previous process.

        Only files named like ours (``<hex uuid>.<ext>``) are touched.

        Returns:
            Number of files removed
        """
        removed = 0
        for root in (self.upload_root, self.output_root):
            for child in root.iterdir():
                if not child.is_file() or not _STORED_NAME_PATTERN.match(child.name):
                    continue
                shard = self._shard(child.stem)
                with shard.lock:
                    tracked = child.stem in shard.records
                if tracked:
                    continue
                try:
                    child.unlink(missing_ok=True)
                    removed += 1
                except OSError as exc:
                    logger.warning(f"Could not delete orphaned file {child.name}: {exc}")
        if removed:
            logger.info(f"Removed {removed} orphaned file(s)")
        return removed

    def start(self) -> None:
        """Start the background sweeper thread (no-op if already running)."""
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        self._stop_event.clear()
        self._sweeper = threading.Thread(target=self._sweep_loop, name="file-store-sweeper", daemon=True)
        self._sweeper.start()
        logger.info(f"Expiry sweeper started (every {self.sweep_interval_seconds:g}s, TTL {self.ttl_seconds:g}s)")

    def stop(self) -> None:
        """Stop the background sweeper and wait for it to exit."""
        self._stop_event.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=max(1.0, self.sweep_interval_seconds))
            self._sweeper = None

    def close(self, purge: bool = True) -> None:
        """
        Shut the store down.

        Args:
            purge: Also delete every tracked file (default: True)
        """
        self.stop()
        if not purge:
            return
        removed: List[FileRecord] = []
        for shard in self._shards:
            with shard.lock:
                removed.extend(shard.records.values())
                shard.records.clear()
        for record in removed:
            self._unlink(record)
        if removed:
            logger.info(f"Removed {len(removed)} tracked file(s) on shutdown")

    def _sweep_loop(self) -> None:
        # Event.wait returns True once stop() is called
        while not self._stop_event.wait(self.sweep_interval_seconds):
            try:
                self.sweep()
            except Exception:
                logger.exception("Expiry sweep failed")
