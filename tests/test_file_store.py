"""
Tests for the tracked file store.

Tests cover:
- Registration and lookup
- Expiry, sweeping and re-tracking
- Idempotent deletion, including races with the sweeper
- Orphan cleanup and shutdown purge
"""

import threading
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor

import pytest

from pdf_suite_backend.errors import NotFoundError
from pdf_suite_backend.file_store import OUTPUT_AREA, UPLOAD_AREA, TrackedFileStore
from pdf_suite_backend.utils import FileKind


class TestRegistration:
    def test_put_then_get(self, store, track, clock):
        record = track(b"%PDF-1.4 data", name="report.pdf")

        found = store.get(record.id)
        assert found == record
        assert found.original_name == "report.pdf"
        assert found.size_bytes == len(b"%PDF-1.4 data")
        assert found.expires_at == clock() + 1800
        assert found.storage_path.parent == store.upload_root

    def test_allocate_uses_area_and_extension(self, store):
        file_id, path = store.allocate(FileKind.JPEG, OUTPUT_AREA)
        assert path == store.output_root / f"{file_id}.jpg"
        assert len(file_id) == 32

        _, upload_path = store.allocate(FileKind.PNG, UPLOAD_AREA)
        assert upload_path.parent == store.upload_root
        assert upload_path.suffix == ".png"

    def test_allocate_rejects_unknown_area(self, store):
        with pytest.raises(ValueError):
            store.allocate(FileKind.PDF, "elsewhere")

    def test_put_twice_is_rejected(self, store, track):
        record = track(b"%PDF-1.4")
        with pytest.raises(ValueError):
            store.put(record.storage_path, "session-2", "again.pdf", FileKind.PDF)

    def test_get_unknown_id(self, store):
        with pytest.raises(NotFoundError):
            store.get("does-not-exist")


class TestExpiry:
    def test_expired_record_is_not_found_before_sweep(self, store, track, clock):
        record = track(b"%PDF-1.4")
        clock.advance(1800)

        with pytest.raises(NotFoundError):
            store.get(record.id)
        # Still on disk until the sweeper runs
        assert record.storage_path.exists()

    def test_sweep_removes_only_expired(self, store, track, clock):
        old = track(b"%PDF-1.4 old")
        clock.advance(1000)
        fresh = track(b"%PDF-1.4 new")
        clock.advance(900)

        assert store.sweep() == 1
        assert not old.storage_path.exists()
        assert fresh.storage_path.exists()
        assert store.get(fresh.id) == fresh
        assert len(store) == 1

    def test_retrack_extends_expiry(self, store, track, clock):
        record = track(b"%PDF-1.4")
        clock.advance(1700)

        renewed = store.retrack(record.id)
        assert renewed.expires_at == clock() + 1800
        clock.advance(1000)
        assert store.sweep() == 0
        assert store.get(record.id).expires_at == renewed.expires_at

    def test_retrack_after_expiry_fails(self, store, track, clock):
        record = track(b"%PDF-1.4")
        clock.advance(2000)
        with pytest.raises(NotFoundError):
            store.retrack(record.id)

    def test_remaining_seconds(self, store, track, clock):
        record = track(b"%PDF-1.4")
        clock.advance(600)
        assert record.remaining_seconds(clock()) == 1200
        clock.advance(5000)
        assert record.remaining_seconds(clock()) == 0


class TestDeletion:
    def test_delete_then_sweep(self, store, track, clock):
        record = track(b"%PDF-1.4")

        assert store.delete(record.id) is True
        assert not record.storage_path.exists()
        clock.advance(3600)
        assert store.sweep() == 0
        assert store.delete(record.id) is False

    def test_delete_of_expired_record_reports_absent(self, store, track, clock):
        record = track(b"%PDF-1.4")
        clock.advance(1800)

        assert store.delete(record.id) is False
        assert not record.storage_path.exists()
        assert len(store) == 0
        assert store.delete(record.id) is False

    def test_concurrent_delete_and_sweep_remove_each_file_once(self, store, track, clock, monkeypatch):
        records = [track(f"%PDF-1.4 {index}".encode()) for index in range(40)]
        clock.advance(1800)
        start = threading.Barrier(5)
        unlinked = Counter()
        unlink = store._unlink

        def counting_unlink(record):
            unlinked[record.id] += 1
            unlink(record)

        monkeypatch.setattr(store, "_unlink", counting_unlink)

        def delete_all():
            start.wait()
            return sum(store.delete(record.id) for record in records)

        def sweep():
            start.wait()
            return store.sweep()

        with ThreadPoolExecutor(max_workers=5) as pool:
            deletes = [pool.submit(delete_all) for _ in range(3)]
            sweeps = [pool.submit(sweep) for _ in range(2)]
            deleted = sum(f.result() for f in deletes)
            swept = sum(f.result() for f in sweeps)

        # Every record had expired, so no delete may report success
        assert deleted == 0
        assert swept <= len(records)
        assert unlinked == Counter({record.id: 1 for record in records})
        assert len(store) == 0
        assert not any(record.storage_path.exists() for record in records)


class TestLifecycle:
    def test_purge_orphans_keeps_tracked_and_foreign_files(self, store, track):
        kept = track(b"%PDF-1.4")
        orphan = store.upload_root / ("ab" * 16 + ".pdf")
        orphan.write_bytes(b"%PDF-1.4 leftover")
        foreign = store.output_root / "notes.txt"
        foreign.write_text("not ours")

        assert store.purge_orphans() == 1
        assert not orphan.exists()
        assert kept.storage_path.exists()
        assert foreign.exists()

    def test_close_purges_tracked_files(self, tmp_path, clock):
        file_store = TrackedFileStore(tmp_path / "u", tmp_path / "o", clock=clock)
        _, path = file_store.allocate(FileKind.PDF)
        path.write_bytes(b"%PDF-1.4")
        file_store.put(path, "output", "out.pdf", FileKind.PDF)
        file_store.start()

        file_store.close()
        assert not path.exists()
        assert len(file_store) == 0

    def test_close_without_purge_keeps_files(self, tmp_path, clock):
        file_store = TrackedFileStore(tmp_path / "u", tmp_path / "o", clock=clock)
        _, path = file_store.allocate(FileKind.PDF)
        path.write_bytes(b"%PDF-1.4")
        file_store.put(path, "output", "out.pdf", FileKind.PDF)

        file_store.close(purge=False)
        assert path.exists()

    def test_background_sweeper_removes_expired_files(self, tmp_path):
        file_store = TrackedFileStore(
            tmp_path / "u", tmp_path / "o", ttl_seconds=0.05, sweep_interval_seconds=0.02
        )
        _, path = file_store.allocate(FileKind.PDF)
        path.write_bytes(b"%PDF-1.4")
        file_store.put(path, "output", "out.pdf", FileKind.PDF)

        file_store.start()
        try:
            for _ in range(100):
                if not path.exists():
                    break
                time.sleep(0.02)
            assert not path.exists()
            assert len(file_store) == 0
        finally:
            file_store.close()
