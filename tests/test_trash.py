"""Tests for the quarantine trash."""

from __future__ import annotations

import errno
import os
import sqlite3
import threading
from datetime import datetime, timedelta, timezone

import pytest

from pulito.core.trash import TrashEngine
from pulito.errors import (
    DestinationExists,
    NotFound,
    QuarantineError,
    OperationBusy,
    SecurityViolation,
    SourceMissing,
)
from pulito.models.cache_event import EVENT_CLEANUP
from pulito.models.scan_result import Category, RiskTier, ScanItem, item_id

from conftest import write_file

T0 = datetime(2026, 1, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def clocked(store, validator, quarantine_root):
    return TrashEngine(store, validator, quarantine_root, clock=lambda: T0)


class TestQuarantine:
    def test_moves_file_and_records_it(self, trash, fake_home):
        f = write_file(fake_home / "doc.txt", content=b"hello")
        item = trash.quarantine(f, Category.LOG, RiskTier.SAFE, "Log file")

        assert not f.exists()
        assert item.quarantine_path.read_bytes() == b"hello"
        assert item.quarantine_path.parent == trash.files_dir
        assert item.original_path == f
        assert item.size_bytes == 5
        assert item.metadata.category == "log"
        assert [i.id for i in trash.list().items] == [item.id]

    def test_retention_defaults(self, clocked, fake_home):
        plain = clocked.quarantine(write_file(fake_home / "a.bin", 1))
        log_item = clocked.quarantine(write_file(fake_home / "b.log", 1), Category.LOG)
        assert plain.expires_at == T0 + timedelta(days=3)
        assert log_item.expires_at == T0 + timedelta(days=7)

    def test_custom_retention(self, clocked, fake_home):
        item = clocked.quarantine(write_file(fake_home / "a.bin", 1), retention_days=10)
        assert item.expires_at == T0 + timedelta(days=10)

    def test_zero_retention_rejected(self, trash, fake_home):
        f = write_file(fake_home / "a.bin", 1)
        with pytest.raises(ValueError):
            trash.quarantine(f, retention_days=0)
        assert f.exists()

    def test_protected_tier_refused(self, trash, fake_home):
        f = write_file(fake_home / "vault.kdbx", 1)
        with pytest.raises(SecurityViolation) as exc:
            trash.quarantine(f, tier=RiskTier.PROTECTED)
        assert exc.value.check == "protected"
        assert f.exists()

    def test_directory_holding_protected_file_refused(self, trash, fake_home):
        write_file(fake_home / ".cache" / "app" / "blob", 10)
        key = write_file(fake_home / ".cache" / "app" / "sub" / "id_rsa", 1)
        with pytest.raises(SecurityViolation) as exc:
            trash.quarantine(fake_home / ".cache" / "app", Category.CACHE)
        assert exc.value.check == "protected"
        assert key.exists()
        assert trash.list().items == []

    def test_permanent_delete_of_protected_subtree_refused(self, trash, fake_home):
        key = write_file(fake_home / "proj" / "certs" / "server.pem", 1)
        result = trash.clean_items(["p"], [fake_home / "proj"], use_trash=False)
        assert (result.cleaned, result.failed) == (0, 1)
        assert key.exists()

    def test_custom_protection_check(self, store, validator, quarantine_root, fake_home):
        engine = TrashEngine(
            store, validator, quarantine_root, is_protected=lambda p: p.name == "keep",
        )
        write_file(fake_home / "dir" / "keep", 1)
        with pytest.raises(SecurityViolation):
            engine.quarantine(fake_home / "dir")
        assert engine.quarantine(write_file(fake_home / "id_rsa.bak", 1)).size_bytes == 1

    def test_outside_home_refused(self, trash, tmp_path):
        f = write_file(tmp_path / "elsewhere.txt", 1)
        with pytest.raises(SecurityViolation):
            trash.quarantine(f)
        assert f.exists()
        assert trash.list().items == []

    def test_directory(self, trash, fake_home):
        write_file(fake_home / "proj" / "build" / "a.o", 100)
        write_file(fake_home / "proj" / "build" / "sub" / "b.o", 50)
        item = trash.quarantine(fake_home / "proj" / "build")
        assert item.item_type == "directory"
        assert item.size_bytes == 150
        assert (item.quarantine_path / "sub" / "b.o").exists()

    def test_symlink_moved_not_target(self, trash, fake_home):
        target = write_file(fake_home / "real.txt", content=b"data")
        link = fake_home / "link.txt"
        link.symlink_to(target)
        item = trash.quarantine(link)
        assert item.item_type == "symlink"
        assert not os.path.lexists(link)
        assert target.read_bytes() == b"data"
        assert item.quarantine_path.is_symlink()

    def test_long_name_truncated(self, trash, fake_home):
        f = write_file(fake_home / ("n" * 250), 1)
        item = trash.quarantine(f)
        assert len(item.quarantine_path.name.encode()) <= 32 + 2 + 200

    def test_cache_cleanup_event_recorded(self, trash, store, fake_home):
        f = write_file(fake_home / ".cache" / "app" / "blob", 40)
        trash.quarantine(f, Category.CACHE)
        events = store.cache_events()
        assert len(events) == 1
        assert (events[0].kind, events[0].size_delta, events[0].source) == (EVENT_CLEANUP, -40, "app")

    def test_cross_device_move(self, trash, fake_home, monkeypatch):
        real_rename = os.rename

        def rename(src, dst):
            if str(dst).startswith(str(trash.files_dir)):
                raise OSError(errno.EXDEV, "Invalid cross-device link")
            return real_rename(src, dst)

        monkeypatch.setattr(os, "rename", rename)
        write_file(fake_home / "dir" / "a.txt", content=b"abc")
        item = trash.quarantine(fake_home / "dir")
        assert not (fake_home / "dir").exists()
        assert (item.quarantine_path / "a.txt").read_bytes() == b"abc"

    def test_failed_move_leaves_original(self, trash, fake_home, monkeypatch):
        def rename(src, dst):
            raise OSError(errno.EACCES, "Permission denied")

        monkeypatch.setattr(os, "rename", rename)
        f = write_file(fake_home / "a.txt", 1)
        with pytest.raises(QuarantineError):
            trash.quarantine(f)
        assert f.exists()
        assert trash.list().items == []

    def test_failed_record_moves_back(self, trash, store, fake_home, monkeypatch):
        def insert(item):
            raise sqlite3.OperationalError("disk full")

        monkeypatch.setattr(store, "insert_trash", insert)
        f = write_file(fake_home / "a.txt", content=b"keep")
        with pytest.raises(QuarantineError):
            trash.quarantine(f)
        assert f.read_bytes() == b"keep"
        assert list(trash.files_dir.iterdir()) == []


class TestRestore:
    def test_round_trip(self, trash, fake_home):
        f = write_file(fake_home / "docs" / "report.txt", content=b"\x00binary\xff")
        item = trash.quarantine(f)
        assert trash.restore(item.id) == f
        assert f.read_bytes() == b"\x00binary\xff"
        assert trash.list().items == []
        assert not item.quarantine_path.exists()

    def test_recreates_missing_parents(self, trash, fake_home):
        f = write_file(fake_home / "a" / "b" / "c.txt", 1)
        item = trash.quarantine(f)
        (fake_home / "a" / "b").rmdir()
        (fake_home / "a").rmdir()
        assert trash.restore(item.id) == f
        assert f.exists()

    def test_destination_exists(self, trash, fake_home):
        f = write_file(fake_home / "a.txt", content=b"old")
        item = trash.quarantine(f)
        write_file(f, content=b"new")
        with pytest.raises(DestinationExists):
            trash.restore(item.id)
        assert f.read_bytes() == b"new"
        assert trash.list().items[0].id == item.id

    def test_unknown_id(self, trash):
        with pytest.raises(NotFound):
            trash.restore("deadbeef")

    def test_missing_object(self, trash, fake_home):
        item = trash.quarantine(write_file(fake_home / "a.txt", 1))
        item.quarantine_path.unlink()
        with pytest.raises(SourceMissing):
            trash.restore(item.id)

    def test_restore_symlink(self, trash, fake_home):
        link = fake_home / "dangling"
        link.symlink_to(fake_home / "nowhere")
        item = trash.quarantine(link)
        trash.restore(item.id)
        assert link.is_symlink()
        assert os.readlink(link) == str(fake_home / "nowhere")


class TestPurgeAndSweep:
    def test_purge(self, trash, fake_home):
        item = trash.quarantine(write_file(fake_home / "a.txt", 7))
        assert trash.purge(item.id) == 7
        assert not item.quarantine_path.exists()
        with pytest.raises(NotFound):
            trash.purge(item.id)

    def test_purge_directory(self, trash, fake_home):
        write_file(fake_home / "d" / "x", 3)
        item = trash.quarantine(fake_home / "d")
        trash.purge(item.id)
        assert not item.quarantine_path.exists()

    def test_sweep_expired(self, clocked, fake_home):
        plain = clocked.quarantine(write_file(fake_home / "a.bin", 1))
        log_item = clocked.quarantine(write_file(fake_home / "b.log", 1), Category.LOG)

        assert clocked.sweep_expired(T0 + timedelta(days=2)) == 0
        assert clocked.sweep_expired(T0 + timedelta(days=3)) == 1
        assert not plain.quarantine_path.exists()
        assert [i.id for i in clocked.list().items] == [log_item.id]
        # idempotent
        assert clocked.sweep_expired(T0 + timedelta(days=3)) == 0
        assert clocked.sweep_expired(T0 + timedelta(days=8)) == 1

    def test_empty(self, trash, fake_home):
        for name in ("a", "b", "c"):
            trash.quarantine(write_file(fake_home / name, 1))
        assert trash.empty() == 3
        assert trash.list().total_items == 0
        assert list(trash.files_dir.iterdir()) == []


class TestCleanItems:
    def test_partial_failure(self, trash, fake_home, tmp_path):
        first = write_file(fake_home / "first.log", 10)
        bad = write_file(tmp_path / "outside.log", 10)
        last = write_file(fake_home / "last.log", 5)
        result = trash.clean_items(["a", "b", "c"], [first, bad, last])
        assert (result.cleaned, result.failed, result.freed_bytes) == (2, 1, 15)
        assert len(result.errors) == 1
        assert str(bad) in result.errors[0]
        assert len(result.trash_ids) == 2
        assert bad.exists()
        assert not first.exists() and not last.exists()

    def test_metadata_applied(self, trash, fake_home):
        f = write_file(fake_home / "x.log", 10)
        scan_item = ScanItem(
            id=item_id(f, Category.LOG), path=f, size_bytes=10,
            category=Category.LOG, risk_tier=RiskTier.SAFE, description="Log file",
        )
        result = trash.clean_items([scan_item.id], [f], metadata={scan_item.id: scan_item})
        stored = trash.list().items[0]
        assert result.cleaned == 1
        assert stored.metadata.reason == "Log file"
        assert abs((stored.expires_at - stored.deleted_at - timedelta(days=7)).total_seconds()) < 1

    def test_protected_metadata_refused(self, trash, fake_home):
        f = write_file(fake_home / "thing", 10)
        scan_item = ScanItem(
            id="p", path=f, size_bytes=10, category=Category.PROTECTED, risk_tier=RiskTier.PROTECTED,
        )
        result = trash.clean_items(["p"], [f], metadata={"p": scan_item})
        assert result.failed == 1
        assert f.exists()

    def test_permanent_delete(self, trash, fake_home):
        f = write_file(fake_home / "x.tmp", 10)
        result = trash.clean_items(["x"], [f], use_trash=False)
        assert result.cleaned == 1
        assert not f.exists()
        assert trash.list().items == []
        assert result.trash_ids == []

    def test_cancelled_items_counted_as_failed(self, trash, fake_home):
        files = [write_file(fake_home / f"f{i}", 1) for i in range(3)]
        cancel = threading.Event()
        cancel.set()
        result = trash.clean_items(["a", "b", "c"], files, cancel=cancel)
        assert (result.cleaned, result.failed) == (0, 3)
        assert all(f.exists() for f in files)

    def test_length_mismatch(self, trash):
        with pytest.raises(ValueError):
            trash.clean_items(["a"], [])


class TestReconcile:
    def test_drops_dangling_records_and_reports_orphans(self, trash, fake_home):
        kept = trash.quarantine(write_file(fake_home / "a", 1))
        lost = trash.quarantine(write_file(fake_home / "b", 1))
        lost.quarantine_path.unlink()
        stray = write_file(trash.files_dir / "stray", 1)

        orphans = trash.reconcile()

        assert orphans == [stray]
        assert [i.id for i in trash.list().items] == [kept.id]
        assert stray.exists()

    def test_held_lock_reports_busy(self, store, validator, quarantine_root, fake_home):
        engine = TrashEngine(store, validator, quarantine_root, lock_timeout=0.01)
        item = engine.quarantine(write_file(fake_home / "a", 4))
        engine._lock.acquire()
        try:
            with pytest.raises(OperationBusy):
                engine.purge(item.id)
        finally:
            engine._lock.release()
        # the holder was never interrupted and nothing was rebuilt
        assert item.quarantine_path.exists()
        assert engine.purge(item.id) == 4

    def test_concurrent_purges_never_overlap(self, store, validator, quarantine_root, fake_home):
        engine = TrashEngine(store, validator, quarantine_root, lock_timeout=5)
        item = engine.quarantine(write_file(fake_home / "a", 4))
        outcomes: list[object] = []
        barrier = threading.Barrier(2)

        def purge():
            barrier.wait()
            try:
                outcomes.append(engine.purge(item.id))
            except (NotFound, OperationBusy) as e:
                outcomes.append(type(e))

        threads = [threading.Thread(target=purge) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert sorted(outcomes, key=str) == sorted([4, NotFound], key=str)
        assert engine.list().items == []

    def test_failure_mid_operation_triggers_rebuild(self, trash, fake_home, monkeypatch):
        item = trash.quarantine(write_file(fake_home / "a", 4))
        item.quarantine_path.unlink()

        def boom(*args, **kwargs):
            raise RuntimeError("crash")

        monkeypatch.setattr(trash, "_purge_locked", boom)
        with pytest.raises(RuntimeError):
            trash.purge(item.id)
        monkeypatch.undo()

        # next writer rebuilds state first, dropping the dangling record
        assert trash.empty() == 0
        assert trash.list().items == []


def test_retention_must_be_positive(store, validator, quarantine_root):
    with pytest.raises(ValueError):
        TrashEngine(store, validator, quarantine_root, retention_days=0)
