"""Tests for the engine that wires scanning, cleaning and the trash together."""

from __future__ import annotations

import os

import pytest

from pulito.core.engine import PulitoEngine
from pulito.errors import OperationBusy, PackageError
from pulito.models.scan_result import Category
from pulito.settings import PulitoConfig
from pulito.storage import RecordStore

from conftest import write_file


def make_engine(home, data_dir, **config) -> PulitoEngine:
    return PulitoEngine(
        PulitoConfig(home=home, data_dir=data_dir, **config),
        store=RecordStore(":memory:"),
        detect_packages=False,
    )


@pytest.fixture
def engine(fake_home, tmp_path):
    e = make_engine(fake_home, tmp_path / "data")
    yield e
    e.close()


class TestScanAndClean:
    def test_clean_by_id_moves_to_trash(self, engine, fake_home):
        write_file(fake_home / ".cache" / "app" / "blob", 100)
        write_file(fake_home / "logs" / "x.log", 20)
        report = engine.scan()
        ids = [i.id for i in report.items]
        assert len(ids) == 2

        result = engine.clean(ids)

        assert (result.cleaned, result.failed, result.freed_bytes) == (2, 0, 120)
        assert not (fake_home / ".cache" / "app").exists()
        assert not (fake_home / "logs" / "x.log").exists()
        assert engine.trash_list().total_items == 2
        assert engine.stats()["bytes_freed"] == 120

    def test_unknown_id_fails_alone(self, engine, fake_home):
        write_file(fake_home / "x.log", 5)
        item = engine.scan().items[0]
        result = engine.clean([item.id, "0123456789abcdef"])
        assert (result.cleaned, result.failed) == (1, 1)
        assert "0123456789abcdef" in result.errors[0]

    def test_cleaned_ids_forgotten(self, engine, fake_home):
        write_file(fake_home / "x.log", 5)
        item = engine.scan().items[0]
        engine.clean([item.id])
        assert engine.last_item(item.id) is None
        assert engine.clean([item.id]).failed == 1

    def test_child_of_folded_cache_is_cleanable(self, engine, fake_home):
        write_file(fake_home / ".cache" / "app" / "a", 10)
        write_file(fake_home / ".cache" / "app" / "b", 10)
        report = engine.scan()
        child = report.items[0].children[0]
        assert engine.clean([child.id]).cleaned == 1
        assert (fake_home / ".cache" / "app").exists()

    def test_permanent_clean(self, engine, fake_home):
        write_file(fake_home / "x.log", 5)
        item = engine.scan().items[0]
        result = engine.clean([item.id], use_trash=False)
        assert result.cleaned == 1
        assert engine.trash_list().items == []

    def test_restore_round_trip(self, engine, fake_home):
        f = write_file(fake_home / "x.log", content=b"log line\n")
        item = engine.scan().items[0]
        trash_id = engine.clean([item.id]).trash_ids[0]
        assert engine.trash_restore(trash_id) == f
        assert f.read_bytes() == b"log line\n"

    def test_engine_state_never_reported(self, fake_home):
        data_dir = fake_home / ".local" / "share" / "pulito"
        engine = make_engine(fake_home, data_dir)
        write_file(fake_home / "x.log", 5)
        write_file(data_dir / "debug.log", 5)
        item = engine.scan().items[0]
        engine.clean([item.id])

        paths = {i.path for i in engine.scan().iter_items()}
        assert not any(p.is_relative_to(data_dir) for p in paths)
        engine.close()

    def test_cache_holding_protected_file_keeps_it(self, engine, fake_home):
        write_file(fake_home / ".cache" / "app" / "blob", 100)
        key = write_file(fake_home / ".cache" / "app" / "id_rsa", 1)
        report = engine.scan()
        result = engine.clean([i.id for i in report.iter_items()])
        assert result.freed_bytes == 100
        assert key.exists()
        assert not (fake_home / ".cache" / "app" / "blob").exists()

    def test_application_data_never_cleaned(self, fake_home):
        data_dir = fake_home / ".local" / "share" / "pulito"
        engine = make_engine(fake_home, data_dir)
        write_file(fake_home / "x.log", 5)
        engine.clean([engine.scan().items[0].id])

        for target in (data_dir, data_dir / "quarantine", fake_home / ".local"):
            result = engine.clean_items(["x"], [target], use_trash=False)
            assert result.failed == 1
        assert engine.trash_list().total_items == 1
        assert all(i.quarantine_path.exists() for i in engine.trash_list().items)
        engine.close()

    def test_reports_remember_items(self, engine, fake_home):
        (fake_home / "empty").mkdir()
        health = engine.scan_filesystem_health()
        assert engine.last_item(health.empty_dirs[0].id) is not None

    def test_concurrent_scan_rejected(self, engine):
        engine.runner._running.add("scan")
        with pytest.raises(OperationBusy):
            engine.scan()
        engine.runner._running.discard("scan")


class TestTrashOperations:
    def test_delete_sweep_and_empty(self, engine, fake_home):
        for name in ("a.log", "b.log", "c.log"):
            write_file(fake_home / name, 3)
        report = engine.scan()
        result = engine.clean([i.id for i in report.items])

        assert engine.trash_delete(result.trash_ids[0]) == 3
        assert engine.trash_sweep() == 0
        assert engine.trash_empty() == 2
        assert engine.trash_list().items == []

    def test_stray_objects_survive_startup(self, fake_home, tmp_path):
        stray = write_file(tmp_path / "data" / "quarantine" / "files" / "stray", 1)
        engine = make_engine(fake_home, tmp_path / "data")
        assert stray.exists()
        engine.close()


class TestOldFiles:
    def test_recovery_scan_tracks_access_times(self, engine, fake_home):
        iso = write_file(fake_home / "Downloads" / "setup.iso", 50, age_days=200)
        engine.scan_storage_recovery()
        assert engine.store.last_access(str(iso)) == pytest.approx(iso.stat().st_mtime)
        summary = engine.old_files_summary(100)
        assert summary.to_dict() == {"total_files": 1, "total_size": 50, "cutoff_days": 100}
        assert engine.old_files_summary(365).total_files == 0

    def test_cleanup_moves_old_files_to_trash(self, engine, fake_home):
        iso = write_file(fake_home / "Downloads" / "setup.iso", 50, age_days=200)
        engine.scan_storage_recovery()

        result = engine.cleanup_old_files(100)

        assert (result.cleaned, result.failed, result.freed_bytes) == (1, 0, 50)
        assert not iso.exists()
        item = engine.trash_list().items[0]
        assert item.metadata.category == Category.OLD_FILE.value
        assert item.metadata.risk_tier == 1
        assert item.metadata.reason == "File not accessed in 100 days"
        assert (item.expires_at - item.deleted_at).days == 30
        assert engine.old_files_summary(100).total_files == 0
        assert engine.stats()["per_operation"]["old_files"]["items_cleaned"] == 1

    def test_missing_and_recently_used_files(self, engine, fake_home):
        gone = write_file(fake_home / "Downloads" / "gone.iso", 10, age_days=200)
        used = write_file(fake_home / "Downloads" / "used.iso", 20, age_days=200)
        engine.scan_storage_recovery()
        gone.unlink()
        os.utime(used)

        result = engine.cleanup_old_files(100)

        assert (result.cleaned, result.failed) == (0, 1)
        assert str(gone) in result.errors[0]
        assert used.exists()
        assert engine.store.last_access(str(gone)) is None
        assert engine.old_files_summary(100).total_files == 0

    def test_days_must_be_positive(self, engine):
        with pytest.raises(ValueError):
            engine.cleanup_old_files(0)
        with pytest.raises(ValueError):
            engine.old_files_summary(0)

    def test_recent_cache_events(self, engine, fake_home):
        write_file(fake_home / ".cache" / "pip" / "x", 300)
        engine.cache_analytics()
        events = engine.recent_cache_events(10)
        assert events and events[0].source == "pip"


class TestPackagesAndAnalytics:
    def test_orphans_need_a_backend(self, engine):
        with pytest.raises(PackageError):
            engine.find_orphans()

    def test_package_clean_without_backend(self, engine, fake_home):
        write_file(fake_home / ".cache" / "pip" / "http" / "x", 64)
        result = engine.clean_packages()
        assert result.cleaned == 1
        assert engine.stats()["per_operation"]["packages"]["bytes_freed"] == 64

    def test_cache_analytics(self, engine, fake_home):
        write_file(fake_home / ".cache" / "pip" / "x", 300)
        write_file(fake_home / ".cache" / "chromium" / "y", 100)
        data = engine.cache_analytics()
        assert [c.source for c in data.contributors] == ["pip", "chromium"]
        assert data.total_cache_bytes == 400
        assert len(data.growth_trend) == 7

    def test_cleanup_reflected_in_analytics(self, engine, fake_home):
        write_file(fake_home / ".cache" / "pip" / "x", 300)
        engine.cache_analytics()
        report = engine.scan()
        engine.clean([i.id for i in report.items if i.category is Category.CACHE])
        data = engine.cache_analytics()
        assert {c.source: c.size_bytes for c in data.contributors}["pip"] == 0
