"""Tests for the CLI commands."""

from __future__ import annotations

import json

import pytest
from click.testing import CliRunner

from pulito.cli import main
from pulito.core.engine import PulitoEngine
from pulito.settings import PulitoConfig
from pulito.storage import RecordStore

from conftest import write_file


@pytest.fixture
def engine(fake_home, tmp_path, monkeypatch):
    e = PulitoEngine(
        PulitoConfig(home=fake_home, data_dir=tmp_path / "data"),
        store=RecordStore(":memory:"),
        detect_packages=False,
    )
    monkeypatch.setattr("pulito.cli._build_engine", lambda: e)
    yield e
    e.close()


@pytest.fixture
def runner():
    return CliRunner()


def invoke_json(runner, args):
    result = runner.invoke(main, args)
    assert result.exit_code == 0, result.output
    return json.loads(result.stdout)


class TestScan:
    def test_scan_json(self, runner, engine, fake_home):
        write_file(fake_home / ".cache" / "app" / "blob", 100)
        data = invoke_json(runner, ["scan", "--json"])
        assert data["total_bytes"] == 100
        assert data["items"][0]["category"] == "cache"
        assert data["partial"] is False

    def test_scan_text(self, runner, engine, fake_home):
        write_file(fake_home / "x.log", 10)
        result = runner.invoke(main, ["scan"])
        assert result.exit_code == 0
        assert "log" in result.output
        assert "Total reclaimable" in result.output

    def test_unknown_pass_rejected(self, runner, engine):
        result = runner.invoke(main, ["scan", "--pass", "nonsense"])
        assert result.exit_code == 2

    def test_health_and_recover(self, runner, engine, fake_home):
        (fake_home / "empty").mkdir()
        health = invoke_json(runner, ["health", "--json"])
        assert [i["name"] for i in health["empty_dirs"]] == ["empty"]
        recover = invoke_json(runner, ["recover", "--json"])
        assert recover["duplicate_groups"] == []


class TestClean:
    def test_clean_moves_safe_items(self, runner, engine, fake_home):
        write_file(fake_home / "x.log", 10)
        data = invoke_json(runner, ["clean", "--yes", "--json"])
        assert data["status"] == "cleaned"
        assert data["result"]["cleaned"] == 1
        assert not (fake_home / "x.log").exists()
        assert engine.trash_list().total_items == 1

    def test_dry_run_removes_nothing(self, runner, engine, fake_home):
        write_file(fake_home / "x.log", 10)
        data = invoke_json(runner, ["clean", "--dry-run", "--json"])
        assert data == {"status": "dry_run", "would_free_bytes": 10, "items": data["items"]}
        assert (fake_home / "x.log").exists()

    def test_nothing_to_clean(self, runner, engine):
        data = invoke_json(runner, ["clean", "--yes", "--json"])
        assert data["status"] == "nothing_to_clean"

    def test_declined_confirmation(self, runner, engine, fake_home):
        write_file(fake_home / "x.log", 10)
        result = runner.invoke(main, ["clean"], input="n\n")
        assert "Aborted." in result.output
        assert (fake_home / "x.log").exists()

    def test_clean_explicit_path(self, runner, engine, fake_home):
        target = write_file(fake_home / "notes.txt", 4)
        data = invoke_json(runner, ["clean", "--path", str(target), "--json"])
        assert data["result"]["cleaned"] == 1
        assert not target.exists()

    def test_path_outside_home_reported(self, runner, engine, tmp_path):
        outside = write_file(tmp_path / "elsewhere" / "f", 4)
        data = invoke_json(runner, ["clean", "--path", str(outside), "--json"])
        assert data["result"]["failed"] == 1
        assert outside.exists()


class TestTrash:
    def test_list_restore_delete(self, runner, engine, fake_home):
        a = write_file(fake_home / "a.log", 3)
        write_file(fake_home / "b.log", 3)
        invoke_json(runner, ["clean", "--yes", "--json"])

        listing = invoke_json(runner, ["trash", "list", "--json"])
        by_path = {i["original_path"]: i["id"] for i in listing["items"]}
        assert listing["total_items"] == 2

        result = runner.invoke(main, ["trash", "restore", by_path[str(a)]])
        assert result.exit_code == 0
        assert a.exists()

        result = runner.invoke(main, ["trash", "delete", by_path[str(fake_home / "b.log")]])
        assert result.exit_code == 0
        assert engine.trash_list().items == []

    def test_restore_unknown_id_fails(self, runner, engine):
        result = runner.invoke(main, ["trash", "restore", "deadbeef"])
        assert result.exit_code == 1
        assert "No trash item deadbeef" in result.output

    def test_empty(self, runner, engine, fake_home):
        write_file(fake_home / "a.log", 3)
        invoke_json(runner, ["clean", "--yes", "--json"])
        result = runner.invoke(main, ["trash", "empty", "--yes"])
        assert "Deleted 1 items." in result.output

    def test_empty_list_message(self, runner, engine):
        result = runner.invoke(main, ["trash", "list"])
        assert "Trash is empty." in result.output


class TestOtherCommands:
    def test_stats_json(self, runner, engine, fake_home):
        write_file(fake_home / "a.log", 7)
        invoke_json(runner, ["clean", "--yes", "--json"])
        data = invoke_json(runner, ["stats", "--json"])
        assert data["bytes_freed"] == 7
        assert data["per_operation"]["clean"]["items_cleaned"] == 1

    def test_orphans_without_backend(self, runner, engine):
        result = runner.invoke(main, ["packages", "orphans"])
        assert result.exit_code == 1
        assert "Error:" in result.output

    def test_analytics_json(self, runner, engine, fake_home):
        write_file(fake_home / ".cache" / "pip" / "x", 50)
        data = invoke_json(runner, ["analytics", "--json"])
        assert data["total_cache_bytes"] == 50
        assert "pip" in data["recommended_limits"]


class TestOldFiles:
    def test_summary_and_clean(self, runner, engine, fake_home):
        iso = write_file(fake_home / "Downloads" / "setup.iso", 50, age_days=200)
        invoke_json(runner, ["recover", "--json"])

        summary = invoke_json(runner, ["old-files", "summary", "--days", "100", "--json"])
        assert summary == {"total_files": 1, "total_size": 50, "cutoff_days": 100}

        data = invoke_json(runner, ["old-files", "clean", "--days", "100", "--json"])
        assert data["result"]["cleaned"] == 1
        assert data["result"]["operation"] == "old_files"
        assert not iso.exists()

    def test_zero_days_rejected(self, runner, engine):
        result = runner.invoke(main, ["old-files", "summary", "--days", "0"])
        assert result.exit_code == 2

    def test_clean_declined(self, runner, engine, fake_home):
        iso = write_file(fake_home / "Downloads" / "setup.iso", 50, age_days=200)
        invoke_json(runner, ["recover", "--json"])
        result = runner.invoke(main, ["old-files", "clean", "--days", "100"], input="n\n")
        assert "Aborted." in result.output
        assert iso.exists()

    def test_cache_events(self, runner, engine, fake_home):
        assert "No cache events recorded." in runner.invoke(main, ["cache-events"]).output
        write_file(fake_home / ".cache" / "pip" / "x", 50)
        invoke_json(runner, ["analytics", "--json"])
        events = invoke_json(runner, ["cache-events", "--limit", "5", "--json"])
        assert events[0]["source"] == "pip"
        assert events[0]["size_delta"] == 50
