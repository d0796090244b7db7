"""Tests for the settings store and typed configuration."""

from __future__ import annotations

import json

from pulito.settings import PulitoConfig, Settings


class TestSettings:
    def test_dot_keys_round_trip(self, tmp_path):
        path = tmp_path / "cfg" / "settings.json"
        settings = Settings(path)
        settings.set("trash.retention_days", 5)
        settings.set("scan.max_depth", 4)

        assert json.loads(path.read_text())["trash"]["retention_days"] == 5
        assert Settings(path).get("scan.max_depth") == 4
        assert Settings(path).get("scan.missing", "dflt") == "dflt"

    def test_corrupt_file_ignored(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text("{not json")
        assert Settings(path).as_dict() == {}


class TestPulitoConfig:
    def test_defaults(self, tmp_path):
        config = PulitoConfig.from_settings(Settings(tmp_path / "none.json"))
        assert config.retention_days == 3
        assert config.log_retention_days == 7
        assert config.max_items == 50_000
        assert config.include_hidden is True

    def test_values_from_settings(self, tmp_path):
        settings = Settings(tmp_path / "s.json")
        settings.set("trash.retention_days", 10)
        settings.set("scan.timeout", 60)
        settings.set("scan.include_hidden", False)
        config = PulitoConfig.from_settings(settings)
        assert config.retention_days == 10
        assert config.scan_timeout == 60.0
        assert config.include_hidden is False

    def test_wrong_types_fall_back(self, tmp_path):
        settings = Settings(tmp_path / "s.json")
        settings.set("trash.retention_days", "ten")
        settings.set("scan.max_depth", True)
        config = PulitoConfig.from_settings(settings)
        assert config.retention_days == 3
        assert config.max_depth == 10

    def test_retention_clamped(self, tmp_path):
        settings = Settings(tmp_path / "s.json")
        settings.set("trash.retention_days", 0)
        assert PulitoConfig.from_settings(settings).retention_days == 1

    def test_overrides_win(self, tmp_path):
        settings = Settings(tmp_path / "s.json")
        settings.set("scan.max_depth", 3)
        config = PulitoConfig.from_settings(settings, max_depth=7, home=tmp_path)
        assert config.max_depth == 7
        assert config.home == tmp_path
        assert config.quarantine_root == config.data_dir / "quarantine"
