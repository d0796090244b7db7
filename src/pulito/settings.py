"""JSON-backed settings store and the typed configuration built from it."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pulito.utils import xdg_config_home, xdg_data_home

log = logging.getLogger(__name__)

_SETTINGS_DIR = "pulito"
_SETTINGS_FILE = "settings.json"

GIB = 1024 ** 3


class Settings:
    """Persistent settings backed by a JSON file.

    Uses dot-notation keys for nested access:
        settings.get("trash.retention_days")   # reads data["trash"]["retention_days"]
        settings.set("scan.max_depth", 8)      # writes + saves
    """

    _instance: Settings | None = None

    def __init__(self, path: Path | None = None) -> None:
        self._path = path or (xdg_config_home() / _SETTINGS_DIR / _SETTINGS_FILE)
        self._data: dict[str, Any] = {}
        self._load()

    @classmethod
    def instance(cls) -> Settings:
        """Return the singleton settings instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def get(self, key: str, default: Any = None) -> Any:
        """Get a value by dot-notation key."""
        node: Any = self._data
        for part in key.split("."):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return node

    def set(self, key: str, value: Any) -> None:
        """Set a value by dot-notation key and persist to disk."""
        parts = key.split(".")
        node = self._data
        for part in parts[:-1]:
            if part not in node or not isinstance(node[part], dict):
                node[part] = {}
            node = node[part]
        node[parts[-1]] = value
        self._save()

    def as_dict(self) -> dict[str, Any]:
        return json.loads(json.dumps(self._data))

    def _load(self) -> None:
        if not self._path.exists():
            return
        try:
            self._data = json.loads(self._path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as e:
            log.warning("Could not load settings from %s: %s", self._path, e)
            self._data = {}

    def _save(self) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(
                json.dumps(self._data, indent=2, ensure_ascii=False) + "\n",
                encoding="utf-8",
            )
        except OSError as e:
            log.warning("Could not save settings to %s: %s", self._path, e)


@dataclass(slots=True)
class PulitoConfig:
    """Typed view of the settings used by the engine.

    Values that are missing or of the wrong type fall back to the defaults
    below.
    """

    home: Path = field(default_factory=Path.home)
    data_dir: Path = field(default_factory=lambda: xdg_data_home() / "pulito")
    retention_days: int = 3
    log_retention_days: int = 7
    large_file_threshold: int = GIB
    old_download_days: int = 90
    temp_age_days: int = 7
    duplicate_min_size: int = 1024
    max_depth: int = 10
    max_items: int = 50_000
    max_memory_mb: int = 500
    scan_timeout: float = 300.0
    include_hidden: bool = True
    duplicate_workers: int = 4

    @property
    def db_path(self) -> Path:
        return self.data_dir / "pulito.db"

    @property
    def quarantine_root(self) -> Path:
        return self.data_dir / "quarantine"

    @classmethod
    def from_settings(cls, settings: Settings | None = None, **overrides: Any) -> PulitoConfig:
        settings = settings or Settings.instance()
        config = cls(**overrides)
        for attr, key, kind in _SETTING_KEYS:
            if attr in overrides:
                continue
            value = settings.get(key)
            if value is None:
                continue
            if kind is int and isinstance(value, bool):
                log.warning("Ignoring setting %s: expected int, got %r", key, value)
                continue
            if not isinstance(value, kind) and not (kind is float and isinstance(value, int)):
                log.warning("Ignoring setting %s: expected %s, got %r", key, kind.__name__, value)
                continue
            setattr(config, attr, kind(value))
        if config.retention_days < 1:
            log.warning("Retention must be at least one day, using 1")
            config.retention_days = 1
        return config


_SETTING_KEYS: tuple[tuple[str, str, type], ...] = (
    ("retention_days", "trash.retention_days", int),
    ("log_retention_days", "trash.log_retention_days", int),
    ("large_file_threshold", "scan.large_file_threshold", int),
    ("old_download_days", "scan.old_download_days", int),
    ("temp_age_days", "scan.temp_age_days", int),
    ("duplicate_min_size", "scan.duplicate_min_size", int),
    ("max_depth", "scan.max_depth", int),
    ("max_items", "scan.max_items", int),
    ("max_memory_mb", "scan.max_memory_mb", int),
    ("scan_timeout", "scan.timeout", float),
    ("include_hidden", "scan.include_hidden", bool),
    ("duplicate_workers", "scan.duplicate_workers", int),
)
