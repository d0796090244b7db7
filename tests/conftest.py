"""Shared test fixtures."""

from __future__ import annotations

import os
import time
from pathlib import Path

import pytest

from pulito.core.trash import TrashEngine
from pulito.core.validator import PathValidator
from pulito.storage import RecordStore

DAY = 86_400


def write_file(path: Path, size: int = 0, content: bytes | None = None, age_days: float = 0) -> Path:
    """Create *path* (and its parents) with *size* bytes, optionally backdated."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content if content is not None else b"x" * size)
    if age_days:
        ts = time.time() - age_days * DAY
        os.utime(path, (ts, ts))
    return path


@pytest.fixture
def fake_home(tmp_path) -> Path:
    home = tmp_path / "home"
    home.mkdir()
    return home.resolve()


@pytest.fixture
def quarantine_root(tmp_path) -> Path:
    root = tmp_path / "data" / "quarantine"
    root.mkdir(parents=True)
    return root.resolve()


@pytest.fixture
def store():
    s = RecordStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def validator(fake_home, quarantine_root) -> PathValidator:
    return PathValidator(home=fake_home, quarantine_root=quarantine_root)


@pytest.fixture
def trash(store, validator, quarantine_root) -> TrashEngine:
    return TrashEngine(store, validator, quarantine_root)
