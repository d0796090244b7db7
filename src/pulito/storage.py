"""SQLite record store for trash records, cache events and cleaning history."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from pulito.models.cache_event import CacheEvent
from pulito.models.trash_item import TrashItem, TrashMetadata
from pulito.utils import xdg_data_home

log = logging.getLogger(__name__)

DATA_DIR = xdg_data_home() / "pulito"
DB_FILE = DATA_DIR / "pulito.db"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS trash_items (
    id TEXT PRIMARY KEY,
    original_path TEXT NOT NULL,
    quarantine_path TEXT NOT NULL,
    deleted_at REAL NOT NULL,
    expires_at REAL NOT NULL,
    size_bytes INTEGER NOT NULL,
    item_type TEXT NOT NULL,
    metadata TEXT
);
CREATE INDEX IF NOT EXISTS idx_trash_expires ON trash_items(expires_at);

CREATE TABLE IF NOT EXISTS cache_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    path TEXT NOT NULL,
    size_delta INTEGER NOT NULL,
    kind TEXT NOT NULL,
    source TEXT,
    timestamp REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_cache_events_ts ON cache_events(timestamp);
CREATE INDEX IF NOT EXISTS idx_cache_events_source ON cache_events(source);

CREATE TABLE IF NOT EXISTS cache_samples (
    path TEXT PRIMARY KEY,
    size_bytes INTEGER NOT NULL,
    sampled_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS file_access (
    path TEXT PRIMARY KEY,
    last_access REAL NOT NULL,
    access_count INTEGER NOT NULL DEFAULT 1,
    size_bytes INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_file_access_last ON file_access(last_access);

CREATE TABLE IF NOT EXISTS clean_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp REAL NOT NULL,
    operation TEXT NOT NULL,
    freed_bytes INTEGER NOT NULL,
    items_cleaned INTEGER NOT NULL,
    items_failed INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_clean_history_ts ON clean_history(timestamp);
"""


def _to_epoch(dt: datetime) -> float:
    return dt.timestamp()


def _from_epoch(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


class RecordStore:
    """Thread-safe handle on the Pulito database.

    One connection is shared by all threads; every statement runs under
    an internal lock.  Pass ``":memory:"`` for a throwaway store.
    """

    def __init__(self, path: Path | str | None = None) -> None:
        if path is None:
            path = DB_FILE
        if str(path) != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self.path = str(path)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(self.path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        if self.path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.executescript(_SCHEMA)
        self._migrate()
        self._conn.commit()
        log.debug("Opened record store at %s", self.path)

    def _migrate(self) -> None:
        columns = {r["name"] for r in self._conn.execute("PRAGMA table_info(file_access)")}
        if "size_bytes" not in columns:
            log.info("Adding size column to the file access table")
            self._conn.execute("ALTER TABLE file_access ADD COLUMN size_bytes INTEGER NOT NULL DEFAULT 0")

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        with self._lock:
            cur = self._conn.execute(sql, params)
            self._conn.commit()
            return cur

    def _query(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    # -- Trash records -----------------------------------------------------

    def insert_trash(self, item: TrashItem) -> None:
        metadata = None
        if item.metadata is not None:
            metadata = json.dumps({
                "category": item.metadata.category,
                "risk_tier": item.metadata.risk_tier,
                "reason": item.metadata.reason,
            })
        self._execute(
            "INSERT INTO trash_items (id, original_path, quarantine_path, deleted_at,"
            " expires_at, size_bytes, item_type, metadata) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                item.id,
                str(item.original_path),
                str(item.quarantine_path),
                _to_epoch(item.deleted_at),
                _to_epoch(item.expires_at),
                item.size_bytes,
                item.item_type,
                metadata,
            ),
        )

    def get_trash(self, item_id: str) -> TrashItem | None:
        rows = self._query("SELECT * FROM trash_items WHERE id = ?", (item_id,))
        return _row_to_trash(rows[0]) if rows else None

    def list_trash(self) -> list[TrashItem]:
        rows = self._query("SELECT * FROM trash_items ORDER BY deleted_at DESC, id")
        return [_row_to_trash(r) for r in rows]

    def expired_trash(self, now: datetime) -> list[TrashItem]:
        rows = self._query(
            "SELECT * FROM trash_items WHERE expires_at <= ? ORDER BY expires_at",
            (_to_epoch(now),),
        )
        return [_row_to_trash(r) for r in rows]

    def delete_trash(self, item_id: str) -> bool:
        return self._execute("DELETE FROM trash_items WHERE id = ?", (item_id,)).rowcount > 0

    # -- Cache events ------------------------------------------------------

    def record_cache_event(self, event: CacheEvent) -> None:
        self._execute(
            "INSERT INTO cache_events (path, size_delta, kind, source, timestamp)"
            " VALUES (?, ?, ?, ?, ?)",
            (event.path, event.size_delta, event.kind, event.source, event.timestamp),
        )

    def cache_events(self, since: float | None = None, until: float | None = None) -> list[CacheEvent]:
        sql = "SELECT path, size_delta, kind, source, timestamp FROM cache_events WHERE 1=1"
        params: list[Any] = []
        if since is not None:
            sql += " AND timestamp >= ?"
            params.append(since)
        if until is not None:
            sql += " AND timestamp <= ?"
            params.append(until)
        sql += " ORDER BY timestamp, id"
        return [_row_to_event(r) for r in self._query(sql, tuple(params))]

    def recent_cache_events(self, limit: int = 50) -> list[CacheEvent]:
        """The newest *limit* cache events, newest first."""
        rows = self._query(
            "SELECT path, size_delta, kind, source, timestamp FROM cache_events"
            " ORDER BY timestamp DESC, id DESC LIMIT ?",
            (max(limit, 0),),
        )
        return [_row_to_event(r) for r in rows]

    def cache_sample(self, path: str) -> int | None:
        """Return the last sampled size of a cache directory, if any."""
        rows = self._query("SELECT size_bytes FROM cache_samples WHERE path = ?", (path,))
        return rows[0]["size_bytes"] if rows else None

    def cache_samples(self) -> dict[str, int]:
        return {r["path"]: r["size_bytes"] for r in self._query("SELECT path, size_bytes FROM cache_samples")}

    def set_cache_sample(self, path: str, size_bytes: int, sampled_at: float) -> None:
        self._execute(
            "INSERT INTO cache_samples (path, size_bytes, sampled_at) VALUES (?, ?, ?)"
            " ON CONFLICT(path) DO UPDATE SET size_bytes = excluded.size_bytes,"
            " sampled_at = excluded.sampled_at",
            (path, size_bytes, sampled_at),
        )

    # -- File access -------------------------------------------------------

    def record_file_access(self, path: str, timestamp: float, size_bytes: int = 0) -> None:
        self.record_file_accesses([(path, timestamp, size_bytes)])

    def record_file_accesses(self, entries: Iterable[tuple[str, float, int]]) -> int:
        """Upsert ``(path, last_access, size_bytes)`` rows in one transaction.

        The stored access time only ever moves forward.
        """
        rows = list(entries)
        with self._lock:
            self._conn.executemany(
                "INSERT INTO file_access (path, last_access, access_count, size_bytes) VALUES (?, ?, 1, ?)"
                " ON CONFLICT(path) DO UPDATE SET last_access = MAX(last_access, excluded.last_access),"
                " access_count = access_count + 1, size_bytes = excluded.size_bytes",
                rows,
            )
            self._conn.commit()
        return len(rows)

    def last_access(self, path: str) -> float | None:
        rows = self._query("SELECT last_access FROM file_access WHERE path = ?", (path,))
        return rows[0]["last_access"] if rows else None

    def old_files(self, cutoff: float) -> list[tuple[str, float, int]]:
        """Tracked files not accessed since *cutoff*, oldest first."""
        rows = self._query(
            "SELECT path, last_access, size_bytes FROM file_access WHERE last_access < ?"
            " ORDER BY last_access, path",
            (cutoff,),
        )
        return [(r["path"], r["last_access"], r["size_bytes"]) for r in rows]

    def old_files_summary(self, cutoff: float) -> tuple[int, int]:
        """Return ``(count, total_size)`` of tracked files older than *cutoff*."""
        row = self._query(
            "SELECT COUNT(*) AS n, COALESCE(SUM(size_bytes), 0) AS total FROM file_access WHERE last_access < ?",
            (cutoff,),
        )[0]
        return row["n"], row["total"]

    def forget_file_access(self, path: str) -> bool:
        return self._execute("DELETE FROM file_access WHERE path = ?", (path,)).rowcount > 0

    # -- Cleaning history --------------------------------------------------

    def add_clean_session(
        self,
        timestamp: float,
        operation: str,
        freed_bytes: int,
        items_cleaned: int,
        items_failed: int,
    ) -> None:
        self._execute(
            "INSERT INTO clean_history (timestamp, operation, freed_bytes, items_cleaned, items_failed)"
            " VALUES (?, ?, ?, ?, ?)",
            (timestamp, operation, freed_bytes, items_cleaned, items_failed),
        )

    def clean_sessions(self, since: float | None = None) -> list[dict[str, Any]]:
        if since is None:
            rows = self._query("SELECT * FROM clean_history ORDER BY timestamp, id")
        else:
            rows = self._query(
                "SELECT * FROM clean_history WHERE timestamp >= ? ORDER BY timestamp, id",
                (since,),
            )
        return [dict(r) for r in rows]


def _row_to_trash(row: sqlite3.Row) -> TrashItem:
    metadata = None
    if row["metadata"]:
        try:
            raw = json.loads(row["metadata"])
            metadata = TrashMetadata(
                category=raw.get("category", ""),
                risk_tier=int(raw.get("risk_tier", 0)),
                reason=raw.get("reason", ""),
            )
        except (json.JSONDecodeError, TypeError, ValueError) as e:
            log.warning("Ignoring malformed metadata for trash item %s: %s", row["id"], e)
    return TrashItem(
        id=row["id"],
        original_path=Path(row["original_path"]),
        quarantine_path=Path(row["quarantine_path"]),
        deleted_at=_from_epoch(row["deleted_at"]),
        expires_at=_from_epoch(row["expires_at"]),
        size_bytes=row["size_bytes"],
        item_type=row["item_type"],
        metadata=metadata,
    )


def _row_to_event(row: sqlite3.Row) -> CacheEvent:
    return CacheEvent(
        path=row["path"],
        size_delta=row["size_delta"],
        kind=row["kind"],
        timestamp=row["timestamp"],
        source=row["source"],
    )
