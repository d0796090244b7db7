"""Tracks freed space across sessions."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from pulito.models.clean_result import CleanResult
from pulito.storage import RecordStore

log = logging.getLogger(__name__)


class Tracker:
    """Tracks and persists cleaning statistics."""

    def __init__(self, store: RecordStore) -> None:
        self._store = store
        self._session_results: list[CleanResult] = []

    @property
    def session_bytes_freed(self) -> int:
        """Total bytes freed in the current session."""
        return sum(r.freed_bytes for r in self._session_results)

    @property
    def session_items_cleaned(self) -> int:
        """Total items cleaned in the current session."""
        return sum(r.cleaned for r in self._session_results)

    def record(self, results: list[CleanResult]) -> None:
        """Record cleaning results for the current session."""
        self._session_results.extend(results)

    def get_last_clean_time(self) -> str | None:
        """Return ISO timestamp of the most recent cleaning session, or None."""
        sessions = self._store.clean_sessions()
        if not sessions:
            return None
        return datetime.fromtimestamp(sessions[-1]["timestamp"], tz=timezone.utc).isoformat()

    def save_session(self) -> None:
        """Persist the current session to history."""
        if not self._session_results:
            return

        now = datetime.now(timezone.utc).timestamp()
        for r in self._session_results:
            self._store.add_clean_session(now, r.operation or "clean", r.freed_bytes, r.cleaned, r.failed)

        log.info(
            "Saved session: %d bytes freed from %d operations",
            self.session_bytes_freed,
            len({r.operation for r in self._session_results}),
        )
        self._session_results.clear()

    def get_stats(self, period: str = "all") -> dict[str, Any]:
        """Get aggregated statistics for a time period.

        Args:
            period: One of 'today', 'week', 'month', 'all'.
        """
        match period:
            case "today":
                cutoff = _start_of_today()
            case "week":
                cutoff = _start_of_today() - timedelta(days=7)
            case "month":
                cutoff = _start_of_today() - timedelta(days=30)
            case _:
                cutoff = None

        all_rows = self._store.clean_sessions()
        if cutoff is not None:
            since = cutoff.timestamp()
            rows = [r for r in all_rows if r["timestamp"] >= since]
        else:
            rows = all_rows

        return {
            "period": period,
            "bytes_freed": sum(r["freed_bytes"] for r in rows),
            "items_cleaned": sum(r["items_cleaned"] for r in rows),
            "items_failed": sum(r["items_failed"] for r in rows),
            "session_count": len({r["timestamp"] for r in rows}),
            "lifetime_bytes_freed": sum(r["freed_bytes"] for r in all_rows),
            "per_operation": self._aggregate(rows),
        }

    @staticmethod
    def _aggregate(rows: list[dict[str, Any]]) -> dict[str, dict[str, int]]:
        totals: dict[str, dict[str, int]] = {}
        for row in rows:
            entry = totals.setdefault(row["operation"], {"bytes_freed": 0, "items_cleaned": 0})
            entry["bytes_freed"] += row["freed_bytes"]
            entry["items_cleaned"] += row["items_cleaned"]
        return totals


def _start_of_today() -> datetime:
    """Return the start of the current UTC day."""
    now = datetime.now(timezone.utc)
    return now.replace(hour=0, minute=0, second=0, microsecond=0)
