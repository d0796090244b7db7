"""D-Bus service for GUI communication.

D-Bus methods use PascalCase per D-Bus convention, and type signatures
like "as" and "(ss)" are D-Bus protocol types, not Python syntax.

Every method returns a JSON string.  Failures come back as
``{"error": ..., "kind": ...}`` so that clients can tell a security
rejection from a missing trash entry without parsing messages.
"""

from __future__ import annotations

import asyncio
import json
import logging
from functools import wraps
from pathlib import Path
from typing import Any, Callable

from dbus_next import BusType
from dbus_next.aio import MessageBus
from dbus_next.service import ServiceInterface, method, signal

from pulito.core.engine import OLD_FILE_DAYS, PulitoEngine
from pulito.core.scanner import ScanPass
from pulito.errors import PulitoError, ScanResourceLimit, ScanTimeout, SecurityViolation
from pulito.models.scan_result import item_id

log = logging.getLogger(__name__)

_BUS_NAME = "io.github.pulito"
_OBJECT_PATH = "/io/github/pulito"
_INTERFACE = "io.github.pulito.Manager"

# Periodic sweep of expired trash while the service runs.
_SWEEP_INTERVAL = 6 * 3600


def error_payload(exc: Exception) -> dict[str, Any]:
    payload: dict[str, Any] = {"error": str(exc), "kind": type(exc).__name__}
    if isinstance(exc, SecurityViolation):
        payload["check"] = exc.check
        payload["path"] = str(exc.path)
    return payload


def _json_reply(fn: Callable[..., Any]) -> Callable[..., str]:
    """Serialize the return value of *fn*, or the PulitoError it raised."""

    @wraps(fn)
    def wrapper(*args: Any, **kwargs: Any) -> str:
        try:
            return json.dumps(fn(*args, **kwargs))
        except (ScanTimeout, ScanResourceLimit) as e:
            payload = error_payload(e)
            if e.partial is not None:
                payload["partial"] = e.partial.to_dict()
            return json.dumps(payload)
        except (PulitoError, ValueError) as e:
            log.warning("%s failed: %s", fn.__name__, e)
            return json.dumps(error_payload(e))

    return wrapper


# noinspection PyPep8Naming
class PulitoDBusService(ServiceInterface):
    """D-Bus service interface for Pulito."""

    def __init__(self, engine: PulitoEngine | None = None) -> None:
        super().__init__(_INTERFACE)
        self._engine = engine or PulitoEngine()

    # -- Scanning ----------------------------------------------------------

    @method()
    def Scan(self, root: "s", passes: "as") -> "s":  # type: ignore[override]
        """Scan *root* (home when empty) with the given passes (all when empty)."""
        return self.scan(root, list(passes))

    @_json_reply
    def scan(self, root: str, passes: list[str]) -> dict[str, Any]:
        self.ScanProgress("scan", "started")
        options = self._engine.scan_options(passes=frozenset(ScanPass(p) for p in passes) or None)
        report = self._engine.scan(Path(root) if root else None, options)
        self.ScanProgress("scan", "finished")
        return report.to_dict()

    @method()
    def ScanFilesystemHealth(self, root: "s") -> "s":  # type: ignore[override]
        return self.scan_filesystem_health(root)

    @_json_reply
    def scan_filesystem_health(self, root: str) -> dict[str, Any]:
        return self._engine.scan_filesystem_health(Path(root) if root else None).to_dict()

    @method()
    def ScanStorageRecovery(self, root: "s") -> "s":  # type: ignore[override]
        return self.scan_storage_recovery(root)

    @_json_reply
    def scan_storage_recovery(self, root: str) -> dict[str, Any]:
        return self._engine.scan_storage_recovery(Path(root) if root else None).to_dict()

    # -- Cleaning ----------------------------------------------------------

    @method()
    def Clean(self, item_ids: "as", use_trash: "b", retention_days: "u") -> "s":  # type: ignore[override]
        """Clean items of the last scan; a retention of 0 uses the configured default."""
        return self.clean(list(item_ids), use_trash, retention_days)

    @_json_reply
    def clean(self, item_ids: list[str], use_trash: bool, retention_days: int) -> dict[str, Any]:
        result = self._engine.clean(item_ids, use_trash=use_trash, retention_days=retention_days or None)
        self.CleanProgress(result.operation, result.freed_bytes, result.cleaned)
        return result.to_dict()

    @method()
    def CleanPaths(self, paths: "as", use_trash: "b") -> "s":  # type: ignore[override]
        return self.clean_paths(list(paths), use_trash)

    @_json_reply
    def clean_paths(self, paths: list[str], use_trash: bool) -> dict[str, Any]:
        result = self._engine.clean_items([item_id(p) for p in paths], paths, use_trash=use_trash)
        self.CleanProgress(result.operation, result.freed_bytes, result.cleaned)
        return result.to_dict()

    # -- Trash -------------------------------------------------------------

    @method()
    def ListTrash(self) -> "s":  # type: ignore[override]
        return self.list_trash()

    @_json_reply
    def list_trash(self) -> dict[str, Any]:
        return self._engine.trash_list().to_dict()

    @method()
    def RestoreTrash(self, trash_id: "s") -> "s":  # type: ignore[override]
        return self.restore_trash(trash_id)

    @_json_reply
    def restore_trash(self, trash_id: str) -> dict[str, Any]:
        return {"restored": str(self._engine.trash_restore(trash_id))}

    @method()
    def DeleteTrash(self, trash_id: "s") -> "s":  # type: ignore[override]
        return self.delete_trash(trash_id)

    @_json_reply
    def delete_trash(self, trash_id: str) -> dict[str, Any]:
        return {"freed_bytes": self._engine.trash_delete(trash_id)}

    @method()
    def EmptyTrash(self) -> "s":  # type: ignore[override]
        return self.empty_trash()

    @_json_reply
    def empty_trash(self) -> dict[str, Any]:
        return {"deleted": self._engine.trash_empty()}

    # -- Packages ----------------------------------------------------------

    @method()
    def ListOrphans(self) -> "s":  # type: ignore[override]
        return self.list_orphans()

    @_json_reply
    def list_orphans(self) -> list[dict[str, Any]]:
        return [
            {"name": r.name, "version": r.version, "size_bytes": r.size_bytes}
            for r in self._engine.find_orphans()
        ]

    @method()
    def CleanPackages(self) -> "s":  # type: ignore[override]
        return self.clean_packages()

    @_json_reply
    def clean_packages(self) -> dict[str, Any]:
        result = self._engine.clean_packages()
        self.CleanProgress(result.operation, result.freed_bytes, result.cleaned)
        return result.to_dict()

    # -- Old files ---------------------------------------------------------

    @method()
    def GetOldFilesSummary(self, days: "u") -> "s":  # type: ignore[override]
        """Summarize tracked files not accessed for *days* days (0 for the default)."""
        return self.old_files_summary(days)

    @_json_reply
    def old_files_summary(self, days: int) -> dict[str, Any]:
        return self._engine.old_files_summary(days or OLD_FILE_DAYS).to_dict()

    @method()
    def CleanupOldFiles(self, days: "u") -> "s":  # type: ignore[override]
        return self.cleanup_old_files(days)

    @_json_reply
    def cleanup_old_files(self, days: int) -> dict[str, Any]:
        result = self._engine.cleanup_old_files(days or OLD_FILE_DAYS)
        self.CleanProgress(result.operation, result.freed_bytes, result.cleaned)
        return result.to_dict()

    # -- Analytics ---------------------------------------------------------

    @method()
    def GetCacheAnalytics(self) -> "s":  # type: ignore[override]
        return self.cache_analytics()

    @_json_reply
    def cache_analytics(self) -> dict[str, Any]:
        return self._engine.cache_analytics().to_dict()

    @method()
    def GetRecentCacheEvents(self, limit: "u") -> "s":  # type: ignore[override]
        return self.recent_cache_events(limit)

    @_json_reply
    def recent_cache_events(self, limit: int) -> list[dict[str, Any]]:
        return [e.to_dict() for e in self._engine.recent_cache_events(limit or 50)]

    @method()
    def GetStats(self, period: "s") -> "s":  # type: ignore[override]
        """Get statistics for a time period."""
        return self.stats(period)

    @_json_reply
    def stats(self, period: str) -> dict[str, Any]:
        return self._engine.stats(period or "all")

    @signal()
    def ScanProgress(self, operation: str, status: str) -> "(ss)":  # type: ignore[override]
        return [operation, status]

    @signal()
    def CleanProgress(self, operation: str, bytes_freed: int, items_done: int) -> "(sti)":  # type: ignore[override]
        return [operation, bytes_freed, items_done]


async def _sweep_periodically(engine: PulitoEngine) -> None:
    loop = asyncio.get_running_loop()
    while True:
        try:
            swept = await loop.run_in_executor(None, engine.trash_sweep)
            if swept:
                log.info("Swept %d expired trash items", swept)
        except PulitoError as e:
            log.warning("Trash sweep failed: %s", e)
        await asyncio.sleep(_SWEEP_INTERVAL)


async def run_service() -> None:
    """Start the D-Bus service."""
    engine = PulitoEngine()
    bus = await MessageBus(bus_type=BusType.SESSION).connect()
    service = PulitoDBusService(engine)
    bus.export(_OBJECT_PATH, service)
    await bus.request_name(_BUS_NAME)
    log.info("D-Bus service started on %s", _BUS_NAME)
    sweeper = asyncio.create_task(_sweep_periodically(engine))
    try:
        await bus.wait_for_disconnect()
    finally:
        sweeper.cancel()
        engine.close()


def start_service() -> None:
    """Entry point to start the D-Bus service."""
    asyncio.run(run_service())
