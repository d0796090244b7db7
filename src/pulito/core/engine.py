"""Operation surface shared by the CLI and the D-Bus service."""

from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import Any, Callable

from pulito.core.analytics import CacheSampler, compute_cache_analytics
from pulito.core.classifier import Classifier, ClassifierPolicy
from pulito.core.duplicates import DuplicateDetector
from pulito.core.packages import (
    USER_PACKAGE_CACHES,
    AptBackend,
    PackageResolver,
    PacmanBackend,
    clean_packages,
    detect_backend,
)
from pulito.core.scanner import ALL_PASSES, ScanLimits, ScanOptions, ScanPass, Scanner
from pulito.core.tracker import Tracker
from pulito.core.trash import TrashEngine
from pulito.core.validator import PathValidator
from pulito.core.worker import OperationClass, OperationRunner
from pulito.errors import NotFound, PulitoError
from pulito.models.cache_event import CacheAnalytics, CacheEvent
from pulito.models.clean_result import CleanResult
from pulito.models.package import PackageRecord
from pulito.models.scan_result import (
    Category,
    FilesystemHealthReport,
    OldFilesSummary,
    RiskTier,
    ScanItem,
    ScanReport,
    StorageRecoveryReport,
)
from pulito.models.trash_item import TrashListing
from pulito.settings import PulitoConfig
from pulito.storage import RecordStore

log = logging.getLogger(__name__)

_SCAN = "scan"
_CLEAN = "clean"

OLD_FILE_DAYS = 90
OLD_FILE_RETENTION_DAYS = 30


def _cutoff(days: int) -> float:
    if days < 1:
        raise ValueError("days must be at least 1")
    return time.time() - days * 86_400


class PulitoEngine:
    """Wires the core components together and runs every operation
    through the :class:`OperationRunner`.

    The engine keeps the items of the most recent scan so that a later
    :meth:`clean` can be driven by item ids alone.
    """

    def __init__(
        self,
        config: PulitoConfig | None = None,
        store: RecordStore | None = None,
        runner: OperationRunner | None = None,
        backend: AptBackend | PacmanBackend | None = None,
        detect_packages: bool = True,
    ) -> None:
        self.config = config or PulitoConfig.from_settings()
        home = Path(self.config.home).resolve()
        self.home = home
        self.store = store or RecordStore(self.config.db_path)
        self.runner = runner or OperationRunner()

        quarantine_root = self.config.quarantine_root
        quarantine_root.mkdir(parents=True, exist_ok=True)
        self.validator = PathValidator(
            home=home,
            quarantine_root=quarantine_root,
            package_cache_dirs=[home / rel for rel in USER_PACKAGE_CACHES],
            data_dir=self.config.data_dir,
        )
        self.classifier = Classifier(ClassifierPolicy(
            home=home,
            large_threshold=self.config.large_file_threshold,
            old_download_days=self.config.old_download_days,
            temp_age_days=self.config.temp_age_days,
            protected_paths=(quarantine_root.resolve(), self.config.data_dir.resolve()),
        ))
        self.detector = DuplicateDetector(
            self.classifier,
            min_size=self.config.duplicate_min_size,
            max_workers=self.config.duplicate_workers,
        )
        self.scanner = Scanner(self.classifier, self.detector)
        self.trash = TrashEngine(
            self.store,
            self.validator,
            quarantine_root,
            retention_days=self.config.retention_days,
            log_retention_days=self.config.log_retention_days,
            is_protected=self.classifier.is_protected,
        )
        if backend is None and detect_packages:
            backend = detect_backend()
        self.resolver = PackageResolver(backend)
        self.sampler = CacheSampler(self.store, home)
        self.tracker = Tracker(self.store)

        self._last_items: dict[str, ScanItem] = {}
        self._items_lock = threading.Lock()

        orphans = self.trash.reconcile()
        if orphans:
            log.warning("%d orphaned quarantine entries need manual recovery", len(orphans))

    # -- Scanning ----------------------------------------------------------

    def scan_options(
        self,
        passes: frozenset[ScanPass] | None = None,
        include_hidden: bool | None = None,
        max_depth: int | None = None,
    ) -> ScanOptions:
        return ScanOptions(
            include_hidden=self.config.include_hidden if include_hidden is None else include_hidden,
            max_depth=self.config.max_depth if max_depth is None else max_depth,
            min_large_size=self.config.large_file_threshold,
            passes=passes or ALL_PASSES,
            limits=ScanLimits(
                max_items=self.config.max_items,
                max_memory_mb=self.config.max_memory_mb,
                timeout=self.config.scan_timeout,
            ),
        )

    def scan(self, root: Path | None = None, options: ScanOptions | None = None) -> ScanReport:
        root = Path(root) if root else self.home
        options = options or self.scan_options()
        report = self.runner.run(
            lambda cancel: self.scanner.scan(root, options, cancel),
            OperationClass.LONG,
            exclusive=_SCAN,
        )
        self._remember(report.iter_items())
        return report

    def scan_filesystem_health(self, root: Path | None = None) -> FilesystemHealthReport:
        root = Path(root) if root else self.home
        options = self.scan_options()
        report = self.runner.run(
            lambda cancel: self.scanner.scan_filesystem_health(root, options, cancel),
            OperationClass.MEDIUM,
            exclusive=_SCAN,
        )
        self._remember([*report.empty_dirs, *report.broken_symlinks, *report.orphaned_temp_files])
        return report

    def scan_storage_recovery(self, root: Path | None = None) -> StorageRecoveryReport:
        root = Path(root) if root else self.home
        options = self.scan_options()
        report = self.runner.run(
            lambda cancel: self.scanner.scan_storage_recovery(root, options, cancel),
            OperationClass.LONG,
            exclusive=_SCAN,
        )
        items = [*report.large_files, *report.old_downloads]
        for group in report.duplicate_groups:
            items.extend(group.redundant)
        self._remember(items)
        self._track_access([
            *report.large_files,
            *report.old_downloads,
            *(f for group in report.duplicate_groups for f in group.files),
        ])
        return report

    def _track_access(self, items: list[ScanItem]) -> None:
        """Remember when the storage-recovery candidates were last used."""
        entries = {str(i.path): (str(i.path), max(i.atime, i.mtime), i.size_bytes) for i in items}
        if entries:
            self.store.record_file_accesses(entries.values())
            log.debug("Tracked access times of %d files", len(entries))

    def _remember(self, items) -> None:
        with self._items_lock:
            self._last_items = {item.id: item for item in items}

    def last_item(self, item_id: str) -> ScanItem | None:
        with self._items_lock:
            return self._last_items.get(item_id)

    # -- Cleaning ----------------------------------------------------------

    def clean(
        self,
        item_ids: list[str],
        use_trash: bool = True,
        retention_days: int | None = None,
    ) -> CleanResult:
        """Clean items of the last scan, referenced by id."""
        with self._items_lock:
            known = {i: self._last_items[i] for i in item_ids if i in self._last_items}
        missing = [i for i in item_ids if i not in known]
        ids = [i for i in item_ids if i in known]
        result = self.clean_items(ids, [known[i].path for i in ids], use_trash, retention_days)
        for item_id in missing:
            result.add_failure(item_id, NotFound("not part of the last scan"))
        return result

    def clean_items(
        self,
        ids: list[str],
        paths: list[Path | str],
        use_trash: bool = True,
        retention_days: int | None = None,
    ) -> CleanResult:
        with self._items_lock:
            metadata = {i: self._last_items[i] for i in ids if i in self._last_items}
        result = self.runner.run(
            lambda cancel: self.trash.clean_items(ids, paths, use_trash, retention_days, metadata, cancel),
            OperationClass.LONG,
            exclusive=_CLEAN,
        )
        self._record(result)
        with self._items_lock:
            for item_id in ids:
                self._last_items.pop(item_id, None)
        return result

    def _record(self, result: CleanResult) -> None:
        if result.cleaned:
            self.tracker.record([result])
            self.tracker.save_session()

    # -- Trash -------------------------------------------------------------

    def trash_list(self) -> TrashListing:
        return self._short(lambda cancel: self.trash.list())

    def trash_restore(self, trash_id: str) -> Path:
        return self._short(lambda cancel: self.trash.restore(trash_id))

    def trash_delete(self, trash_id: str) -> int:
        return self._short(lambda cancel: self.trash.purge(trash_id))

    def trash_empty(self) -> int:
        return self.runner.run(lambda cancel: self.trash.empty(), OperationClass.LONG, exclusive=_CLEAN)

    def trash_sweep(self) -> int:
        return self.runner.run(lambda cancel: self.trash.sweep_expired(), OperationClass.MEDIUM)

    def _short(self, fn: Callable[[threading.Event], Any]) -> Any:
        return self.runner.run(fn, OperationClass.SHORT)

    # -- Old files ---------------------------------------------------------

    def old_files_summary(self, days: int = OLD_FILE_DAYS) -> OldFilesSummary:
        """Count and size of tracked files not accessed for *days* days."""
        cutoff = _cutoff(days)
        count, size = self._short(lambda cancel: self.store.old_files_summary(cutoff))
        return OldFilesSummary(total_files=count, total_size=size, cutoff_days=days)

    def cleanup_old_files(self, days: int = OLD_FILE_DAYS) -> CleanResult:
        """Quarantine tracked files not accessed for *days* days.

        Each file is checked again before it is moved: a file that has
        disappeared counts as a failure and is forgotten, a file used since
        it was recorded is skipped and its record refreshed.
        """
        cutoff = _cutoff(days)

        def _run(cancel: threading.Event) -> CleanResult:
            result = CleanResult(operation="old_files")
            for path_str, _, _ in self.store.old_files(cutoff):
                if cancel.is_set():
                    result.add_failure(path_str, "cancelled")
                    continue
                path = Path(path_str)
                try:
                    st = path.stat()
                except FileNotFoundError:
                    self.store.forget_file_access(path_str)
                    result.add_failure(path_str, "file no longer exists")
                    continue
                except OSError as e:
                    result.add_failure(path_str, e)
                    continue
                used = max(st.st_atime, st.st_mtime)
                if used >= cutoff:
                    self.store.record_file_access(path_str, used, st.st_size)
                    log.debug("Skipping %s, used since it was tracked", path)
                    continue
                try:
                    item = self.trash.quarantine(
                        path,
                        Category.OLD_FILE,
                        RiskTier.OLD_DOWNLOAD,
                        f"File not accessed in {days} days",
                        retention_days=OLD_FILE_RETENTION_DAYS,
                    )
                except (OSError, PulitoError) as e:
                    log.warning("Failed to clean old file %s: %s", path, e)
                    result.add_failure(path_str, e)
                    continue
                self.store.forget_file_access(path_str)
                result.add_success(item.size_bytes, item.id)
            log.info("Cleaned %d old files (%d failed)", result.cleaned, result.failed)
            return result

        result = self.runner.run(_run, OperationClass.LONG, exclusive=_CLEAN)
        self._record(result)
        return result

    # -- Packages ----------------------------------------------------------

    def find_orphans(self) -> list[PackageRecord]:
        return self.runner.run(lambda cancel: self.resolver.orphans(), OperationClass.MEDIUM)

    def clean_packages(self) -> CleanResult:
        result = self.runner.run(
            lambda cancel: clean_packages(self.resolver, self.trash, self.home),
            OperationClass.LONG,
            exclusive=_CLEAN,
        )
        self._record(result)
        return result

    # -- Analytics and statistics ------------------------------------------

    def cache_analytics(self, sample: bool = True) -> CacheAnalytics:
        def _run(cancel: threading.Event) -> CacheAnalytics:
            if sample:
                self.sampler.sample()
            now = time.time()
            events = self.store.cache_events(since=now - 30 * 86_400)
            return compute_cache_analytics(events, now, self.sampler.current_sizes())

        return self.runner.run(_run, OperationClass.MEDIUM)

    def recent_cache_events(self, limit: int = 50) -> list[CacheEvent]:
        return self._short(lambda cancel: self.store.recent_cache_events(limit))

    def stats(self, period: str = "all") -> dict[str, Any]:
        return self.runner.run(lambda cancel: self.tracker.get_stats(period), OperationClass.MEDIUM)

    def close(self) -> None:
        self.runner.shutdown()
        self.store.close()
