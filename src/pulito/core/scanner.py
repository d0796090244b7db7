"""Bounded, read-only filesystem walk producing scan reports."""

from __future__ import annotations

import logging
import os
import stat as stat_mod
import threading
import time
from collections import deque
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path

import psutil

from pulito.core.classifier import Classification, Classifier
from pulito.core.duplicates import DuplicateDetector
from pulito.errors import PulitoError, ScanCancelled, ScanResourceLimit, ScanTimeout
from pulito.models.scan_result import (
    Category,
    FailedPass,
    FilesystemHealthReport,
    RiskTier,
    ScanItem,
    ScanReport,
    StorageRecoveryReport,
    item_id,
)

log = logging.getLogger(__name__)

GIB = 1024 ** 3

# Entries between two RSS measurements.
_MEMORY_CHECK_INTERVAL = 1000

# Depth of the dedicated walk over the downloads directory.
_DOWNLOADS_DEPTH = 2


class ScanPass(str, Enum):
    CACHES = "caches"
    PACKAGES = "packages"
    LOGS = "logs"
    FILESYSTEM_HEALTH = "filesystem_health"
    STORAGE_RECOVERY = "storage_recovery"


PASS_CATEGORIES: dict[ScanPass, frozenset[Category]] = {
    ScanPass.CACHES: frozenset({Category.CACHE}),
    ScanPass.PACKAGES: frozenset({Category.PACKAGE_ARTIFACT}),
    ScanPass.LOGS: frozenset({Category.LOG}),
    ScanPass.FILESYSTEM_HEALTH: frozenset({
        Category.EMPTY_DIRECTORY,
        Category.BROKEN_SYMLINK,
        Category.ORPHANED_TEMP_FILE,
    }),
    ScanPass.STORAGE_RECOVERY: frozenset({Category.LARGE_FILE, Category.OLD_DOWNLOAD, Category.DUPLICATE}),
}

ALL_PASSES = frozenset(ScanPass)


@dataclass(slots=True)
class ScanLimits:
    max_items: int = 50_000
    max_memory_mb: int = 500
    timeout: float = 300.0


@dataclass(slots=True)
class ScanOptions:
    include_hidden: bool = True
    max_depth: int = 10
    min_large_size: int = GIB
    passes: frozenset[ScanPass] = ALL_PASSES
    limits: ScanLimits = field(default_factory=ScanLimits)

    @property
    def categories(self) -> frozenset[Category]:
        return frozenset().union(*(PASS_CATEGORIES[p] for p in self.passes))


@dataclass(slots=True)
class _WalkState:
    """Everything the walk has collected so far, kept for partial reports."""

    classifier: Classifier
    started: float
    deadline: float
    items: dict[Path, ScanItem] = field(default_factory=dict)
    candidates: list[tuple[Path, os.stat_result]] = field(default_factory=list)
    visited: int = 0
    failed_passes: list[FailedPass] = field(default_factory=list)
    # Cache roots holding an entry that is not one of their reported cache files.
    unfoldable: set[Path] = field(default_factory=set)
    cache_files: dict[Path, int] = field(default_factory=dict)

    def add(self, item: ScanItem) -> None:
        """Keep the higher-tier item when a path is reported twice."""
        current = self.items.get(item.path)
        if current is None or item.risk_tier > current.risk_tier:
            self.items[item.path] = item


def _memory_mb() -> float:
    return psutil.Process().memory_info().rss / (1024 * 1024)


class Scanner:
    """Walks a tree with an explicit queue and classifies what it finds.

    Symlinks are never followed, protected directories are never entered
    and tier-5 entries never reach a report.  The walk stops with
    :class:`ScanTimeout` or :class:`ScanResourceLimit` (both carrying the
    partial report) or :class:`ScanCancelled`.
    """

    def __init__(
        self,
        classifier: Classifier,
        detector: DuplicateDetector | None = None,
    ) -> None:
        self.classifier = classifier
        self.detector = detector or DuplicateDetector(classifier)
        home = Path(classifier.policy.home)
        # Caches below these roots are folded into one item per application.
        self._per_app_cache_roots = (home / ".cache",)
        self._whole_cache_roots = (home / ".npm" / "_cacache", home / ".thumbnails")

    # -- Public operations -------------------------------------------------

    def scan(
        self,
        root: Path,
        options: ScanOptions | None = None,
        cancel: threading.Event | None = None,
    ) -> ScanReport:
        options = options or ScanOptions()
        root = Path(root)
        state = self._new_state(options)
        log.info("Scanning %s (passes: %s)", root, ", ".join(sorted(p.value for p in options.passes)))

        self._run_walk(root, options, state, cancel)
        if ScanPass.STORAGE_RECOVERY in options.passes:
            try:
                for group in self.detector.find_duplicates(state.candidates, cancel):
                    for dup in group.redundant:
                        state.add(dup)
                self._collect_stale_downloads(root, state, cancel)
            except (OSError, PulitoError) as e:
                if isinstance(e, ScanCancelled):
                    raise
                log.warning("Storage recovery pass failed: %s", e)
                state.failed_passes.append(FailedPass(ScanPass.STORAGE_RECOVERY.value, str(e)))

        report = self._report(root, state)
        log.info("Scan of %s found %d items in %.2fs", root, report.total_items, report.elapsed)
        return report

    def scan_filesystem_health(
        self,
        root: Path,
        options: ScanOptions | None = None,
        cancel: threading.Event | None = None,
    ) -> FilesystemHealthReport:
        options = self._single_pass(options, ScanPass.FILESYSTEM_HEALTH)
        state = self._new_state(options)
        self._run_walk(Path(root), options, state, cancel)

        report = FilesystemHealthReport(elapsed=time.monotonic() - state.started)
        for item in self._sorted(state.items.values()):
            match item.category:
                case Category.EMPTY_DIRECTORY:
                    report.empty_dirs.append(item)
                case Category.BROKEN_SYMLINK:
                    report.broken_symlinks.append(item)
                case Category.ORPHANED_TEMP_FILE:
                    report.orphaned_temp_files.append(item)
        return report

    def scan_storage_recovery(
        self,
        root: Path,
        options: ScanOptions | None = None,
        cancel: threading.Event | None = None,
    ) -> StorageRecoveryReport:
        options = self._single_pass(options, ScanPass.STORAGE_RECOVERY)
        root = Path(root)
        state = self._new_state(options)
        self._run_walk(root, options, state, cancel)

        report = StorageRecoveryReport()
        report.duplicate_groups = self.detector.find_duplicates(state.candidates, cancel)
        self._collect_stale_downloads(root, state, cancel)
        for item in state.items.values():
            if item.category is Category.LARGE_FILE:
                report.large_files.append(item)
            elif item.category is Category.OLD_DOWNLOAD:
                report.old_downloads.append(item)
        report.large_files.sort(key=lambda i: (-i.size_bytes, str(i.path)))
        report.old_downloads.sort(key=lambda i: (i.atime, str(i.path)))
        report.elapsed = time.monotonic() - state.started
        return report

    # -- Walk ----------------------------------------------------------------

    @staticmethod
    def _single_pass(options: ScanOptions | None, scan_pass: ScanPass) -> ScanOptions:
        options = options or ScanOptions()
        return ScanOptions(
            include_hidden=options.include_hidden,
            max_depth=options.max_depth,
            min_large_size=options.min_large_size,
            passes=frozenset({scan_pass}),
            limits=options.limits,
        )

    def _new_state(self, options: ScanOptions) -> _WalkState:
        classifier = self.classifier
        if options.min_large_size != classifier.policy.large_threshold:
            classifier = Classifier(replace(classifier.policy, large_threshold=options.min_large_size))
        started = time.monotonic()
        return _WalkState(
            classifier=classifier,
            started=started,
            deadline=started + options.limits.timeout,
        )

    def _run_walk(
        self,
        root: Path,
        options: ScanOptions,
        state: _WalkState,
        cancel: threading.Event | None,
    ) -> None:
        try:
            self._walk(root, options, state, cancel)
        except (ScanTimeout, ScanResourceLimit) as e:
            e.partial = self._report(root, state, partial=True)
            log.warning("Scan of %s stopped early: %s", root, e)
            raise

    def _walk(
        self,
        root: Path,
        options: ScanOptions,
        state: _WalkState,
        cancel: threading.Event | None,
    ) -> None:
        categories = options.categories
        want_duplicates = Category.DUPLICATE in categories
        limits = options.limits

        queue: deque[tuple[Path, int, os.stat_result | None]] = deque([(root, 0, None)])
        while queue:
            self._check_limits(state, limits, cancel)
            current, depth, current_st = queue.popleft()
            try:
                with os.scandir(current) as it:
                    entries = list(it)
            except OSError as e:
                log.debug("Cannot read %s: %s", current, e)
                self._keep_unfolded(state, current)
                continue

            if not entries and current_st is not None:
                self._emit(state, categories, current, current_st, empty_dir=True)
                continue

            for entry in entries:
                state.visited += 1
                if state.visited > limits.max_items:
                    raise ScanResourceLimit(f"Scan exceeded {limits.max_items} entries")
                if state.visited % _MEMORY_CHECK_INTERVAL == 0:
                    self._check_limits(state, limits, cancel, check_memory=True)

                path = Path(entry.path)
                if not options.include_hidden and entry.name.startswith("."):
                    self._keep_unfolded(state, path)
                    continue
                try:
                    st = entry.stat(follow_symlinks=False)
                except OSError as e:
                    log.debug("Cannot stat %s: %s", path, e)
                    self._keep_unfolded(state, path)
                    continue

                if stat_mod.S_ISLNK(st.st_mode):
                    self._keep_unfolded(state, path)
                    if not os.path.exists(entry.path):
                        self._emit(state, categories, path, st, link_broken=True)
                elif stat_mod.S_ISDIR(st.st_mode):
                    if state.classifier.is_protected(path):
                        log.debug("Not descending into protected %s", path)
                        self._keep_unfolded(state, path)
                    elif depth + 1 < options.max_depth:
                        queue.append((path, depth + 1, st))
                    else:
                        self._keep_unfolded(state, path)
                elif stat_mod.S_ISREG(st.st_mode):
                    found = self._emit(state, categories, path, st)
                    if want_duplicates and (found is None or found.tier < RiskTier.PROTECTED):
                        state.candidates.append((path, st))
                    self._count_cache_file(state, path)
                else:
                    self._keep_unfolded(state, path)

    def _keep_unfolded(self, state: _WalkState, path: Path) -> None:
        key = self._cache_root_for(path)
        if key is not None:
            state.unfoldable.add(key)

    def _count_cache_file(self, state: _WalkState, path: Path) -> None:
        key = self._cache_root_for(path)
        if key is None:
            return
        item = state.items.get(path)
        if item is None or item.category is not Category.CACHE:
            state.unfoldable.add(key)
        else:
            state.cache_files[key] = state.cache_files.get(key, 0) + 1

    def _check_limits(
        self,
        state: _WalkState,
        limits: ScanLimits,
        cancel: threading.Event | None,
        check_memory: bool = False,
    ) -> None:
        if cancel is not None and cancel.is_set():
            raise ScanCancelled("Scan cancelled")
        if time.monotonic() > state.deadline:
            raise ScanTimeout(f"Scan exceeded {limits.timeout:.0f}s")
        if check_memory:
            used = _memory_mb()
            if used > limits.max_memory_mb:
                raise ScanResourceLimit(f"Scan memory {used:.0f} MB exceeded {limits.max_memory_mb} MB")

    def _emit(
        self,
        state: _WalkState,
        categories: frozenset[Category],
        path: Path,
        st: os.stat_result,
        *,
        link_broken: bool = False,
        empty_dir: bool = False,
        old_download_allowed: bool = False,
    ) -> Classification | None:
        found = state.classifier.classify(path, st, link_broken=link_broken, empty_dir=empty_dir)
        if found is None or found.tier >= RiskTier.PROTECTED:
            return found
        if found.category not in categories:
            return found
        # Stale downloads come from the dedicated downloads walk.
        if found.category is Category.OLD_DOWNLOAD and not old_download_allowed:
            return found
        state.add(self._item(path, st, found, link_broken=link_broken, empty_dir=empty_dir))
        return found

    @staticmethod
    def _item(
        path: Path,
        st: os.stat_result,
        found: Classification,
        *,
        link_broken: bool = False,
        empty_dir: bool = False,
    ) -> ScanItem:
        if link_broken:
            item_type, size = "symlink", st.st_size
        elif empty_dir:
            item_type, size = "directory", 0
        else:
            item_type, size = "file", st.st_size
        return ScanItem(
            id=item_id(path, found.category),
            path=path,
            size_bytes=size,
            category=found.category,
            risk_tier=found.tier,
            description=found.reason,
            item_type=item_type,
            mtime=st.st_mtime,
            atime=st.st_atime,
        )

    def _collect_stale_downloads(
        self,
        root: Path,
        state: _WalkState,
        cancel: threading.Event | None,
    ) -> None:
        downloads = state.classifier.policy.downloads_dir
        if downloads is None or not downloads.is_dir():
            return
        if not (downloads == root or downloads.is_relative_to(root)):
            return

        stack: list[tuple[Path, int]] = [(downloads, 0)]
        while stack:
            if cancel is not None and cancel.is_set():
                raise ScanCancelled("Scan cancelled")
            current, depth = stack.pop()
            try:
                with os.scandir(current) as it:
                    entries = list(it)
            except OSError as e:
                log.debug("Cannot read %s: %s", current, e)
                continue
            for entry in entries:
                path = Path(entry.path)
                try:
                    st = entry.stat(follow_symlinks=False)
                except OSError:
                    continue
                if stat_mod.S_ISDIR(st.st_mode):
                    if depth + 1 < _DOWNLOADS_DEPTH and not state.classifier.is_protected(path):
                        stack.append((path, depth + 1))
                elif stat_mod.S_ISREG(st.st_mode):
                    self._emit(state, frozenset({Category.OLD_DOWNLOAD}), path, st, old_download_allowed=True)

    # -- Report assembly -----------------------------------------------------

    def _report(self, root: Path, state: _WalkState, partial: bool = False) -> ScanReport:
        items = list(state.items.values())
        if not partial:
            items = self._fold_caches(items, root, state)
        return ScanReport.build(
            root=root,
            items=self._sorted(items),
            elapsed=time.monotonic() - state.started,
            failed_passes=state.failed_passes,
            partial=partial,
        )

    @staticmethod
    def _sorted(items) -> list[ScanItem]:
        return sorted(items, key=lambda i: (i.category.value, str(i.path)))

    def _cache_root_for(self, path: Path) -> Path | None:
        for root in self._per_app_cache_roots:
            if path.is_relative_to(root):
                rel = path.relative_to(root)
                return root / rel.parts[0] if len(rel.parts) > 1 else None
        for root in self._whole_cache_roots:
            if path.is_relative_to(root):
                return root
        return None

    def _fold_caches(self, items: list[ScanItem], root: Path, state: _WalkState) -> list[ScanItem]:
        """Group cache files below well-known cache roots into one item per cache.

        A cache is folded only when the walk saw all of it and every entry
        inside is one of its reported cache files, so removing the folded
        directory removes exactly what its children describe.
        """
        folded: dict[Path, list[ScanItem]] = {}
        out: list[ScanItem] = []
        for item in items:
            key = self._cache_root_for(item.path) if item.category is Category.CACHE else None
            if key is None:
                out.append(item)
            else:
                folded.setdefault(key, []).append(item)
        for key, children in folded.items():
            complete = (
                (key == root or key.is_relative_to(root))
                and key not in state.unfoldable
                and len(children) == state.cache_files.get(key)
            )
            if complete:
                out.append(ScanItem.directory(key, children, Category.CACHE, description=f"{key.name} cache"))
            else:
                log.debug("Reporting %d files of %s individually", len(children), key)
                out.extend(children)
        return out
