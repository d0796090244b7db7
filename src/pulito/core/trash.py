"""Recoverable, time-bounded quarantine for deleted files."""

from __future__ import annotations

import errno
import logging
import os
import shutil
import sqlite3
import threading
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Iterator, Mapping, Sequence

from pulito.core.analytics import cache_dir_for, source_for
from pulito.core.classifier import Classifier, ClassifierPolicy
from pulito.core.validator import Intent, PathValidator
from pulito.errors import (
    DestinationExists,
    NotFound,
    OperationBusy,
    PulitoError,
    QuarantineError,
    SecurityViolation,
    SourceMissing,
)
from pulito.models.cache_event import EVENT_CLEANUP, CacheEvent
from pulito.models.clean_result import CleanResult
from pulito.models.scan_result import Category, RiskTier, ScanItem
from pulito.models.trash_item import TrashItem, TrashListing, TrashMetadata
from pulito.storage import RecordStore
from pulito.utils import item_type_of, path_size

log = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS = 3
DEFAULT_LOG_RETENTION_DAYS = 7

# Seconds to wait for the writer lock before reporting the trash as busy.
_LOCK_TIMEOUT = 10.0

# Keep quarantine object names well below NAME_MAX.
_MAX_NAME_BYTES = 200

_CATEGORY_INTENTS = {
    Category.CACHE: Intent.CACHE_CLEANUP,
    Category.LOG: Intent.LOG_CLEANUP,
}


def _remove_path(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink()


def _object_name(item_id: str, name: str) -> str:
    encoded = name.encode("utf-8", "surrogateescape")[:_MAX_NAME_BYTES]
    return f"{item_id}__{encoded.decode('utf-8', 'ignore')}"


class TrashEngine:
    """Moves items into a private quarantine and back.

    An item is Active while it has both a record and a quarantine object;
    it becomes Restored or Purged when both are gone.  Quarantine moves
    the object before writing the record; restore and purge handle the
    object before deleting the record, so an interruption leaves at worst
    an orphaned object or a dangling record, both of which
    :meth:`reconcile` repairs.
    """

    def __init__(
        self,
        store: RecordStore,
        validator: PathValidator,
        quarantine_root: Path,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        log_retention_days: int = DEFAULT_LOG_RETENTION_DAYS,
        clock: Callable[[], datetime] | None = None,
        lock_timeout: float = _LOCK_TIMEOUT,
        is_protected: Callable[[Path], bool] | None = None,
    ) -> None:
        if retention_days < 1 or log_retention_days < 1:
            raise ValueError("Retention must be at least one day")
        self._store = store
        self._validator = validator
        self.files_dir = Path(quarantine_root) / "files"
        self.files_dir.mkdir(parents=True, exist_ok=True)
        self.files_dir = self.files_dir.resolve()
        self.quarantine_root = self.files_dir.parent
        self.retention_days = retention_days
        self.log_retention_days = log_retention_days
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock_timeout = lock_timeout
        self._lock = threading.Lock()
        self._poisoned = False
        self._is_protected = is_protected or Classifier(ClassifierPolicy(home=validator.home)).is_protected

    # -- Locking -----------------------------------------------------------

    @contextmanager
    def _writer(self) -> Iterator[None]:
        """Single-writer section for compound record operations.

        A caller that cannot get the lock in time gets :class:`OperationBusy`
        while the current holder carries on.  When the previous holder
        failed mid-operation, state is rebuilt from the on-disk records
        before the caller proceeds.
        """
        if not self._lock.acquire(timeout=self._lock_timeout):
            log.warning("Trash lock not acquired within %.0fs", self._lock_timeout)
            raise OperationBusy("Another trash operation is still running")
        try:
            if self._poisoned:
                log.warning("Previous trash operation failed mid-way, rebuilding state")
                self._reconcile_locked()
            self._poisoned = False
            yield
        except PulitoError:
            raise
        except BaseException:
            self._poisoned = True
            raise
        finally:
            self._lock.release()

    # -- Operations --------------------------------------------------------

    def quarantine(
        self,
        path: Path | str,
        category: Category | None = None,
        tier: RiskTier = RiskTier.SAFE,
        reason: str = "",
        retention_days: int | None = None,
        intent: Intent = Intent.DELETION,
    ) -> TrashItem:
        """Move *path* into quarantine and record it."""
        if tier >= RiskTier.PROTECTED:
            raise SecurityViolation("protected", path, "protected items are never removed")
        if retention_days is None:
            retention_days = self.log_retention_days if category is Category.LOG else self.retention_days
        if retention_days < 1:
            raise ValueError("Retention must be at least one day")

        source = self._validator.validate(path, intent)
        self._refuse_protected(source)
        size = path_size(source)
        kind = item_type_of(source)
        trash_id = uuid.uuid4().hex
        dest = self.files_dir / _object_name(trash_id, source.name)
        deleted_at = self._clock()
        item = TrashItem(
            id=trash_id,
            original_path=source,
            quarantine_path=dest,
            deleted_at=deleted_at,
            expires_at=deleted_at + timedelta(days=retention_days),
            size_bytes=size,
            item_type=kind,
            metadata=TrashMetadata(
                category=category.value if category is not None else "",
                risk_tier=int(tier),
                reason=reason,
            ),
        )

        with self._writer():
            self._move(source, dest)
            try:
                self._store.insert_trash(item)
            except sqlite3.Error as e:
                log.error("Could not record %s, moving it back: %s", source, e)
                self._move(dest, source)
                raise QuarantineError(f"Could not record quarantined item {source}: {e}") from e

        if category is Category.CACHE:
            self._record_cache_cleanup(source, size)
        log.info("Quarantined %s as %s (%d bytes)", source, trash_id, size)
        return item

    def restore(self, trash_id: str) -> Path:
        """Move a quarantined item back to its original location."""
        with self._writer():
            item = self._store.get_trash(trash_id)
            if item is None:
                raise NotFound(f"No trash item {trash_id}")
            if not os.path.lexists(item.quarantine_path):
                raise SourceMissing(f"Quarantine object for {trash_id} is missing: {item.quarantine_path}")
            target = self._validator.validate(item.original_path, Intent.RESTORE)
            if os.path.lexists(target):
                raise DestinationExists(f"Cannot restore {trash_id}: {target} already exists")
            target.parent.mkdir(parents=True, exist_ok=True)
            self._move(item.quarantine_path, target)
            self._store.delete_trash(trash_id)
        log.info("Restored %s to %s", trash_id, target)
        return target

    def purge(self, trash_id: str) -> int:
        """Permanently delete a quarantined item; returns the bytes freed."""
        with self._writer():
            return self._purge_locked(trash_id)

    def sweep_expired(self, now: datetime | None = None) -> int:
        """Purge every item whose retention has elapsed."""
        now = now or self._clock()
        purged = 0
        with self._writer():
            for item in self._store.expired_trash(now):
                try:
                    self._purge_locked(item.id)
                    purged += 1
                except (OSError, PulitoError) as e:
                    log.warning("Could not purge expired item %s: %s", item.id, e)
        if purged:
            log.info("Swept %d expired trash items", purged)
        return purged

    def empty(self) -> int:
        purged = 0
        with self._writer():
            for item in self._store.list_trash():
                try:
                    self._purge_locked(item.id)
                    purged += 1
                except (OSError, PulitoError) as e:
                    log.warning("Could not purge %s: %s", item.id, e)
        return purged

    def list(self) -> TrashListing:
        return TrashListing(items=self._store.list_trash())

    def clean_items(
        self,
        ids: Sequence[str],
        paths: Sequence[Path | str],
        use_trash: bool = True,
        retention_days: int | None = None,
        metadata: Mapping[str, ScanItem] | None = None,
        cancel: threading.Event | None = None,
    ) -> CleanResult:
        """Remove a batch of items, accounting for each one exactly once.

        ``ids`` and ``paths`` are parallel.  ``metadata`` maps an id to the
        scan item it came from, supplying category, tier and reason.  Once
        ``cancel`` is set the remaining items are not started and are
        counted as failed.
        """
        if len(ids) != len(paths):
            raise ValueError("ids and paths must have the same length")
        result = CleanResult(operation="clean")
        metadata = metadata or {}

        for index, (trash_id, path) in enumerate(zip(ids, paths)):
            if cancel is not None and cancel.is_set():
                for skipped in paths[index:]:
                    result.add_failure(str(skipped), "cancelled")
                log.info("Cleanup cancelled with %d items left", len(paths) - index)
                break

            scan_item = metadata.get(trash_id)
            category = scan_item.category if scan_item else None
            tier = scan_item.risk_tier if scan_item else RiskTier.SAFE
            reason = scan_item.description if scan_item else "Selected for cleanup"
            intent = _CATEGORY_INTENTS.get(category, Intent.DELETION)
            try:
                if use_trash:
                    item = self.quarantine(path, category, tier, reason, retention_days, intent)
                    result.add_success(item.size_bytes, item.id)
                else:
                    result.add_success(self._delete_permanently(path, category, tier, intent))
            except (OSError, PulitoError) as e:
                log.warning("Failed to clean %s: %s", path, e)
                result.add_failure(str(path), e)

        log.info(
            "Cleaned %d items (%d failed), %d bytes freed",
            result.cleaned, result.failed, result.freed_bytes,
        )
        return result

    def reconcile(self) -> list[Path]:
        """Repair records and objects left inconsistent by an interruption.

        Records whose object is gone are dropped.  Objects with no record
        are left in place for manual recovery and returned.
        """
        with self._writer():
            return self._reconcile_locked()

    # -- Internals ---------------------------------------------------------

    def _reconcile_locked(self) -> list[Path]:
        known: set[Path] = set()
        for item in self._store.list_trash():
            if os.path.lexists(item.quarantine_path):
                known.add(item.quarantine_path)
            else:
                log.info("Dropping trash record %s, its object is gone", item.id)
                self._store.delete_trash(item.id)

        orphans: list[Path] = []
        try:
            entries = sorted(self.files_dir.iterdir())
        except OSError as e:
            log.warning("Cannot list quarantine %s: %s", self.files_dir, e)
            return orphans
        for entry in entries:
            if entry not in known:
                log.warning("Orphaned quarantine entry %s has no record, leaving it for manual recovery", entry)
                orphans.append(entry)
        return orphans

    def _purge_locked(self, trash_id: str) -> int:
        item = self._store.get_trash(trash_id)
        if item is None:
            raise NotFound(f"No trash item {trash_id}")
        if os.path.lexists(item.quarantine_path):
            target = self._validator.validate(item.quarantine_path, Intent.PURGE)
            _remove_path(target)
        else:
            log.info("Object for trash item %s already gone", trash_id)
        self._store.delete_trash(trash_id)
        log.debug("Purged %s (%s)", trash_id, item.original_path)
        return item.size_bytes

    def _delete_permanently(
        self,
        path: Path | str,
        category: Category | None,
        tier: RiskTier,
        intent: Intent,
    ) -> int:
        if tier >= RiskTier.PROTECTED:
            raise SecurityViolation("protected", path, "protected items are never removed")
        target = self._validator.validate(path, intent)
        self._refuse_protected(target)
        size = path_size(target)
        _remove_path(target)
        if category is Category.CACHE:
            self._record_cache_cleanup(target, size)
        log.info("Deleted %s (%d bytes)", target, size)
        return size

    def _refuse_protected(self, path: Path) -> None:
        """Refuse *path* when it or anything below it is protected.

        A directory whose contents cannot be listed is refused as well.
        """
        if self._is_protected(path):
            raise SecurityViolation("protected", path, "protected items are never removed")
        if path.is_symlink() or not path.is_dir():
            return

        def unreadable(e: OSError) -> None:
            raise SecurityViolation("protected", path, f"cannot inspect {e.filename}: {e.strerror}")

        for dirpath, dirnames, filenames in os.walk(path, onerror=unreadable):
            for name in (*dirnames, *filenames):
                if self._is_protected(Path(dirpath) / name):
                    raise SecurityViolation(
                        "protected", path, f"contains protected entry {Path(dirpath) / name}",
                    )

    def _move(self, src: Path, dst: Path) -> None:
        try:
            os.rename(src, dst)
            return
        except OSError as e:
            if e.errno != errno.EXDEV:
                raise QuarantineError(f"Could not move {src} to {dst}: {e}") from e
        log.debug("Cross-device move of %s, copying", src)
        self._copy_then_delete(src, dst)

    @staticmethod
    def _copy_then_delete(src: Path, dst: Path) -> None:
        is_tree = src.is_dir() and not src.is_symlink()
        try:
            if is_tree:
                shutil.copytree(src, dst, symlinks=True)
            else:
                shutil.copy2(src, dst, follow_symlinks=False)
        except OSError as e:
            if os.path.lexists(dst):
                _remove_path(dst)
            raise QuarantineError(f"Could not copy {src} to {dst}: {e}") from e

        try:
            _remove_path(src)
        except OSError as e:
            try:
                if is_tree:
                    shutil.copytree(dst, src, symlinks=True, dirs_exist_ok=True)
                elif not os.path.lexists(src):
                    shutil.copy2(dst, src, follow_symlinks=False)
            except OSError as repair_error:
                log.error("Could not repair %s from %s, the copy is kept: %s", src, dst, repair_error)
            else:
                _remove_path(dst)
            raise QuarantineError(f"Could not remove {src} after copying it: {e}") from e

    def _record_cache_cleanup(self, path: Path, size: int) -> None:
        home = self._validator.home
        now = time.time()
        try:
            self._store.record_cache_event(CacheEvent(str(path), -size, EVENT_CLEANUP, now, source_for(path, home)))
            sampled = cache_dir_for(path, home)
            if sampled is not None:
                previous = self._store.cache_sample(str(sampled))
                if previous is not None:
                    self._store.set_cache_sample(str(sampled), max(previous - size, 0), now)
        except sqlite3.Error as e:
            log.warning("Could not record cache cleanup for %s: %s", path, e)
