"""Scan item and scan report dataclasses."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from pathlib import Path
from typing import Any, Iterator


class Category(str, Enum):
    """What kind of reclaimable entry a ScanItem is."""

    CACHE = "cache"
    LOG = "log"
    PACKAGE_ARTIFACT = "package_artifact"
    LARGE_FILE = "large_file"
    OLD_DOWNLOAD = "old_download"
    EMPTY_DIRECTORY = "empty_directory"
    BROKEN_SYMLINK = "broken_symlink"
    ORPHANED_TEMP_FILE = "orphaned_temp_file"
    DUPLICATE = "duplicate"
    OLD_FILE = "old_file"
    PROTECTED = "protected"


class RiskTier(IntEnum):
    """Ordered safety classification, 0 is auto-cleanable, 5 is never offered."""

    SAFE = 0
    OLD_DOWNLOAD = 1
    LARGE_FILE = 2
    DUPLICATE = 3
    PACKAGE = 4
    PROTECTED = 5


def item_id(path: Path | str, category: Category | str = "") -> str:
    """Stable identifier for a path, identical across scans."""
    label = category.value if isinstance(category, Category) else category
    key = f"{label}:{path}".encode("utf-8", "surrogateescape")
    return hashlib.blake2b(key, digest_size=8).hexdigest()


@dataclass(slots=True)
class ScanItem:
    """Single filesystem entry considered for cleanup.

    Directory items carry their files in ``children``; use
    :meth:`directory` to build them so that size and risk tier stay
    consistent with the children.  ``reclaimable`` is False only for the
    kept copy of a duplicate group.
    """

    id: str
    path: Path
    size_bytes: int
    category: Category
    risk_tier: RiskTier
    description: str = ""
    item_type: str = "file"
    mtime: float = 0.0
    atime: float = 0.0
    reclaimable: bool = True
    children: list[ScanItem] | None = None

    @classmethod
    def directory(
        cls,
        path: Path,
        children: list[ScanItem],
        category: Category,
        description: str = "",
    ) -> ScanItem:
        """Build a directory item aggregating *children*.

        Size is the sum of the children, the tier is the highest child tier
        and the timestamps are the most recent among the children.
        """
        ordered = sorted(children, key=lambda c: str(c.path))
        tier = max((c.risk_tier for c in ordered), default=RiskTier.SAFE)
        return cls(
            id=item_id(path, category),
            path=path,
            size_bytes=sum(c.size_bytes for c in ordered),
            category=category,
            risk_tier=RiskTier(tier),
            description=description,
            item_type="directory",
            mtime=max((c.mtime for c in ordered), default=0.0),
            atime=max((c.atime for c in ordered), default=0.0),
            children=ordered,
        )

    @property
    def name(self) -> str:
        return self.path.name

    def walk(self) -> Iterator[ScanItem]:
        """Yield this item and all of its descendants, depth first."""
        yield self
        for child in self.children or ():
            yield from child.walk()

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "path": str(self.path),
            "size_bytes": self.size_bytes,
            "category": self.category.value,
            "risk_tier": int(self.risk_tier),
            "description": self.description,
            "type": self.item_type,
            "mtime": self.mtime,
            "atime": self.atime,
            "reclaimable": self.reclaimable,
        }
        if self.children is not None:
            data["children"] = [c.to_dict() for c in self.children]
        return data


@dataclass(slots=True)
class FailedPass:
    """A scan pass that failed while the others completed."""

    name: str
    error: str


@dataclass(slots=True)
class ScanReport:
    """Terminal result of a scan: the item tree plus aggregated totals."""

    root: Path
    items: list[ScanItem] = field(default_factory=list)
    total_bytes: int = 0
    total_items: int = 0
    elapsed: float = 0.0
    timestamp: str = ""
    failed_passes: list[FailedPass] = field(default_factory=list)
    partial: bool = False

    @classmethod
    def build(
        cls,
        root: Path,
        items: list[ScanItem],
        elapsed: float,
        failed_passes: list[FailedPass] | None = None,
        partial: bool = False,
    ) -> ScanReport:
        return cls(
            root=root,
            items=items,
            total_bytes=sum(i.size_bytes for i in items),
            total_items=sum(1 for i in items for _ in i.walk()),
            elapsed=elapsed,
            timestamp=datetime.now(timezone.utc).isoformat(),
            failed_passes=list(failed_passes or []),
            partial=partial,
        )

    def iter_items(self) -> Iterator[ScanItem]:
        """Yield every item in the report, children included."""
        for item in self.items:
            yield from item.walk()

    def to_dict(self) -> dict[str, Any]:
        return {
            "root": str(self.root),
            "items": [i.to_dict() for i in self.items],
            "total_bytes": self.total_bytes,
            "total_items": self.total_items,
            "elapsed": self.elapsed,
            "timestamp": self.timestamp,
            "failed_passes": [{"name": f.name, "error": f.error} for f in self.failed_passes],
            "partial": self.partial,
        }


@dataclass(slots=True)
class DuplicateGroup:
    """Files with identical content.

    ``files`` is ordered with the kept copy first; every other member is a
    reclaimable duplicate.  ``group_size`` is the size of one copy.
    """

    id: str
    content_hash: str
    files: list[ScanItem]
    group_size: int

    @property
    def total_size(self) -> int:
        """Combined size of all copies."""
        return self.group_size * len(self.files)

    @property
    def reclaimable_size(self) -> int:
        """Space recovered by deleting all but the kept copy."""
        return self.total_size - self.group_size

    @property
    def kept(self) -> ScanItem:
        return self.files[0]

    @property
    def redundant(self) -> list[ScanItem]:
        return self.files[1:]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "content_hash": self.content_hash,
            "files": [f.to_dict() for f in self.files],
            "kept_id": self.kept.id,
            "group_size": self.group_size,
            "total_size": self.total_size,
            "reclaimable_size": self.reclaimable_size,
        }


@dataclass(slots=True)
class FilesystemHealthReport:
    """Empty directories, broken symlinks and orphaned temp files."""

    empty_dirs: list[ScanItem] = field(default_factory=list)
    broken_symlinks: list[ScanItem] = field(default_factory=list)
    orphaned_temp_files: list[ScanItem] = field(default_factory=list)
    elapsed: float = 0.0

    def _all(self) -> list[ScanItem]:
        return [*self.empty_dirs, *self.broken_symlinks, *self.orphaned_temp_files]

    @property
    def total_bytes(self) -> int:
        return sum(i.size_bytes for i in self._all())

    @property
    def total_items(self) -> int:
        return len(self._all())

    def to_dict(self) -> dict[str, Any]:
        return {
            "empty_dirs": [i.to_dict() for i in self.empty_dirs],
            "broken_symlinks": [i.to_dict() for i in self.broken_symlinks],
            "orphaned_temp_files": [i.to_dict() for i in self.orphaned_temp_files],
            "total_bytes": self.total_bytes,
            "total_items": self.total_items,
            "elapsed": self.elapsed,
        }


@dataclass(slots=True)
class StorageRecoveryReport:
    """Duplicate groups, large files and stale downloads."""

    duplicate_groups: list[DuplicateGroup] = field(default_factory=list)
    large_files: list[ScanItem] = field(default_factory=list)
    old_downloads: list[ScanItem] = field(default_factory=list)
    elapsed: float = 0.0

    @property
    def duplicate_bytes(self) -> int:
        return sum(g.reclaimable_size for g in self.duplicate_groups)

    @property
    def large_file_bytes(self) -> int:
        return sum(i.size_bytes for i in self.large_files)

    @property
    def old_download_bytes(self) -> int:
        return sum(i.size_bytes for i in self.old_downloads)

    @property
    def total_bytes(self) -> int:
        return self.duplicate_bytes + self.large_file_bytes + self.old_download_bytes

    def to_dict(self) -> dict[str, Any]:
        return {
            "duplicate_groups": [g.to_dict() for g in self.duplicate_groups],
            "large_files": [i.to_dict() for i in self.large_files],
            "old_downloads": [i.to_dict() for i in self.old_downloads],
            "duplicate_bytes": self.duplicate_bytes,
            "large_file_bytes": self.large_file_bytes,
            "old_download_bytes": self.old_download_bytes,
            "total_bytes": self.total_bytes,
            "elapsed": self.elapsed,
        }


@dataclass(slots=True)
class OldFilesSummary:
    """Tracked files not accessed within ``cutoff_days``."""

    total_files: int
    total_size: int
    cutoff_days: int

    def to_dict(self) -> dict[str, Any]:
        return {"total_files": self.total_files, "total_size": self.total_size, "cutoff_days": self.cutoff_days}
