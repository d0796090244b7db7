"""Content-based duplicate detection."""

from __future__ import annotations

import hashlib
import logging
import os
import threading
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Iterable

from pulito.core.classifier import Classifier
from pulito.errors import ScanCancelled
from pulito.models.scan_result import Category, DuplicateGroup, RiskTier, ScanItem, item_id

log = logging.getLogger(__name__)

_CHUNK_SIZE = 65_536


def hash_file(path: Path, cancel: threading.Event | None = None) -> str:
    """SHA-256 of the full file content, read in 64 KiB chunks."""
    h = hashlib.sha256()
    with open(path, "rb") as f:
        while chunk := f.read(_CHUNK_SIZE):
            if cancel is not None and cancel.is_set():
                raise ScanCancelled(f"Hashing cancelled at {path}")
            h.update(chunk)
    return h.hexdigest()


class DuplicateDetector:
    """Groups files by size, then by content hash.

    Files whose size is unique are never read.  Size buckets are hashed in
    parallel, bounded by ``max_workers``.  Within a group the kept copy is
    the oldest by mtime, ties broken by path, so repeated runs over an
    unchanged tree produce identical groups.
    """

    def __init__(
        self,
        classifier: Classifier | None = None,
        min_size: int = 1024,
        max_workers: int = 4,
    ) -> None:
        self._classifier = classifier
        self.min_size = min_size
        self.max_workers = max(1, max_workers)

    def find_duplicates(
        self,
        files: Iterable[tuple[Path, os.stat_result]],
        cancel: threading.Event | None = None,
    ) -> list[DuplicateGroup]:
        by_size: dict[int, list[tuple[Path, os.stat_result]]] = defaultdict(list)
        for path, st in files:
            if st.st_size >= self.min_size:
                by_size[st.st_size].append((path, st))

        buckets = [b for b in by_size.values() if len(b) > 1]
        if not buckets:
            return []
        log.debug("Hashing %d size buckets (%d files)", len(buckets), sum(len(b) for b in buckets))

        workers = min(self.max_workers, len(buckets))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            hashed = list(executor.map(lambda b: self._hash_bucket(b, cancel), buckets))

        groups: list[DuplicateGroup] = []
        for bucket in hashed:
            by_hash: dict[str, list[tuple[Path, os.stat_result]]] = defaultdict(list)
            for path, st, digest in bucket:
                by_hash[digest].append((path, st))
            for digest, members in by_hash.items():
                if len(members) > 1:
                    groups.append(self._build_group(digest, members))

        groups.sort(key=lambda g: (-g.reclaimable_size, g.content_hash))
        return groups

    @staticmethod
    def _hash_bucket(
        bucket: list[tuple[Path, os.stat_result]],
        cancel: threading.Event | None,
    ) -> list[tuple[Path, os.stat_result, str]]:
        out: list[tuple[Path, os.stat_result, str]] = []
        for path, st in bucket:
            if cancel is not None and cancel.is_set():
                raise ScanCancelled("Duplicate detection cancelled")
            try:
                out.append((path, st, hash_file(path, cancel)))
            except OSError as e:
                log.debug("Skipping unreadable file %s: %s", path, e)
        return out

    def _build_group(self, digest: str, members: list[tuple[Path, os.stat_result]]) -> DuplicateGroup:
        members.sort(key=lambda m: (m[1].st_mtime, str(m[0])))
        size = members[0][1].st_size
        files: list[ScanItem] = []
        for index, (path, st) in enumerate(members):
            kept = index == 0
            tier = RiskTier.SAFE if kept else RiskTier.DUPLICATE
            if self._classifier is not None:
                found = self._classifier.classify(path, st)
                if found is not None and found.tier < RiskTier.PROTECTED:
                    tier = max(tier, found.tier)
            files.append(ScanItem(
                id=item_id(path, Category.DUPLICATE),
                path=path,
                size_bytes=size,
                category=Category.DUPLICATE,
                risk_tier=RiskTier(tier),
                description="Kept copy" if kept else f"Duplicate of {members[0][0]}",
                mtime=st.st_mtime,
                atime=st.st_atime,
                reclaimable=not kept,
            ))
        return DuplicateGroup(
            id=item_id(digest, "duplicate_group"),
            content_hash=digest,
            files=files,
            group_size=size,
        )
