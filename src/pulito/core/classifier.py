"""Rule table mapping a path and its stat to a category and risk tier."""

from __future__ import annotations

import fnmatch
import logging
import os
import re
import stat as stat_mod
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable

from pulito.models.scan_result import Category, RiskTier

log = logging.getLogger(__name__)

DAY = 86_400
GIB = 1024 ** 3

PROTECTED_NAMES = frozenset({".ssh", ".gnupg", ".password-store", ".git", "keyrings", ".pki"})
PROTECTED_PATTERNS = ("*.kdbx", "*.pem", "*.key", "id_rsa*", "id_ed25519*", "id_ecdsa*", "id_dsa*")

CACHE_DIR_NAMES = frozenset({"__pycache__", ".thumbnails", "_cacache", ".pytest_cache", ".mypy_cache"})
CACHE_PATTERNS = ("*.pyc", "*.pyo")

LOG_RE = re.compile(r"\.log(\.\d+)?(\.gz|\.xz|\.bz2)?$|\.journal~?$", re.IGNORECASE)

TEMP_PATTERNS = ("*.tmp", "*.temp", "*.swp", "*.bak", "*.orig", "*.old", "~*", "*~", "*.lock", "*.pid")
TEMP_DIR_NAMES = ("tmp", ".tmp", "temp")

PACKAGE_RE = re.compile(r"\.(deb|rpm|whl|egg|snap|flatpak|appimage)$|\.pkg\.tar(\.\w+)?$", re.IGNORECASE)


@dataclass(frozen=True, slots=True)
class Classification:
    category: Category
    tier: RiskTier
    reason: str


@dataclass(slots=True)
class ClassifierPolicy:
    """Thresholds and locations the rules consult.

    ``now`` pins the clock for age comparisons; ``None`` means the current
    time.  ``protected_paths`` are trees that are always tier 5, such as
    the quarantine root.
    """

    home: Path = field(default_factory=Path.home)
    downloads_dir: Path | None = None
    large_threshold: int = GIB
    old_download_days: int = 90
    temp_age_days: int = 7
    now: float | None = None
    protected_paths: tuple[Path, ...] = ()

    def __post_init__(self) -> None:
        if self.downloads_dir is None:
            self.downloads_dir = self.home / "Downloads"

    def current_time(self) -> float:
        return time.time() if self.now is None else self.now


@dataclass(slots=True)
class _Subject:
    path: Path
    st: os.stat_result | None
    link_broken: bool
    empty_dir: bool

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def is_file(self) -> bool:
        return self.st is not None and stat_mod.S_ISREG(self.st.st_mode)


@dataclass(frozen=True, slots=True)
class Rule:
    category: Category
    tier: RiskTier
    reason: str
    predicate: Callable[[Classifier, _Subject], bool]


def _matches(name: str, patterns: Iterable[str]) -> bool:
    return any(fnmatch.fnmatchcase(name, p) for p in patterns)


class Classifier:
    """Evaluates an ordered rule table against a path.

    Every matching rule is collected and the one with the highest tier
    wins; among equal tiers the earlier rule wins.  Classification is a
    pure function of the path, the stat already collected by the caller
    and the policy.
    """

    def __init__(self, policy: ClassifierPolicy | None = None) -> None:
        self.policy = policy or ClassifierPolicy()
        self._home = Path(self.policy.home)
        self._cache_root = self._home / ".cache"
        self._temp_dirs = tuple(self._home / n for n in TEMP_DIR_NAMES)

    def classify(
        self,
        path: Path,
        st: os.stat_result | None,
        *,
        link_broken: bool = False,
        empty_dir: bool = False,
    ) -> Classification | None:
        subject = _Subject(Path(path), st, link_broken, empty_dir)
        best: Rule | None = None
        for rule in RULES:
            if best is not None and rule.tier <= best.tier:
                continue
            if rule.predicate(self, subject):
                best = rule
        if best is None:
            return None
        return Classification(best.category, best.tier, best.reason)

    def is_protected(self, path: Path) -> bool:
        return self._protected(_Subject(Path(path), None, False, False))

    # -- Predicates --------------------------------------------------------

    def _protected(self, s: _Subject) -> bool:
        if any(part in PROTECTED_NAMES for part in s.path.parts):
            return True
        if _matches(s.name, PROTECTED_PATTERNS):
            return True
        return any(s.path == p or s.path.is_relative_to(p) for p in self.policy.protected_paths)

    def _cache(self, s: _Subject) -> bool:
        if s.empty_dir or s.link_broken:
            return False
        if s.path.is_relative_to(self._cache_root) and s.path != self._cache_root:
            return True
        if any(part in CACHE_DIR_NAMES for part in s.path.parts):
            return True
        return _matches(s.name, CACHE_PATTERNS)

    def _log(self, s: _Subject) -> bool:
        return s.is_file and LOG_RE.search(s.name) is not None

    def _orphaned_temp(self, s: _Subject) -> bool:
        if not s.is_file:
            return False
        in_temp_dir = any(s.path.is_relative_to(d) for d in self._temp_dirs)
        if not in_temp_dir and not _matches(s.name, TEMP_PATTERNS):
            return False
        age = self.policy.current_time() - s.st.st_mtime
        return age > self.policy.temp_age_days * DAY

    def _package_artifact(self, s: _Subject) -> bool:
        return s.is_file and PACKAGE_RE.search(s.name) is not None

    def _old_download(self, s: _Subject) -> bool:
        downloads = self.policy.downloads_dir
        if not s.is_file or downloads is None or not s.path.is_relative_to(downloads):
            return False
        last_used = max(s.st.st_atime, s.st.st_mtime)
        return self.policy.current_time() - last_used > self.policy.old_download_days * DAY

    def _large_file(self, s: _Subject) -> bool:
        if not s.is_file or s.st.st_size < self.policy.large_threshold:
            return False
        return not self._regenerable(s)

    def _regenerable(self, s: _Subject) -> bool:
        return self._cache(s) or self._log(s) or self._package_artifact(s) or self._orphaned_temp(s)


RULES: tuple[Rule, ...] = (
    Rule(Category.PROTECTED, RiskTier.PROTECTED, "Protected personal or credential data",
         Classifier._protected),
    Rule(Category.BROKEN_SYMLINK, RiskTier.SAFE, "Symlink pointing to a missing target",
         lambda c, s: s.link_broken),
    Rule(Category.EMPTY_DIRECTORY, RiskTier.SAFE, "Empty directory",
         lambda c, s: s.empty_dir),
    Rule(Category.CACHE, RiskTier.SAFE, "Regenerable application cache", Classifier._cache),
    Rule(Category.LOG, RiskTier.SAFE, "Log file", Classifier._log),
    Rule(Category.ORPHANED_TEMP_FILE, RiskTier.SAFE, "Stale temporary or backup file",
         Classifier._orphaned_temp),
    Rule(Category.OLD_DOWNLOAD, RiskTier.OLD_DOWNLOAD, "Download not used for a long time",
         Classifier._old_download),
    Rule(Category.LARGE_FILE, RiskTier.LARGE_FILE, "Large file", Classifier._large_file),
    Rule(Category.PACKAGE_ARTIFACT, RiskTier.PACKAGE, "Downloaded package archive",
         Classifier._package_artifact),
)
