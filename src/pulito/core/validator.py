"""Path safety checks applied before every filesystem mutation."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable
from urllib.parse import unquote

from pulito.errors import SecurityViolation

log = logging.getLogger(__name__)


class Intent(str, Enum):
    """What the caller is about to do with a validated path."""

    DELETION = "deletion"
    CACHE_CLEANUP = "cache_cleanup"
    LOG_CLEANUP = "log_cleanup"
    PACKAGE_MANAGEMENT = "package_management"
    PURGE = "purge"
    RESTORE = "restore"


# Denied for every intent.
SYSTEM_ROOTS: tuple[Path, ...] = tuple(Path(p) for p in (
    "/bin", "/boot", "/dev", "/etc",
    "/lib", "/lib32", "/lib64", "/libx32",
    "/proc", "/run", "/sbin", "/sys",
    "/usr/bin", "/usr/sbin", "/usr/lib", "/usr/local/bin",
    "/var/lib", "/var/run", "/var/lock", "/var/spool",
    "/root",
))

# Additionally denied unless the intent is package management.
DELETION_ROOTS: tuple[Path, ...] = (Path("/usr"), Path("/opt"), Path("/var"))

_MUTATING = frozenset({
    Intent.DELETION,
    Intent.CACHE_CLEANUP,
    Intent.LOG_CLEANUP,
    Intent.PACKAGE_MANAGEMENT,
    Intent.PURGE,
})


def _within(path: Path, root: Path) -> bool:
    """True when *path* equals *root* or lies below it, compared per component."""
    return path == root or path.is_relative_to(root)


@dataclass(slots=True)
class ValidationOutcome:
    """Result of validating one path in a batch."""

    path: str
    canonical: Path | None = None
    error: SecurityViolation | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class PathValidator:
    """Gatekeeper for every path the cleaner deletes, moves or restores.

    :meth:`validate` returns the canonical path or raises
    :class:`SecurityViolation`.  Checks run in a fixed order: syntax
    (absolute, no traversal), canonicalization, system roots, home
    boundary, then write permission on the parent directory.
    """

    def __init__(
        self,
        home: Path | None = None,
        quarantine_root: Path | None = None,
        package_cache_dirs: Iterable[Path] = (),
        data_dir: Path | None = None,
    ) -> None:
        self.home = Path(home or Path.home()).resolve()
        self.quarantine_root = Path(quarantine_root).resolve() if quarantine_root else None
        self.package_cache_dirs = tuple(Path(p).resolve() for p in package_cache_dirs)
        self.data_dir = Path(data_dir).resolve() if data_dir else None

    def validate(self, path: Path | str, intent: Intent = Intent.DELETION) -> Path:
        raw = os.fspath(path)
        try:
            self._check_syntax(raw)
            if intent is Intent.RESTORE:
                canonical = self._canonical_destination(Path(raw))
                self._check_location(canonical, intent)
                return canonical
            canonical, target = self._canonicalize(Path(raw))
            self._check_location(canonical, intent)
            if target is not None and intent is not Intent.PURGE:
                self._check_location(target, intent)
            if intent in _MUTATING:
                self._check_permission(canonical)
            return canonical
        except SecurityViolation as e:
            log.warning("Rejected %s for %s: %s", raw, intent.value, e)
            raise

    def validate_many(
        self,
        paths: Iterable[Path | str],
        intent: Intent = Intent.DELETION,
    ) -> list[ValidationOutcome]:
        """Validate each path on its own; a failure never stops the rest."""
        outcomes: list[ValidationOutcome] = []
        for path in paths:
            try:
                outcomes.append(ValidationOutcome(os.fspath(path), self.validate(path, intent)))
            except SecurityViolation as e:
                outcomes.append(ValidationOutcome(os.fspath(path), error=e))
        return outcomes

    def is_quarantined(self, path: Path) -> bool:
        return self.quarantine_root is not None and _within(path, self.quarantine_root)

    # -- Individual checks -------------------------------------------------

    @staticmethod
    def _check_syntax(raw: str) -> None:
        if "\x00" in raw:
            raise SecurityViolation("traversal", repr(raw), "path contains a NUL byte")
        if any(part != ".." and unquote(part) == ".." for part in raw.split("/")):
            raise SecurityViolation("traversal", raw, "path contains encoded traversal")
        if ".." in Path(raw).parts:
            raise SecurityViolation("traversal", raw, "path contains '..'")
        if not os.path.isabs(raw):
            raise SecurityViolation("absolute", raw, "path is not absolute")

    @staticmethod
    def _canonicalize(path: Path) -> tuple[Path, Path | None]:
        """Return ``(canonical, link_target)``.

        A symlink is canonicalized as its resolved parent plus its own
        name, so the operation acts on the link; the existing target, if
        any, is returned so that it can be checked too.
        """
        if not os.path.lexists(path):
            raise SecurityViolation("canonicalize", path, "path does not exist")
        try:
            if path.is_symlink():
                canonical = path.parent.resolve(strict=True) / path.name
                target = path.resolve()
                return canonical, target if target.exists() else None
            return path.resolve(strict=True), None
        except (OSError, RuntimeError) as e:
            raise SecurityViolation("canonicalize", path, f"cannot resolve: {e}") from e

    @staticmethod
    def _canonical_destination(path: Path) -> Path:
        """Canonicalize a restore target that may not exist yet."""
        ancestor = path.parent
        missing: list[str] = [path.name]
        while not os.path.lexists(ancestor):
            if ancestor == ancestor.parent:
                raise SecurityViolation("canonicalize", path, "no existing ancestor")
            missing.append(ancestor.name)
            ancestor = ancestor.parent
        try:
            base = ancestor.resolve(strict=True)
        except (OSError, RuntimeError) as e:
            raise SecurityViolation("canonicalize", path, f"cannot resolve: {e}") from e
        return base.joinpath(*reversed(missing))

    def _check_location(self, path: Path, intent: Intent) -> None:
        self._check_system_path(path, intent)
        self._check_boundary(path, intent)

    @staticmethod
    def _check_system_path(path: Path, intent: Intent) -> None:
        if path == Path(path.anchor):
            raise SecurityViolation("system_path", path, "refusing to touch the filesystem root")
        for root in SYSTEM_ROOTS:
            if _within(path, root):
                raise SecurityViolation("system_path", path, f"inside protected system directory {root}")
        if intent is not Intent.PACKAGE_MANAGEMENT:
            for root in DELETION_ROOTS:
                if _within(path, root):
                    raise SecurityViolation("system_path", path, f"inside protected system directory {root}")

    def _check_boundary(self, path: Path, intent: Intent) -> None:
        if path == self.home:
            raise SecurityViolation("boundary", path, "the home directory itself cannot be a target")

        quarantined = self.is_quarantined(path)
        if intent is Intent.PURGE:
            if not quarantined or path == self.quarantine_root:
                raise SecurityViolation("boundary", path, "purge targets must be inside the quarantine")
            return
        if quarantined:
            raise SecurityViolation("boundary", path, "path is inside the quarantine")
        for own in (self.quarantine_root, self.data_dir):
            if own is not None and (_within(path, own) or own.is_relative_to(path)):
                raise SecurityViolation("boundary", path, f"overlaps the application data in {own}")

        if path.is_relative_to(self.home):
            return
        if intent is Intent.PACKAGE_MANAGEMENT and any(_within(path, d) for d in self.package_cache_dirs):
            return
        raise SecurityViolation("boundary", path, f"outside the home directory {self.home}")

    @staticmethod
    def _check_permission(path: Path) -> None:
        parent = path.parent
        if not os.access(parent, os.W_OK | os.X_OK):
            raise SecurityViolation("permission", path, f"parent directory {parent} is not writable")
