"""Orphaned package detection and removal for apt and pacman systems."""

from __future__ import annotations

import logging
import re
import subprocess
from pathlib import Path
from typing import Mapping

from pulito.core.privileges import PrivilegeError, run_privileged
from pulito.core.trash import TrashEngine
from pulito.core.validator import Intent
from pulito.errors import PackageError, PulitoError
from pulito.models.clean_result import CleanResult
from pulito.models.package import PackageRecord
from pulito.models.scan_result import Category, RiskTier
from pulito.utils import has_command

log = logging.getLogger(__name__)

PACKAGE_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9+._@-]*(:[A-Za-z0-9_-]+)?$")

_QUERY_TIMEOUT = 60

_SIZE_UNITS = {"B": 1, "KiB": 1024, "MiB": 1024 ** 2, "GiB": 1024 ** 3, "TiB": 1024 ** 4}

USER_PACKAGE_CACHES = (Path(".cache") / "pip", Path(".npm") / "_cacache", Path(".cache") / "yarn")


def validate_package_name(name: str) -> str:
    if not PACKAGE_NAME_RE.match(name):
        raise PackageError(f"Invalid package name: {name!r}")
    return name


def _run_query(argv: list[str]) -> str:
    try:
        proc = subprocess.run(argv, capture_output=True, text=True, timeout=_QUERY_TIMEOUT)
    except (OSError, subprocess.TimeoutExpired) as e:
        raise PackageError(f"Could not run {argv[0]}: {e}")
    if proc.returncode != 0:
        raise PackageError(f"{argv[0]} failed (exit {proc.returncode}): {proc.stderr.strip()}")
    return proc.stdout


def _dep_names(field: str) -> set[str]:
    """Package names mentioned in a Debian relationship field.

    Every alternative counts, so a package named in ``a | b`` is treated
    as depended upon.
    """
    names: set[str] = set()
    for clause in field.split(","):
        for alternative in clause.split("|"):
            alternative = alternative.strip()
            if alternative:
                names.add(alternative.split()[0].split(":")[0])
    return names


class AptBackend:
    """Reads package metadata from dpkg and removes packages with apt-get."""

    name = "apt"

    _FORMAT = "${Package}\t${Version}\t${Status}\t${Installed-Size}\t${Essential}\t${Depends}\t${Pre-Depends}\t${Provides}\t${Recommends}\n"

    @property
    def unavailable_reason(self) -> str | None:
        if not has_command("dpkg-query"):
            return "dpkg-query not found"
        if not has_command("apt-get"):
            return "apt-get not found"
        return None

    def installed_packages(self) -> dict[str, PackageRecord]:
        manual = set(_run_query(["apt-mark", "showmanual"]).split())
        output = _run_query(["dpkg-query", "-W", "-f", self._FORMAT])
        return self.parse(output, manual)

    @staticmethod
    def parse(output: str, manual: set[str]) -> dict[str, PackageRecord]:
        packages: dict[str, PackageRecord] = {}
        for line in output.splitlines():
            fields = line.split("\t")
            if len(fields) < 8:
                continue
            name, version, status, size, essential, depends, pre_depends, provides = fields[:8]
            # apt keeps recommended packages installed, so they count as dependencies
            recommends = fields[8] if len(fields) > 8 else ""
            if not status.endswith(" installed"):
                continue
            packages[name] = PackageRecord(
                name=name,
                version=version,
                depends=frozenset(_dep_names(depends) | _dep_names(pre_depends) | _dep_names(recommends)),
                provides=frozenset(_dep_names(provides)),
                manual=name in manual or essential == "yes",
                size_bytes=int(size) * 1024 if size.isdigit() else 0,
            )
        return packages

    @staticmethod
    def remove_command(names: list[str]) -> list[str]:
        return ["apt-get", "remove", "-y", "--", *(validate_package_name(n) for n in names)]


class PacmanBackend:
    """Reads package metadata from ``pacman -Qi`` and removes with ``pacman -R``."""

    name = "pacman"

    @property
    def unavailable_reason(self) -> str | None:
        if not has_command("pacman"):
            return "pacman not found"
        return None

    def installed_packages(self) -> dict[str, PackageRecord]:
        return self.parse(_run_query(["pacman", "-Qi"]))

    @staticmethod
    def parse(output: str) -> dict[str, PackageRecord]:
        packages: dict[str, PackageRecord] = {}
        for block in re.split(r"\n\s*\n", output.strip()):
            info: dict[str, str] = {}
            key = None
            for line in block.splitlines():
                if " : " in line and not line.startswith(" "):
                    key, _, value = line.partition(" : ")
                    key = key.strip()
                    info[key] = value.strip()
                elif key is not None:
                    info[key] += " " + line.strip()
            name = info.get("Name")
            if not name:
                continue
            packages[name] = PackageRecord(
                name=name,
                version=info.get("Version", ""),
                depends=frozenset(_pacman_names(info.get("Depends On", ""))),
                provides=frozenset(_pacman_names(info.get("Provides", ""))),
                manual=info.get("Install Reason", "").startswith("Explicitly"),
                size_bytes=_pacman_size(info.get("Installed Size", "")),
            )
        return packages

    @staticmethod
    def remove_command(names: list[str]) -> list[str]:
        return ["pacman", "-R", "--noconfirm", "--", *(validate_package_name(n) for n in names)]


def _pacman_names(value: str) -> set[str]:
    if not value or value == "None":
        return set()
    return {re.split(r"[<>=]", token, maxsplit=1)[0] for token in value.split()}


def _pacman_size(value: str) -> int:
    parts = value.split()
    if len(parts) != 2 or parts[1] not in _SIZE_UNITS:
        return 0
    try:
        return int(float(parts[0]) * _SIZE_UNITS[parts[1]])
    except ValueError:
        return 0


def detect_backend() -> AptBackend | PacmanBackend | None:
    for backend in (AptBackend(), PacmanBackend()):
        if backend.unavailable_reason is None:
            return backend
    return None


class PackageResolver:
    """Finds packages nothing needs any more.

    An orphan is an installed package that was not installed manually and
    has no installed reverse dependent.  Dependencies on virtual names
    count against every package providing them.
    """

    def __init__(self, backend: AptBackend | PacmanBackend | None = None) -> None:
        self.backend = backend

    @staticmethod
    def find_orphans(packages: Mapping[str, PackageRecord]) -> set[str]:
        providers: dict[str, set[str]] = {}
        for record in packages.values():
            record.reverse_dependents = set()
            for virtual in record.provides:
                providers.setdefault(virtual, set()).add(record.name)

        for record in packages.values():
            if not record.installed:
                continue
            for dep in record.depends:
                targets = {dep} if dep in packages else providers.get(dep, set())
                for target in targets:
                    if target != record.name:
                        packages[target].reverse_dependents.add(record.name)

        return {
            r.name for r in packages.values()
            if r.installed and not r.manual
            and not any(packages[d].installed for d in r.reverse_dependents)
        }

    def verify_orphan(self, name: str, current: Mapping[str, PackageRecord]) -> bool:
        """Re-check *name* against a fresh snapshot right before removal."""
        record = current.get(name)
        if record is None or not record.installed:
            return False
        return name in self.find_orphans(current)

    def snapshot(self) -> dict[str, PackageRecord]:
        if self.backend is None:
            raise PackageError("No supported package manager found")
        reason = self.backend.unavailable_reason
        if reason:
            raise PackageError(f"{self.backend.name} unavailable: {reason}")
        return self.backend.installed_packages()

    def orphans(self) -> list[PackageRecord]:
        packages = self.snapshot()
        return sorted((packages[n] for n in self.find_orphans(packages)), key=lambda r: r.name)

    def remove(self, names: list[str]) -> None:
        if not names:
            return
        if self.backend is None:
            raise PackageError("No supported package manager found")
        run_privileged(self.backend.remove_command(names))


def clean_packages(resolver: PackageResolver, trash: TrashEngine, home: Path) -> CleanResult:
    """Remove verified orphans, then quarantine user-level package caches."""
    result = CleanResult(operation="packages")

    if resolver.backend is not None:
        _remove_orphans(resolver, result)
    else:
        log.info("No supported package manager, skipping orphan removal")

    for rel in USER_PACKAGE_CACHES:
        cache_dir = home / rel
        if not cache_dir.exists():
            continue
        try:
            item = trash.quarantine(
                cache_dir,
                Category.CACHE,
                RiskTier.SAFE,
                "Package manager download cache",
                intent=Intent.PACKAGE_MANAGEMENT,
            )
            result.add_success(item.size_bytes, item.id)
        except (OSError, PulitoError) as e:
            log.warning("Could not clean %s: %s", cache_dir, e)
            result.add_failure(str(cache_dir), e)

    return result


def _remove_orphans(resolver: PackageResolver, result: CleanResult) -> None:
    try:
        candidates = resolver.find_orphans(resolver.snapshot())
        fresh = resolver.snapshot()
    except PackageError as e:
        log.warning("Could not read package metadata: %s", e)
        result.add_failure("packages", e)
        return

    verified: list[PackageRecord] = []
    for name in sorted(candidates):
        if not PACKAGE_NAME_RE.match(name):
            result.add_failure(name, "invalid package name")
        elif resolver.verify_orphan(name, fresh):
            verified.append(fresh[name])
        else:
            log.info("Package %s is no longer an orphan, skipping", name)
    if not verified:
        return

    try:
        resolver.remove([r.name for r in verified])
    except (PackageError, PrivilegeError) as e:
        log.warning("Package removal failed: %s", e)
        for record in verified:
            result.add_failure(record.name, e)
        return
    for record in verified:
        result.add_success(record.size_bytes)
    log.info("Removed %d orphaned packages", len(verified))
