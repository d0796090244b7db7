"""Installed package record used by the dependency resolver."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(slots=True)
class PackageRecord:
    """One package as reported by the package manager.

    ``depends`` holds the names declared in the package manager's own
    metadata and ``provides`` the virtual names the package
    satisfies.  ``manual`` is True when the user asked for the package
    explicitly.  ``reverse_dependents`` is filled in by the resolver.
    """

    name: str
    version: str = ""
    installed: bool = True
    depends: frozenset[str] = frozenset()
    provides: frozenset[str] = frozenset()
    manual: bool = False
    size_bytes: int = 0
    reverse_dependents: set[str] = field(default_factory=set)
