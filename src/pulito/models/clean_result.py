"""Cleaning result dataclass."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(slots=True)
class CleanResult:
    """Aggregate result of a batch cleanup.

    Every item is accounted for exactly once, either in ``cleaned`` or in
    ``failed``; ``errors`` carries one message per failure.  ``operation``
    labels the batch for the freed-space statistics.
    """

    operation: str = ""
    cleaned: int = 0
    failed: int = 0
    freed_bytes: int = 0
    errors: list[str] = field(default_factory=list)
    trash_ids: list[str] = field(default_factory=list)

    def add_success(self, size_bytes: int, trash_id: str | None = None) -> None:
        self.cleaned += 1
        self.freed_bytes += size_bytes
        if trash_id:
            self.trash_ids.append(trash_id)

    def add_failure(self, subject: str, error: object) -> None:
        self.failed += 1
        self.errors.append(f"{subject}: {error}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation": self.operation,
            "cleaned": self.cleaned,
            "failed": self.failed,
            "freed_bytes": self.freed_bytes,
            "errors": list(self.errors),
            "trash_ids": list(self.trash_ids),
        }
