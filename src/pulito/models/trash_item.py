"""Trash item dataclasses."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any


@dataclass(frozen=True, slots=True)
class TrashMetadata:
    """Why an item was moved to quarantine."""

    category: str
    risk_tier: int
    reason: str


@dataclass(slots=True)
class TrashItem:
    """A quarantined file or directory awaiting restore or purge."""

    id: str
    original_path: Path
    quarantine_path: Path
    deleted_at: datetime
    expires_at: datetime
    size_bytes: int
    item_type: str
    metadata: TrashMetadata | None = None

    def __post_init__(self) -> None:
        if self.expires_at <= self.deleted_at:
            raise ValueError(f"Trash item {self.id} expires before it was deleted")

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "original_path": str(self.original_path),
            "quarantine_path": str(self.quarantine_path),
            "deleted_at": self.deleted_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "size_bytes": self.size_bytes,
            "item_type": self.item_type,
            "metadata": None,
        }
        if self.metadata is not None:
            data["metadata"] = {
                "category": self.metadata.category,
                "risk_tier": self.metadata.risk_tier,
                "reason": self.metadata.reason,
            }
        return data


@dataclass(slots=True)
class TrashListing:
    """Snapshot of the quarantine contents."""

    items: list[TrashItem] = field(default_factory=list)

    @property
    def total_bytes(self) -> int:
        return sum(i.size_bytes for i in self.items)

    @property
    def total_items(self) -> int:
        return len(self.items)

    def to_dict(self) -> dict[str, Any]:
        return {
            "items": [i.to_dict() for i in self.items],
            "total_bytes": self.total_bytes,
            "total_items": self.total_items,
        }
