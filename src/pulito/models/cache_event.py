"""Cache growth events and the analytics derived from them."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

EVENT_GROWTH = "growth"
EVENT_CLEANUP = "cleanup"
EVENT_NEW = "new"


@dataclass(frozen=True, slots=True)
class CacheEvent:
    """Append-only record of a cache size change.

    ``timestamp`` is in epoch seconds, ``size_delta`` is signed bytes.
    """

    path: str
    size_delta: int
    kind: str
    timestamp: float
    source: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "size_delta": self.size_delta,
            "kind": self.kind,
            "timestamp": self.timestamp,
            "source": self.source,
        }


@dataclass(slots=True)
class CacheContributor:
    """Per-source growth figures."""

    source: str
    size_bytes: int
    net_growth: int
    growth_rate: float  # bytes per day
    last_activity: float | None
    recommended_limit: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "size_bytes": self.size_bytes,
            "net_growth": self.net_growth,
            "growth_rate": self.growth_rate,
            "last_activity": self.last_activity,
            "recommended_limit": self.recommended_limit,
        }


@dataclass(slots=True)
class CacheGrowthPoint:
    """Net cache growth during one UTC day."""

    timestamp: float
    total_bytes: int
    sources: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"timestamp": self.timestamp, "total_bytes": self.total_bytes, "sources": dict(self.sources)}


@dataclass(slots=True)
class CacheAnalytics:
    """Read-side summary of cache growth."""

    total_cache_bytes: int = 0
    contributors: list[CacheContributor] = field(default_factory=list)
    growth_trend: list[CacheGrowthPoint] = field(default_factory=list)

    @property
    def recommended_limits(self) -> dict[str, int]:
        return {c.source: c.recommended_limit for c in self.contributors}

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_cache_bytes": self.total_cache_bytes,
            "contributors": [c.to_dict() for c in self.contributors],
            "growth_trend": [p.to_dict() for p in self.growth_trend],
            "recommended_limits": self.recommended_limits,
        }
