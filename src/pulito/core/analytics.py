"""Cache growth analytics derived from the append-only cache event log."""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from pathlib import Path
from typing import Callable, Iterable, Mapping

from pulito.models.cache_event import (
    EVENT_CLEANUP,
    EVENT_GROWTH,
    EVENT_NEW,
    CacheAnalytics,
    CacheContributor,
    CacheEvent,
    CacheGrowthPoint,
)
from pulito.storage import RecordStore
from pulito.utils import dir_info

log = logging.getLogger(__name__)

DAY = 86_400
MIB = 1024 ** 2
GIB = 1024 ** 3

WINDOW_DAYS = 30
TREND_DAYS = 7
LIMIT_HORIZON_DAYS = 14

BROWSER_SOURCES = frozenset({
    "google-chrome", "chromium", "mozilla", "firefox", "BraveSoftware",
    "microsoft-edge", "vivaldi", "opera",
})
DEVELOPMENT_SOURCES = frozenset({
    "pip", "npm", "yarn", "pnpm", "go-build", "cargo", "JetBrains",
    "gradle", "maven", "node-gyp", "typescript", "pypoetry", "uv", "bazel",
})
SYSTEM_SOURCES = frozenset({
    "thumbnails", "fontconfig", "mesa_shader_cache", "gstreamer-1.0",
    "tracker3", "ibus", "dconf",
})

LIMIT_FLOORS = {
    "browser": GIB,
    "development": 2 * GIB,
    "system": 512 * MIB,
    "default": 256 * MIB,
}

UNKNOWN_SOURCE = "other"


def source_for(path: Path, home: Path) -> str:
    """Name of the application a cache path belongs to."""
    path = Path(path)
    cache_root = home / ".cache"
    if path.is_relative_to(cache_root) and path != cache_root:
        return path.relative_to(cache_root).parts[0]
    if path.is_relative_to(home / ".npm"):
        return "npm"
    if path.is_relative_to(home / ".thumbnails"):
        return "thumbnails"
    return path.name or UNKNOWN_SOURCE


def source_kind(source: str) -> str:
    if source in BROWSER_SOURCES:
        return "browser"
    if source in DEVELOPMENT_SOURCES:
        return "development"
    if source in SYSTEM_SOURCES:
        return "system"
    return "default"


def recommended_limit(source: str, daily_growth: float) -> int:
    """Two weeks of growth, never below the floor for the source's kind."""
    return max(int(LIMIT_HORIZON_DAYS * max(daily_growth, 0.0)), LIMIT_FLOORS[source_kind(source)])


def growth_rate(daily_net: Mapping[int, int]) -> float:
    """Least-squares slope of the cumulative size, in bytes per day.

    *daily_net* maps a day index to the net size change on that day.
    Fewer than two distinct days give a rate of zero.
    """
    if len(daily_net) < 2:
        return 0.0
    days = sorted(daily_net)
    xs: list[float] = []
    ys: list[float] = []
    cumulative = 0
    for day in days:
        cumulative += daily_net[day]
        xs.append(float(day))
        ys.append(float(cumulative))
    n = len(xs)
    mean_x = sum(xs) / n
    mean_y = sum(ys) / n
    denom = sum((x - mean_x) ** 2 for x in xs)
    if denom == 0:
        return 0.0
    return sum((x - mean_x) * (y - mean_y) for x, y in zip(xs, ys)) / denom


def compute_cache_analytics(
    events: Iterable[CacheEvent],
    now: float,
    current_sizes: Mapping[str, int] | None = None,
) -> CacheAnalytics:
    """Summarize cache events from the last 30 days.

    ``current_sizes`` maps a source to its measured size; sources without
    a measurement are sized by their net growth inside the window.
    """
    window_start = now - WINDOW_DAYS * DAY
    per_source: dict[str, list[CacheEvent]] = defaultdict(list)
    for event in events:
        if window_start <= event.timestamp <= now:
            per_source[event.source or UNKNOWN_SOURCE].append(event)

    sizes = dict(current_sizes or {})
    contributors: list[CacheContributor] = []
    for source in set(per_source) | set(sizes):
        source_events = per_source.get(source, [])
        daily: dict[int, int] = defaultdict(int)
        for event in source_events:
            daily[int(event.timestamp // DAY)] += event.size_delta
        net = sum(e.size_delta for e in source_events)
        rate = growth_rate(daily)
        contributors.append(CacheContributor(
            source=source,
            size_bytes=sizes.get(source, max(net, 0)),
            net_growth=net,
            growth_rate=rate,
            last_activity=max((e.timestamp for e in source_events), default=None),
            recommended_limit=recommended_limit(source, rate),
        ))
    contributors.sort(key=lambda c: (-c.size_bytes, c.source))

    return CacheAnalytics(
        total_cache_bytes=sum(c.size_bytes for c in contributors),
        contributors=contributors,
        growth_trend=_trend(per_source, now),
    )


def _trend(per_source: Mapping[str, list[CacheEvent]], now: float) -> list[CacheGrowthPoint]:
    today = int(now // DAY)
    points = {
        day: CacheGrowthPoint(timestamp=float(day * DAY), total_bytes=0)
        for day in range(today - TREND_DAYS + 1, today + 1)
    }
    for source, source_events in per_source.items():
        for event in source_events:
            point = points.get(int(event.timestamp // DAY))
            if point is None:
                continue
            point.total_bytes += event.size_delta
            point.sources[source] = point.sources.get(source, 0) + event.size_delta
    return [points[day] for day in sorted(points)]


class CacheSampler:
    """Measures known cache directories and logs changes as cache events."""

    def __init__(
        self,
        store: RecordStore,
        home: Path,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._home = Path(home)
        self._clock = clock

    def cache_dirs(self) -> list[Path]:
        dirs: list[Path] = []
        cache_root = self._home / ".cache"
        try:
            dirs.extend(sorted(p for p in cache_root.iterdir() if p.is_dir() and not p.is_symlink()))
        except OSError as e:
            log.debug("Cannot list %s: %s", cache_root, e)
        for extra in (self._home / ".npm" / "_cacache", self._home / ".thumbnails"):
            if extra.is_dir():
                dirs.append(extra)
        return dirs

    def sample(self) -> list[CacheEvent]:
        now = self._clock()
        events: list[CacheEvent] = []
        seen: set[str] = set()
        for directory in self.cache_dirs():
            key = str(directory)
            seen.add(key)
            size = dir_info(directory)[0]
            previous = self._store.cache_sample(key)
            event = self._event_for(directory, previous, size, now)
            if event is not None:
                events.append(event)
            self._store.set_cache_sample(key, size, now)

        for key, previous in self._store.cache_samples().items():
            if key not in seen and previous > 0:
                events.append(CacheEvent(key, -previous, EVENT_CLEANUP, now, source_for(Path(key), self._home)))
                self._store.set_cache_sample(key, 0, now)

        for event in events:
            self._store.record_cache_event(event)
        log.debug("Cache sample recorded %d events", len(events))
        return events

    def current_sizes(self) -> dict[str, int]:
        sizes: dict[str, int] = defaultdict(int)
        for key, size in self._store.cache_samples().items():
            sizes[source_for(Path(key), self._home)] += size
        return dict(sizes)

    def _event_for(self, directory: Path, previous: int | None, size: int, now: float) -> CacheEvent | None:
        source = source_for(directory, self._home)
        if previous is None:
            return CacheEvent(str(directory), size, EVENT_NEW, now, source)
        if size > previous:
            return CacheEvent(str(directory), size - previous, EVENT_GROWTH, now, source)
        if size < previous:
            return CacheEvent(str(directory), size - previous, EVENT_CLEANUP, now, source)
        return None


def cache_dir_for(path: Path, home: Path) -> Path | None:
    """The sampled cache directory containing *path*, if any."""
    path = Path(path)
    cache_root = home / ".cache"
    if path.is_relative_to(cache_root) and path != cache_root:
        return cache_root / path.relative_to(cache_root).parts[0]
    for root in (home / ".npm" / "_cacache", home / ".thumbnails"):
        if path == root or path.is_relative_to(root):
            return root
    return None
