"""CLI interface for Pulito."""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import click

from pulito.core.engine import OLD_FILE_DAYS, PulitoEngine
from pulito.core.scanner import ScanPass
from pulito.errors import PulitoError, ScanResourceLimit, ScanTimeout
from pulito.models.scan_result import Category, RiskTier, ScanItem, item_id
from pulito.settings import PulitoConfig
from pulito.utils import bytes_to_human, format_elapsed, format_relative_time


def _setup_logging(verbosity: int) -> None:
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s")


def _build_engine() -> PulitoEngine:
    return PulitoEngine(PulitoConfig.from_settings())


def _fail(message: str) -> None:
    click.echo(click.style(f"Error: {message}", fg="red"), err=True)
    sys.exit(1)


def _dump(data: Any) -> None:
    click.echo(json.dumps(data, indent=2))


def _tier_tag(tier: RiskTier) -> str:
    colors = {0: "green", 1: "cyan", 2: "yellow", 3: "yellow", 4: "red"}
    return click.style(f"[tier {int(tier)}]", fg=colors.get(int(tier), "red"))


def _item_line(item: ScanItem, indent: str = "  ") -> str:
    size = click.style(f"{bytes_to_human(item.size_bytes):>10s}", fg="green", bold=True)
    return f"{indent}{size}  {_tier_tag(item.risk_tier)} {click.style(item.id, fg='bright_black')}  {item.path}"


@click.group()
@click.option("-v", "--verbose", count=True, help="Increase verbosity (-v info, -vv debug)")
def main(verbose: int) -> None:
    """Pulito, a safe disk space reclaimer for Linux."""
    _setup_logging(verbose)


# ── scan ─────────────────────────────────────────────────────────────────

@main.command()
@click.argument("root", required=False, type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.option("--pass", "passes", multiple=True, type=click.Choice([p.value for p in ScanPass]),
              help="Restrict the scan to these passes (repeatable)")
@click.option("--no-hidden", is_flag=True, help="Skip hidden files and directories")
@click.option("--max-depth", type=int, default=None, help="Maximum directory depth")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def scan(root: Path | None, passes: tuple[str, ...], no_hidden: bool, max_depth: int | None, as_json: bool) -> None:
    """Scan for reclaimable files (preview only, never deletes)."""
    engine = _build_engine()
    options = engine.scan_options(
        passes=frozenset(ScanPass(p) for p in passes) or None,
        include_hidden=False if no_hidden else None,
        max_depth=max_depth,
    )
    if not as_json:
        click.echo(f"\nScanning {root or engine.home}...\n")

    try:
        report = engine.scan(root, options)
    except (ScanTimeout, ScanResourceLimit) as e:
        if e.partial is None:
            _fail(str(e))
        click.echo(click.style(f"Warning: {e}, showing partial results", fg="yellow"), err=True)
        report = e.partial
    except PulitoError as e:
        _fail(str(e))
        return

    if as_json:
        _dump(report.to_dict())
        return

    by_category: dict[Category, list[ScanItem]] = {}
    for item in report.items:
        by_category.setdefault(item.category, []).append(item)
    for category, items in sorted(by_category.items(), key=lambda kv: kv[0].value):
        total = sum(i.size_bytes for i in items)
        click.echo(f"  {click.style(category.value, fg='blue', bold=True)}: {bytes_to_human(total)} ({len(items):,} items)")
        for item in sorted(items, key=lambda i: -i.size_bytes)[:10]:
            click.echo(_item_line(item, indent="    "))
        if len(items) > 10:
            click.echo(click.style(f"    ... and {len(items) - 10:,} more", fg="bright_black"))

    for failed in report.failed_passes:
        click.echo(f"  {click.style('✗', fg='red')} {failed.name} pass failed: {failed.error}")

    click.echo(
        f"\nTotal reclaimable: {click.style(bytes_to_human(report.total_bytes), fg='green', bold=True)}"
        f" in {format_elapsed(report.elapsed)}\n"
    )


@main.command()
@click.argument("root", required=False, type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def health(root: Path | None, as_json: bool) -> None:
    """Find empty directories, broken symlinks and stale temp files."""
    engine = _build_engine()
    try:
        report = engine.scan_filesystem_health(root)
    except PulitoError as e:
        _fail(str(e))
        return

    if as_json:
        _dump(report.to_dict())
        return

    sections = (
        ("Empty directories", report.empty_dirs),
        ("Broken symlinks", report.broken_symlinks),
        ("Orphaned temp files", report.orphaned_temp_files),
    )
    for title, items in sections:
        click.echo(f"\n  {click.style(title, fg='blue', bold=True)} ({len(items):,})")
        for item in items:
            click.echo(_item_line(item, indent="    "))
    click.echo(f"\nTotal: {bytes_to_human(report.total_bytes)} in {report.total_items:,} items\n")


@main.command()
@click.argument("root", required=False, type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def recover(root: Path | None, as_json: bool) -> None:
    """Find duplicates, large files and stale downloads."""
    engine = _build_engine()
    try:
        report = engine.scan_storage_recovery(root)
    except PulitoError as e:
        _fail(str(e))
        return

    if as_json:
        _dump(report.to_dict())
        return

    click.echo(f"\n  {click.style('Duplicate groups', fg='blue', bold=True)} ({len(report.duplicate_groups):,})")
    for group in report.duplicate_groups:
        click.echo(f"    {bytes_to_human(group.reclaimable_size):>10s} reclaimable, keeping {group.kept.path}")
        for dup in group.redundant:
            click.echo(_item_line(dup, indent="      "))
    click.echo(f"\n  {click.style('Large files', fg='blue', bold=True)} ({len(report.large_files):,})")
    for item in report.large_files:
        click.echo(_item_line(item, indent="    "))
    click.echo(f"\n  {click.style('Old downloads', fg='blue', bold=True)} ({len(report.old_downloads):,})")
    for item in report.old_downloads:
        click.echo(_item_line(item, indent="    "))
    click.echo(f"\nRecoverable: {click.style(bytes_to_human(report.total_bytes), fg='green', bold=True)}\n")


# ── clean ────────────────────────────────────────────────────────────────

@main.command()
@click.argument("root", required=False, type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.option("--path", "paths", multiple=True, type=click.Path(path_type=Path),
              help="Clean these paths instead of scan results (repeatable)")
@click.option("--category", "-c", "categories", multiple=True, type=click.Choice([c.value for c in Category]),
              help="Only clean these categories (repeatable)")
@click.option("--max-tier", type=click.IntRange(0, 4), default=0, show_default=True,
              help="Highest risk tier to clean")
@click.option("--permanent", is_flag=True, help="Delete instead of moving to the trash")
@click.option("--retention-days", type=click.IntRange(min=1), default=None, help="Days to keep trashed items")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation")
@click.option("--dry-run", is_flag=True, help="Show what would be cleaned without doing it")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def clean(
    root: Path | None,
    paths: tuple[Path, ...],
    categories: tuple[str, ...],
    max_tier: int,
    permanent: bool,
    retention_days: int | None,
    yes: bool,
    dry_run: bool,
    as_json: bool,
) -> None:
    """Scan and clean reclaimable items (moved to the trash by default)."""
    engine = _build_engine()

    if paths:
        targets = [str(p.absolute()) for p in paths]
        ids = [item_id(p) for p in targets]
        if dry_run:
            _dump({"status": "dry_run", "paths": targets}) if as_json else click.echo("\n".join(targets))
            return
        if not yes and not as_json and not click.confirm(f"Clean {len(targets)} path(s)?"):
            click.echo("Aborted.")
            return
        try:
            result = engine.clean_items(ids, targets, use_trash=not permanent, retention_days=retention_days)
        except PulitoError as e:
            _fail(str(e))
            return
        _print_clean_result(result, as_json)
        return

    if not as_json:
        click.echo("\nScanning...\n")
    try:
        report = engine.scan(root)
    except PulitoError as e:
        _fail(str(e))
        return

    wanted = {Category(c) for c in categories}
    actionable = [
        item for item in report.items
        if item.reclaimable and item.risk_tier <= max_tier and (not wanted or item.category in wanted)
    ]
    if not actionable:
        if as_json:
            _dump({"status": "nothing_to_clean", "result": None})
        else:
            click.echo("Nothing to clean.")
        return

    total = sum(i.size_bytes for i in actionable)
    if not as_json:
        for item in actionable:
            click.echo(_item_line(item))
        click.echo(f"\nTotal: {click.style(bytes_to_human(total), fg='green', bold=True)}\n")

    if dry_run:
        if as_json:
            _dump({"status": "dry_run", "would_free_bytes": total, "items": [i.to_dict() for i in actionable]})
        else:
            click.echo("(dry run, nothing was removed)")
        return

    if not yes and not as_json:
        action = "Delete permanently" if permanent else "Move to trash"
        if not click.confirm(f"{action} {len(actionable):,} items?"):
            click.echo("Aborted.")
            return

    try:
        result = engine.clean([i.id for i in actionable], use_trash=not permanent, retention_days=retention_days)
    except PulitoError as e:
        _fail(str(e))
        return
    _print_clean_result(result, as_json)


def _print_clean_result(result, as_json: bool) -> None:
    if as_json:
        _dump({"status": "cleaned", "result": result.to_dict()})
        return
    mark = click.style("✓", fg="green") if not result.failed else click.style("!", fg="yellow")
    click.echo(
        f"\n{mark} Cleaned {result.cleaned:,} items, freed "
        f"{click.style(bytes_to_human(result.freed_bytes), fg='green', bold=True)}"
    )
    for error in result.errors:
        click.echo(f"  {click.style('✗', fg='red')} {error}")
    click.echo()


# ── trash ────────────────────────────────────────────────────────────────

@main.group()
def trash() -> None:
    """Inspect and manage quarantined items."""


@trash.command("list")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def trash_list(as_json: bool) -> None:
    """List items in the trash."""
    listing = _build_engine().trash_list()
    if as_json:
        _dump(listing.to_dict())
        return
    if not listing.items:
        click.echo("Trash is empty.")
        return
    for item in listing.items:
        expires = format_relative_time(item.expires_at.isoformat())
        click.echo(
            f"  {click.style(item.id, fg='cyan')}  {bytes_to_human(item.size_bytes):>10s}  "
            f"{item.original_path}  {click.style(f'(expires {expires})', fg='bright_black')}"
        )
    click.echo(f"\n{listing.total_items:,} items, {bytes_to_human(listing.total_bytes)}\n")


@trash.command("restore")
@click.argument("trash_ids", nargs=-1, required=True)
def trash_restore(trash_ids: tuple[str, ...]) -> None:
    """Restore items to their original location."""
    engine = _build_engine()
    failed = False
    for trash_id in trash_ids:
        try:
            target = engine.trash_restore(trash_id)
            click.echo(f"  {click.style('✓', fg='green')} Restored {target}")
        except PulitoError as e:
            click.echo(f"  {click.style('✗', fg='red')} {trash_id}: {e}", err=True)
            failed = True
    if failed:
        sys.exit(1)


@trash.command("delete")
@click.argument("trash_ids", nargs=-1, required=True)
def trash_delete(trash_ids: tuple[str, ...]) -> None:
    """Permanently delete items from the trash."""
    engine = _build_engine()
    failed = False
    for trash_id in trash_ids:
        try:
            freed = engine.trash_delete(trash_id)
            click.echo(f"  {click.style('✓', fg='green')} Deleted {trash_id} ({bytes_to_human(freed)})")
        except PulitoError as e:
            click.echo(f"  {click.style('✗', fg='red')} {trash_id}: {e}", err=True)
            failed = True
    if failed:
        sys.exit(1)


@trash.command("empty")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation")
def trash_empty(yes: bool) -> None:
    """Permanently delete everything in the trash."""
    if not yes and not click.confirm("Permanently delete all trashed items?"):
        click.echo("Aborted.")
        return
    count = _build_engine().trash_empty()
    click.echo(f"Deleted {count:,} items.")


@trash.command("sweep")
def trash_sweep() -> None:
    """Delete items whose retention period has elapsed."""
    count = _build_engine().trash_sweep()
    click.echo(f"Swept {count:,} expired items.")


# ── packages ─────────────────────────────────────────────────────────────

@main.group()
def packages() -> None:
    """Orphaned package management."""


@packages.command("orphans")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def packages_orphans(as_json: bool) -> None:
    """List installed packages nothing depends on."""
    try:
        orphans = _build_engine().find_orphans()
    except PulitoError as e:
        _fail(str(e))
        return
    if as_json:
        _dump([{"name": r.name, "version": r.version, "size_bytes": r.size_bytes} for r in orphans])
        return
    if not orphans:
        click.echo("No orphaned packages.")
        return
    for record in orphans:
        click.echo(f"  {record.name:35s} {record.version:25s} {bytes_to_human(record.size_bytes):>10s}")


@packages.command("clean")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def packages_clean(yes: bool, as_json: bool) -> None:
    """Remove orphaned packages and trash user package caches."""
    if not yes and not as_json and not click.confirm("Remove orphaned packages and package caches?"):
        click.echo("Aborted.")
        return
    try:
        result = _build_engine().clean_packages()
    except PulitoError as e:
        _fail(str(e))
        return
    _print_clean_result(result, as_json)


# ── old files ────────────────────────────────────────────────────────────

@main.group("old-files")
def old_files() -> None:
    """Files found by `recover` that have not been used for a long time."""


@old_files.command("summary")
@click.option("--days", type=click.IntRange(min=1), default=OLD_FILE_DAYS, show_default=True,
              help="Days since last access")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def old_files_summary(days: int, as_json: bool) -> None:
    """Count tracked files not accessed for DAYS days."""
    summary = _build_engine().old_files_summary(days)
    if as_json:
        _dump(summary.to_dict())
        return
    click.echo(
        f"{summary.total_files:,} files not accessed in {days} days, "
        f"{click.style(bytes_to_human(summary.total_size), fg='cyan', bold=True)}"
    )


@old_files.command("clean")
@click.option("--days", type=click.IntRange(min=1), default=OLD_FILE_DAYS, show_default=True,
              help="Days since last access")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def old_files_clean(days: int, yes: bool, as_json: bool) -> None:
    """Move tracked files not accessed for DAYS days to the trash."""
    if not yes and not as_json and not click.confirm(f"Move files not accessed in {days} days to the trash?"):
        click.echo("Aborted.")
        return
    try:
        result = _build_engine().cleanup_old_files(days)
    except PulitoError as e:
        _fail(str(e))
        return
    _print_clean_result(result, as_json)


# ── analytics / stats ────────────────────────────────────────────────────

@main.command()
@click.option("--no-sample", is_flag=True, help="Use recorded events only, do not measure caches now")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def analytics(no_sample: bool, as_json: bool) -> None:
    """Show cache growth and recommended cache limits."""
    data = _build_engine().cache_analytics(sample=not no_sample)
    if as_json:
        _dump(data.to_dict())
        return

    click.echo(f"\nTotal cache: {click.style(bytes_to_human(data.total_cache_bytes), fg='cyan', bold=True)}\n")
    for c in data.contributors:
        rate = bytes_to_human(int(c.growth_rate))
        click.echo(
            f"  {c.source:25s} {bytes_to_human(c.size_bytes):>10s}  {rate:>10s}/day"
            f"  limit {bytes_to_human(c.recommended_limit)}"
        )
    click.echo("\n  Last 7 days:")
    for point in data.growth_trend:
        click.echo(f"    {_day_label(point.timestamp)}  {bytes_to_human(point.total_bytes):>10s}")
    click.echo()


@main.command("cache-events")
@click.option("--limit", "-n", type=click.IntRange(min=1), default=50, show_default=True)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def cache_events(limit: int, as_json: bool) -> None:
    """Show the most recent cache size changes."""
    events = _build_engine().recent_cache_events(limit)
    if as_json:
        _dump([e.to_dict() for e in events])
        return
    if not events:
        click.echo("No cache events recorded.")
        return
    for e in events:
        when = datetime.fromtimestamp(e.timestamp, tz=timezone.utc).strftime("%Y-%m-%d %H:%M")
        delta = ("+" if e.size_delta >= 0 else "") + bytes_to_human(e.size_delta)
        click.echo(f"  {when}  {e.kind:8s} {delta:>11s}  {e.source or '-':20s} {e.path}")


def _day_label(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d")


@main.command()
@click.option("--period", "-p", default="all", type=click.Choice(["today", "week", "month", "all"]))
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def stats(period: str, as_json: bool) -> None:
    """Show space freed statistics."""
    data = _build_engine().stats(period)

    if as_json:
        _dump(data)
        return

    click.echo(f"\n{click.style('📊', bold=True)} Statistics ({period})\n")
    click.echo(f"  Bytes freed:    {click.style(bytes_to_human(data['bytes_freed']), fg='green', bold=True)}")
    click.echo(f"  Items cleaned:  {data['items_cleaned']:,}")
    click.echo(f"  Sessions:       {data['session_count']}")
    click.echo(f"  Lifetime total: {click.style(bytes_to_human(data['lifetime_bytes_freed']), fg='cyan', bold=True)}")

    if data["per_operation"]:
        click.echo("\n  Per-operation breakdown:")
        for op, ostats in sorted(data["per_operation"].items(), key=lambda x: x[1]["bytes_freed"], reverse=True):
            click.echo(f"    {op:25s} {bytes_to_human(ostats['bytes_freed']):>10s}  ({ostats['items_cleaned']:,} items)")
    click.echo()


# ── service ──────────────────────────────────────────────────────────────

@main.group()
def service() -> None:
    """D-Bus service management."""


@service.command("start")
def service_start() -> None:
    """Start the D-Bus service in foreground."""
    from pulito.dbus_service import start_service

    click.echo("Starting Pulito D-Bus service...")
    start_service()
