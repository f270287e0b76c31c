"""CLI entry point for winlog."""

from __future__ import annotations

import json
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

import click
from pydantic import ValidationError as PydanticValidationError

from winlog.activity import ActivityStore
from winlog.config import get_settings
from winlog.dates import Granularity, key_to_date, parse_timestamp
from winlog.db import EntryStore
from winlog.errors import WinlogError
from winlog.heatmap import HeatmapCell, level_for_count
from winlog.logging_config import configure_logging
from winlog.models import Entry, ImportedEntry, extract_tags

HEAT_CHARS = "·░▒▓█"

PERIOD_CHOICE = click.Choice([g.value for g in Granularity])


def format_relative_time(when: datetime, *, now: datetime | None = None) -> str:
    """Format a timestamp as relative time (e.g., '5 minutes ago').

    Args:
        when: Aware datetime.
        now: Optional current time for testing (defaults to UTC now)

    Returns:
        Relative time string.
    """
    if now is None:
        now = datetime.now(timezone.utc)
    seconds = (now - when).total_seconds()
    if seconds < 60:
        # Includes future timestamps from clock skew
        return "just now"
    elif seconds < 3600:
        minutes = int(seconds / 60)
        return f"{minutes} minute{'s' if minutes != 1 else ''} ago"
    elif seconds < 86400:
        hours = int(seconds / 3600)
        return f"{hours} hour{'s' if hours != 1 else ''} ago"
    else:
        days = int(seconds / 86400)
        return f"{days} day{'s' if days != 1 else ''} ago"


def format_markers(entry: Entry) -> str:
    markers = [
        name
        for name, flag in (
            ("day", entry.is_daily_top),
            ("week", entry.is_weekly_top),
            ("month", entry.is_monthly_top),
        )
        if flag
    ]
    return f" [top {'/'.join(markers)}]" if markers else ""


def format_entry(entry: Entry, *, now: datetime | None = None) -> str:
    when = format_relative_time(entry.created_at, now=now) if entry.created_at else "pending"
    return f"{entry.id[:7]}  {when:<16} {entry.text}{format_markers(entry)}"


def render_heatmap(cells: list[HeatmapCell]) -> list[str]:
    """Render heatmap cells as one line per 7 days.

    Args:
        cells: Cells oldest first.

    Returns:
        Lines like '2025-01-06  ·░▒▓█··'.
    """
    max_count = max((cell.count for cell in cells), default=0)
    lines = []
    for i in range(0, len(cells), 7):
        week = cells[i : i + 7]
        row = "".join(HEAT_CHARS[level_for_count(cell.count, max_count)] for cell in week)
        lines.append(f"{week[0].day_key}  {row}")
    return lines


def _fail(message: str) -> None:
    click.echo(message, err=True)
    sys.exit(1)


@contextmanager
def open_activity(ctx: click.Context, *, create: bool = False) -> Iterator[ActivityStore]:
    """Open the database and load the owner's activity.

    Errors from winlog operations are reported on stderr with exit code 1.
    """
    db: Path = ctx.obj["db"]
    if not create and not db.exists():
        _fail("No database found")
    db.parent.mkdir(parents=True, exist_ok=True)

    settings = get_settings()
    try:
        with EntryStore.open(db) as store:
            with ActivityStore(
                store,
                ctx.obj["owner"],
                entry_window=settings.entry_window,
                heatmap_days=settings.heatmap_days,
                tz=settings.tzinfo,
            ) as activity:
                yield activity
    except WinlogError as e:
        _fail(f"Error: {e}")


def _resolve(activity: ActivityStore, prefix: str) -> Entry:
    try:
        entry = activity.resolve_entry(prefix)
    except ValueError as e:
        _fail(str(e))
    if entry is None:
        _fail(f"No entry matches '{prefix}'")
    return entry


@click.group()
@click.option(
    "--db",
    type=click.Path(path_type=Path),
    default=None,
    help="Path to SQLite database",
)
@click.option("--owner", default=None, help="Owner whose entries are used")
@click.pass_context
def main(ctx: click.Context, db: Path | None, owner: str | None) -> None:
    """winlog: a log of daily wins."""
    settings = get_settings()
    configure_logging(settings.log_level)
    ctx.ensure_object(dict)
    ctx.obj["db"] = db or settings.db_path
    ctx.obj["owner"] = owner or settings.owner_id


@main.command("add")
@click.argument("text", nargs=-1, required=True)
@click.pass_context
def add_command(ctx: click.Context, text: tuple[str, ...]) -> None:
    """Record a win. Words starting with # become tags.

    Example:
        winlog add "Shipped the importer #work"
    """
    with open_activity(ctx, create=True) as activity:
        entry = activity.add_entry(" ".join(text))
        click.echo(f"Added {entry.id[:7]}" + (f" ({', '.join(entry.tags)})" if entry.tags else ""))
        if activity.goal_reached():
            click.echo(f"Daily goal of {activity.settings.daily_goal} reached!")
        streak = activity.get_streak()
        if activity.settings.show_streak and streak > 0:
            click.echo(f"Streak: {streak} day{'s' if streak != 1 else ''}")


@main.command("list")
@click.option("--tag", help="Only entries with this tag or text")
@click.option("--limit", type=int, help="Maximum number of entries to output")
@click.option("--json", "output_json", is_flag=True, help="Output as JSONL")
@click.pass_context
def list_command(ctx: click.Context, tag: str | None, limit: int | None, output_json: bool) -> None:
    """List recent entries, newest first."""
    with open_activity(ctx) as activity:
        entries = activity.entries(tag=tag)
    if limit is not None:
        entries = entries[:limit]

    if output_json:
        for entry in entries:
            click.echo(entry.model_dump_json())
        return

    if not entries:
        click.echo("No entries yet")
        return
    for entry in entries:
        click.echo(format_entry(entry))


@main.command("edit")
@click.argument("entry_id")
@click.argument("text", nargs=-1, required=True)
@click.pass_context
def edit_command(ctx: click.Context, entry_id: str, text: tuple[str, ...]) -> None:
    """Replace an entry's text. Tags keep their original values."""
    with open_activity(ctx) as activity:
        entry = _resolve(activity, entry_id)
        activity.update_entry_text(entry.id, " ".join(text))
    click.echo(f"Updated {entry.id[:7]}")


@main.command("delete")
@click.argument("entry_id")
@click.pass_context
def delete_command(ctx: click.Context, entry_id: str) -> None:
    """Delete an entry."""
    with open_activity(ctx) as activity:
        entry = _resolve(activity, entry_id)
        deleted = activity.delete_entry(entry)
    if deleted:
        click.echo(f"Deleted {entry.id[:7]}")
    else:
        click.echo(f"Entry {entry.id[:7]} was already deleted")


@main.command("top")
@click.argument("entry_id")
@click.option("--period", type=PERIOD_CHOICE, default="day", help="Day, week or month")
@click.pass_context
def top_command(ctx: click.Context, entry_id: str, period: str) -> None:
    """Mark an entry as the top win of its day, week or month."""
    with open_activity(ctx) as activity:
        entry = _resolve(activity, entry_id)
        if not activity.mark_top(entry.id, period):
            _fail(f"Could not mark {entry.id[:7]} as top of the {period}")
    click.echo(f"Marked {entry.id[:7]} as top of the {period}")


@main.command("streak")
@click.pass_context
def streak_command(ctx: click.Context) -> None:
    """Show the current streak."""
    with open_activity(ctx) as activity:
        streak = activity.get_streak()
    click.echo(f"{streak} day{'s' if streak != 1 else ''}")


@main.command("heatmap")
@click.option("--days", type=int, default=None, help="Number of days (default: 140)")
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
@click.pass_context
def heatmap_command(ctx: click.Context, days: int | None, output_json: bool) -> None:
    """Show activity for recent days, one row per 7 days."""
    with open_activity(ctx) as activity:
        cells = activity.get_heatmap(days)

    if output_json:
        click.echo(json.dumps([cell.model_dump() for cell in cells], indent=2))
        return
    for line in render_heatmap(cells):
        click.echo(line)


@main.command("calendar")
@click.option("--month", "month_str", default=None, help="Month as YYYY-MM (default: this month)")
@click.pass_context
def calendar_command(ctx: click.Context, month_str: str | None) -> None:
    """Show a month calendar. '.' marks days with entries, '*' a top win."""
    if month_str is None:
        today = datetime.now().astimezone(get_settings().tzinfo)
        year, month = today.year, today.month
    else:
        try:
            parsed = datetime.strptime(month_str, "%Y-%m")
        except ValueError:
            _fail(f"Invalid month format: {month_str}. Use YYYY-MM.")
        year, month = parsed.year, parsed.month

    with open_activity(ctx) as activity:
        weeks = activity.calendar(year, month)

    click.echo(datetime(year, month, 1).strftime("%B %Y"))
    click.echo("Mo  Tu  We  Th  Fr  Sa  Su")
    for week in weeks:
        cells = []
        for day in week:
            if not day.in_month:
                cells.append("   ")
                continue
            mark = "*" if day.has_daily_top else "." if day.count else " "
            cells.append(f"{key_to_date(day.day_key).day:>2}{mark}")
        click.echo(" ".join(cells).rstrip())


@main.command("status")
@click.pass_context
def status_command(ctx: click.Context) -> None:
    """Show entry totals, streak and today's progress."""
    with open_activity(ctx) as activity:
        aggregate = activity.aggregate
        entries = activity.entries()
        today = activity.today_count()
        goal = activity.settings.daily_goal
        streak = activity.get_streak()

    click.echo(f"Database: {ctx.obj['db']}")
    click.echo(f"Owner: {ctx.obj['owner']}")
    click.echo()

    if not entries:
        click.echo("No entries recorded")
        return

    click.echo(f"Days with entries: {len(aggregate.daily_counts)}")
    click.echo(f"Today: {today}/{goal}")
    click.echo(f"Streak: {streak} day{'s' if streak != 1 else ''}")
    latest = next((e for e in entries if e.created_at), None)
    if latest is not None:
        click.echo(f"Last entry: {format_relative_time(latest.created_at)}")


@main.command("reconcile")
@click.option("--full", is_flag=True, help="Check the whole log, not just recent entries")
@click.pass_context
def reconcile_command(ctx: click.Context, full: bool) -> None:
    """Repair counts that are missing from the aggregate."""
    with open_activity(ctx) as activity:
        if full:
            activity.backfill()
        healed = activity.heal_count
    if healed:
        click.echo("Aggregate healed")
    else:
        click.echo("Aggregate consistent")


@main.command("import")
@click.pass_context
def import_command(ctx: click.Context) -> None:
    """Import entries from stdin (JSONL format).

    Each line needs "text" and "created_at". Entries go straight into the
    log; counts are repaired afterwards. Duplicate entries (same ID) are
    silently skipped.

    Example usage:
        cat entries.jsonl | winlog import
    """
    db: Path = ctx.obj["db"]
    owner: str = ctx.obj["owner"]
    db.parent.mkdir(parents=True, exist_ok=True)

    imported_count = 0
    valid_count = 0
    has_input = False

    try:
        with EntryStore.open(db) as store:
            for line_number, line in enumerate(sys.stdin, 1):
                stripped = line.strip()
                if not stripped:
                    continue

                has_input = True

                try:
                    data = json.loads(stripped)
                    entry = ImportedEntry.model_validate(data)
                    parse_timestamp(entry.created_at)
                    valid_count += 1
                    tags = entry.tags if entry.tags is not None else extract_tags(entry.text)
                    if store.insert_imported_entry(owner, entry, tags):
                        imported_count += 1
                except json.JSONDecodeError as e:
                    click.echo(f"Warning: line {line_number}: invalid JSON: {e}", err=True)
                except PydanticValidationError as e:
                    click.echo(f"Warning: line {line_number}: validation error: {e}", err=True)
                except ValueError as e:
                    click.echo(f"Warning: line {line_number}: invalid timestamp: {e}", err=True)
    except WinlogError as e:
        _fail(f"Error: {e}")

    click.echo(f"Imported {imported_count} entries")

    if imported_count:
        with open_activity(ctx) as activity:
            activity.backfill()

    # Exit code 1 if we had input but no valid entries (all lines were errors)
    if has_input and valid_count == 0:
        sys.exit(1)


@main.command("memory")
@click.pass_context
def memory_command(ctx: click.Context) -> None:
    """Resurface an older win."""
    with open_activity(ctx) as activity:
        entry = activity.memory()
    if entry is None:
        click.echo("No memories yet")
        return
    click.echo(format_entry(entry))


@main.command("reflect")
@click.option("--period", type=PERIOD_CHOICE, default="day", help="Day, week or month")
@click.pass_context
def reflect_command(ctx: click.Context, period: str) -> None:
    """List this period's entries to pick a top win from."""
    with open_activity(ctx) as activity:
        candidates = activity.reflection_candidates(period)
        has_top = activity.has_top(period)
        due = activity.reflection_due(period)

    if has_top:
        click.echo(f"This {period} already has a top win.")
    elif due:
        click.echo(f"Time to pick the top win of the {period}.")
    if not candidates:
        click.echo(f"No entries this {period}")
        return
    for entry in candidates:
        click.echo(format_entry(entry))


@main.command("export")
@click.pass_context
def export_command(ctx: click.Context) -> None:
    """Export entries, counts and settings as JSON."""
    with open_activity(ctx) as activity:
        data = activity.export()
    click.echo(json.dumps(data, indent=2))


@main.command("wipe")
@click.confirmation_option(prompt="Delete all entries, counts and settings?")
@click.pass_context
def wipe_command(ctx: click.Context) -> None:
    """Delete all of the owner's data."""
    with open_activity(ctx) as activity:
        deleted = activity.delete_all()
    click.echo(f"Deleted {deleted} entries")


@main.command("settings")
@click.argument("assignments", nargs=-1)
@click.pass_context
def settings_command(ctx: click.Context, assignments: tuple[str, ...]) -> None:
    """Show or change preferences.

    Example:
        winlog settings daily_goal=5 lang=en
    """
    updates = {}
    for assignment in assignments:
        key, sep, value = assignment.partition("=")
        if not sep:
            _fail(f"Invalid setting '{assignment}'. Use KEY=VALUE.")
        updates[key.strip()] = value.strip()

    with open_activity(ctx, create=True) as activity:
        settings = activity.update_settings(**updates) if updates else activity.settings

    for key, value in settings.model_dump().items():
        click.echo(f"{key}: {value}")


if __name__ == "__main__":
    main()
