"""Rich-powered tables for parsed entries, run statistics and queue state."""
from __future__ import annotations

from typing import Sequence

from rich import box
from rich.console import Console
from rich.table import Table

from ..aggregators.stats import RunStats
from ..jobs.models import QueueStatus
from ..parsers.base import LogEntry
from ..store.stats_store import StatsRecord

_console = Console()

_LEVEL_STYLES = {"ERROR": "red", "CRITICAL": "bold red", "WARNING": "yellow", "WARN": "yellow"}


def level_style(level: str) -> str:
    upper = level.upper()
    for name, style in _LEVEL_STYLES.items():
        if name in upper:
            return style
    return ""


def print_entries_table(
    entries: Sequence[LogEntry],
    title: str = "Log Entries",
    console: Console | None = None,
) -> None:
    """Render parsed entries, one row each, coloured by level."""
    out = console or _console
    if not entries:
        out.print("[yellow]No entries to display.[/yellow]")
        return

    table = Table(title=title, box=box.ROUNDED, show_lines=False)
    table.add_column("timestamp", style="dim", no_wrap=True)
    table.add_column("level")
    table.add_column("message", overflow="fold", max_width=70)
    table.add_column("ip")
    for entry in entries:
        table.add_row(
            entry.timestamp, entry.level, entry.message, entry.ip or "",
            style=level_style(entry.level),
        )
    out.print(table)


def print_counter_table(
    counts: Sequence[tuple[str, int]],
    title: str = "Top values",
    value_col: str = "Value",
    count_col: str = "Count",
    console: Console | None = None,
) -> None:
    """Render (value, count) pairs as a ranked table."""
    table = Table(title=title, box=box.SIMPLE_HEAVY)
    table.add_column("#", style="dim", width=4)
    table.add_column(value_col)
    table.add_column(count_col, justify="right", style="cyan")

    for rank, (value, count) in enumerate(counts, start=1):
        table.add_row(str(rank), value, str(count))

    (console or _console).print(table)


def print_run_stats(
    stats: RunStats,
    title: str = "Statistics",
    top_ips: int = 10,
    console: Console | None = None,
) -> None:
    """Summary, keyword and top-IP tables for one run."""
    out = console or _console
    summary = Table(title=title, box=box.MINIMAL_DOUBLE_HEAD)
    summary.add_column("Metric", style="bold")
    summary.add_column("Value", justify="right", style="cyan")
    summary.add_row("total lines", str(stats.total_lines))
    summary.add_row("errors", str(stats.error_count))
    summary.add_row("warnings", str(stats.warning_count))
    summary.add_row("processing time (ms)", str(stats.processing_time_ms))
    out.print(summary)

    print_counter_table(
        list(stats.keyword_matches.items()),
        title="Keyword matches", value_col="Keyword", console=out,
    )
    ips = sorted(stats.ip_addresses.items(), key=lambda kv: (-kv[1], kv[0]))[:top_ips]
    if ips:
        print_counter_table(ips, title=f"Top {len(ips)} IP addresses", value_col="IP", console=out)


def record_to_stats(record: StatsRecord) -> RunStats:
    return RunStats(
        total_lines=record.total_lines,
        error_count=record.error_count,
        warning_count=record.warning_count,
        keyword_matches=dict(record.keyword_matches),
        ip_addresses=dict(record.ip_addresses),
        processing_time_ms=record.processing_time,
    )


def print_queue_status(status: QueueStatus, console: Console | None = None) -> None:
    table = Table(title="Queue", box=box.SIMPLE_HEAVY)
    for col in ("waiting", "active", "completed", "failed", "total"):
        table.add_column(col, justify="right")
    table.add_row(
        str(status.waiting), str(status.active), str(status.completed),
        str(status.failed), str(status.total),
    )
    (console or _console).print(table)
