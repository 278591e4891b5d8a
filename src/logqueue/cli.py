"""logqueue CLI entry point.

Commands:
    logqueue parse    <file>        Parse and display structured entries
    logqueue analyze  <file>        Aggregate statistics for one file
    logqueue process  <file>...     Run files through the job queue and workers
"""
from __future__ import annotations

import asyncio
import json
import shutil
import tempfile
from pathlib import Path
from typing import Any

import click
from rich.console import Console

from .aggregators.stats import StatsAccumulator
from .config import load_settings, normalise_keywords
from .log import configure_logging
from .parsers.bracket import BracketLogParser, parse_line
from .service import LogQueueService
from .store.stats_store import StatsStatus
from .visualization.tables import (
    print_entries_table,
    print_queue_status,
    print_run_stats,
    record_to_stats,
)

console = Console()
err_console = Console(stderr=True)


# ── CLI root ─────────────────────────────────────────────────────────────────


@click.group()
@click.version_option(version="1.0.0", prog_name="logqueue")
@click.option(
    "--log-level", default="WARNING", show_default=True,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Verbosity of the library log output (stderr).",
)
def main(log_level: str) -> None:
    """logqueue: queue-driven log file statistics."""
    configure_logging(log_level, console=err_console)


# ── parse ────────────────────────────────────────────────────────────────────


@main.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--limit", "-n", default=0, type=int, help="Max entries to display (0 = all).")
@click.option(
    "--output", "-o", "output_fmt", default="table",
    type=click.Choice(["table", "json"], case_sensitive=False),
    show_default=True,
)
def parse(file: Path, limit: int, output_fmt: str) -> None:
    """Parse a log file and display the structured entries.

    Lines without the ``[timestamp] LEVEL message`` shape are skipped.

    \b
    Examples:
      logqueue parse app.log
      logqueue parse app.log --output json --limit 100
    """
    parser = BracketLogParser()
    entries = []
    for entry in parser.parse_file(str(file)):
        if limit and len(entries) >= limit:
            break
        entries.append(entry)

    if output_fmt == "json":
        for entry in entries:
            click.echo(json.dumps(entry.to_dict(), default=str))
        err_console.print(f"[dim]Parsed {len(entries)} entries from {file}[/dim]")
        return

    print_entries_table(entries, title=file.name, console=console)
    console.print(f"[dim]{len(entries)} entries from {file.name}[/dim]")


# ── analyze ──────────────────────────────────────────────────────────────────


@main.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--keywords", "-k", default="", help="Comma-separated keywords (default: LOGQUEUE_LOG_KEYWORDS).")
@click.option("--top", "-t", default=10, type=int, show_default=True, help="Show top N IP addresses.")
def analyze(file: Path, keywords: str, top: int) -> None:
    """Compute line, level, keyword and IP statistics for one file.

    \b
    Examples:
      logqueue analyze app.log
      logqueue analyze app.log --keywords error,fatal --top 5
    """
    selected = normalise_keywords(keywords.split(",")) if keywords else load_settings().keywords
    accumulator = StatsAccumulator(selected)
    with file.open(encoding="utf-8", errors="replace") as fh:
        for line in fh:
            accumulator.observe(parse_line(line))
    print_run_stats(accumulator.snapshot(), title=file.name, top_ips=top, console=console)


# ── process ──────────────────────────────────────────────────────────────────


class _ConsoleSink:
    """Print job events as they are published."""

    async def publish(self, topic: str, event: dict[str, Any]) -> None:
        kind = event.get("type", "")
        job_id = str(event.get("jobId", ""))[:8]
        if kind == "job-progress":
            console.print(f"[dim]{job_id}[/dim] progress {event['progress']}%")
        elif kind == "job-completed":
            console.print(f"[green]{job_id} completed[/green] {event['fileName']}")
        elif kind == "job-failed":
            final = " (final)" if event.get("final") else ""
            console.print(f"[red]{job_id} failed{final}[/red] {event['fileName']}: {event['error']}")


async def _process_files(
    files: list[tuple[Path, str]], user: str, overrides: dict[str, Any]
) -> None:
    settings = load_settings(backend="memory", **overrides)
    service = LogQueueService.from_settings(settings, sink=_ConsoleSink())
    async with service:
        handles = []
        for path, name in files:
            handles.append(
                await service.submit(str(path), name, path.stat().st_size, user)
            )
        await service.drain()

        print_queue_status(service.status(), console=console)
        for handle, (_, name) in zip(handles, files):
            record = await service.get_stats(handle.id)
            if record is None:
                console.print(f"[red]{name}: no statistics recorded[/red]")
                continue
            if record.status is StatsStatus.FAILED:
                console.print(f"[red]{name}: failed: {record.error}[/red]")
                continue
            print_run_stats(record_to_stats(record), title=name, console=console)


@main.command()
@click.argument("files", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--user", "-u", default="local", show_default=True, help="Owning user id for the jobs.")
@click.option("--concurrency", "-c", type=int, default=None, help="Worker count (default: LOGQUEUE_MAX_CONCURRENT_JOBS).")
@click.option("--max-retries", type=int, default=None, help="Attempts per job (default: LOGQUEUE_MAX_RETRIES).")
@click.option("--keep-files", is_flag=True, help="Process temporary copies so the originals are not deleted.")
def process(
    files: tuple[Path, ...],
    user: str,
    concurrency: int | None,
    max_retries: int | None,
    keep_files: bool,
) -> None:
    """Run files through the in-process job queue and print their statistics.

    Processed files are deleted on success, as uploads are. Pass
    --keep-files to work on copies instead.

    \b
    Examples:
      logqueue process app.log api.log --keep-files
      logqueue process uploads/*.log --concurrency 8
    """
    overrides: dict[str, Any] = {}
    if concurrency is not None:
        overrides["max_concurrent_jobs"] = concurrency
    if max_retries is not None:
        overrides["max_retries"] = max_retries

    if not keep_files:
        asyncio.run(_process_files([(f, f.name) for f in files], user, overrides))
        return

    with tempfile.TemporaryDirectory(prefix="logqueue-") as tmp:
        copies = []
        for index, original in enumerate(files):
            copy = Path(tmp) / f"{index}-{original.name}"
            shutil.copyfile(original, copy)
            copies.append((copy, original.name))
        asyncio.run(_process_files(copies, user, overrides))


if __name__ == "__main__":
    main()
