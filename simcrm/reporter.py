from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from rich import box
from rich.console import Console
from rich.table import Table

from simcrm.domain.models import ReplayResult


def _fmt_ts(ms: Optional[int]) -> str:
    if not ms:
        return "-"
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def print_segments(simulation_id: int, segments: List[Dict[str, Any]], console: Optional[Console] = None) -> None:
    """Render segment status as a rich table, one row per segment."""
    console = console or Console()
    if not segments:
        console.print(f"[yellow]No segments planned for simulation {simulation_id}.[/yellow]")
        return

    expanded = sum(1 for s in segments if s.get("expanded"))
    table = Table(
        title=f"Simulation {simulation_id} Segments",
        box=box.ROUNDED,
        caption=f"{expanded}/{len(segments)} expanded",
    )
    table.add_column("#", justify="right", style="cyan", no_wrap=True)
    table.add_column("Start (UTC)", style="green")
    table.add_column("End (UTC)", style="green")
    table.add_column("Indexes", justify="right", style="magenta")
    table.add_column("Records", justify="right", style="bold magenta")
    table.add_column("Expanded", justify="center")

    for seg in segments:
        table.add_row(
            str(seg["ordinal"]),
            _fmt_ts(seg["start"]),
            _fmt_ts(seg["end"]),
            f"{seg['first_idx']}..{seg['last_idx']}",
            f"{seg['size']:,}",
            "[green]yes[/green]" if seg.get("expanded") else "[dim]no[/dim]",
        )
    console.print(table)


def print_dlq_summary(rows: List[Dict[str, Any]], console: Optional[Console] = None) -> None:
    """Render per-simulation dead-letter counters, busiest first."""
    console = console or Console()
    if not rows:
        console.print("[green]Dead-letter queue is empty.[/green]")
        return

    categories = sorted({cat for row in rows for cat in row["counts"]})
    table = Table(title="Dead-Letter Summary", box=box.ROUNDED, caption="Sorted by total (descending)")
    table.add_column("Simulation", style="cyan", no_wrap=True)
    for cat in categories:
        table.add_column(cat, justify="right", style="red")
    table.add_column("Total", justify="right", style="bold red")

    for row in sorted(rows, key=lambda r: sum(r["counts"].values()), reverse=True):
        counts = row["counts"]
        table.add_row(
            str(row["simulation_id"]),
            *(f"{counts.get(cat, 0):,}" for cat in categories),
            f"{sum(counts.values()):,}",
        )
    console.print(table)


def print_dlq_detail(detail: Dict[str, Any], console: Optional[Console] = None) -> None:
    console = console or Console()
    counts = detail.get("counts") or {}
    header = ", ".join(f"{k}={v}" for k, v in sorted(counts.items())) or "none"
    console.print(
        f"[bold]Simulation {detail['simulation_id']}[/bold] depth={detail.get('depth', 0)} counts: {header}"
    )
    samples = detail.get("samples") or []
    if not samples:
        return

    table = Table(title="Recent Failures", box=box.ROUNDED)
    table.add_column("When (UTC)", style="green", no_wrap=True)
    table.add_column("Category", style="red")
    table.add_column("Retryable", justify="center")
    table.add_column("Queue", style="cyan")
    table.add_column("Job", style="dim")
    table.add_column("Index", justify="right", style="magenta")
    table.add_column("Message")
    for sample in samples:
        table.add_row(
            _fmt_ts(sample.get("ts")),
            str(sample.get("category")),
            "yes" if sample.get("retryable") else "no",
            str(sample.get("queue")),
            str(sample.get("job_id")),
            str(sample.get("record_index", "-")),
            str(sample.get("msg", ""))[:80],
        )
    console.print(table)


def print_replay_result(result: ReplayResult, console: Optional[Console] = None) -> None:
    console = console or Console()
    mode = "[yellow]DRY RUN[/yellow]" if result.dry_run else "[bold green]LIVE[/bold green]"
    table = Table(title=f"Replay {result.batch_id} ({mode})", box=box.ROUNDED, show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Candidates", f"{result.total_candidates:,}")
    table.add_row("Chosen", f"{result.chosen:,}")
    table.add_row("Replayed", f"{result.replayed:,}")
    table.add_row("Duplicates skipped", f"{len(result.skipped_duplicate):,}")
    table.add_row("Recently replayed", f"{len(result.already_recent):,}")
    for category, count in sorted(result.by_category.items()):
        table.add_row(f"  {category}", f"{count:,}")
    console.print(table)


def print_health(health: Dict[str, Any], console: Optional[Console] = None) -> None:
    console = console or Console()
    limiter = health["limiter"]
    cooldown = "[red]active[/red]" if limiter["cooldown_active"] else "[green]clear[/green]"
    circuit = "[red]open[/red]" if limiter["circuit_tripped"] else "[green]closed[/green]"
    console.print(
        f"Cooldown: {cooldown}  Circuit: {circuit}  Failures in window: {limiter['circuit_failures']}"
    )

    table = Table(title="Queues", box=box.ROUNDED)
    table.add_column("Queue", style="cyan")
    table.add_column("Waiting", justify="right", style="green")
    table.add_column("Delayed", justify="right", style="yellow")
    for name, depth in health["queues"].items():
        table.add_row(name, f"{depth['waiting']:,}", f"{depth['delayed']:,}")
    console.print(table)

    buckets = limiter.get("buckets") or {}
    if buckets:
        console.print("Buckets: " + ", ".join(f"{k}={v}" for k, v in sorted(buckets.items())))


__all__ = [
    "print_dlq_detail",
    "print_dlq_summary",
    "print_health",
    "print_replay_result",
    "print_segments",
]
