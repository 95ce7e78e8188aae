"""
Batch summaries for the CloudSQL Migrator.

Turns a BatchResult into structured per-unit rows and renders them as
a rich table. Expected failures are shown by reason and remediation,
never as raw tracebacks.
"""

from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from cloudsql_migrator.models.results import BatchResult, BatchStatus, UnitStatus
from cloudsql_migrator.utils.helpers import format_bytes, format_duration

STATUS_STYLES = {
    UnitStatus.SUCCEEDED: "green",
    UnitStatus.FAILED: "red",
    UnitStatus.SKIPPED: "yellow",
    UnitStatus.CANCELLED: "magenta",
}

BATCH_STATUS_STYLES = {
    BatchStatus.COMPLETED: "green",
    BatchStatus.PARTIAL_FAILURE: "yellow",
    BatchStatus.FAILED: "red",
    BatchStatus.CANCELLED: "magenta",
}


def build_summary(result: BatchResult) -> Dict[str, Any]:
    """Structured summary of a batch: counts plus one row per unit."""
    rows: List[Dict[str, Any]] = []
    for outcome in result.outcomes:
        rows.append({
            'unit_id': outcome.unit_id,
            'source': outcome.source,
            'target': outcome.target,
            'databases': list(outcome.databases),
            'status': outcome.label,
            'phase_reached': outcome.phase_reached,
            'duration': format_duration(outcome.duration_ms / 1000) if outcome.duration_ms else None,
            'transferred': format_bytes(outcome.metrics.get('transferred_size', 0)),
            'reason': outcome.reason,
            'remediation': list(outcome.remediation),
        })

    return {
        'batch_id': result.batch_id,
        'status': result.status.value,
        'counts': {
            'total': result.total,
            'succeeded': result.succeeded,
            'failed': result.failed,
            'skipped': result.skipped,
            'cancelled': result.cancelled,
            'retried': result.retried,
        },
        'elapsed': format_duration(result.elapsed_ms / 1000),
        'performance': dict(result.performance),
        'warnings': list(result.warnings),
        'units': rows,
    }


def render_batch_summary(result: BatchResult, console: Optional[Console] = None) -> Console:
    """Print a batch result as a panel, a unit table and the failure reasons."""
    console = console or Console()
    summary = build_summary(result)
    counts = summary['counts']
    style = BATCH_STATUS_STYLES[result.status]

    console.print(Panel(
        f"[bold]Status:[/bold] [{style}]{summary['status']}[/{style}]\n"
        f"[bold]Units:[/bold] {counts['total']} "
        f"([green]{counts['succeeded']} succeeded[/green], "
        f"[red]{counts['failed']} failed[/red], "
        f"[yellow]{counts['skipped']} skipped[/yellow], "
        f"{counts['retried']} retried)\n"
        f"[bold]Elapsed:[/bold] {summary['elapsed']}",
        title=f"Batch {result.batch_id}",
        border_style=style,
        padding=(1, 2)
    ))

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Unit", style="cyan", no_wrap=True)
    table.add_column("Source")
    table.add_column("Target")
    table.add_column("Databases")
    table.add_column("Status", justify="center")
    table.add_column("Phase reached")
    table.add_column("Duration", justify="right")

    for outcome, row in zip(result.outcomes, summary['units']):
        status_style = STATUS_STYLES[outcome.status]
        table.add_row(
            row['unit_id'],
            row['source'],
            row['target'],
            ", ".join(row['databases']) or "-",
            f"[{status_style}]{row['status']}[/{status_style}]",
            row['phase_reached'] or "-",
            row['duration'] or "-",
        )
    console.print(table)

    failed = [row for row in summary['units'] if row['reason']]
    if failed:
        console.print("\n[bold]Failures[/bold]")
        for row in failed:
            console.print(f"• [red]{row['unit_id']}[/red]: {row['reason']}")
            for step in row['remediation'][:3]:
                console.print(f"   [dim]{step}[/dim]")

    for warning in summary['warnings']:
        console.print(f"[yellow]Warning:[/yellow] {warning}")
    return console
