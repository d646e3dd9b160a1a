"""Rich rendering of run summaries, validation errors and DNS guidance."""

from typing import Dict, List, Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from eb_converge.orchestrator.driver import RunSummary
from eb_converge.reconcilers.base import ReconcileAction
from eb_converge.reconcilers.route53 import ManualDnsInstructions

ACTION_STYLES = {
    ReconcileAction.CREATE: "green",
    ReconcileAction.UPDATE: "yellow",
    ReconcileAction.SKIP: "dim",
}


def render_summary(console: Console, summary: RunSummary) -> None:
    """Print one row per resource, then the run totals."""
    table = Table(show_header=True, header_style="bold", title="Convergence Summary")
    table.add_column("Resource Type", style="cyan")
    table.add_column("Resource", style="white")
    table.add_column("Action")
    table.add_column("Outcome")
    table.add_column("Warning", style="yellow")

    for result in summary.results:
        style = ACTION_STYLES[result.action]
        table.add_row(
            result.resource_type,
            result.resource_id,
            f"[{style}]{result.action.value}[/{style}]",
            str(result.outcome),
            result.warning or "",
        )

    console.print(table)
    console.print()

    totals = (
        f"Created: {summary.created}\n"
        f"Updated: {summary.updated}\n"
        f"Skipped: {summary.skipped}\n"
        f"Warnings: {len(summary.warnings)}\n"
        f"Duration: {summary.duration:.2f}s"
    )
    if summary.failed:
        console.print(Panel.fit(
            f"[red]✗ Convergence failed[/red]\n\n{totals}\n\n{summary.error.to_user_message()}",
            title="Convergence Failed",
            border_style="red"
        ))
    elif summary.warnings:
        console.print(Panel.fit(
            f"[yellow]⚠ Converged with warnings[/yellow]\n\n{totals}",
            title="Convergence Complete",
            border_style="yellow"
        ))
    else:
        console.print(Panel.fit(
            f"[green]✓ Converged[/green]\n\n{totals}",
            title="Convergence Complete",
            border_style="green"
        ))


def render_manual_dns(console: Console, instructions: ManualDnsInstructions) -> None:
    lines = [
        f"Your domain ({instructions.domain}) is not managed in Route 53.",
        "Create this record with your DNS provider:",
        "",
        f"  Record Type: {instructions.record_type}",
        f"  Name:        {instructions.name}",
        f"  Target:      {instructions.target}",
        f"  TTL:         {instructions.ttl} (or default)",
    ]
    if instructions.notes:
        lines.append("")
        lines.extend(f"  - {note}" for note in instructions.notes)
    console.print(Panel("\n".join(lines), title="Manual DNS Configuration Required", border_style="cyan"))


def render_validation_errors(console: Console, errors: List[Dict], config_path: Optional[str] = None) -> None:
    title = "Configuration Errors"
    if config_path:
        title += f" - {config_path}"
    table = Table(show_header=True, header_style="bold red", title=title)
    table.add_column("Field", style="cyan")
    table.add_column("Message", style="white")
    for error in errors:
        location = ".".join(str(part) for part in error.get("loc", [])) or "-"
        table.add_row(location, error.get("msg", ""))
    console.print(table)
