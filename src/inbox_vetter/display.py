"""Rich-based display functions for Inbox Vetter."""

import logging

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from inbox_vetter.models import ACTION_IMPORTANT, ACTION_TRASH, ReportRecord, VetterState

console = Console()

_LEVEL_COLORS = {"error": "red", "warning": "yellow", "success": "green"}


def setup_logging(verbose: bool = False) -> None:
    """Route library logging through a Rich handler on the shared console."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=verbose)],
        force=True,
    )
    # googleapiclient logs every discovery fetch at INFO
    logging.getLogger("googleapiclient").setLevel(logging.WARNING)


def _action_color(action: str) -> str:
    """Return a Rich color name for a verdict action."""
    if action == ACTION_TRASH:
        return "red"
    if action == ACTION_IMPORTANT:
        return "green"
    return "blue"


def display_results(results: list[dict], title: str = "Review Results") -> None:
    """Display reviewed messages (as stored in a report's meta) in a table."""
    table = Table(title=title)
    table.add_column("#", justify="right", style="dim")
    table.add_column("From")
    table.add_column("Subject")
    table.add_column("Action")
    table.add_column("Scam")
    table.add_column("Conf", justify="right")
    table.add_column("Labels")
    table.add_column("Reason")

    for idx, item in enumerate(results, start=1):
        color = _action_color(item.get("action", ""))
        table.add_row(
            str(idx),
            item.get("from", ""),
            item.get("subject", ""),
            f"[{color}]{item.get('action', '')}[/{color}]",
            "[red]yes[/red]" if item.get("is_scam") else "no",
            f"{float(item.get('confidence') or 0):.2f}",
            ", ".join(item.get("labelsApplied", [])),
            item.get("reason", ""),
        )

    console.print(table)


def display_report_summary(report: ReportRecord) -> None:
    stats = report.meta.get("stats", {})
    lines = [
        f"[bold]{report.title}[/bold]",
        report.description,
        "",
        f"Reviewed: {stats.get('reviewed', 0)}  |  Omitted: {stats.get('skipped', 0)}  |  "
        f"Failed: {stats.get('failed', 0)}",
        report.snippet,
        f"[dim]Report: {report.meta.get('reportPath', '')}[/dim]",
    ]
    console.print(Panel("\n".join(lines), title="Run Summary"))


def display_reports(reports: list[ReportRecord]) -> None:
    table = Table(title="Reports")
    table.add_column("Created")
    table.add_column("Id", style="dim")
    table.add_column("Status")
    table.add_column("Title")
    table.add_column("Summary")

    for report in reports:
        color = "yellow" if report.status == "urgent" else "white"
        table.add_row(
            report.created_at,
            report.id,
            f"[{color}]{report.status}[/{color}]",
            report.title,
            report.snippet,
        )

    console.print(table)


def display_state(email: str, state: VetterState, log_limit: int = 20) -> None:
    """Display the vetter state and the tail of the log ring."""
    lines = [
        f"[bold]User:[/bold] {email}",
        f"[bold]Active:[/bold] {'yes' if state.active else 'no'}",
        f"[bold]Last run:[/bold] {state.last_run_at or '-'}",
        f"[bold]Next run:[/bold] {state.next_run_at or '-'}",
        f"[bold]Last report:[/bold] {state.last_report_id or '-'}",
        f"[bold]Processed messages:[/bold] {len(state.processed_message_ids)}",
    ]
    entries = list(state.logs)[-log_limit:]
    if entries:
        lines.append("")
        lines.append("[bold]Recent log:[/bold]")
        for entry in entries:
            color = _LEVEL_COLORS.get(entry.level, "white")
            lines.append(f"  [dim]{entry.timestamp}[/dim] [{color}]{entry.message}[/{color}]")

    console.print(Panel("\n".join(lines), title="Vetter State"))
