"""CLI entry point for Inbox Vetter."""

from __future__ import annotations

import asyncio
from pathlib import Path

import click
from dotenv import load_dotenv

from inbox_vetter.auth import connect_account
from inbox_vetter.constants import STORE_DB_PATH
from inbox_vetter.display import console, display_report_summary, display_reports, display_results, display_state, setup_logging
from inbox_vetter.errors import AlreadyActive, VetterError
from inbox_vetter.export import export_report
from inbox_vetter.models import parse_timestamp
from inbox_vetter.runner import InboxRunner
from inbox_vetter.scheduler import InboxScheduler, normalize_interval
from inbox_vetter.store import VetterStore


def _db_path(ctx: click.Context) -> Path:
    return Path(ctx.obj["db_path"])


def _open_store(ctx: click.Context) -> VetterStore:
    return VetterStore(_db_path(ctx))


def _users_dir(ctx: click.Context) -> Path:
    return _db_path(ctx).parent / "users"


def _parse_renews_at(ctx: click.Context, param: click.Parameter, value: str | None) -> str | None:
    if value is None:
        return None
    try:
        return parse_timestamp(value).isoformat()
    except ValueError as e:
        raise click.BadParameter(f"Expected an ISO 8601 timestamp, got {value!r}") from e


@click.group()
@click.version_option(version="0.1.0", prog_name="inbox-vetter")
@click.option("--verbose", is_flag=True, help="Enable debug logging.")
@click.option(
    "--db",
    "db_path",
    envvar="INBOX_VETTER_DB",
    type=click.Path(dir_okay=False),
    default=None,
    help="SQLite store path (defaults to ~/.inbox-vetter/vetter.db).",
)
@click.pass_context
def cli(ctx: click.Context, verbose: bool, db_path: str | None) -> None:
    """Inbox Vetter - review new Gmail messages with an LLM and label them."""
    load_dotenv()
    setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["db_path"] = db_path or str(STORE_DB_PATH)


@cli.command()
@click.pass_context
def connect(ctx: click.Context) -> None:
    """Authorize a Gmail account and store its token."""
    try:
        with _open_store(ctx) as store:
            email = connect_account(store)
    except FileNotFoundError as e:
        raise click.ClickException(str(e)) from e
    console.print(f"[green]Connected {email}.[/green]")


@cli.command()
@click.argument("email")
@click.option("--safe/--no-safe", default=None, help="Flag scams for review instead of trashing them.")
@click.option("-q", "--query", default=None, help="Gmail search query (e.g. 'label:inbox').")
@click.option("-m", "--max-results", default=None, type=int, help="Maximum messages to list.")
@click.option("--model", default=None, help="OpenAI model to classify with.")
@click.pass_context
def run(
    ctx: click.Context,
    email: str,
    safe: bool | None,
    query: str | None,
    max_results: int | None,
    model: str | None,
) -> None:
    """Review new messages for EMAIL once."""
    overrides = {
        key: value
        for key, value in {
            "safe_mode": safe,
            "gmail_query": query,
            "gmail_max_results": max_results,
            "model": model,
        }.items()
        if value is not None
    }

    with _open_store(ctx) as store:
        runner = InboxRunner(store, users_dir=_users_dir(ctx))
        try:
            outcome = asyncio.run(runner.execute(email, overrides=overrides))
        except AlreadyActive as e:
            console.print(f"[yellow]{e}[/yellow]")
            display_state(e.email, e.state)
            ctx.exit(1)
        except VetterError as e:
            raise click.ClickException(str(e)) from e

    if outcome.results:
        display_results([item.to_dict() for item in outcome.results])
    else:
        console.print("[dim]No new messages to review.[/dim]")
    display_report_summary(outcome.report)


async def _serve(store: VetterStore, users_dir: Path, interval: float) -> None:
    runner = InboxRunner(store, users_dir=users_dir, poll_interval=interval)
    scheduler = InboxScheduler(store, runner, interval_seconds=interval)
    scheduler.start()
    started = scheduler.bootstrap()
    console.print(f"[green]Scheduler running for {len(started)} account(s). Press Ctrl+C to stop.[/green]")
    try:
        await asyncio.Event().wait()
    finally:
        scheduler.shutdown()


@cli.command()
@click.option("--interval", default=None, type=float, help="Seconds between reviews (minimum 60).")
@click.pass_context
def serve(ctx: click.Context, interval: float | None) -> None:
    """Run scheduled reviews for every eligible account until interrupted."""
    try:
        seconds = normalize_interval(interval)
    except VetterError as e:
        raise click.ClickException(str(e)) from e

    with _open_store(ctx) as store:
        try:
            asyncio.run(_serve(store, _users_dir(ctx), seconds))
        except KeyboardInterrupt:
            console.print("[dim]Scheduler stopped.[/dim]")


@cli.command()
@click.argument("email")
@click.option("--logs", "log_limit", default=20, type=int, help="Number of log entries to show.")
@click.pass_context
def status(ctx: click.Context, email: str, log_limit: int) -> None:
    """Show the vetter state for EMAIL."""
    with _open_store(ctx) as store:
        if store.get_user(email) is None:
            raise click.ClickException(f"User not found: {email}")
        state = store.get_state(email)
        sub = store.get_subscription(email)
        connected = store.has_credentials(email)

    display_state(email.lower(), state, log_limit=log_limit)
    if sub is not None:
        console.print(f"[bold]Plan:[/bold] {sub.plan} ({sub.status})")
    console.print(f"[bold]Gmail connected:[/bold] {'yes' if connected else 'no'}")


@cli.command()
@click.argument("email")
@click.option("-n", "--limit", default=20, type=int, help="Maximum reports to list.")
@click.pass_context
def reports(ctx: click.Context, email: str, limit: int) -> None:
    """List stored reports for EMAIL, newest first."""
    with _open_store(ctx) as store:
        records = store.list_reports(email, limit=limit)

    if not records:
        console.print("[dim]No reports yet.[/dim]")
        return
    display_reports(records)


@cli.command(name="export")
@click.argument("email")
@click.option(
    "--format",
    "fmt",
    type=click.Choice(["csv", "json"]),
    default="csv",
    help="Output format.",
)
@click.option("-o", "--output", required=True, help="Output file path.")
@click.option("--report", "report_id", default=None, help="Report id (defaults to the latest).")
@click.pass_context
def export_cmd(ctx: click.Context, email: str, fmt: str, output: str, report_id: str | None) -> None:
    """Export a report's results to CSV or JSON."""
    with _open_store(ctx) as store:
        if report_id:
            report = store.get_report(email, report_id)
        else:
            latest = store.list_reports(email, limit=1)
            report = latest[0] if latest else None

    if report is None:
        raise click.ClickException("No report found. Run 'run' first.")

    count = export_report(report, format=fmt, output_path=output)
    console.print(f"[green]Exported {count} result(s) to {output}.[/green]")


@cli.command()
@click.argument("email")
@click.argument("pairs", nargs=-1, metavar="KEY=VALUE...")
@click.pass_context
def settings(ctx: click.Context, email: str, pairs: tuple[str, ...]) -> None:
    """Show or update per-user settings for EMAIL."""
    updates = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise click.BadParameter(f"Expected KEY=VALUE, got {pair!r}", param_hint="PAIRS")
        updates[key.strip()] = value

    with _open_store(ctx) as store:
        try:
            current = store.update_settings(email, updates) if updates else store.get_settings(email)
        except (VetterError, ValueError) as e:
            raise click.ClickException(str(e)) from e

    for key, value in vars(current).items():
        console.print(f"[bold]{key}:[/bold] {'-' if value in (None, '') else value}")


@cli.command()
@click.argument("email")
@click.argument("plan_name", metavar="PLAN")
@click.option("--status", "sub_status", default=None, help="Subscription status (e.g. active, canceled).")
@click.option(
    "--renews-at", default=None, callback=_parse_renews_at, help="ISO timestamp the plan renews or ends at."
)
@click.pass_context
def plan(ctx: click.Context, email: str, plan_name: str, sub_status: str | None, renews_at: str | None) -> None:
    """Set the subscription PLAN for EMAIL."""
    with _open_store(ctx) as store:
        try:
            sub = store.update_subscription(email, plan=plan_name, status=sub_status, renews_at=renews_at)
        except VetterError as e:
            raise click.ClickException(str(e)) from e
    console.print(f"[green]{email.lower()}: plan {sub.plan} ({sub.status}).[/green]")
