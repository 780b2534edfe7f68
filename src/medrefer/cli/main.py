"""
MedRefer CLI Main Entry Point.

Command-line views over the local data store, the offline sync queue and
the security audit trail.
"""

from __future__ import annotations

import functools
import json
import sys
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, TypeVar

import click
import humanize
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from medrefer import __version__
from medrefer.core.config import MedReferConfig, load_config
from medrefer.core.errors import MedReferError
from medrefer.core.session import Session
from medrefer.database.models import SecurityEventType
from medrefer.sync.models import SyncResult, SyncStatistics
from medrefer.sync.remote import ConnectivityMonitor

console = Console()

F = TypeVar("F", bound=Callable[..., Any])


def get_session(ctx: click.Context) -> Session:
    """Get or create session from context."""
    if "session" not in ctx.obj:
        config: MedReferConfig = ctx.obj.get("config") or load_config()
        # passes run only when asked for
        config = config.model_copy(
            update={"sync": config.sync.model_copy(update={"auto_sync": False})}
        )
        session = Session(
            config=config,
            connectivity=ConnectivityMonitor(online=not ctx.obj.get("offline", False)),
        )
        ctx.obj["session"] = session
        ctx.call_on_close(session.close)
    return ctx.obj["session"]


def handle_errors(func: F) -> F:
    """Print service-layer errors in red and exit with status 1."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except MedReferError as e:
            console.print(f"[red]Error: {e}[/red]")
            sys.exit(1)

    return wrapper  # type: ignore[return-value]


def emit_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def format_time(value: datetime | None) -> str:
    if value is None:
        return "Never"
    return humanize.naturaltime(datetime.now() - value)


def format_duration(value: timedelta) -> str:
    if value < timedelta(seconds=1):
        return f"{int(value.total_seconds() * 1000)} ms"
    return humanize.precisedelta(value, minimum_unit="milliseconds")


@click.group()
@click.version_option(version=__version__, prog_name="MedRefer")
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, path_type=Path),
    help="Path to configuration file",
)
@click.option("--offline", is_flag=True, help="Treat the device as offline")
@click.option("--json", "json_output", is_flag=True, help="Output in JSON format")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output")
@click.pass_context
def cli(
    ctx: click.Context,
    config: Path | None,
    offline: bool,
    json_output: bool,
    quiet: bool,
) -> None:
    """
    MedRefer - Medical referral data management.

    Inspect patients, referrals and the pharmacy cart, drive the offline
    sync queue and review the security audit trail.
    """
    ctx.ensure_object(dict)

    if config:
        loaded = MedReferConfig.load(config)
        loaded.ensure_directories()
        ctx.obj["config"] = loaded
    else:
        ctx.obj["config"] = load_config()

    ctx.obj["offline"] = offline
    ctx.obj["json_output"] = json_output
    ctx.obj["quiet"] = quiet


# Sync center


def render_statistics(stats: SyncStatistics, online: bool) -> Panel:
    status = "[green]Online[/green]" if online else "[yellow]Offline[/yellow]"
    return Panel(
        f"""[cyan]Connection:[/cyan] {status}
[cyan]Pending:[/cyan] {stats.pending_count}
[cyan]Completed:[/cyan] {stats.completed_count}
[cyan]Failed:[/cyan] {stats.failed_count}
[cyan]Conflicts resolved:[/cyan] {stats.conflicts_resolved}
[cyan]Last sync:[/cyan] {format_time(stats.last_sync_time)}
[cyan]Average sync time:[/cyan] {format_duration(stats.average_sync_time)}""",
        title="Sync Center",
    )


def print_sync_result(result: SyncResult) -> None:
    if result.message and not result.success and not result.success_count:
        console.print(f"[yellow]{result.message}[/yellow]")
        return

    color = "green" if result.success else "yellow"
    duration = format_duration(result.duration) if result.duration is not None else "-"
    console.print(
        Panel(
            f"""[cyan]Synced:[/cyan] {result.success_count}
[cyan]Failed:[/cyan] {result.failure_count}
[cyan]Conflicts resolved:[/cyan] {result.conflicts_resolved}
[cyan]Deferred:[/cyan] {result.deferred_count}
[cyan]Duration:[/cyan] {duration}""",
            title=f"[{color}]Sync {'complete' if result.success else 'finished with errors'}[/{color}]",
        )
    )
    for error in result.errors:
        console.print(f"[red]  {error}[/red]")


@cli.command("sync-center")
@click.option("--sync-now", is_flag=True, help="Run a sync pass before showing statistics")
@click.pass_context
@handle_errors
def sync_center(ctx: click.Context, sync_now: bool) -> None:
    """Show sync statistics."""
    session = get_session(ctx)
    json_output = ctx.obj.get("json_output", False)

    result = None
    if sync_now:
        result = session.perform_sync()

    stats = session.sync.get_statistics()

    if json_output:
        payload: dict[str, Any] = {
            "online": session.sync.is_online,
            "statistics": stats.to_dict(),
        }
        if result is not None:
            payload["sync_result"] = result.to_dict()
        emit_json(payload)
        return

    if result is not None and not ctx.obj.get("quiet"):
        print_sync_result(result)
    console.print(render_statistics(stats, session.sync.is_online))


@cli.group()
def sync() -> None:
    """Offline sync queue commands."""


@sync.command("run")
@click.pass_context
@handle_errors
def sync_run(ctx: click.Context) -> None:
    """Run one sync pass."""
    session = get_session(ctx)
    result = session.perform_sync()

    if ctx.obj.get("json_output"):
        emit_json(result.to_dict())
    else:
        print_sync_result(result)

    if not result.success:
        sys.exit(1)


@sync.command("queue")
@click.pass_context
@handle_errors
def sync_queue(ctx: click.Context) -> None:
    """List pending operations."""
    session = get_session(ctx)
    operations = session.sync.queued_operations()

    if ctx.obj.get("json_output"):
        emit_json([op.to_dict() for op in operations])
        return

    if not operations:
        console.print("[green]Sync queue is empty[/green]")
        return

    table = Table(title=f"Sync Queue ({len(operations)})")
    table.add_column("Operation", style="cyan")
    table.add_column("Entity", style="white")
    table.add_column("Priority", style="yellow")
    table.add_column("Retries", style="red")
    table.add_column("Queued", style="green")

    for op in operations:
        table.add_row(
            op.operation_type.value,
            f"{op.entity_type}:{(op.entity_id or '-')[:8]}",
            op.priority.value,
            str(op.retry_count),
            format_time(op.timestamp),
        )
    console.print(table)


@sync.command("clear")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
@handle_errors
def sync_clear(ctx: click.Context, yes: bool) -> None:
    """Drop all pending operations."""
    session = get_session(ctx)
    pending = session.sync.queue_size

    if pending == 0:
        console.print("[green]Sync queue is already empty[/green]")
        return

    if not yes:
        click.confirm(f"Discard {pending} pending operation(s)?", abort=True)

    removed = session.sync.clear_queue()
    console.print(f"[green]Removed {removed} pending operation(s)[/green]")


# Data views


@cli.group()
def patients() -> None:
    """Patient records."""


@patients.command("list")
@click.option("--search", "-s", "term", help="Filter by name, MRN or phone")
@click.pass_context
@handle_errors
def patients_list(ctx: click.Context, term: str | None) -> None:
    """List patients."""
    session = get_session(ctx)
    records = session.data.search_patients(term) if term else session.data.get_patients()

    if ctx.obj.get("json_output"):
        emit_json([patient.to_dict() for patient in records])
        return

    table = Table(title="Patients")
    table.add_column("MRN", style="cyan")
    table.add_column("Name", style="white")
    table.add_column("Age", style="green")
    table.add_column("Gender", style="yellow")
    table.add_column("Phone", style="magenta")

    for patient in records:
        table.add_row(
            patient.medical_record_number,
            patient.name,
            str(patient.age),
            patient.gender,
            patient.phone or "-",
        )
    console.print(table)


@cli.group()
def referrals() -> None:
    """Referral records."""


@referrals.command("list")
@click.option("--status", help="Only referrals with this status")
@click.option("--patient", "patient_id", help="Only referrals for this patient id")
@click.pass_context
@handle_errors
def referrals_list(ctx: click.Context, status: str | None, patient_id: str | None) -> None:
    """List referrals, newest first."""
    session = get_session(ctx)
    if patient_id:
        records = session.data.get_referrals_by_patient_id(patient_id)
        if status:
            records = [r for r in records if r.status.lower() == status.lower()]
    elif status:
        records = session.data.get_referrals_by_status(status)
    else:
        records = session.data.get_referrals()

    if ctx.obj.get("json_output"):
        emit_json([referral.to_dict() for referral in records])
        return

    table = Table(title="Referrals")
    table.add_column("Tracking", style="cyan")
    table.add_column("Status", style="white")
    table.add_column("Urgency", style="red")
    table.add_column("Department", style="yellow")
    table.add_column("Created", style="green")

    for referral in records:
        table.add_row(
            referral.tracking_number,
            referral.status,
            referral.urgency,
            referral.department or "-",
            format_time(referral.created_at),
        )
    console.print(table)


@cli.group()
def cart() -> None:
    """Pharmacy cart."""


@cart.command("show")
@click.pass_context
@handle_errors
def cart_show(ctx: click.Context) -> None:
    """Show cart items and the total."""
    session = get_session(ctx)
    items = session.data.get_cart_items()
    total = session.data.get_cart_total()

    if ctx.obj.get("json_output"):
        emit_json({"items": [item.to_dict() for item in items], "total": total})
        return

    if not items:
        console.print("Cart is empty")
        return

    table = Table(title="Cart")
    table.add_column("Drug", style="cyan")
    table.add_column("Qty", style="white", justify="right")
    table.add_column("Unit price", style="green", justify="right")
    table.add_column("Total", style="yellow", justify="right")

    for item in items:
        table.add_row(
            item.name,
            str(item.quantity),
            f"{item.unit_price:,.2f}",
            f"{item.total_price:,.2f}",
        )
    console.print(table)
    console.print(f"[bold]Total:[/bold] {total:,.2f}")


# Audit


@cli.group()
def audit() -> None:
    """Security audit trail."""


@audit.command("logs")
@click.option("--user", "user_id", help="Only events for this user")
@click.option(
    "--type",
    "event_type",
    type=click.Choice([t.value for t in SecurityEventType]),
    help="Only events of this type",
)
@click.option("--limit", "-n", type=int, default=50, show_default=True)
@click.pass_context
@handle_errors
def audit_logs(
    ctx: click.Context,
    user_id: str | None,
    event_type: str | None,
    limit: int,
) -> None:
    """List audit events, newest first."""
    session = get_session(ctx)
    logs = session.audit.get_audit_logs(
        user_id=user_id,
        event_type=SecurityEventType(event_type) if event_type else None,
        limit=limit,
    )

    if ctx.obj.get("json_output"):
        emit_json([entry.to_dict() for entry in logs])
        return

    table = Table(title="Security Audit Log")
    table.add_column("When", style="green")
    table.add_column("Type", style="cyan")
    table.add_column("Action", style="white")
    table.add_column("User", style="yellow")
    table.add_column("Risk", style="red")

    for entry in logs:
        risk = entry.risk_level.value
        table.add_row(
            format_time(entry.timestamp),
            entry.event_type.value,
            entry.action,
            entry.user_id,
            f"[bold red]{risk}[/bold red]" if entry.risk_level.is_alerting else risk,
        )
    console.print(table)


@audit.command("report")
@click.option("--days", type=click.IntRange(min=1), default=30, show_default=True)
@click.pass_context
@handle_errors
def audit_report(ctx: click.Context, days: int) -> None:
    """Summarize security events over the last N days."""
    session = get_session(ctx)
    report = session.audit.generate_security_report(
        start_date=datetime.now() - timedelta(days=days)
    )

    if ctx.obj.get("json_output"):
        emit_json(report.to_dict())
        return

    console.print(
        Panel(
            f"""[cyan]Period:[/cyan] last {days} day(s)
[cyan]Total events:[/cyan] {report.total_events}
[cyan]Authentication:[/cyan] {report.authentication_events}
[cyan]Data access:[/cyan] {report.data_access_events}
[cyan]System:[/cyan] {report.system_events}
[cyan]High risk:[/cyan] {report.high_risk_events}
[cyan]Failed logins:[/cyan] {report.failed_login_attempts}
[cyan]Active users:[/cyan] {report.unique_active_users}
[cyan]Blocked users:[/cyan] {report.blocked_users}""",
            title="Security Report",
        )
    )


def main() -> None:
    """Main entry point."""
    try:
        cli(obj={})
    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled[/yellow]")
        sys.exit(130)
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)


if __name__ == "__main__":
    main()
