"""
Operator commands for the intervention engine.

Usage:
    python -m src.interventions.cli run-daily --tenant gym-1
    python -m src.interventions.cli run-all --date 2026-03-01
    python -m src.interventions.cli approve --tenant gym-1 <intervention-id>
"""

import logging
import sys
from datetime import date, datetime
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from src.data.database import get_engine

from .config import get_engine_config
from .coordinator import RunSummary, run_daily_for_all_tenants, run_daily_for_tenant
from .dispatch import ChannelDispatcher
from .errors import InterventionEngineError
from .workflow import ApprovalWorkflow, TransitionResult

console = Console()


def _parse_date(value: Optional[str]) -> Optional[date]:
    if value is None:
        return None
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        raise click.BadParameter(f"Expected YYYY-MM-DD, got {value!r}") from None


def _print_summaries(summaries: list[RunSummary]) -> None:
    table = Table(title="Daily Run")
    table.add_column("Tenant", style="cyan")
    table.add_column("Date")
    table.add_column("Outcome")
    table.add_column("Members", justify="right")
    table.add_column("Created", justify="right", style="green")
    table.add_column("Errors", justify="right", style="red")

    for s in summaries:
        table.add_row(
            s.tenant_id,
            s.run_date.isoformat(),
            s.outcome,
            f"{s.members_processed:,}",
            f"{s.interventions_created:,}",
            str(s.errors),
        )
    console.print(table)

    for s in summaries:
        for detail in s.error_details:
            console.print(f"  [yellow]⚠[/yellow] {s.tenant_id}: {detail}")


def _print_transition(result: TransitionResult) -> None:
    if result.success:
        console.print(
            f"[green]✓[/green] {result.intervention_id} -> {result.status.value}"
        )
    else:
        console.print(
            f"[red]✗[/red] {result.intervention_id} -> {result.status.value}: {result.error}"
        )


def _workflow() -> ApprovalWorkflow:
    config = get_engine_config()
    return ApprovalWorkflow(get_engine(), ChannelDispatcher.from_config(config), config)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def cli(verbose: bool):
    """Intervention engine commands."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("run-daily")
@click.option("--tenant", "-t", required=True, help="Tenant id")
@click.option("--date", "run_date", help="Run date (YYYY-MM-DD), defaults to today UTC")
def run_daily(tenant: str, run_date: Optional[str]):
    """Run the daily scoring and generation pass for one tenant."""
    try:
        summary = run_daily_for_tenant(
            get_engine(), tenant, _parse_date(run_date), get_engine_config()
        )
    except InterventionEngineError as e:
        console.print(f"[bold red]Error: {e}[/bold red]")
        sys.exit(1)
    _print_summaries([summary])


@cli.command("run-all")
@click.option("--date", "run_date", help="Run date (YYYY-MM-DD), defaults to today UTC")
def run_all(run_date: Optional[str]):
    """Run the daily pass for every tenant."""
    summaries = run_daily_for_all_tenants(
        get_engine(), _parse_date(run_date), get_engine_config()
    )
    _print_summaries(summaries)
    if any(s.outcome == "failed" for s in summaries):
        sys.exit(1)


@cli.command()
@click.option("--tenant", "-t", required=True, help="Tenant id")
@click.argument("intervention_id")
def approve(tenant: str, intervention_id: str):
    """Approve a pending intervention and send it."""
    try:
        result = _workflow().approve_and_send(tenant, intervention_id)
    except InterventionEngineError as e:
        console.print(f"[bold red]Error: {e}[/bold red]")
        sys.exit(1)
    _print_transition(result)
    if not result.success:
        sys.exit(1)


@cli.command()
@click.option("--tenant", "-t", required=True, help="Tenant id")
@click.argument("intervention_id")
def cancel(tenant: str, intervention_id: str):
    """Cancel a pending intervention."""
    try:
        result = _workflow().cancel_intervention(tenant, intervention_id)
    except InterventionEngineError as e:
        console.print(f"[bold red]Error: {e}[/bold red]")
        sys.exit(1)
    _print_transition(result)


@cli.command()
@click.option("--tenant", "-t", required=True, help="Tenant id")
@click.argument("intervention_id")
def retry(tenant: str, intervention_id: str):
    """Retry a failed intervention."""
    try:
        result = _workflow().retry_intervention(tenant, intervention_id)
    except InterventionEngineError as e:
        console.print(f"[bold red]Error: {e}[/bold red]")
        sys.exit(1)
    _print_transition(result)
    if not result.success:
        sys.exit(1)


@cli.command("sweep-approvals")
@click.option("--tenant", "-t", required=True, help="Tenant id")
def sweep_approvals(tenant: str):
    """Fail approvals whose dispatch never completed so they can be retried."""
    try:
        count = _workflow().fail_stale_approvals(tenant)
    except InterventionEngineError as e:
        console.print(f"[bold red]Error: {e}[/bold red]")
        sys.exit(1)
    console.print(f"[green]✓[/green] {count} stale approvals marked FAILED")


if __name__ == "__main__":
    cli()
