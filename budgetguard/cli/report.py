"""Read-only reporting commands: ladder estimates, snapshots, decision history and audit."""

import sys

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from budgetguard.core.config import load_budget_config
from budgetguard.core.errors import ConfigInvalid
from budgetguard.core.estimator import estimate
from budgetguard.core.plans import plan_score
from budgetguard.storage.ledger import DecisionLedger
from budgetguard.utils.helpers import format_cents, format_percentage, month_key, truncate_text, utc_now

console = Console()


@click.command(name="estimate")
@click.pass_context
def estimate_cmd(ctx):
    """Show the degradation ladder with per-episode estimates and scores."""
    settings = ctx.obj.get("settings")

    try:
        config = load_budget_config(settings.budget_config_path)
    except ConfigInvalid as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    table = Table(title="Degradation Ladder", show_header=True, header_style="bold cyan")
    table.add_column("Plan", style="green", no_wrap=True)
    table.add_column("Tier")
    table.add_column("Score", justify="right")
    table.add_column("Estimate", justify="right", style="yellow", no_wrap=True)
    table.add_column("Breakdown", style="dim")

    for plan in config.ladder():
        est = estimate(plan, config.rates)
        breakdown = ", ".join(f"{name} {format_cents(cents)}" for name, cents in est.as_dict().items())
        table.add_row(plan.code.value, plan.tier, f"{plan_score(plan):g}", format_cents(est.total_cents), breakdown)

    console.print("\n")
    console.print(table)
    console.print(
        f"[dim]Cap {format_cents(config.monthly_cap_cents)}, reserve {format_cents(config.reserve_cents())}, "
        f"soft stop at {config.soft_stop_percent:.0%}[/dim]\n"
    )


@click.command()
@click.option("--month", help="Month key, YYYY-MM (default: current month)")
@click.pass_context
def snapshot(ctx, month):
    """Show the spend snapshot for a month."""
    settings = ctx.obj.get("settings")
    month = month or month_key(utc_now())

    try:
        config = load_budget_config(settings.budget_config_path)
    except ConfigInvalid as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    ledger = DecisionLedger(settings=settings)
    snap = ledger.get_snapshot(month)
    cap = snap.effective_cap(config.monthly_cap_cents)
    reserve = config.month_reserve_cents(snap.lent_cents)
    remaining = cap - snap.spent_cents
    used_percent = snap.spent_cents / cap * 100 if cap > 0 else 0.0

    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Field", style="cyan", width=20)
    table.add_column("Value", style="bold")

    table.add_row("Month", month)
    table.add_row("Cap", format_cents(cap))
    table.add_row("Spent", f"{format_cents(snap.spent_cents)} ({format_percentage(used_percent, include_sign=False)})")
    table.add_row("Forecast", format_cents(snap.forecast_cents))
    table.add_row("Reserve", format_cents(reserve))
    table.add_row("Usable", format_cents(max(0, remaining - reserve)))
    if snap.borrowed_cents or snap.lent_cents:
        table.add_row("Borrowed / Lent", f"{format_cents(snap.borrowed_cents)} / {format_cents(snap.lent_cents)}")
    table.add_row("Version", str(snap.version))

    border = "red" if snap.spent_cents >= cap * config.soft_stop_percent else "blue"
    console.print("\n")
    console.print(Panel(table, title="Budget Snapshot", border_style=border))
    console.print("\n")


@click.command()
@click.option("--month", help="Filter by month key, YYYY-MM")
@click.option("--limit", "-n", type=int, default=20, help="Number of plans to show (default: 20)")
@click.pass_context
def history(ctx, month, limit):
    """Show committed plan decisions, most recent first."""
    settings = ctx.obj.get("settings")

    ledger = DecisionLedger(settings=settings)
    plans = ledger.list_plans(month=month, limit=limit)
    if not plans:
        console.print("[yellow]No committed plans.[/yellow]")
        return

    table = Table(title="Plan Decisions", show_header=True, header_style="bold cyan")
    table.add_column("Decided", style="dim")
    table.add_column("Episode", style="green", no_wrap=True)
    table.add_column("Plan", no_wrap=True)
    table.add_column("Rev", justify="right")
    table.add_column("Estimate", justify="right", style="yellow", no_wrap=True)
    table.add_column("By")
    table.add_column("Rationale", style="dim")

    for plan in plans:
        style = "red" if plan.is_fallback else ""
        table.add_row(
            plan.created_at.strftime("%Y-%m-%d %H:%M"),
            plan.episode_id,
            f"[{style}]{plan.plan_code.value}[/]" if style else plan.plan_code.value,
            str(plan.revision),
            format_cents(plan.estimate_cents),
            plan.decided_by,
            truncate_text(plan.rationale, 60),
        )

    console.print("\n")
    console.print(table)
    console.print("\n")


@click.command()
@click.option("--month", help="Month key, YYYY-MM (default: current month)")
@click.pass_context
def audit(ctx, month):
    """Check that a month's snapshot equals the sum of its ledger entries."""
    settings = ctx.obj.get("settings")
    month = month or month_key(utc_now())

    ledger = DecisionLedger(settings=settings)
    snap = ledger.get_snapshot(month)
    total = ledger.ledger_total(month)
    if ledger.verify_snapshot(month):
        console.print(
            f"[green]OK[/green] {month}: snapshot {format_cents(snap.spent_cents)} matches "
            f"{len(ledger.entries_for_month(month))} ledger entries"
        )
        return

    click.echo(
        f"Error: {month} snapshot {format_cents(snap.spent_cents)} != ledger {format_cents(total)}",
        err=True,
    )
    sys.exit(1)
