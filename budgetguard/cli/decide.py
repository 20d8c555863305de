"""Decide and outage commands for BudgetGuard CLI."""

import sys

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from budgetguard.core.config import BudgetConfigLoader
from budgetguard.core.errors import AlreadyDecided, ConfigInvalid, LedgerWriteConflict, LockBusy
from budgetguard.core.selector import EpisodeAttributes, PlanSelector, SelectionResult
from budgetguard.storage.ledger import DecisionLedger
from budgetguard.utils.helpers import format_cents, parse_datetime, utc_now

console = Console()


def build_selector(settings) -> PlanSelector:
    """Wire a selector from settings: ledger database plus hot-reloading budget config."""
    ledger = DecisionLedger(settings=settings)
    return PlanSelector(ledger, BudgetConfigLoader(settings.budget_config_path), settings=settings)


def print_result(result: SelectionResult) -> None:
    """Render a selection result as a rich panel."""
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Field", style="cyan", width=20)
    table.add_column("Value", style="bold")

    table.add_row("Episode", result.episode_id)
    if result.committed:
        table.add_row("Status", "[green]committed[/green]")
        table.add_row("Plan", f"[bold green]{result.plan_code.value}[/bold green]")
        table.add_row("Estimate", f"[yellow]{format_cents(result.estimate.total_cents)}[/yellow]")
        if result.cost_plan is not None:
            table.add_row("Revision", str(result.cost_plan.revision))
        if result.borrowed_cents:
            table.add_row("Borrowed", format_cents(result.borrowed_cents))
    else:
        table.add_row("Status", "[red]delayed[/red]")
        table.add_row("Reason", f"[red]{result.delay_reason.code}[/red]")

    budget = result.budget
    table.add_row("Month", budget.month)
    table.add_row("Spent", f"{format_cents(budget.spent_cents)} / {format_cents(budget.cap_cents)}")
    table.add_row("Usable", format_cents(budget.usable_cents))
    table.add_row("Cadence Target", f"{result.cadence_target}/week")

    border = "green" if result.committed else "red"
    console.print("\n")
    console.print(Panel(table, title="Plan Decision", border_style=border))
    console.print(f"[dim]{result.rationale}[/dim]")
    for note in result.notifications:
        console.print(f"[yellow]! {note.type}[/yellow]: {note.reason} -> {note.proposed_action}")
    console.print("\n")


def _fail(message: str) -> None:
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


@click.command()
@click.argument("episode_id")
@click.option("--at", "at", help="Decision time, ISO-8601 (default: now, UTC)")
@click.option("--scheduled-at", help="Episode publish time, ISO-8601 (default: decision time)")
@click.option("--event-arc", is_flag=True, help="Episode belongs to an event arc")
@click.option("--kind", default="short", help="Episode kind (default: short)")
@click.option("--importance", type=int, default=0, help="Episode importance")
@click.option("--deadline", help="Episode deadline, ISO-8601")
@click.option("--episodes-remaining", type=int, default=0, help="Episodes left this month, this one included")
@click.option("--weeks-remaining", type=int, default=0, help="Weeks left this month")
@click.option("--override", is_flag=True, help="Admin override: bypass soft stop and reserve, supersede existing plan")
@click.option("--decided-by", help="Decider identity recorded on the plan")
@click.pass_context
def decide(ctx, episode_id, at, scheduled_at, event_arc, kind, importance, deadline,
           episodes_remaining, weeks_remaining, override, decided_by):
    """Choose and commit a production plan for an episode.

    Examples:

        \b
        # Decide the next episode with 12 left this month
        budgetguard decide ep-042 --episodes-remaining 12 --weeks-remaining 3

        \b
        # Admin override after a soft stop
        budgetguard decide ep-042 --override --decided-by admin
    """
    settings = ctx.obj.get("settings")

    try:
        now = parse_datetime(at) or utc_now()
        episode = EpisodeAttributes(
            episode_id=episode_id,
            scheduled_at=parse_datetime(scheduled_at),
            is_event_arc=event_arc,
            deadline=parse_datetime(deadline),
            kind=kind,
            importance=importance,
        )
    except ValueError as e:
        _fail(f"Invalid date: {e}")

    try:
        selector = build_selector(settings)
        result = selector.select_with_retries(
            episode,
            now,
            episodes_remaining=episodes_remaining,
            weeks_remaining=weeks_remaining,
            override=override,
            decided_by=decided_by,
        )
    except ConfigInvalid as e:
        _fail(f"Budget config invalid: {e}")
    except AlreadyDecided as e:
        existing = e.existing
        console.print(
            f"[yellow]Episode {episode_id} already decided:[/yellow] "
            f"{existing.plan_code.value} ({format_cents(existing.estimate_cents)}, rev {existing.revision})"
        )
        return
    except (LockBusy, LedgerWriteConflict) as e:
        _fail(f"{e} (retry later)")

    print_result(result)


@click.command()
@click.argument("episode_id")
@click.option("--at", "at", help="Failure time, ISO-8601 (default: now, UTC)")
@click.option("--reason", default="render failure", help="Failure description")
@click.option("--episodes-remaining", type=int, default=0, help="Episodes left this month")
@click.pass_context
def outage(ctx, episode_id, at, reason, episodes_remaining):
    """Move an episode to the fallback plan after a render failure or provider outage."""
    settings = ctx.obj.get("settings")

    try:
        now = parse_datetime(at) or utc_now()
    except ValueError as e:
        _fail(f"Invalid date: {e}")

    try:
        selector = build_selector(settings)
        result = selector.handle_render_failure(
            episode_id, now, reason=reason, episodes_remaining=episodes_remaining
        )
    except ConfigInvalid as e:
        _fail(f"Budget config invalid: {e}")
    except AlreadyDecided as e:
        console.print(f"[yellow]{e}[/yellow]")
        return
    except (LockBusy, LedgerWriteConflict) as e:
        _fail(f"{e} (retry later)")

    print_result(result)
