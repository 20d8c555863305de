"""Main CLI entry point for BudgetGuard."""

import logging

import click

from budgetguard import __version__
from budgetguard.config.settings import Settings


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    type=click.Path(exists=True),
    help="Path to settings file"
)
@click.option(
    "--log-level",
    default="WARNING",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Logging level (default: WARNING)"
)
@click.pass_context
def cli(ctx, config, log_level):
    """BudgetGuard - Budget-constrained production plan selection.

    Pick the richest affordable plan per episode under a monthly cap.
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # Ensure context object exists
    ctx.ensure_object(dict)

    # Load settings
    if config:
        ctx.obj["settings"] = Settings.load_from_file(config)
    else:
        ctx.obj["settings"] = Settings()


# Import and register commands
from budgetguard.cli.decide import decide, outage
from budgetguard.cli.report import estimate_cmd, snapshot, history, audit

cli.add_command(decide)
cli.add_command(outage)
cli.add_command(estimate_cmd)
cli.add_command(snapshot)
cli.add_command(history)
cli.add_command(audit)


if __name__ == "__main__":
    cli()
