"""Integration tests for the command line interface."""

from pathlib import Path
from tempfile import TemporaryDirectory

import pytest
from click.testing import CliRunner

from budgetguard.cli.main import cli


@pytest.fixture
def env():
    """Point the CLI at a temporary ledger database."""
    with TemporaryDirectory() as tmpdir:
        yield {"BUDGETGUARD_DATABASE_PATH": str(Path(tmpdir) / "cli.db")}


@pytest.fixture
def runner():
    return CliRunner()


def test_estimate_lists_ladder(runner, env):
    result = runner.invoke(cli, ["estimate"], env=env)

    assert result.exit_code == 0
    for code in ("full", "saver", "minimal", "fallback_dm"):
        assert code in result.output
    assert "$8.00" in result.output


def test_decide_commits_and_reports(runner, env):
    result = runner.invoke(
        cli, ["decide", "ep-1", "--at", "2026-10-05T09:00:00", "--episodes-remaining", "10"], env=env
    )

    assert result.exit_code == 0, result.output
    assert "committed" in result.output
    assert "full" in result.output

    again = runner.invoke(cli, ["decide", "ep-1", "--at", "2026-10-06T09:00:00"], env=env)
    assert again.exit_code == 0
    assert "already decided" in again.output


def test_decide_rejects_bad_date(runner, env):
    result = runner.invoke(cli, ["decide", "ep-1", "--at", "yesterday"], env=env)

    assert result.exit_code == 1
    assert "Invalid date" in result.output


def test_outage_then_history_and_audit(runner, env):
    runner.invoke(cli, ["decide", "ep-1", "--at", "2026-10-05T09:00:00"], env=env)

    outage = runner.invoke(cli, ["outage", "ep-1", "--at", "2026-10-05T12:00:00"], env=env)
    assert outage.exit_code == 0, outage.output
    assert "fallback_dm" in outage.output

    history = runner.invoke(cli, ["history", "--month", "2026-10"], env=env)
    assert history.exit_code == 0
    assert "ep-1" in history.output
    assert "fallback_dm" in history.output

    snapshot = runner.invoke(cli, ["snapshot", "--month", "2026-10"], env=env)
    assert snapshot.exit_code == 0
    assert "$0.43" in snapshot.output

    audit = runner.invoke(cli, ["audit", "--month", "2026-10"], env=env)
    assert audit.exit_code == 0
    assert "OK" in audit.output


def test_history_empty(runner, env):
    result = runner.invoke(cli, ["history"], env=env)

    assert result.exit_code == 0
    assert "No committed plans" in result.output


def test_invalid_budget_config(runner, env):
    with TemporaryDirectory() as tmpdir:
        bad = Path(tmpdir) / "budget.yaml"
        bad.write_text("monthly_cap_cents: 0\n", encoding="utf-8")
        env = dict(env, BUDGETGUARD_BUDGET_CONFIG_PATH=str(bad))

        result = runner.invoke(cli, ["decide", "ep-1"], env=env)

    assert result.exit_code == 1
    assert "Budget config invalid" in result.output
