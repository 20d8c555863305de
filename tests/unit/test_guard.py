"""Unit tests for the fallback guard."""

from datetime import datetime, timedelta

import pytest

from budgetguard.core.config import load_budget_config
from budgetguard.core.guard import (
    DecisionRecord,
    FallbackGuard,
    FallbackHistory,
    FallbackTrigger,
)
from budgetguard.core.plans import PlanCode

START = datetime(2026, 10, 1, 9, 0)


def day(n: float) -> datetime:
    return START + timedelta(days=n)


def rec(episode_id: str, plan_code: PlanCode, at: float) -> DecisionRecord:
    return DecisionRecord(episode_id, plan_code, day(at))


@pytest.fixture
def guard():
    """Guard with the default policy: 2 per 7 episodes, 5 days apart."""
    return FallbackGuard(max_fallback_per_7eps=2, min_days_between_fallback=5)


def test_empty_history_allows_fallback(guard):
    verdict = guard.evaluate(day(0))

    assert verdict.allowed
    assert verdict.fallbacks_in_window == 0
    assert verdict.summary() == "fallback allowed"


def test_from_config():
    config = load_budget_config()
    guard = FallbackGuard.from_config(config)

    assert guard.max_fallback_per_7eps == 2
    assert guard.min_days_between_fallback == 5
    assert guard.outage_subject_to_quota is True


def test_two_fallbacks_three_days_apart_reject_third(guard):
    """Test a third fallback is refused after two fallbacks 3 days apart."""
    guard.record(rec("ep-1", PlanCode.FALLBACK, 0))
    guard.record(rec("ep-2", PlanCode.FULL, 1))
    guard.record(rec("ep-3", PlanCode.FALLBACK, 3))
    guard.record(rec("ep-4", PlanCode.SAVER, 4))

    verdict = guard.evaluate(day(4.5), episode_id="ep-5")

    assert not verdict.allowed
    assert verdict.fallbacks_in_window == 2
    assert any("max 2" in reason for reason in verdict.reasons)
    assert any("min 5" in reason for reason in verdict.reasons)


def test_spacing_alone_rejects():
    """Test min-days spacing applies even below the rolling quota."""
    guard = FallbackGuard(max_fallback_per_7eps=3, min_days_between_fallback=5)
    guard.record(rec("ep-1", PlanCode.FALLBACK, 0))
    guard.record(rec("ep-2", PlanCode.FULL, 1))

    verdict = guard.evaluate(day(3))
    assert not verdict.allowed
    assert len(verdict.reasons) == 1
    assert "days ago" in verdict.reasons[0]

    assert guard.allow_fallback(day(5))


def test_consecutive_fallback_rejected():
    """Test the episode right after a fallback may not fall back."""
    guard = FallbackGuard(max_fallback_per_7eps=7, min_days_between_fallback=0)
    guard.record(rec("ep-1", PlanCode.FALLBACK, 0))

    verdict = guard.evaluate(day(30))
    assert not verdict.allowed
    assert "ep-1 was a fallback" in verdict.summary()


def test_window_rolls_forward(guard):
    """Test fallbacks older than 7 episodes stop counting toward the quota."""
    guard.record(rec("ep-1", PlanCode.FALLBACK, 0))
    guard.record(rec("ep-2", PlanCode.FULL, 1))
    guard.record(rec("ep-3", PlanCode.FALLBACK, 6))
    for i in range(4, 10):
        guard.record(rec(f"ep-{i}", PlanCode.FULL, 6 + i))

    assert len(guard.history) == 7
    verdict = guard.evaluate(day(20))
    assert verdict.fallbacks_in_window == 1
    assert verdict.allowed


def test_spacing_remembers_fallback_outside_window():
    """Test the last fallback is kept for spacing after it leaves the window."""
    guard = FallbackGuard(max_fallback_per_7eps=2, min_days_between_fallback=5)
    guard.record(rec("ep-0", PlanCode.FALLBACK, 0))
    for i in range(1, 8):
        guard.record(rec(f"ep-{i}", PlanCode.FULL, i * 0.25))

    assert guard.history.fallback_count() == 0
    assert guard.history.last_fallback_at == day(0)
    assert not guard.allow_fallback(day(2.5))
    assert guard.allow_fallback(day(5))


def test_redecided_episode_replaces_its_record():
    history = FallbackHistory()
    history.record(rec("ep-1", PlanCode.FULL, 0))
    history.record(rec("ep-2", PlanCode.SAVER, 1))
    history.record(rec("ep-1", PlanCode.FALLBACK, 2))

    assert [r.episode_id for r in history.records] == ["ep-2", "ep-1"]
    assert history.fallback_count() == 1
    assert history.last().is_fallback


def test_superseded_fallback_no_longer_counts_for_spacing():
    """Test replacing a fallback with a richer plan drops it as the last fallback."""
    guard = FallbackGuard(max_fallback_per_7eps=2, min_days_between_fallback=5)
    guard.record(rec("ep-0", PlanCode.FALLBACK, 0))
    guard.record(rec("ep-1", PlanCode.FULL, 0.5))
    guard.record(rec("ep-2", PlanCode.FALLBACK, 1))
    guard.record(rec("ep-2", PlanCode.FULL, 1.5))

    assert guard.history.last_fallback.episode_id == "ep-0"
    assert guard.allow_fallback(day(5))


def test_superseded_only_fallback_clears_last_fallback():
    history = FallbackHistory()
    history.record(rec("ep-1", PlanCode.FALLBACK, 0))
    history.record(rec("ep-1", PlanCode.SAVER, 1))

    assert history.last_fallback is None
    assert history.fallback_count() == 0


def test_episode_own_record_is_ignored(guard):
    """Test an outage fallback for an episode is judged without its own superseded plan."""
    guard.record(rec("ep-1", PlanCode.FULL, 0))
    guard.record(rec("ep-2", PlanCode.FALLBACK, 1))

    assert not guard.allow_fallback(day(10), FallbackTrigger.OUTAGE, episode_id="ep-3")
    # Re-deciding ep-2 itself: its own record does not count as "previous"
    assert guard.allow_fallback(day(10), FallbackTrigger.OUTAGE, episode_id="ep-2")


def test_outage_exemption_skips_quota_not_repeat_rule():
    """Test exempt outage fallbacks still may not follow a fallback."""
    guard = FallbackGuard(
        max_fallback_per_7eps=2, min_days_between_fallback=5, outage_subject_to_quota=False
    )
    guard.record(rec("ep-1", PlanCode.FALLBACK, 0))
    guard.record(rec("ep-2", PlanCode.FULL, 0.5))
    guard.record(rec("ep-3", PlanCode.FALLBACK, 1))
    guard.record(rec("ep-4", PlanCode.FULL, 1.5))

    assert not guard.allow_fallback(day(2), FallbackTrigger.BUDGET)
    assert guard.allow_fallback(day(2), FallbackTrigger.OUTAGE)

    guard.record(rec("ep-5", PlanCode.FALLBACK, 2))
    assert not guard.allow_fallback(day(2.5), FallbackTrigger.OUTAGE)


def test_history_seeded_out_of_order():
    """Test seed records are ordered by decision time."""
    history = FallbackHistory(
        [rec("ep-2", PlanCode.FALLBACK, 2), rec("ep-1", PlanCode.FULL, 1)]
    )

    assert [r.episode_id for r in history.records] == ["ep-1", "ep-2"]
    assert history.last_fallback.episode_id == "ep-2"


def test_aware_datetimes_are_normalized(guard):
    from datetime import timezone

    guard.record(DecisionRecord("ep-1", PlanCode.FALLBACK, day(0).replace(tzinfo=timezone.utc)))
    guard.record(rec("ep-2", PlanCode.FULL, 1))

    assert guard.history.last_fallback_at.tzinfo is None
    assert not guard.allow_fallback(day(3))


@pytest.mark.parametrize("max_fallbacks,min_days", [(2, 5), (1, 0), (3, 2)])
def test_guard_invariants_hold_over_long_run(max_fallbacks, min_days):
    """Test an episode stream that always wants to fall back never breaks the rules."""
    guard = FallbackGuard(max_fallback_per_7eps=max_fallbacks, min_days_between_fallback=min_days)
    decisions = []
    for i in range(60):
        now = day(i * 0.5)
        plan = PlanCode.FALLBACK if guard.allow_fallback(now) else PlanCode.MINIMAL
        decision = DecisionRecord(f"ep-{i}", plan, now)
        guard.record(decision)
        decisions.append(decision)

    flags = [d.is_fallback for d in decisions]
    assert any(flags)
    for i in range(len(flags) - 1):
        assert not (flags[i] and flags[i + 1])
    for i in range(len(flags) - 6):
        assert sum(flags[i:i + 7]) <= max_fallbacks
    fallback_times = [d.decided_at for d in decisions if d.is_fallback]
    for earlier, later in zip(fallback_times, fallback_times[1:]):
        assert later - earlier >= timedelta(days=min_days)
