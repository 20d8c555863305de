"""Fallback policy guard.

Prevents fallback loops by enforcing, over the recent decision history:

1. Rolling quota - at most max_fallback_per_7eps fallbacks in the last 7 episodes
2. Spacing - at least min_days_between_fallback days since the last fallback
3. No repeats - the previous committed episode must not itself be a fallback
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Deque, Iterable, List, Optional

from budgetguard.core.config import FALLBACK_WINDOW
from budgetguard.core.plans import PlanCode
from budgetguard.utils.helpers import to_utc_naive

logger = logging.getLogger(__name__)


class FallbackTrigger(str, Enum):
    """Why a fallback is being requested."""

    BUDGET = "budget"
    OUTAGE = "outage"


@dataclass(frozen=True)
class DecisionRecord:
    """One committed plan decision as seen by the guard."""

    episode_id: str
    plan_code: PlanCode
    decided_at: datetime

    @property
    def is_fallback(self) -> bool:
        return self.plan_code.is_fallback


@dataclass
class GuardVerdict:
    """Outcome of a guard evaluation."""

    allowed: bool
    fallbacks_in_window: int
    reasons: List[str] = field(default_factory=list)

    def summary(self) -> str:
        if self.allowed:
            return "fallback allowed"
        return "; ".join(self.reasons)


class FallbackHistory:
    """Bounded, time-ordered log of the most recent committed decisions."""

    def __init__(self, records: Optional[Iterable[DecisionRecord]] = None, window: int = FALLBACK_WINDOW):
        self._records: Deque[DecisionRecord] = deque(maxlen=window)
        self._last_fallback: Optional[DecisionRecord] = None
        for record in sorted(records or [], key=lambda r: r.decided_at):
            self.record(record)

    def __len__(self) -> int:
        return len(self._records)

    @property
    def records(self) -> List[DecisionRecord]:
        """Records oldest first."""
        return list(self._records)

    @property
    def last_fallback(self) -> Optional[DecisionRecord]:
        """Most recent fallback ever recorded, even if it has left the window."""
        return self._last_fallback

    @property
    def last_fallback_at(self) -> Optional[datetime]:
        return self._last_fallback.decided_at if self._last_fallback else None

    def seed_last_fallback(self, decision: DecisionRecord) -> None:
        """Set the latest fallback from an older query when it is outside the window."""
        if self._last_fallback is None or decision.decided_at > self._last_fallback.decided_at:
            self._last_fallback = decision

    def record(self, decision: DecisionRecord) -> None:
        """Append a committed decision. A later decision for the same episode replaces the earlier one."""
        decision = DecisionRecord(
            episode_id=decision.episode_id,
            plan_code=decision.plan_code,
            decided_at=to_utc_naive(decision.decided_at),
        )
        existing = [r for r in self._records if r.episode_id == decision.episode_id]
        for old in existing:
            self._records.remove(old)
        self._records.append(decision)
        if decision.is_fallback:
            self.seed_last_fallback(decision)
        elif self._last_fallback is not None and self._last_fallback.episode_id == decision.episode_id:
            # The fallback was superseded; the latest one left is the newest still in the window.
            self._last_fallback = max(
                (r for r in self._records if r.is_fallback),
                key=lambda r: r.decided_at,
                default=None,
            )

    def fallback_count(self) -> int:
        return sum(1 for r in self._records if r.is_fallback)

    def last(self) -> Optional[DecisionRecord]:
        return self._records[-1] if self._records else None


class FallbackGuard:
    """Pure read over decision history answering "may the next episode fall back?"."""

    def __init__(
        self,
        max_fallback_per_7eps: int,
        min_days_between_fallback: float,
        outage_subject_to_quota: bool = True,
        history: Optional[FallbackHistory] = None,
    ):
        """Initialize the guard.

        Args:
            max_fallback_per_7eps: Fallbacks allowed in any rolling 7-episode window
            min_days_between_fallback: Minimum spacing between fallbacks, in days
            outage_subject_to_quota: Whether outage-triggered fallbacks obey the rolling
                quota and spacing rules
            history: Seed history (empty if None)
        """
        self.max_fallback_per_7eps = max_fallback_per_7eps
        self.min_days_between_fallback = min_days_between_fallback
        self.outage_subject_to_quota = outage_subject_to_quota
        self.history = history or FallbackHistory()

    @classmethod
    def from_config(cls, config, history: Optional[FallbackHistory] = None) -> "FallbackGuard":
        return cls(
            max_fallback_per_7eps=config.max_fallback_per_7eps,
            min_days_between_fallback=config.min_days_between_fallback,
            outage_subject_to_quota=config.outage_fallback_subject_to_quota,
            history=history,
        )

    def evaluate(
        self,
        now: datetime,
        trigger: FallbackTrigger = FallbackTrigger.BUDGET,
        episode_id: Optional[str] = None,
    ) -> GuardVerdict:
        """Check every fallback rule against the current history.

        Args:
            now: Decision time
            trigger: Budget pressure or outage/render failure
            episode_id: Episode being decided; its own earlier record is ignored
                (an outage fallback replaces it)

        Returns:
            GuardVerdict listing every rule that failed
        """
        now = to_utc_naive(now)
        records = [r for r in self.history.records if r.episode_id != episode_id]
        fallbacks = sum(1 for r in records if r.is_fallback)
        reasons: List[str] = []

        quotas_apply = trigger is FallbackTrigger.BUDGET or self.outage_subject_to_quota
        if quotas_apply:
            if fallbacks >= self.max_fallback_per_7eps:
                reasons.append(
                    f"{fallbacks} fallbacks in last {FALLBACK_WINDOW} episodes "
                    f"(max {self.max_fallback_per_7eps})"
                )
            last = self.history.last_fallback
            if last is not None and last.episode_id == episode_id:
                last_fallback_at = max(
                    (r.decided_at for r in records if r.is_fallback),
                    default=None,
                )
            else:
                last_fallback_at = last.decided_at if last is not None else None
            if last_fallback_at is not None:
                gap = now - last_fallback_at
                if gap < timedelta(days=self.min_days_between_fallback):
                    reasons.append(
                        f"last fallback {gap.total_seconds() / 86400:.1f} days ago "
                        f"(min {self.min_days_between_fallback:g})"
                    )

        if records and records[-1].is_fallback:
            reasons.append(f"previous episode {records[-1].episode_id} was a fallback")

        verdict = GuardVerdict(allowed=not reasons, fallbacks_in_window=fallbacks, reasons=reasons)
        if not verdict.allowed:
            logger.warning("Fallback refused (%s): %s", trigger.value, verdict.summary())
        return verdict

    def allow_fallback(
        self,
        now: datetime,
        trigger: FallbackTrigger = FallbackTrigger.BUDGET,
        episode_id: Optional[str] = None,
    ) -> bool:
        return self.evaluate(now, trigger=trigger, episode_id=episode_id).allowed

    def record(self, decision: DecisionRecord) -> None:
        """Record a decision. Call only after the decision has been committed."""
        self.history.record(decision)
