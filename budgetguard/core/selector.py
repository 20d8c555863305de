"""Budget-constrained plan selection.

One call decides one episode: read the month snapshot, gate every plan on
feasibility, score the feasible ones, fall back through the guard when nothing
richer fits, and commit through the ledger. Feasibility is always decided
before scoring, so the event arc boost can only re-order plans that already fit.
"""

import logging
import time
from contextlib import ExitStack
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Set, Tuple, Union

from budgetguard.core.cadence import CadenceController
from budgetguard.core.config import BudgetConfig, BudgetConfigLoader
from budgetguard.core.errors import (
    AlreadyDecided,
    BudgetExhausted,
    DecisionDelayed,
    FallbackQuotaExceeded,
    LedgerWriteConflict,
    LockBusy,
    SoftStopReached,
)
from budgetguard.core.estimator import CostEstimate, estimate
from budgetguard.core.guard import FallbackGuard, FallbackTrigger
from budgetguard.core.leases import MonthLeaseRegistry
from budgetguard.core.notifications import LoggingNotifier, Notification, Notifier
from budgetguard.core.plans import PlanCode, plan_score
from budgetguard.core.records import BudgetSnapshot, EpisodeCostPlan, Reallocation
from budgetguard.storage.ledger import DecisionLedger
from budgetguard.utils.helpers import month_key, next_month_key, to_utc_naive

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EpisodeAttributes:
    """Per-episode inputs supplied by the orchestrator."""

    episode_id: str
    scheduled_at: Optional[datetime] = None
    is_event_arc: bool = False
    deadline: Optional[datetime] = None
    kind: str = "short"
    importance: int = 0


class SelectionStatus(str, Enum):
    COMMITTED = "committed"
    DELAYED = "delayed"


@dataclass(frozen=True)
class BudgetView:
    """Budget arithmetic for one decision, derived from a snapshot."""

    month: str
    cap_cents: int
    spent_cents: int
    remaining_cents: int
    reserve_cents: int
    usable_cents: int
    soft_stop: bool
    version: int


@dataclass(frozen=True)
class PlanEvaluation:
    """Estimate, score and feasibility of one ladder rung."""

    plan_code: PlanCode
    estimate: CostEstimate
    score: Decimal
    boosted_score: Decimal
    feasible: bool


@dataclass
class SelectionResult:
    """Decision returned to the scheduler."""

    episode_id: str
    status: SelectionStatus
    rationale: str
    budget: BudgetView
    cadence_target: int
    plan_code: Optional[PlanCode] = None
    estimate: Optional[CostEstimate] = None
    score: Optional[Decimal] = None
    cost_plan: Optional[EpisodeCostPlan] = None
    delay_reason: Optional[DecisionDelayed] = None
    cadence_stepped_down: bool = False
    borrowed_cents: int = 0
    evaluations: List[PlanEvaluation] = field(default_factory=list)
    notifications: List[Notification] = field(default_factory=list)

    @property
    def committed(self) -> bool:
        return self.status is SelectionStatus.COMMITTED

    def __repr__(self) -> str:
        plan = self.plan_code.value if self.plan_code else "-"
        return f"SelectionResult(episode={self.episode_id}, status={self.status.value}, plan={plan})"


def _fmt_score(value: Decimal) -> str:
    return f"{value.quantize(Decimal('0.01'))}"


def _describe(episode: EpisodeAttributes) -> str:
    text = f"{episode.kind} episode"
    if episode.importance:
        text += f", importance {episode.importance}"
    if episode.deadline is not None:
        text += f", deadline {to_utc_naive(episode.deadline):%Y-%m-%d %H:%M}"
    return text


class PlanSelector:
    """Picks the richest affordable plan for each episode and commits it."""

    def __init__(
        self,
        ledger: DecisionLedger,
        config: Union[BudgetConfig, BudgetConfigLoader],
        cadence: Optional[CadenceController] = None,
        notifier: Optional[Notifier] = None,
        leases: Optional[MonthLeaseRegistry] = None,
        settings=None,
    ):
        """Initialize the selector.

        Args:
            ledger: Decision ledger (source of truth for spend and history)
            config: Fixed BudgetConfig, or a loader re-read at the start of every cycle
            cadence: Cadence controller (built from config if None)
            notifier: Admin notification sink (logs if None)
            leases: Month lease registry (built from settings if None)
            settings: Settings instance (ledger's settings if None)
        """
        self.ledger = ledger
        self.settings = settings or ledger.settings
        self._config_source = config
        self.leases = leases or MonthLeaseRegistry(timeout=self.settings.lease_timeout_seconds)
        self.cadence = cadence or CadenceController.from_config(self.current_config())
        self.notifier = notifier or LoggingNotifier()

    # ------------------------------------------------------------------
    # Pure computation
    # ------------------------------------------------------------------

    def current_config(self) -> BudgetConfig:
        """Config for the next cycle (re-read from disk when hot reloading)."""
        if isinstance(self._config_source, BudgetConfigLoader):
            return self._config_source.current()
        return self._config_source

    @staticmethod
    def budget_view(config: BudgetConfig, snapshot: BudgetSnapshot, override: bool = False) -> BudgetView:
        """Remaining, reserve and usable budget for a month snapshot."""
        cap = snapshot.effective_cap(config.monthly_cap_cents)
        spent = snapshot.spent_cents
        remaining = cap - spent
        reserve = config.month_reserve_cents(snapshot.lent_cents)
        usable = max(0, remaining) if override else max(0, remaining - reserve)
        soft_stop = False
        if not override:
            soft_stop = cap <= 0 or Decimal(spent) >= Decimal(cap) * Decimal(str(config.soft_stop_percent))
        return BudgetView(
            month=snapshot.month,
            cap_cents=cap,
            spent_cents=spent,
            remaining_cents=remaining,
            reserve_cents=reserve,
            usable_cents=usable,
            soft_stop=soft_stop,
            version=snapshot.version,
        )

    @staticmethod
    def arc_boost(config: BudgetConfig, episode: EpisodeAttributes, now: datetime) -> Decimal:
        """Score multiplier for episodes inside an active priority event arc."""
        if not episode.is_event_arc:
            return Decimal("1")
        moment = episode.scheduled_at or now
        if config.arc_registry().is_priority_window(moment):
            return Decimal(str(config.event_arc_priority_weight))
        return Decimal("1")

    @staticmethod
    def evaluate_plans(
        config: BudgetConfig,
        usable_cents: int,
        boost: Decimal = Decimal("1"),
        rejected: bool = False,
    ) -> List[PlanEvaluation]:
        """Estimate, score and gate every non-fallback plan, richest first.

        Args:
            config: Budget config
            usable_cents: Budget the plan must fit in
            boost: Score multiplier (never applied to cost)
            rejected: Mark every plan infeasible (soft stop)
        """
        evaluations = []
        for plan in config.ladder():
            if plan.code.is_fallback:
                continue
            est = estimate(plan, config.rates)
            score = plan_score(plan)
            evaluations.append(
                PlanEvaluation(
                    plan_code=plan.code,
                    estimate=est,
                    score=score,
                    boosted_score=score * boost,
                    feasible=not rejected and est.total_cents <= usable_cents,
                )
            )
        return evaluations

    @staticmethod
    def choose(evaluations: List[PlanEvaluation]) -> Optional[PlanEvaluation]:
        """Highest boosted score among feasible plans; ties go to the richer plan."""
        feasible = [e for e in evaluations if e.feasible]
        if not feasible:
            return None
        return min(feasible, key=lambda e: (-e.boosted_score, e.plan_code.rank))

    @staticmethod
    def lendable_cents(config: BudgetConfig, lender: BudgetSnapshot) -> int:
        """Slack a future month can lend from its own reserve without going below its floor."""
        floor = config.reserve_floor_cents()
        share_limit = config.reserve_cents() - floor
        headroom = lender.effective_cap(config.monthly_cap_cents) - lender.spent_cents - floor
        return max(0, min(share_limit - lender.lent_cents, headroom))

    @staticmethod
    def _rationale(
        chosen: Optional[PlanEvaluation],
        view: BudgetView,
        evaluations: List[PlanEvaluation],
        boost: Decimal,
        episodes_remaining: int,
        weeks_remaining: int,
        extra: Optional[str] = None,
        episode: Optional[EpisodeAttributes] = None,
    ) -> str:
        parts = []
        if chosen is not None:
            parts.append(
                f"{chosen.plan_code.value}: estimate {chosen.estimate.total_cents}c "
                f"within usable {view.usable_cents}c, score {_fmt_score(chosen.boosted_score)}"
            )
        if boost != 1:
            parts.append(f"event arc boost x{boost}")
        if episode is not None:
            parts.append(_describe(episode))
        rejected = [
            f"{e.plan_code.value} {e.estimate.total_cents}c"
            for e in evaluations
            if not e.feasible
        ]
        if rejected:
            parts.append(("soft stop rejected " if view.soft_stop else "over usable: ") + ", ".join(rejected))
        if extra:
            parts.append(extra)
        parts.append(
            f"spent {view.spent_cents}c of cap {view.cap_cents}c, reserve {view.reserve_cents}c"
        )
        if episodes_remaining > 0:
            parts.append(
                f"pace {view.usable_cents // episodes_remaining}c/episode for "
                f"{episodes_remaining} episodes over {weeks_remaining} weeks"
            )
        return "; ".join(parts)

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def _guard(self, config: BudgetConfig) -> FallbackGuard:
        """Guard over the ledger's current history, read under the caller's month lease."""
        return FallbackGuard.from_config(config, self.ledger.load_history())

    def _hold(self, stack: ExitStack, held: Set[str], *months: str) -> None:
        """Enter the leases for months this decision does not hold yet."""
        missing = sorted(set(months) - held)
        if missing:
            stack.enter_context(self.leases.hold(*missing))
            held.update(missing)

    @staticmethod
    def _check_held(existing: Optional[EpisodeCostPlan], held: Set[str]) -> None:
        """Raise LedgerWriteConflict if the superseded plan sits in a month whose lease is not held."""
        if existing is not None and existing.month not in held:
            raise LedgerWriteConflict(
                f"Plan for {existing.episode_id} moved to {existing.month} during the decision",
                month=existing.month,
            )

    def _notify(self, result_notes: List[Notification], notification: Notification) -> None:
        self.notifier.notify(notification)
        result_notes.append(notification)

    def _delay(
        self,
        episode_id: str,
        reason: DecisionDelayed,
        notes: List[Notification],
        now: Optional[datetime] = None,
        deadline: Optional[datetime] = None,
    ) -> int:
        """Delay path: step the cadence down and raise an admin notification.

        A deadline falling within the next week is called out in the proposed action.
        """
        target = self.cadence.step_down()
        action = f"reduce weekly cadence to {target}; retry episode next cycle"
        if isinstance(reason, SoftStopReached):
            action = f"approve override or wait for next month; weekly cadence now {target}"
        if deadline is not None and now is not None:
            deadline = to_utc_naive(deadline)
            if deadline - now <= timedelta(days=7):
                action += f"; deadline {deadline:%Y-%m-%d %H:%M} at risk"
        self._notify(
            notes,
            Notification(type=reason.code, episode_id=episode_id, reason=str(reason), proposed_action=action),
        )
        logger.warning("Episode %s delayed: %s", episode_id, reason)
        return target

    def _commit(
        self,
        episode_id: str,
        plan_code: PlanCode,
        est: CostEstimate,
        rationale: str,
        view: BudgetView,
        now: datetime,
        ceiling_cents: int,
        override: bool,
        decided_by: Optional[str],
        episodes_remaining: int,
        reallocation=None,
    ) -> EpisodeCostPlan:
        return self.ledger.commit(
            episode_id=episode_id,
            plan_code=plan_code,
            estimate=est,
            rationale=rationale,
            month=view.month,
            now=now,
            decided_by=decided_by,
            override=override,
            expected_version=view.version,
            ceiling_cents=ceiling_cents,
            episodes_remaining=max(0, episodes_remaining - 1),
            reallocation=reallocation,
        )

    def select(
        self,
        episode: EpisodeAttributes,
        now: datetime,
        episodes_remaining: int = 0,
        weeks_remaining: int = 0,
        override: bool = False,
        decided_by: Optional[str] = None,
    ) -> SelectionResult:
        """Decide the production plan for one episode.

        Args:
            episode: Episode attributes
            now: Decision time (the only clock the decision depends on)
            episodes_remaining: Episodes left to decide this month, this one included
            weeks_remaining: Weeks left this month
            override: Admin override; bypasses soft stop and reserve, supersedes an existing plan
            decided_by: Decider identity recorded on the plan

        Returns:
            SelectionResult, committed or delayed

        Raises:
            AlreadyDecided: If the episode already has a plan and override is False.
            LockBusy: If another decision holds this month's lease, or the lease of the
                month an overridden plan was charged to.
            LedgerWriteConflict: If the snapshot moved during the decision; retry it.
            ConfigInvalid: If the budget config is invalid.
        """
        now = to_utc_naive(now)
        config = self.current_config()
        month = month_key(now)
        self.cadence.apply_config(config)
        self.cadence.roll_week(now)
        arcs = config.arc_registry()

        # An override compensates the superseded plan's month, so that lease is needed too.
        prior = self.ledger.get_current_plan(episode.episode_id) if override else None

        with ExitStack() as stack:
            held: Set[str] = set()
            self._hold(stack, held, month, *([prior.month] if prior is not None else []))

            existing = self.ledger.get_current_plan(episode.episode_id)
            if existing is not None and not override:
                raise AlreadyDecided(
                    f"Episode {episode.episode_id} already committed to '{existing.plan_code.value}'",
                    episode_id=episode.episode_id,
                    existing=existing,
                )
            self._check_held(existing, held)

            snapshot = self.ledger.get_snapshot(month)
            view = self.budget_view(config, snapshot, override=override)
            boost = self.arc_boost(config, episode, now)
            evaluations = self.evaluate_plans(config, view.usable_cents, boost, rejected=view.soft_stop)
            chosen = self.choose(evaluations)
            notes: List[Notification] = []

            if view.soft_stop:
                self._notify(
                    notes,
                    Notification(
                        type=SoftStopReached.code,
                        episode_id=episode.episode_id,
                        reason=f"spent {view.spent_cents}c of {view.cap_cents}c crossed soft stop "
                               f"{config.soft_stop_percent:.0%}",
                        proposed_action="admin approval required for non-fallback plans",
                    ),
                )

            borrowed = 0
            if chosen is None and not view.soft_stop and config.reallocation_reserve_share > 0:
                chosen, borrowed, evaluations = self._try_reallocation(
                    stack, held, config, view, boost, evaluations
                )

            if chosen is not None:
                rich_view = replace(view, usable_cents=view.usable_cents + borrowed)
                extra = None
                if borrowed:
                    extra = f"pulled {borrowed}c forward from {next_month_key(month)}"
                rationale = self._rationale(
                    chosen, rich_view, evaluations, boost, episodes_remaining, weeks_remaining, extra,
                    episode=episode,
                )
                committed = self._commit(
                    episode.episode_id,
                    chosen.plan_code,
                    chosen.estimate,
                    rationale,
                    view,
                    now,
                    ceiling_cents=view.spent_cents + rich_view.usable_cents,
                    override=override,
                    decided_by=decided_by,
                    episodes_remaining=episodes_remaining,
                    reallocation=Reallocation(next_month_key(month), borrowed) if borrowed else None,
                )
                logger.info("Episode %s -> %s (%s)", episode.episode_id, chosen.plan_code.value, rationale)
                return SelectionResult(
                    episode_id=episode.episode_id,
                    status=SelectionStatus.COMMITTED,
                    rationale=rationale,
                    budget=view,
                    cadence_target=self.cadence.target_for(now, arcs),
                    plan_code=chosen.plan_code,
                    estimate=chosen.estimate,
                    score=chosen.boosted_score,
                    cost_plan=committed,
                    borrowed_cents=borrowed,
                    evaluations=evaluations,
                    notifications=notes,
                )

            return self._fallback(
                config, episode, now, view, evaluations, boost, notes,
                episodes_remaining, weeks_remaining, override, decided_by,
            )

    def _try_reallocation(
        self,
        stack: ExitStack,
        held: Set[str],
        config: BudgetConfig,
        view: BudgetView,
        boost: Decimal,
        evaluations: List[PlanEvaluation],
    ) -> Tuple[Optional[PlanEvaluation], int, List[PlanEvaluation]]:
        """One bounded attempt to borrow slack from next month's reserve."""
        lender_month = next_month_key(view.month)
        self._hold(stack, held, lender_month)
        lendable = self.lendable_cents(config, self.ledger.get_snapshot(lender_month))
        if lendable <= 0:
            return None, 0, evaluations
        adjusted = self.evaluate_plans(config, view.usable_cents + lendable, boost)
        chosen = self.choose(adjusted)
        if chosen is None:
            return None, 0, evaluations
        borrowed = max(0, chosen.estimate.total_cents - view.usable_cents)
        logger.info(
            "Reallocating %dc from %s to %s for %s",
            borrowed, lender_month, view.month, chosen.plan_code.value,
        )
        return chosen, borrowed, adjusted

    def _fallback(
        self,
        config: BudgetConfig,
        episode: EpisodeAttributes,
        now: datetime,
        view: BudgetView,
        evaluations: List[PlanEvaluation],
        boost: Decimal,
        notes: List[Notification],
        episodes_remaining: int,
        weeks_remaining: int,
        override: bool,
        decided_by: Optional[str],
    ) -> SelectionResult:
        """No richer plan fits: fall back through the guard or delay."""
        fallback_est = estimate(config.plan(PlanCode.FALLBACK), config.rates)
        limit = view.remaining_cents if (config.fallback_uses_reserve or override) else view.usable_cents
        limit = max(0, limit)
        verdict = self._guard(config).evaluate(now, FallbackTrigger.BUDGET, episode_id=episode.episode_id)

        delay: Optional[DecisionDelayed] = None
        if fallback_est.total_cents > limit:
            delay = BudgetExhausted(
                f"fallback {fallback_est.total_cents}c exceeds available {limit}c",
                episode_id=episode.episode_id,
            )
        elif not verdict.allowed:
            delay = FallbackQuotaExceeded(verdict.summary(), episode_id=episode.episode_id)
        if delay is not None and view.soft_stop:
            delay = SoftStopReached(f"soft stop reached and {delay}", episode_id=episode.episode_id)

        if delay is not None:
            target = self._delay(episode.episode_id, delay, notes, now=now, deadline=episode.deadline)
            rationale = self._rationale(
                None, view, evaluations, boost, episodes_remaining, weeks_remaining,
                extra=f"delayed: {delay}", episode=episode,
            )
            return SelectionResult(
                episode_id=episode.episode_id,
                status=SelectionStatus.DELAYED,
                rationale=rationale,
                budget=view,
                cadence_target=self.cadence.target_for(now, config.arc_registry()),
                delay_reason=delay,
                cadence_stepped_down=True,
                evaluations=evaluations,
                notifications=notes,
            )

        fallback_eval = PlanEvaluation(
            plan_code=PlanCode.FALLBACK,
            estimate=fallback_est,
            score=plan_score(config.plan(PlanCode.FALLBACK)),
            boosted_score=plan_score(config.plan(PlanCode.FALLBACK)) * boost,
            feasible=True,
        )
        rationale = self._rationale(
            None, view, evaluations, boost, episodes_remaining, weeks_remaining,
            extra=f"{PlanCode.FALLBACK.value}: estimate {fallback_est.total_cents}c within {limit}c, "
                  f"{verdict.summary()} ({verdict.fallbacks_in_window} in window)",
            episode=episode,
        )
        committed = self._commit(
            episode.episode_id,
            PlanCode.FALLBACK,
            fallback_est,
            rationale,
            view,
            now,
            ceiling_cents=view.spent_cents + limit,
            override=override,
            decided_by=decided_by,
            episodes_remaining=episodes_remaining,
        )
        logger.info("Episode %s -> %s (%s)", episode.episode_id, PlanCode.FALLBACK.value, rationale)
        return SelectionResult(
            episode_id=episode.episode_id,
            status=SelectionStatus.COMMITTED,
            rationale=rationale,
            budget=view,
            cadence_target=self.cadence.target_for(now, config.arc_registry()),
            plan_code=PlanCode.FALLBACK,
            estimate=fallback_est,
            score=fallback_eval.boosted_score,
            cost_plan=committed,
            evaluations=evaluations + [fallback_eval],
            notifications=notes,
        )

    def handle_render_failure(
        self,
        episode_id: str,
        now: datetime,
        reason: str = "render failure",
        episodes_remaining: int = 0,
        decided_by: Optional[str] = None,
    ) -> SelectionResult:
        """Switch an episode to the fallback plan after a render failure or provider outage.

        The request goes through the same guard as budget fallbacks. Whether the
        rolling quota and spacing apply is set by outage_fallback_subject_to_quota.
        An existing plan for the episode is superseded and its charges compensated.

        Raises:
            AlreadyDecided: If the episode is already on the fallback plan.
            LockBusy: If another decision holds this month's lease, or the lease of the
                month the superseded plan was charged to.
            LedgerWriteConflict: If the snapshot moved during the decision.
        """
        now = to_utc_naive(now)
        config = self.current_config()
        month = month_key(now)
        self.cadence.apply_config(config)
        self.cadence.roll_week(now)
        prior = self.ledger.get_current_plan(episode_id)

        with ExitStack() as stack:
            held: Set[str] = set()
            self._hold(stack, held, month, *([prior.month] if prior is not None else []))

            existing = self.ledger.get_current_plan(episode_id)
            if existing is not None and existing.is_fallback:
                raise AlreadyDecided(
                    f"Episode {episode_id} is already on {PlanCode.FALLBACK.value}",
                    episode_id=episode_id,
                    existing=existing,
                )
            self._check_held(existing, held)

            view = self.budget_view(config, self.ledger.get_snapshot(month))
            released = existing.estimate_cents if existing is not None and existing.month == month else 0
            limit = view.remaining_cents if config.fallback_uses_reserve else view.usable_cents
            limit = max(0, limit + released)
            fallback_est = estimate(config.plan(PlanCode.FALLBACK), config.rates)
            verdict = self._guard(config).evaluate(now, FallbackTrigger.OUTAGE, episode_id=episode_id)
            notes: List[Notification] = []

            delay: Optional[DecisionDelayed] = None
            if fallback_est.total_cents > limit:
                delay = BudgetExhausted(
                    f"{reason}: fallback {fallback_est.total_cents}c exceeds available {limit}c",
                    episode_id=episode_id,
                )
            elif not verdict.allowed:
                delay = FallbackQuotaExceeded(f"{reason}: {verdict.summary()}", episode_id=episode_id)

            if delay is not None:
                target = self._delay(episode_id, delay, notes)
                return SelectionResult(
                    episode_id=episode_id,
                    status=SelectionStatus.DELAYED,
                    rationale=f"{reason}; delayed: {delay}",
                    budget=view,
                    cadence_target=target,
                    delay_reason=delay,
                    cadence_stepped_down=True,
                    notifications=notes,
                )

            rationale = (
                f"{PlanCode.FALLBACK.value}: {reason}; estimate {fallback_est.total_cents}c "
                f"within {limit}c; {verdict.summary()}"
            )
            if existing is not None:
                rationale += f"; supersedes {existing.plan_code.value} rev {existing.revision}"
            committed = self._commit(
                episode_id,
                PlanCode.FALLBACK,
                fallback_est,
                rationale,
                view,
                now,
                ceiling_cents=view.spent_cents + limit,
                override=True,
                decided_by=decided_by,
                episodes_remaining=episodes_remaining,
            )
            return SelectionResult(
                episode_id=episode_id,
                status=SelectionStatus.COMMITTED,
                rationale=rationale,
                budget=view,
                cadence_target=self.cadence.target_for(now, config.arc_registry()),
                plan_code=PlanCode.FALLBACK,
                estimate=fallback_est,
                cost_plan=committed,
                notifications=notes,
            )

    def select_with_retries(self, episode: EpisodeAttributes, now: datetime, **kwargs) -> SelectionResult:
        """select() with retries on LockBusy and LedgerWriteConflict.

        Every attempt re-reads config and snapshot.
        """
        attempts = self.settings.decision_attempts
        attempt = 1
        while True:
            try:
                return self.select(episode, now, **kwargs)
            except (LockBusy, LedgerWriteConflict) as e:
                if attempt >= attempts:
                    raise
                delay = self.settings.retry_backoff_seconds * attempt
                logger.warning(
                    "Decision for %s failed (%s), retry %d/%d in %.2fs",
                    episode.episode_id, e, attempt, attempts - 1, delay,
                )
                time.sleep(delay)
                attempt += 1
