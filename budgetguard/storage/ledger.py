"""Decision ledger: append-only spend records, committed plans and month snapshots."""

import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import and_, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from budgetguard.config.settings import Settings
from budgetguard.core.config import FALLBACK_WINDOW
from budgetguard.core.errors import AlreadyDecided, LedgerWriteConflict
from budgetguard.core.estimator import CostEstimate, ceil_cents
from budgetguard.core.guard import DecisionRecord, FallbackHistory
from budgetguard.core.plans import PlanCode, ResourceKind
from budgetguard.core.records import BudgetSnapshot, EpisodeCostPlan, LedgerEntry, Reallocation
from budgetguard.storage.database import (
    BudgetSnapshotRow,
    DatabaseManager,
    EpisodeCostPlanRow,
    LedgerEntryRow,
    ReallocationRow,
)
from budgetguard.utils.helpers import to_utc_naive

logger = logging.getLogger(__name__)


def _to_snapshot(row: Optional[BudgetSnapshotRow], month: str) -> BudgetSnapshot:
    if row is None:
        return BudgetSnapshot(month=month)
    return BudgetSnapshot(
        month=row.month,
        spent_cents=row.spent_cents,
        forecast_cents=row.forecast_cents,
        borrowed_cents=row.borrowed_cents,
        lent_cents=row.lent_cents,
        version=row.version or 0,
        updated_at=row.updated_at,
    )


def _to_plan(row: EpisodeCostPlanRow) -> EpisodeCostPlan:
    return EpisodeCostPlan(
        id=row.id,
        episode_id=row.episode_id,
        month=row.month,
        plan_code=PlanCode(row.plan_code),
        estimate_cents=row.estimate_cents,
        decided_by=row.decided_by,
        rationale=row.rationale,
        revision=row.revision,
        created_at=row.created_at,
    )


def _to_entry(row: LedgerEntryRow) -> LedgerEntry:
    return LedgerEntry(
        id=row.id,
        month=row.month,
        episode_id=row.episode_id,
        resource=row.resource,
        quantity=Decimal(row.quantity),
        unit_cost=Decimal(row.unit_cost),
        total_cents=row.total_cents,
        kind=row.kind,
        created_at=row.created_at,
        cost_plan_id=row.cost_plan_id,
    )


def _to_record(row: EpisodeCostPlanRow) -> DecisionRecord:
    return DecisionRecord(
        episode_id=row.episode_id,
        plan_code=PlanCode(row.plan_code),
        decided_at=row.created_at,
    )


class DecisionLedger:
    """Durable record of consumption and committed plan choices.

    Every write happens inside one session block, so entries, the committed
    plan and the updated snapshot become visible together or not at all.
    """

    def __init__(
        self,
        database_manager: Optional[DatabaseManager] = None,
        settings: Optional[Settings] = None,
    ):
        """Initialize the ledger.

        Args:
            database_manager: Database manager instance (creates default if None)
            settings: Settings instance (creates default if None)
        """
        self.settings = settings or Settings()
        self.db_manager = database_manager or DatabaseManager(
            str(self.settings.get_database_path())
        )
        self.db_manager.init_db()

    def close(self) -> None:
        """Release database connections. Call when done (e.g. in tests before deleting temp DB)."""
        self.db_manager.dispose()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @staticmethod
    def _current_plans(session: Session):
        """Query over the latest revision of every episode's plan."""
        latest = (
            session.query(
                EpisodeCostPlanRow.episode_id.label("episode_id"),
                func.max(EpisodeCostPlanRow.revision).label("revision"),
            )
            .group_by(EpisodeCostPlanRow.episode_id)
            .subquery()
        )
        return session.query(EpisodeCostPlanRow).join(
            latest,
            and_(
                EpisodeCostPlanRow.episode_id == latest.c.episode_id,
                EpisodeCostPlanRow.revision == latest.c.revision,
            ),
        )

    @staticmethod
    def _current_row(session: Session, episode_id: str) -> Optional[EpisodeCostPlanRow]:
        return (
            session.query(EpisodeCostPlanRow)
            .filter(EpisodeCostPlanRow.episode_id == episode_id)
            .order_by(EpisodeCostPlanRow.revision.desc())
            .first()
        )

    def get_snapshot(self, month: str) -> BudgetSnapshot:
        """Get the snapshot for a month (zeroed if nothing was committed yet)."""
        with self.db_manager.get_session() as session:
            return _to_snapshot(session.get(BudgetSnapshotRow, month), month)

    def get_current_plan(self, episode_id: str) -> Optional[EpisodeCostPlan]:
        """Get the plan currently in force for an episode, if any."""
        with self.db_manager.get_session() as session:
            row = self._current_row(session, episode_id)
            return _to_plan(row) if row else None

    def plan_revisions(self, episode_id: str) -> List[EpisodeCostPlan]:
        """All committed revisions for an episode, oldest first."""
        with self.db_manager.get_session() as session:
            rows = (
                session.query(EpisodeCostPlanRow)
                .filter(EpisodeCostPlanRow.episode_id == episode_id)
                .order_by(EpisodeCostPlanRow.revision)
                .all()
            )
            return [_to_plan(row) for row in rows]

    def list_plans(self, month: Optional[str] = None, limit: Optional[int] = None) -> List[EpisodeCostPlan]:
        """Current plans, most recent first.

        Args:
            month: Filter by month key (optional)
            limit: Maximum number of plans to return (optional)
        """
        with self.db_manager.get_session() as session:
            query = self._current_plans(session)
            if month:
                query = query.filter(EpisodeCostPlanRow.month == month)
            query = query.order_by(EpisodeCostPlanRow.created_at.desc(), EpisodeCostPlanRow.id.desc())
            if limit:
                query = query.limit(limit)
            return [_to_plan(row) for row in query.all()]

    def recent_decisions(self, limit: int = FALLBACK_WINDOW) -> List[DecisionRecord]:
        """The most recent current decisions, oldest first."""
        with self.db_manager.get_session() as session:
            rows = (
                self._current_plans(session)
                .order_by(EpisodeCostPlanRow.created_at.desc(), EpisodeCostPlanRow.id.desc())
                .limit(limit)
                .all()
            )
            return [_to_record(row) for row in reversed(rows)]

    def last_fallback(self) -> Optional[DecisionRecord]:
        """The most recent current fallback decision, if any."""
        with self.db_manager.get_session() as session:
            row = (
                self._current_plans(session)
                .filter(EpisodeCostPlanRow.plan_code == PlanCode.FALLBACK.value)
                .order_by(EpisodeCostPlanRow.created_at.desc(), EpisodeCostPlanRow.id.desc())
                .first()
            )
            return _to_record(row) if row else None

    def load_history(self, window: int = FALLBACK_WINDOW) -> FallbackHistory:
        """Build the guard's bounded history from two indexed queries."""
        history = FallbackHistory(self.recent_decisions(window), window=window)
        last = self.last_fallback()
        if last is not None:
            history.seed_last_fallback(last)
        return history

    def entries_for_month(self, month: str) -> List[LedgerEntry]:
        with self.db_manager.get_session() as session:
            rows = (
                session.query(LedgerEntryRow)
                .filter(LedgerEntryRow.month == month)
                .order_by(LedgerEntryRow.id)
                .all()
            )
            return [_to_entry(row) for row in rows]

    def entries_for_episode(self, episode_id: str) -> List[LedgerEntry]:
        with self.db_manager.get_session() as session:
            rows = (
                session.query(LedgerEntryRow)
                .filter(LedgerEntryRow.episode_id == episode_id)
                .order_by(LedgerEntryRow.id)
                .all()
            )
            return [_to_entry(row) for row in rows]

    def ledger_total(self, month: str) -> int:
        """Sum of every ledger entry for a month."""
        with self.db_manager.get_session() as session:
            total = (
                session.query(func.sum(LedgerEntryRow.total_cents))
                .filter(LedgerEntryRow.month == month)
                .scalar()
            )
            return int(total or 0)

    def verify_snapshot(self, month: str) -> bool:
        """True if the month's spent_cents equals the sum of its ledger entries."""
        snapshot = self.get_snapshot(month)
        total = self.ledger_total(month)
        if snapshot.spent_cents != total:
            logger.error(
                "Snapshot drift for %s: spent=%d ledger=%d", month, snapshot.spent_cents, total
            )
            return False
        return True

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    @staticmethod
    def _snapshot_row(session: Session, month: str, now: datetime) -> BudgetSnapshotRow:
        row = session.get(BudgetSnapshotRow, month)
        if row is None:
            row = BudgetSnapshotRow(
                month=month,
                spent_cents=0,
                forecast_cents=0,
                borrowed_cents=0,
                lent_cents=0,
                updated_at=now,
            )
            session.add(row)
        return row

    def _compensate(self, session: Session, previous: EpisodeCostPlanRow, now: datetime) -> int:
        """Write negative entries cancelling a superseded plan's charges. Returns cents released."""
        charges = (
            session.query(LedgerEntryRow)
            .filter(
                LedgerEntryRow.cost_plan_id == previous.id,
                LedgerEntryRow.kind == "charge",
            )
            .all()
        )
        released = sum(entry.total_cents for entry in charges)
        if released <= 0:
            return 0
        for entry in charges:
            session.add(
                LedgerEntryRow(
                    month=entry.month,
                    episode_id=entry.episode_id,
                    cost_plan_id=previous.id,
                    resource=entry.resource,
                    quantity=str(-Decimal(entry.quantity)),
                    unit_cost=entry.unit_cost,
                    total_cents=-entry.total_cents,
                    kind="compensation",
                    created_at=now,
                )
            )
        snapshot = self._snapshot_row(session, previous.month, now)
        snapshot.spent_cents -= released
        snapshot.updated_at = now
        logger.info(
            "Compensated %dc for superseded plan %s (episode %s, rev %d)",
            released, previous.plan_code, previous.episode_id, previous.revision,
        )
        return released

    def _forecast(self, session: Session, month: str, spent_cents: int, episodes_remaining: int) -> int:
        """Spend forecast: spent + remaining episodes x trailing average estimate. Advisory only."""
        estimates = [
            value
            for (value,) in session.query(EpisodeCostPlanRow.estimate_cents)
            .filter(EpisodeCostPlanRow.month == month)
            .order_by(EpisodeCostPlanRow.created_at.desc(), EpisodeCostPlanRow.id.desc())
            .limit(self.settings.forecast_window)
            .all()
        ]
        if not estimates or episodes_remaining <= 0:
            return spent_cents
        average = ceil_cents(Decimal(sum(estimates)) / len(estimates))
        return spent_cents + episodes_remaining * average

    def commit(
        self,
        episode_id: str,
        plan_code: PlanCode,
        estimate: CostEstimate,
        rationale: str,
        month: str,
        now: datetime,
        decided_by: Optional[str] = None,
        override: bool = False,
        expected_version: Optional[int] = None,
        ceiling_cents: Optional[int] = None,
        episodes_remaining: int = 0,
        reallocation: Optional[Reallocation] = None,
    ) -> EpisodeCostPlan:
        """Commit a plan choice for an episode.

        Args:
            episode_id: Episode being decided
            plan_code: Chosen ladder rung
            estimate: Cost estimate whose lines become ledger entries
            rationale: Human-readable reason for the choice
            month: Month key the spend is charged to
            now: Decision time
            decided_by: Decider identity (settings default if None)
            override: Supersede an existing decision instead of failing
            expected_version: Snapshot version the decision was computed from
            ceiling_cents: Maximum month spend allowed after this commit
            episodes_remaining: Episodes still to be decided this month (for the forecast)
            reallocation: Slack to pull forward from a future month

        Returns:
            The committed EpisodeCostPlan

        Raises:
            AlreadyDecided: If the episode has a plan and override is False.
            LedgerWriteConflict: If the snapshot changed since it was read, the
                ceiling would be breached, or a concurrent writer got there first.
        """
        now = to_utc_naive(now)
        decided_by = decided_by or self.settings.decided_by
        try:
            with self.db_manager.get_session() as session:
                current = self._current_row(session, episode_id)
                if current is not None and not override:
                    raise AlreadyDecided(
                        f"Episode {episode_id} already committed to '{current.plan_code}' "
                        f"(revision {current.revision})",
                        episode_id=episode_id,
                        existing=_to_plan(current),
                    )

                snapshot = self._snapshot_row(session, month, now)
                if expected_version is not None and (snapshot.version or 0) != expected_version:
                    raise LedgerWriteConflict(
                        f"Snapshot for {month} moved from v{expected_version} to v{snapshot.version}",
                        month=month,
                    )

                revision = 1
                if current is not None:
                    revision = current.revision + 1
                    self._compensate(session, current, now)

                if reallocation is not None and reallocation.amount_cents > 0:
                    lender = self._snapshot_row(session, reallocation.from_month, now)
                    lender.lent_cents += reallocation.amount_cents
                    lender.updated_at = now
                    snapshot.borrowed_cents += reallocation.amount_cents
                    session.add(
                        ReallocationRow(
                            from_month=reallocation.from_month,
                            to_month=month,
                            episode_id=episode_id,
                            amount_cents=reallocation.amount_cents,
                            created_at=now,
                        )
                    )

                spent_after = snapshot.spent_cents + estimate.total_cents
                if ceiling_cents is not None and spent_after > ceiling_cents:
                    raise LedgerWriteConflict(
                        f"Committing {estimate.total_cents}c would take {month} to "
                        f"{spent_after}c, above ceiling {ceiling_cents}c",
                        month=month,
                    )

                plan_row = EpisodeCostPlanRow(
                    episode_id=episode_id,
                    revision=revision,
                    month=month,
                    plan_code=plan_code.value,
                    estimate_cents=estimate.total_cents,
                    decided_by=decided_by,
                    rationale=rationale,
                    created_at=now,
                )
                session.add(plan_row)
                session.flush()

                for line in estimate.breakdown:
                    session.add(
                        LedgerEntryRow(
                            month=month,
                            episode_id=episode_id,
                            cost_plan_id=plan_row.id,
                            resource=line.resource.value,
                            quantity=str(line.quantity),
                            unit_cost=str(line.unit_cost),
                            total_cents=line.subtotal_cents,
                            kind="charge",
                            created_at=now,
                        )
                    )

                snapshot.spent_cents = spent_after
                snapshot.forecast_cents = self._forecast(session, month, spent_after, episodes_remaining)
                snapshot.updated_at = now
                session.flush()
                committed = _to_plan(plan_row)
        except StaleDataError as e:
            raise LedgerWriteConflict(f"Concurrent update to snapshot {month}", month=month) from e
        except IntegrityError as e:
            raise LedgerWriteConflict(
                f"Concurrent commit for episode {episode_id} or month {month}", month=month
            ) from e

        logger.info(
            "Committed %s for episode %s: %dc (rev %d, %s)",
            plan_code.value, episode_id, estimate.total_cents, revision, month,
        )
        return committed

    def record_adjustment(
        self,
        month: str,
        episode_id: str,
        resource: ResourceKind,
        quantity: Decimal,
        unit_cost: Decimal,
        now: datetime,
    ) -> LedgerEntry:
        """Append a consumption or correction entry outside a plan commit.

        Negative quantities record corrections (refunds, credits).

        Returns:
            The appended LedgerEntry
        """
        now = to_utc_naive(now)
        quantity = Decimal(quantity)
        unit_cost = Decimal(unit_cost)
        total = ceil_cents(quantity * unit_cost)
        try:
            with self.db_manager.get_session() as session:
                snapshot = self._snapshot_row(session, month, now)
                row = LedgerEntryRow(
                    month=month,
                    episode_id=episode_id,
                    resource=resource.value,
                    quantity=str(quantity),
                    unit_cost=str(unit_cost),
                    total_cents=total,
                    kind="adjustment",
                    created_at=now,
                )
                session.add(row)
                snapshot.spent_cents += total
                snapshot.updated_at = now
                session.flush()
                entry = _to_entry(row)
        except StaleDataError as e:
            raise LedgerWriteConflict(f"Concurrent update to snapshot {month}", month=month) from e
        except IntegrityError as e:
            raise LedgerWriteConflict(f"Concurrent snapshot creation for {month}", month=month) from e
        return entry
