"""Detached, immutable views of ledger state."""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from budgetguard.core.plans import PlanCode


@dataclass(frozen=True)
class BudgetSnapshot:
    """Aggregate spend for one calendar month."""

    month: str
    spent_cents: int = 0
    forecast_cents: int = 0
    borrowed_cents: int = 0
    lent_cents: int = 0
    version: int = 0
    updated_at: Optional[datetime] = None

    def effective_cap(self, monthly_cap_cents: int) -> int:
        """Monthly cap after cross-month reallocation."""
        return monthly_cap_cents + self.borrowed_cents - self.lent_cents


@dataclass(frozen=True)
class LedgerEntry:
    """One append-only consumption record."""

    id: int
    month: str
    episode_id: str
    resource: str
    quantity: Decimal
    unit_cost: Decimal
    total_cents: int
    kind: str
    created_at: datetime
    cost_plan_id: Optional[int] = None


@dataclass(frozen=True)
class EpisodeCostPlan:
    """A committed plan choice for an episode. Later revisions supersede earlier ones."""

    id: int
    episode_id: str
    month: str
    plan_code: PlanCode
    estimate_cents: int
    decided_by: str
    rationale: str
    revision: int
    created_at: datetime

    @property
    def is_fallback(self) -> bool:
        return self.plan_code.is_fallback


@dataclass(frozen=True)
class Reallocation:
    """Slack pulled forward from a future month as part of a commit."""

    from_month: str
    amount_cents: int
