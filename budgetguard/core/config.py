"""Budget policy configuration: caps, rates, the plan ladder and guard constants."""

import logging
import threading
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from budgetguard.core.arcs import EventArc, EventArcRegistry
from budgetguard.core.errors import ConfigInvalid
from budgetguard.core.estimator import ceil_cents, estimate
from budgetguard.core.plans import LADDER, PlanCode, PlanDefinition, ResourceKind, plan_score

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).parent.parent / "config" / "budget.yaml"

# Size of the rolling episode window the fallback quota is counted over.
FALLBACK_WINDOW = 7


class BudgetConfig(BaseModel):
    """Immutable budget policy for one decision cycle."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    monthly_cap_cents: int = Field(gt=0)
    reserve_percent: float = Field(default=0.20, ge=0, lt=1)
    soft_stop_percent: float = Field(default=0.95, gt=0, le=1)
    rates: Dict[str, Dict[str, Decimal]]
    plans: List[PlanDefinition]

    max_fallback_per_7eps: int = Field(default=2, ge=0, le=FALLBACK_WINDOW)
    min_days_between_fallback: float = Field(default=5, ge=0)
    event_arc_priority_weight: float = Field(default=1.5, ge=1)

    default_shorts_per_week: int = Field(default=5, ge=1)
    min_shorts_per_week: int = Field(default=1, ge=0)
    cadence_step_down: int = Field(default=2, ge=1)

    reallocation_reserve_share: float = Field(default=0.5, ge=0, le=1)
    fallback_uses_reserve: bool = True
    outage_fallback_subject_to_quota: bool = True

    event_arcs: List[EventArc] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_policy(self) -> "BudgetConfig":
        known = {kind.value for kind in ResourceKind}
        unknown = set(self.rates) - known
        if unknown:
            raise ValueError(f"Unknown resources in rates: {sorted(unknown)}")
        for resource, tiers in self.rates.items():
            for tier, rate in tiers.items():
                if rate < 0:
                    raise ValueError(f"Negative rate for {resource}/{tier}")

        codes = [plan.code for plan in self.plans]
        if sorted(codes, key=lambda c: c.rank) != list(LADDER):
            raise ValueError(
                f"Plans must define each of {[c.value for c in LADDER]} exactly once, "
                f"got {[c.value for c in codes]}"
            )

        scores = [plan_score(plan) for plan in self.ladder()]
        for richer, poorer, code in zip(scores, scores[1:], LADDER[1:]):
            if poorer > richer:
                raise ValueError(f"Plan '{code.value}' is richer than the rung above it")

        if self.min_shorts_per_week > self.default_shorts_per_week:
            raise ValueError("min_shorts_per_week exceeds default_shorts_per_week")
        return self

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BudgetConfig":
        """Validate raw config data, estimating every plan once.

        Raises:
            ConfigInvalid: If validation fails or any plan lacks a rate.
        """
        if not data:
            raise ConfigInvalid("Budget configuration is empty")
        try:
            config = cls.model_validate(data)
        except ValidationError as e:
            raise ConfigInvalid(f"Invalid budget configuration: {e}") from e
        for plan in config.plans:
            estimate(plan, config.rates)
        return config

    def ladder(self) -> List[PlanDefinition]:
        """Plan definitions in ladder order, richest first."""
        return sorted(self.plans, key=lambda plan: plan.code.rank)

    def plan(self, code: PlanCode) -> PlanDefinition:
        """Definition for a ladder rung."""
        for plan in self.plans:
            if plan.code is code:
                return plan
        raise ConfigInvalid(f"No plan defined for '{code.value}'")

    def reserve_cents(self) -> int:
        """Untouchable monthly reserve, rounded up."""
        return ceil_cents(Decimal(self.monthly_cap_cents) * Decimal(str(self.reserve_percent)))

    def reserve_floor_cents(self) -> int:
        """Part of the reserve a month never lends to the month before it."""
        reserve = self.reserve_cents()
        return reserve - int(Decimal(reserve) * Decimal(str(self.reallocation_reserve_share)))

    def month_reserve_cents(self, lent_cents: int = 0) -> int:
        """Reserve a month still holds after lending lent_cents to the month before it, never below its floor."""
        return max(self.reserve_floor_cents(), self.reserve_cents() - lent_cents)

    def arc_registry(self) -> EventArcRegistry:
        return EventArcRegistry(self.event_arcs)


def load_budget_config(path: Optional[str] = None) -> BudgetConfig:
    """Load and validate a budget configuration from a YAML file.

    Args:
        path: Path to YAML file. If None, uses the packaged default.

    Returns:
        Validated BudgetConfig

    Raises:
        ConfigInvalid: If the file is missing, unparseable, or invalid.
    """
    config_path = Path(path) if path else DEFAULT_CONFIG_PATH
    if not config_path.exists():
        raise ConfigInvalid(f"Budget config file not found: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        try:
            raw = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigInvalid(f"Invalid YAML in budget config {config_path}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigInvalid(f"Budget config {config_path} must be a mapping")
    return BudgetConfig.from_dict(raw)


class BudgetConfigLoader:
    """Hot-reloading holder for the budget configuration.

    The file is re-read when its modification time changes. Callers take one
    config per decision cycle via current(), so a reload never lands mid-cycle.
    """

    def __init__(self, path: Optional[str] = None):
        self._path = Path(path) if path else DEFAULT_CONFIG_PATH
        self._lock = threading.Lock()
        self._mtime: Optional[float] = None
        self._config: Optional[BudgetConfig] = None

    @property
    def path(self) -> Path:
        return self._path

    def current(self) -> BudgetConfig:
        """Return the config, reloading it first if the file changed.

        Raises:
            ConfigInvalid: If the file is missing or its current contents are invalid.
        """
        with self._lock:
            try:
                mtime = self._path.stat().st_mtime
            except FileNotFoundError:
                raise ConfigInvalid(f"Budget config file not found: {self._path}")
            if self._config is None or mtime != self._mtime:
                self._config = load_budget_config(str(self._path))
                if self._mtime is not None:
                    logger.info("Reloaded budget config from %s", self._path)
                self._mtime = mtime
            return self._config
