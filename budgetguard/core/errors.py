"""Exceptions raised (or returned as delay reasons) by the budget guardian."""

from typing import Any, Optional


class BudgetGuardError(Exception):
    """Base class for all budget guardian errors."""


class ConfigInvalid(BudgetGuardError, ValueError):
    """Budget configuration is missing a rate or is otherwise malformed. Blocks all decisions."""


class AlreadyDecided(BudgetGuardError):
    """An episode already has a committed cost plan and no override was supplied."""

    def __init__(self, message: str, episode_id: str, existing: Optional[Any] = None):
        self.episode_id = episode_id
        self.existing = existing  # EpisodeCostPlan currently in force
        super().__init__(message)


class LockBusy(BudgetGuardError):
    """Another decision holds the month lease. Retry with backoff."""

    def __init__(self, message: str, month: str):
        self.month = month
        super().__init__(message)


class LedgerWriteConflict(BudgetGuardError):
    """The month snapshot changed between read and commit. Retry the whole decision."""

    def __init__(self, message: str, month: str):
        self.month = month
        super().__init__(message)


class DecisionDelayed(BudgetGuardError):
    """Recoverable condition: the episode is left undecided for this cycle.

    Instances are attached to SelectionResult.delay_reason rather than raised,
    so callers can re-raise them if they prefer exception flow.
    """

    code = "delayed"

    def __init__(self, message: str, episode_id: str):
        self.episode_id = episode_id
        super().__init__(message)


class BudgetExhausted(DecisionDelayed):
    """No plan, fallback included, fits the budget and reallocation did not close the gap."""

    code = "budget_exhausted"


class FallbackQuotaExceeded(DecisionDelayed):
    """Fallback is the only option but the fallback guard refuses it."""

    code = "fallback_quota_exceeded"


class SoftStopReached(DecisionDelayed):
    """Spend crossed the soft-stop threshold; rich plans need explicit admin override."""

    code = "soft_stop_reached"
