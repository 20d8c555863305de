"""BudgetGuard - Budget-constrained production plan selection."""

__version__ = "0.1.0"

from budgetguard.core.errors import (
    AlreadyDecided,
    BudgetExhausted,
    BudgetGuardError,
    ConfigInvalid,
    DecisionDelayed,
    FallbackQuotaExceeded,
    LedgerWriteConflict,
    LockBusy,
    SoftStopReached,
)
from budgetguard.core.plans import PlanCode, PlanDefinition, ResourceKind
from budgetguard.core.estimator import CostEstimate, CostLine, estimate
from budgetguard.core.config import BudgetConfig, BudgetConfigLoader, load_budget_config
from budgetguard.core.arcs import EventArc, EventArcRegistry
from budgetguard.core.guard import FallbackGuard, FallbackHistory, FallbackTrigger
from budgetguard.core.cadence import CadenceController
from budgetguard.core.notifications import CollectingNotifier, LoggingNotifier, Notification
from budgetguard.storage.ledger import DecisionLedger
from budgetguard.core.selector import EpisodeAttributes, PlanSelector, SelectionResult, SelectionStatus
from budgetguard.config.settings import Settings

__all__ = [
    "AlreadyDecided",
    "BudgetExhausted",
    "BudgetGuardError",
    "ConfigInvalid",
    "DecisionDelayed",
    "FallbackQuotaExceeded",
    "LedgerWriteConflict",
    "LockBusy",
    "SoftStopReached",
    "PlanCode",
    "PlanDefinition",
    "ResourceKind",
    "CostEstimate",
    "CostLine",
    "estimate",
    "BudgetConfig",
    "BudgetConfigLoader",
    "load_budget_config",
    "EventArc",
    "EventArcRegistry",
    "FallbackGuard",
    "FallbackHistory",
    "FallbackTrigger",
    "CadenceController",
    "CollectingNotifier",
    "LoggingNotifier",
    "Notification",
    "DecisionLedger",
    "EpisodeAttributes",
    "PlanSelector",
    "SelectionResult",
    "SelectionStatus",
    "Settings",
]
