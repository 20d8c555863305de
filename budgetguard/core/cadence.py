"""Weekly cadence target tracking."""

import logging
import threading
from datetime import datetime
from typing import Optional

from budgetguard.core.arcs import EventArcRegistry
from budgetguard.utils.helpers import week_key

logger = logging.getLogger(__name__)


class CadenceController:
    """Holds the current week's episode target.

    The target starts at the default, is stepped down under budget or fallback
    pressure (never below the floor), and resets when the ISO week rolls over.
    Event arc overrides only raise the advisory target reported to the
    scheduler; they never touch per-episode feasibility.
    """

    def __init__(self, default_per_week: int, floor_per_week: int, step: int = 2):
        if floor_per_week > default_per_week:
            raise ValueError("floor_per_week exceeds default_per_week")
        self.default_per_week = default_per_week
        self.floor_per_week = floor_per_week
        self.step = step
        self._target = default_per_week
        self._week: Optional[str] = None
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config) -> "CadenceController":
        return cls(
            default_per_week=config.default_shorts_per_week,
            floor_per_week=config.min_shorts_per_week,
            step=config.cadence_step_down,
        )

    def configure(self, default_per_week: int, floor_per_week: int, step: int) -> bool:
        """Apply new cadence constants. Returns True if any of them changed.

        A target still at the old default follows the new default; a stepped-down
        target is clamped into the new floor..default range.
        """
        if floor_per_week > default_per_week:
            raise ValueError("floor_per_week exceeds default_per_week")
        with self._lock:
            if (self.default_per_week, self.floor_per_week, self.step) == (default_per_week, floor_per_week, step):
                return False
            if self._target == self.default_per_week:
                self._target = default_per_week
            else:
                self._target = min(default_per_week, max(floor_per_week, self._target))
            self.default_per_week = default_per_week
            self.floor_per_week = floor_per_week
            self.step = step
            logger.info(
                "Cadence reconfigured: default %d, floor %d, step %d (target %d)",
                default_per_week, floor_per_week, step, self._target,
            )
            return True

    def apply_config(self, config) -> bool:
        """Pick up cadence constants from a (re)loaded BudgetConfig."""
        return self.configure(
            default_per_week=config.default_shorts_per_week,
            floor_per_week=config.min_shorts_per_week,
            step=config.cadence_step_down,
        )

    @property
    def target(self) -> int:
        with self._lock:
            return self._target

    @property
    def week(self) -> Optional[str]:
        with self._lock:
            return self._week

    def step_down(self) -> int:
        """Lower this week's target by one step, stopping at the floor. Returns the new target."""
        with self._lock:
            previous = self._target
            self._target = max(self.floor_per_week, self._target - self.step)
            if self._target != previous:
                logger.info("Cadence stepped down %d -> %d per week", previous, self._target)
            return self._target

    def reset(self) -> int:
        """Restore the default target."""
        with self._lock:
            self._target = self.default_per_week
            return self._target

    def roll_week(self, now: datetime) -> bool:
        """Reset the target if now falls in a new ISO week. Returns True on rollover."""
        current = week_key(now)
        with self._lock:
            if self._week == current:
                return False
            rolled = self._week is not None
            self._week = current
            if rolled:
                self._target = self.default_per_week
                logger.info("Week rolled over to %s; cadence reset to %d", current, self._target)
            return rolled

    def target_for(self, now: datetime, arcs: Optional[EventArcRegistry] = None) -> int:
        """Advisory target for the week containing now, raised by any active arc override."""
        with self._lock:
            target = self._target
        if arcs is not None:
            override = arcs.cadence_override_at(now)
            if override is not None and override > target:
                return override
        return target
