"""Event arcs: time-boxed priority windows."""

from datetime import datetime
from typing import Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from budgetguard.utils.helpers import to_utc_naive


class EventArc(BaseModel):
    """A time window during which episodes get a selection score boost."""

    model_config = ConfigDict(frozen=True)

    arc_id: str
    name: str = ""
    starts_at: datetime
    ends_at: datetime
    priority: bool = True
    cadence_override: Optional[int] = Field(default=None, ge=1)

    @model_validator(mode="after")
    def _check_window(self) -> "EventArc":
        if to_utc_naive(self.ends_at) <= to_utc_naive(self.starts_at):
            raise ValueError(f"event arc '{self.arc_id}' ends before it starts")
        return self

    def contains(self, moment: datetime) -> bool:
        """True if moment falls inside [starts_at, ends_at)."""
        moment = to_utc_naive(moment)
        return to_utc_naive(self.starts_at) <= moment < to_utc_naive(self.ends_at)


class EventArcRegistry:
    """Read-only lookup over configured event arcs."""

    def __init__(self, arcs: Optional[Iterable[EventArc]] = None):
        self._arcs: List[EventArc] = sorted(arcs or [], key=lambda a: to_utc_naive(a.starts_at))

    def __len__(self) -> int:
        return len(self._arcs)

    def active_at(self, moment: datetime) -> List[EventArc]:
        """Arcs whose window contains moment."""
        return [arc for arc in self._arcs if arc.contains(moment)]

    def is_priority_window(self, moment: datetime) -> bool:
        """True if moment is inside an active, priority-flagged arc."""
        return any(arc.priority for arc in self.active_at(moment))

    def cadence_override_at(self, moment: datetime) -> Optional[int]:
        """Highest cadence override among arcs active at moment, if any."""
        overrides = [
            arc.cadence_override
            for arc in self.active_at(moment)
            if arc.cadence_override is not None
        ]
        return max(overrides) if overrides else None
