"""Structured admin notifications."""

import logging
from dataclasses import asdict, dataclass
from typing import Dict, List, Protocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Notification:
    """Event for the alerting collaborator."""

    type: str
    episode_id: str
    reason: str
    proposed_action: str

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)


class Notifier(Protocol):
    def notify(self, notification: Notification) -> None:
        ...


class LoggingNotifier:
    """Emits notifications to the log."""

    def notify(self, notification: Notification) -> None:
        logger.warning(
            "[%s] episode=%s reason=%s proposed_action=%s",
            notification.type,
            notification.episode_id,
            notification.reason,
            notification.proposed_action,
        )


class CollectingNotifier:
    """Keeps notifications in memory (dashboards, tests), optionally logging too."""

    def __init__(self, log: bool = True):
        self.notifications: List[Notification] = []
        self._log = LoggingNotifier() if log else None

    def notify(self, notification: Notification) -> None:
        self.notifications.append(notification)
        if self._log is not None:
            self._log.notify(notification)

    def of_type(self, type_: str) -> List[Notification]:
        return [n for n in self.notifications if n.type == type_]
