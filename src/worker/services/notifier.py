from __future__ import annotations

import logging
from typing import Protocol

from src.worker.schemas.alerts import Alert, NotificationKind

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    """Delivers alert notifications. The worker never retries a failed delivery."""

    async def notify(self, alert: Alert, kind: NotificationKind) -> None: ...


class LoggingNotifier:
    """Notifier that only writes the notification to the log (default when no delivery channel is wired)."""

    def __init__(self, level: int = logging.WARNING):
        self._level = level

    async def notify(self, alert: Alert, kind: NotificationKind) -> None:
        logger.log(
            self._level,
            "Alert %s: alertId=%s indicatorId=%s state=%s value=%s message=%s",
            kind.value,
            alert.id,
            alert.indicator_id,
            alert.state.value,
            alert.current_value,
            alert.message,
        )
