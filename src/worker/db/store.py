from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol

from src.worker.schemas.alerts import Alert, AlertState
from src.worker.schemas.indicators import ExecutionRecord, Indicator


class Store(Protocol):
    """
    Persistence boundary used by the worker.

    Every method may be called concurrently from several executor tasks. Backend failures are
    raised as StoreUnavailable so loop ticks can log and retry on their next tick.
    """

    async def load_active_indicators(self) -> List[Indicator]: ...

    async def load_indicator(self, indicator_id: str) -> Optional[Indicator]: ...

    async def save_execution_record(self, record: ExecutionRecord) -> None: ...

    async def update_indicator_run_state(
        self,
        indicator_id: str,
        running: bool,
        start_time: Optional[datetime],
        context: Optional[str],
    ) -> None: ...

    async def update_indicator_last_run(self, indicator_id: str, last_run: datetime, result: str) -> None: ...

    async def insert_alert(self, alert: Alert) -> None: ...

    async def load_alert(self, alert_id: str) -> Optional[Alert]: ...

    async def load_latest_alert(self, indicator_id: str) -> Optional[Alert]: ...

    async def load_open_alerts(self, batch_size: int) -> List[Alert]: ...

    async def load_due_alerts(
        self,
        now: datetime,
        batch_size: int,
        *,
        escalation_enabled: bool = True,
        auto_resolution_enabled: bool = True,
    ) -> List[Alert]:
        """Oldest-first batch of unresolved alerts whose next lifecycle step is due at `now`."""
        ...

    async def save_alert_state(self, alert: Alert, expected_state: Optional[AlertState] = None) -> bool:
        """Persist the alert; when expected_state is given, only if the stored state still matches it."""
        ...
