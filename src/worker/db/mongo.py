from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from threading import RLock
from typing import Any, Dict, List, Optional

from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo.errors import PyMongoError

from src.worker.errors import StoreUnavailable
from src.worker.schemas.alerts import UNRESOLVED_STATES, Alert, AlertState
from src.worker.schemas.indicators import ExecutionRecord, Indicator

logger = logging.getLogger(__name__)


APP_DB_NAME = "monitoring_grid"


@dataclass(frozen=True)
class MongoCollections:
    """Convenience wrapper for worker collections."""

    indicators: Collection
    execution_records: Collection
    alerts: Collection

    # Raw values read by the default evaluator's sample collector.
    indicator_samples: Collection


class MongoManager:
    """MongoDB connection manager holding one MongoClient for the worker's storage DB."""

    def __init__(self, mongo_uri: str, db_name: str = APP_DB_NAME):
        self._mongo_uri = mongo_uri
        self._db_name = db_name
        self._client: Optional[MongoClient] = None
        self._lock = RLock()

    def connect(self) -> MongoClient:
        """Initialize the Mongo client if needed and return it."""
        with self._lock:
            if self._client is None:
                # MongoClient is thread-safe and manages internal pooling.
                self._client = MongoClient(self._mongo_uri, connect=True, tz_aware=True)
            return self._client

    # PUBLIC_INTERFACE
    def ping(self, timeout_ms: int = 1500) -> bool:
        """Ping MongoDB to validate connectivity."""
        try:
            db = self.db()
            db.client.admin.command("ping", maxTimeMS=int(max(250, timeout_ms)))
            return True
        except PyMongoError:
            logger.exception("Mongo ping failed (PyMongoError)")
            return False

    def close(self) -> None:
        with self._lock:
            if self._client is not None:
                try:
                    self._client.close()
                except PyMongoError:
                    logger.exception("Error closing MongoClient")
                self._client = None

    def db(self) -> Database:
        client = self._client
        if client is None:
            client = self.connect()
        return client[self._db_name]

    def collections(self) -> MongoCollections:
        db = self.db()
        return MongoCollections(
            indicators=db["indicators"],
            execution_records=db["execution_records"],
            alerts=db["alerts"],
            indicator_samples=db["indicator_samples"],
        )

    def init_indexes(self, *, execution_records_ttl_seconds: int = 0) -> None:
        """
        Create required indexes (idempotent).

        execution_records_ttl_seconds == 0 disables the TTL index on execution_records.timestamp.
        """
        cols = self.collections()

        cols.indicators.create_index([("id", ASCENDING)], unique=True, name="idx_indicators_id")
        cols.indicators.create_index([("isActive", ASCENDING)], name="idx_indicators_active")

        cols.execution_records.create_index(
            [("indicatorId", ASCENDING), ("timestamp", DESCENDING)], name="idx_records_indicator_ts"
        )
        if int(execution_records_ttl_seconds) > 0:
            cols.execution_records.create_index(
                [("timestamp", ASCENDING)],
                name="ttl_execution_records_timestamp",
                expireAfterSeconds=int(execution_records_ttl_seconds),
            )

        cols.alerts.create_index([("id", ASCENDING)], unique=True, name="idx_alerts_id")
        cols.alerts.create_index([("state", ASCENDING), ("triggerTime", ASCENDING)], name="idx_alerts_state_trigger")
        cols.alerts.create_index(
            [("indicatorId", ASCENDING), ("triggerTime", DESCENDING)], name="idx_alerts_indicator_trigger_desc"
        )

        cols.indicator_samples.create_index(
            [("collectorItem", ASCENDING), ("ts", DESCENDING)], name="idx_samples_item_ts"
        )


async def _run_in_thread(func, *args, **kwargs):
    """Run blocking pymongo calls in a worker thread, surfacing driver errors as StoreUnavailable."""
    try:
        return await asyncio.to_thread(func, *args, **kwargs)
    except PyMongoError as exc:
        raise StoreUnavailable(str(exc)) from exc


def _alert_doc(alert: Alert) -> Dict[str, Any]:
    doc = alert.model_dump(by_alias=True, exclude={"state"})
    doc["state"] = alert.state.value
    return doc


def _due_alert_clauses(
    now: datetime, escalation_enabled: bool, auto_resolution_enabled: bool
) -> List[Dict[str, Any]]:
    """Query clauses matching Alert.due_transition, one per transition that can currently fire."""
    clauses: List[Dict[str, Any]] = []
    if escalation_enabled:
        clauses.append({"state": AlertState.open.value, "escalationDeadline": {"$lte": now}})
    if auto_resolution_enabled:
        auto_states = [AlertState.escalated.value]
        if not escalation_enabled:
            auto_states.append(AlertState.open.value)
        clauses.append({"state": {"$in": auto_states}, "autoResolutionDeadline": {"$lte": now}})
    return clauses


class MongoStore:
    """Store implementation backed by MongoDB collections."""

    def __init__(self, manager: MongoManager):
        self._manager = manager

    @property
    def manager(self) -> MongoManager:
        return self._manager

    async def load_active_indicators(self) -> List[Indicator]:
        cols = self._manager.collections()
        docs = await _run_in_thread(
            lambda: list(cols.indicators.find({"isActive": True}, projection={"_id": 0}).sort("id", 1))
        )
        return [Indicator.model_validate(d) for d in docs]

    async def load_indicator(self, indicator_id: str) -> Optional[Indicator]:
        cols = self._manager.collections()
        doc = await _run_in_thread(cols.indicators.find_one, {"id": indicator_id}, projection={"_id": 0})
        return Indicator.model_validate(doc) if doc else None

    async def save_execution_record(self, record: ExecutionRecord) -> None:
        cols = self._manager.collections()
        await _run_in_thread(cols.execution_records.insert_one, record.model_dump(by_alias=True))

    async def update_indicator_run_state(
        self,
        indicator_id: str,
        running: bool,
        start_time: Optional[datetime],
        context: Optional[str],
    ) -> None:
        cols = self._manager.collections()
        await _run_in_thread(
            cols.indicators.update_one,
            {"id": indicator_id},
            {
                "$set": {
                    "isCurrentlyRunning": bool(running),
                    "executionStartTime": start_time if running else None,
                    "executionContext": context if running else None,
                }
            },
        )

    async def update_indicator_last_run(self, indicator_id: str, last_run: datetime, result: str) -> None:
        cols = self._manager.collections()
        await _run_in_thread(
            cols.indicators.update_one,
            {"id": indicator_id},
            {"$set": {"lastRun": last_run, "lastRunResult": result}},
        )

    async def insert_alert(self, alert: Alert) -> None:
        cols = self._manager.collections()
        await _run_in_thread(cols.alerts.insert_one, _alert_doc(alert))

    async def load_alert(self, alert_id: str) -> Optional[Alert]:
        cols = self._manager.collections()
        doc = await _run_in_thread(cols.alerts.find_one, {"id": alert_id}, projection={"_id": 0})
        return Alert.model_validate(doc) if doc else None

    async def load_latest_alert(self, indicator_id: str) -> Optional[Alert]:
        cols = self._manager.collections()
        doc = await _run_in_thread(
            cols.alerts.find_one,
            {"indicatorId": indicator_id},
            projection={"_id": 0},
            sort=[("triggerTime", -1)],
        )
        return Alert.model_validate(doc) if doc else None

    async def load_open_alerts(self, batch_size: int) -> List[Alert]:
        cols = self._manager.collections()
        states = [s.value for s in UNRESOLVED_STATES]
        docs = await _run_in_thread(
            lambda: list(
                cols.alerts.find({"state": {"$in": states}}, projection={"_id": 0})
                .sort([("triggerTime", 1), ("id", 1)])
                .limit(max(1, int(batch_size)))
            )
        )
        return [Alert.model_validate(d) for d in docs]

    async def load_due_alerts(
        self,
        now: datetime,
        batch_size: int,
        *,
        escalation_enabled: bool = True,
        auto_resolution_enabled: bool = True,
    ) -> List[Alert]:
        clauses = _due_alert_clauses(now, escalation_enabled, auto_resolution_enabled)
        if not clauses:
            return []
        cols = self._manager.collections()
        docs = await _run_in_thread(
            lambda: list(
                cols.alerts.find({"$or": clauses}, projection={"_id": 0})
                .sort([("triggerTime", 1), ("id", 1)])
                .limit(max(1, int(batch_size)))
            )
        )
        return [Alert.model_validate(d) for d in docs]

    async def save_alert_state(self, alert: Alert, expected_state: Optional[AlertState] = None) -> bool:
        cols = self._manager.collections()
        query: Dict[str, Any] = {"id": alert.id}
        if expected_state is not None:
            query["state"] = expected_state.value
        doc = _alert_doc(alert)
        doc.pop("id", None)
        updated = await _run_in_thread(
            cols.alerts.find_one_and_update,
            query,
            {"$set": doc},
            projection={"_id": 0, "id": 1},
            return_document=ReturnDocument.AFTER,
        )
        return updated is not None

    async def fetch_samples(self, collector_item: str, window_start: datetime, window_end: datetime) -> List[dict]:
        """Samples for one collector item in [window_start, window_end], oldest first."""
        cols = self._manager.collections()
        return await _run_in_thread(
            lambda: list(
                cols.indicator_samples.find(
                    {"collectorItem": collector_item, "ts": {"$gte": window_start, "$lte": window_end}},
                    projection={"_id": 0},
                ).sort("ts", 1)
            )
        )
