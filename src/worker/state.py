from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import FastAPI

from src.worker.config import WorkerConfig
from src.worker.db.memory import InMemoryStore
from src.worker.db.mongo import MongoManager, MongoStore
from src.worker.db.store import Store
from src.worker.schemas.common import Clock, utc_now
from src.worker.services.engine import SchedulingEngine
from src.worker.services.evaluator import Evaluator, ThresholdRuleEvaluator
from src.worker.services.notifier import LoggingNotifier, Notifier


@dataclass
class AppState:
    """Typed app.state container for shared singletons."""

    config: WorkerConfig
    store: Store
    engine: SchedulingEngine
    mongo: Optional[MongoManager] = None


def _build_store(config: WorkerConfig) -> tuple:
    if config.store_backend == "mongo":
        if not config.mongo_uri:
            raise RuntimeError("store_backend=mongo requires a mongo_uri")
        mongo = MongoManager(config.mongo_uri)
        return MongoStore(mongo), mongo
    return InMemoryStore(), None


# PUBLIC_INTERFACE
def init_state(
    app: FastAPI,
    config: WorkerConfig,
    *,
    store: Optional[Store] = None,
    evaluator: Optional[Evaluator] = None,
    notifier: Optional[Notifier] = None,
    clock: Clock = utc_now,
) -> AppState:
    """Build the store and engine for config and attach them to app.state."""
    mongo: Optional[MongoManager] = None
    if store is None:
        store, mongo = _build_store(config)
    if evaluator is None:
        # Both bundled stores also serve samples.
        evaluator = ThresholdRuleEvaluator(store, clock=clock)  # type: ignore[arg-type]
    engine = SchedulingEngine(config, store, evaluator, notifier or LoggingNotifier(), clock=clock)
    app.state.state = AppState(config=config, store=store, engine=engine, mongo=mongo)
    return app.state.state


# PUBLIC_INTERFACE
def get_state(app: FastAPI) -> AppState:
    """Fetch typed AppState from a FastAPI app."""
    return app.state.state  # type: ignore[attr-defined]
