from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI

from src.worker.config import WorkerConfig, load_config
from src.worker.db.store import Store
from src.worker.routers import alerts, health
from src.worker.schemas.common import Clock, utc_now
from src.worker.services.evaluator import Evaluator
from src.worker.services.notifier import Notifier
from src.worker.state import get_state, init_state

openapi_tags = [
    {"name": "Health", "description": "Service liveness and background loop health."},
    {"name": "Alerts", "description": "Operator actions on alerts."},
]

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Connect storage, validate indicators and start the engine; on exit, shut down in order."""
    state = get_state(app)

    if state.mongo is not None:
        # Connect + verify early so a misconfigured Mongo doesn't silently break the loops.
        state.mongo.connect()
        if not state.mongo.ping():
            raise RuntimeError("Mongo connectivity check failed during startup. Verify BACKEND_MONGO_URI.")
        state.mongo.init_indexes(execution_records_ttl_seconds=int(state.config.execution_records_ttl_seconds))

    # An indicator with a bad frequency is a configuration error: refuse to start.
    await state.engine.validate_indicators()
    state.engine.start()
    try:
        yield
    finally:
        report = await state.engine.shutdown()
        if report is not None and report.timed_out:
            logger.warning("Shutdown left %s executions running", report.outstanding_after_drain)
        if state.mongo is not None:
            state.mongo.close()


# PUBLIC_INTERFACE
def create_app(
    config: Optional[WorkerConfig] = None,
    *,
    store: Optional[Store] = None,
    evaluator: Optional[Evaluator] = None,
    notifier: Optional[Notifier] = None,
    clock: Clock = utc_now,
) -> FastAPI:
    """Build the worker's host app; dependencies default to what the config selects."""
    app = FastAPI(
        title="Monitoring Grid Scheduling Worker",
        description=(
            "Host process for the indicator scheduling engine: whole-time scheduling, per-indicator execution "
            "locks, alert escalation/auto-resolution and loop health."
        ),
        version="1.0.0",
        openapi_tags=openapi_tags,
        lifespan=_lifespan,
    )
    init_state(app, config or load_config(), store=store, evaluator=evaluator, notifier=notifier, clock=clock)
    app.include_router(health.router)
    app.include_router(alerts.router)
    return app


app = create_app()
