"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import PlainTextResponse

from jobworker.config import settings
from jobworker.db.engine import engine, async_session
from jobworker.db.models import Base
from jobworker.events import LocalEventBus
from jobworker.store import SqlJobStore

from jobworker.api.jobs import router as jobs_router

from jobworker.utils.logger import setup_logger
logger = setup_logger(log_format=settings.LOG_FORMAT, log_level="DEBUG" if settings.DEBUG else settings.LOG_LEVEL)


@asynccontextmanager
async def lifespan(app: FastAPI):
    async with engine.begin() as conn:
        if settings.is_sqlite:
            try:
                await conn.run_sync(Base.metadata.create_all)
            except Exception as _e:
                logger.warning("create_all partial failure (likely existing index): %s", _e)
        # else: for PostgreSQL, run `alembic upgrade head` before starting the server

    # SQLite has no database notifications: inserts made through this
    # process's store are fanned out in-process to the embedded worker.
    local_bus = LocalEventBus() if settings.is_sqlite else None
    app.state.job_store = SqlJobStore(
        async_session,
        dialect=settings.JOBWORKER_DB_DIALECT,
        event_bus=local_bus,
    )

    # Start embedded worker when configured (default for SQLite dev mode)
    _worker = None
    _worker_task: asyncio.Task | None = None
    if settings.WORKER_EMBEDDED and settings.WORKER_HANDLER:
        from jobworker.worker.worker_main import build_worker

        _worker = build_worker(settings, async_session, event_bus=local_bus)
        _worker_task = asyncio.create_task(_worker.start())
        logger.info(
            "Embedded worker %s started (queue=%s)", _worker.id, _worker.queue
        )
    elif settings.WORKER_EMBEDDED:
        logger.info("WORKER_HANDLER not set; embedded worker disabled")

    logger.info("Application lifespan startup complete, entering serve loop")
    try:
        yield
    finally:
        if _worker is not None:
            await _worker.stop()
            try:
                await asyncio.wait_for(_worker_task, timeout=10)
            except asyncio.TimeoutError:
                logger.warning("Embedded worker did not finish its job in time; cancelling")
                _worker_task.cancel()
        await engine.dispose()


app = FastAPI(
    title="jobworker",
    description="Durable job queue worker",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(jobs_router, prefix="/api/jobs", tags=["jobs"])


@app.get("/api/health")
async def health():
    return {"status": "ok"}


@app.get("/api/metrics", response_class=PlainTextResponse, tags=["observability"])
async def prometheus_metrics():
    """Prometheus-compatible text exposition of in-process metrics.

    Example line: ``jobworker_job_outcomes_total{queue="default",status="SUCCESS"} 42``
    """
    from jobworker.utils.metrics import to_prometheus_text
    return to_prometheus_text()
