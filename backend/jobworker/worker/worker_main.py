"""Worker process entrypoint.

Run as a standalone process (production PostgreSQL mode):

    # From backend/ directory:
    WORKER_HANDLER=myproject.jobs:handle python -m jobworker.worker

    # With custom worker ID and queue:
    WORKER_ID=worker-1 WORKER_QUEUE=emails python -m jobworker.worker

The worker will:
1. Load jobworker.config.settings (honours .env file)
2. Block until tables exist (new Alembic deployments may have a brief gap)
3. Subscribe to row-change notifications and start the claim loop
4. Handle SIGINT/SIGTERM gracefully (finish the in-flight job, then exit)

For single-process dev mode (SQLite), a worker is started automatically
as an asyncio.Task inside the API process (WORKER_EMBEDDED=true default).
"""

from __future__ import annotations

import asyncio
import importlib
import logging
import signal

from jobworker.errors import ConfigError

logger = logging.getLogger("jobworker.worker")


def resolve_handler(path: str):
    """Import ``"package.module:callable"`` and return the callable."""
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ConfigError(f"WORKER_HANDLER must look like 'module:callable', got {path!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigError(f"Cannot import handler module {module_name!r}: {exc}") from exc
    handler = module
    for part in attr.split("."):
        handler = getattr(handler, part, None)
        if handler is None:
            raise ConfigError(f"Handler {attr!r} not found in module {module_name!r}")
    if not callable(handler):
        raise ConfigError(f"Handler {path!r} is not callable")
    return handler


def build_worker(settings, session_factory, handler=None, *, event_bus=None, **overrides):
    """Assemble a ``Worker`` from ``WORKER_*`` settings.

    PostgreSQL gets a LISTEN/NOTIFY bus; SQLite gets an in-process bus that
    the store publishes to (only writers in this process can wake it).
    """
    from jobworker.events import LocalEventBus
    from jobworker.schemas.worker import WorkerOptions
    from jobworker.store import SqlJobStore
    from jobworker.worker.loop import Worker

    if handler is None:
        if not settings.WORKER_HANDLER:
            raise ConfigError("WORKER_HANDLER is not set")
        handler = resolve_handler(settings.WORKER_HANDLER)

    local_bus = None
    if event_bus is None:
        if settings.is_postgres:
            from jobworker.events.postgres import PostgresEventBus

            event_bus = PostgresEventBus(settings.asyncpg_dsn())
        else:
            local_bus = event_bus = LocalEventBus()
    elif isinstance(event_bus, LocalEventBus):
        local_bus = event_bus

    store = SqlJobStore(
        session_factory,
        dialect=settings.JOBWORKER_DB_DIALECT,
        event_bus=local_bus,
    )
    options = WorkerOptions.from_settings(settings, **overrides)
    return Worker(store, handler, options, event_bus=event_bus, worker_id=settings.WORKER_ID)


async def _wait_for_db(max_retries: int = 10, delay: float = 2.0) -> None:
    """Wait until the ``jobs`` table is accessible."""
    from sqlalchemy import text
    from jobworker.db.engine import async_session

    for attempt in range(1, max_retries + 1):
        try:
            async with async_session() as db:
                await db.execute(text("SELECT 1 FROM jobs LIMIT 1"))
            logger.info("Database ready after %d attempt(s)", attempt)
            return
        except Exception as exc:
            logger.warning(
                "Database not ready (attempt %d/%d): %s", attempt, max_retries, exc
            )
            if attempt < max_retries:
                await asyncio.sleep(delay)

    raise RuntimeError(
        f"Database not accessible after {max_retries} attempts. "
        "Run `alembic upgrade head` before starting the worker."
    )


async def main() -> None:
    """Worker process entrypoint."""
    from jobworker.config import settings
    from jobworker.db.engine import async_session
    from jobworker.utils.logger import setup_logger

    setup_logger(log_format=settings.LOG_FORMAT, log_level=settings.LOG_LEVEL)

    logger.info(
        "Starting jobworker (dialect=%s, queue=%s, embedded=%s)",
        settings.JOBWORKER_DB_DIALECT,
        settings.WORKER_QUEUE,
        settings.WORKER_EMBEDDED,
    )

    worker = build_worker(settings, async_session)
    await _wait_for_db()

    loop = asyncio.get_running_loop()

    def _handle_stop(*_):
        logger.info("Received shutdown signal, stopping worker")
        loop.create_task(worker.stop())

    # SIGINT/SIGTERM handlers (Unix only; Windows uses default)
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _handle_stop)
        except (NotImplementedError, AttributeError):
            pass

    await worker.start()
    logger.info("Worker %s exited (%s)", worker.id, worker.state.value)


def run() -> None:
    """Console-script entrypoint."""
    asyncio.run(main())
