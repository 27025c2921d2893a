"""Alembic environment for the jobworker schema (SQLite dev, PostgreSQL prod).

    # From the backend/ directory:
    alembic upgrade head          # jobs + job_logs, then the NOTIFY trigger (PG only)
    alembic upgrade head --sql    # print the SQL instead of running it

The target URL always comes from ``JOBWORKER_DB_URL`` (or ``.env``) via
``settings.sync_db_url()``; the URL in alembic.ini is only a placeholder.
Migrations run on a synchronous driver even though the API and the worker
use the async one.
"""

from __future__ import annotations

import os
import sys
from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from jobworker.config import settings                             # noqa: E402
from jobworker.db.engine import _build_alembic_engine_kwargs      # noqa: E402
from jobworker.db.models import Base                              # noqa: E402

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata
_url = settings.sync_db_url()


def _configure(**kwargs) -> None:
    context.configure(
        target_metadata=target_metadata,
        compare_type=True,
        # SQLite cannot ALTER most things in place; batch mode rebuilds tables.
        render_as_batch=settings.is_sqlite,
        **kwargs,
    )


def run_migrations_offline() -> None:
    _configure(url=_url, literal_binds=True, dialect_opts={"paramstyle": "named"})
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = create_engine(_url, **_build_alembic_engine_kwargs())
    try:
        with connectable.connect() as connection:
            _configure(connection=connection)
            with context.begin_transaction():
                context.run_migrations()
    finally:
        connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
