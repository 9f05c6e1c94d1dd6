# backend/migrations/env.py
"""
Alembic environment for the sync schema (stores, accounts, daily snapshots,
lock tables, run log).

The target database is ``ALEMBIC_DB_URL`` when set, else ``DATABASE_URL``
from app settings. Revisions are written for MySQL first; on SQLite the
microsecond ``CURRENT_TIMESTAMP(6)`` defaults are rewritten at execute time.
"""
from __future__ import annotations

import os
import sys
from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, event, pool
from sqlalchemy.engine import Connection, Engine

BACKEND_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if BACKEND_DIR not in sys.path:
    sys.path.insert(0, BACKEND_DIR)

config = context.config
if config.config_file_name is not None:
    # app loggers (tthubs.*) stay live when migrations run inside the test process
    fileConfig(config.config_file_name, disable_existing_loggers=False)

from app.core.config import settings  # noqa: E402
from app.data.db import Base  # noqa: E402
import app.data.models  # noqa: E402,F401  registers every table on Base.metadata

target_metadata = Base.metadata


def database_url() -> str:
    return os.getenv("ALEMBIC_DB_URL") or settings.DATABASE_URL


def _rewrite_for_sqlite(conn: Connection, cursor, statement: str, parameters, context, executemany):
    statement = statement.replace("CURRENT_TIMESTAMP(6)", "CURRENT_TIMESTAMP")
    head = statement.lstrip().upper()
    if head.startswith("CREATE INDEX ") and " IF NOT EXISTS " not in head:
        statement = statement.replace("CREATE INDEX ", "CREATE INDEX IF NOT EXISTS ", 1)
    return statement, parameters


def _make_engine() -> Engine:
    engine = engine_from_config(
        {"sqlalchemy.url": database_url()},
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
        future=True,
    )
    if engine.dialect.name == "sqlite":
        event.listen(engine, "before_cursor_execute", _rewrite_for_sqlite, retval=True)
    return engine


def run_migrations_offline() -> None:
    """Render SQL for review (``alembic upgrade head --sql``)."""
    context.configure(
        url=database_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        compare_type=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    engine = _make_engine()
    try:
        with engine.connect() as connection:
            context.configure(
                connection=connection,
                target_metadata=target_metadata,
                compare_type=True,
                compare_server_default=True,
                # SQLite cannot ALTER most constraints in place
                render_as_batch=connection.dialect.name == "sqlite",
            )
            with context.begin_transaction():
                context.run_migrations()
    finally:
        engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
