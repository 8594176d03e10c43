"""Alembic environment for the ledger store.

The URL comes from ``ALEMBIC_DATABASE_URL``, then ``sqlalchemy.url`` in
``alembic.ini``, then ``ENGINE_DATABASE_URL``.  Online runs use the
synchronous psycopg driver because Alembic's migration context is
synchronous; the application itself talks to PostgreSQL through asyncpg.
"""

from __future__ import annotations

import logging
import os
from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

from session_engine.state.tables import Base

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

logger = logging.getLogger("alembic.env")

target_metadata = Base.metadata

_ASYNC_PREFIXES = ("postgresql+asyncpg://", "postgresql://")


def _database_url() -> str:
    url = (
        os.environ.get("ALEMBIC_DATABASE_URL")
        or config.get_main_option("sqlalchemy.url")
        or os.environ.get("ENGINE_DATABASE_URL")
    )
    if not url:
        from session_engine.config import load_settings

        url = load_settings().database_url
        logger.info("Using engine settings database URL: %s", url[:40] + "...")

    for prefix in _ASYNC_PREFIXES:
        if url.startswith(prefix):
            url = "postgresql+psycopg://" + url[len(prefix) :]
            break
    # asyncpg spells the SSL flag differently from libpq.
    return url.replace("ssl=require", "sslmode=require")


def run_migrations_offline() -> None:
    """Emit SQL to stdout without connecting."""
    context.configure(
        url=_database_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Apply migrations against a live database."""
    section = config.get_section(config.config_ini_section, {})
    section["sqlalchemy.url"] = _database_url()
    connectable = engine_from_config(section, prefix="sqlalchemy.", poolclass=pool.NullPool)

    with connectable.connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata, compare_type=True)
        with context.begin_transaction():
            context.run_migrations()

    connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
