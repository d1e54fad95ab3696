from __future__ import annotations

import os
import sys
from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool, text

sys.path.insert(0, os.path.dirname(__file__))

from env_helpers import (  # noqa: E402
    MIGRATION_LOCK_SQL,
    MIGRATION_UNLOCK_SQL,
    _get_database_url,
    migration_lock_params,
)

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# SQL-only migrations under migrations/sql, no autogenerate metadata.
target_metadata = None


def run_migrations_offline() -> None:
    """Emit SQL without a live connection."""
    context.configure(
        url=_get_database_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Upgrade under a session advisory lock.

    The public and worker services deploy from the same image and both may
    run `alembic upgrade head` on start; the second one waits, then finds
    nothing to do.
    """
    section = config.get_section(config.config_ini_section) or {}
    section["sqlalchemy.url"] = _get_database_url()

    connectable = engine_from_config(
        section,
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        params = migration_lock_params()
        connection.execute(text(MIGRATION_LOCK_SQL), params)
        connection.commit()
        try:
            context.configure(
                connection=connection,
                target_metadata=target_metadata,
                transaction_per_migration=True,
            )
            with context.begin_transaction():
                context.run_migrations()
        finally:
            connection.execute(text(MIGRATION_UNLOCK_SQL), params)
            connection.commit()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
