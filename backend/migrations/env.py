"""
Alembic environment for the order lifecycle schema.

The database URL always comes from application settings so migrations and
the API read the same ``APP_DATABASE_URL``. Online runs use the asyncpg
driver on a single connection; offline runs print SQL.
"""

import asyncio
from logging.config import fileConfig
from typing import Any

from alembic import context
from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import async_engine_from_config

from orderflow.core.config import get_settings
from orderflow.core.logging import get_logger
from orderflow.database.base import Base

# Importing the models registers the lifecycle tables on Base.metadata
import orderflow.database.models  # noqa: F401

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

logger = get_logger(__name__)
config.set_main_option("sqlalchemy.url", get_settings().async_database_url)

# Options shared by offline and online runs; server defaults carry the
# status and timestamp defaults of the lifecycle tables.
_CONTEXT_OPTIONS: dict[str, Any] = {
    "target_metadata": Base.metadata,
    "compare_type": True,
    "compare_server_default": True,
}


def run_migrations_offline() -> None:
    """Emit SQL for the pending revisions without connecting."""
    logger.info("Generating migration SQL")
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **_CONTEXT_OPTIONS,
    )
    with context.begin_transaction():
        context.run_migrations()


def _apply(connection: Connection) -> None:
    context.configure(connection=connection, transaction_per_migration=True, **_CONTEXT_OPTIONS)
    with context.begin_transaction():
        context.run_migrations()


async def _apply_online() -> None:
    engine = async_engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    try:
        async with engine.connect() as connection:
            await connection.run_sync(_apply)
    finally:
        await engine.dispose()
    logger.info("Migrations applied")


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(_apply_online())
