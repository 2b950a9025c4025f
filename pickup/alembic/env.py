"""
Alembic entry point for the pickup-games schema.

`alembic upgrade head` runs this module; online mode drives the async engine
built from DATABASE_URL, offline mode renders the SQL script instead.
"""

from logging.config import fileConfig
import asyncio
import logging
from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import async_engine_from_config
from alembic import context

from pickup.database.db import Base, DATABASE_URL
from pickup.database import models  # noqa: F401  registers tables on Base

logger = logging.getLogger(__name__)

alembic_config = context.config
if alembic_config.config_file_name is not None:
    fileConfig(alembic_config.config_file_name)

target_metadata = Base.metadata


def _masked_url(url: str) -> str:
    """Host/database part of the URL, without credentials."""
    return url.rsplit("@", 1)[-1] if "@" in url else "configured"


def _configure(**kwargs) -> None:
    context.configure(target_metadata=target_metadata, compare_type=True, **kwargs)
    with context.begin_transaction():
        context.run_migrations()


def _migrate_with(connection: Connection) -> None:
    _configure(connection=connection)


async def _migrate_async() -> None:
    settings = alembic_config.get_section(alembic_config.config_ini_section) or {}
    settings["sqlalchemy.url"] = DATABASE_URL
    engine = async_engine_from_config(settings, prefix="sqlalchemy.", poolclass=pool.NullPool)

    try:
        async with engine.connect() as connection:
            await connection.run_sync(_migrate_with)
    finally:
        await engine.dispose()


def run_offline() -> None:
    """Emit the migration SQL without a live connection."""
    _configure(url=DATABASE_URL, literal_binds=True, dialect_opts={"paramstyle": "named"})


def run_online() -> None:
    logger.info(f"Migrating pickup schema at {_masked_url(DATABASE_URL)}")
    try:
        asyncio.run(_migrate_async())
    except Exception as e:
        logger.error(f"Schema migration failed: {e}", exc_info=True)
        raise
    logger.info("Pickup schema is up to date")


if context.is_offline_mode():
    run_offline()
else:
    run_online()
