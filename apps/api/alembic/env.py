from __future__ import annotations

import asyncio
import os
from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import async_engine_from_config

from trustgate.models import Base

config = context.config
if config.config_file_name is not None:
  fileConfig(config.config_file_name)

target_metadata = Base.metadata

env_url = os.getenv("DATABASE_URL")
if env_url:
  config.set_main_option("sqlalchemy.url", env_url)

DB_URL: str = config.get_main_option("sqlalchemy.url")
IS_SQLITE = DB_URL.startswith("sqlite")


def run_migrations_offline() -> None:
  context.configure(
    url=DB_URL,
    target_metadata=target_metadata,
    literal_binds=True,
    dialect_opts={"paramstyle": "named"},
    compare_type=True,
    render_as_batch=IS_SQLITE,
  )
  with context.begin_transaction():
    context.run_migrations()


def _do_run_migrations(connection: Connection) -> None:
  context.configure(
    connection=connection,
    target_metadata=target_metadata,
    compare_type=True,
    render_as_batch=IS_SQLITE,
  )
  with context.begin_transaction():
    context.run_migrations()


async def run_migrations_online() -> None:
  connectable = async_engine_from_config(
    config.get_section(config.config_ini_section) or {},
    prefix="sqlalchemy.",
    poolclass=pool.NullPool,
  )
  async with connectable.connect() as conn:
    await conn.run_sync(_do_run_migrations)
  await connectable.dispose()


if context.is_offline_mode():
  run_migrations_offline()
else:
  asyncio.run(run_migrations_online())
