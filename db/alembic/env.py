"""Migration runner for the orchestrator schema (async, asyncpg driver).

Revisions are raw SQL, so there is no SQLAlchemy metadata to diff
against.  The orchestrator keeps its own version table because the
project and layer tables are shared with the admin tool's database.
"""

import asyncio
import os
from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import async_engine_from_config

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

VERSION_TABLE = "orchestrator_alembic_version"


def database_url() -> str:
    """``DATABASE_URL`` (env first, then app settings) with the asyncpg driver."""
    raw = os.getenv("DATABASE_URL") or _settings_url()
    if not raw:
        raise RuntimeError("DATABASE_URL is not set; export it or put it in .env")
    if raw.startswith("postgres://"):
        raw = "postgresql://" + raw[len("postgres://"):]
    url = make_url(raw)
    if url.drivername == "postgresql":
        url = url.set(drivername="postgresql+asyncpg")
    return url.render_as_string(hide_password=False)


def _settings_url() -> str:
    # alembic.ini puts the project root on sys.path.
    from app.config import settings

    return settings.DATABASE_URL


def _configure(**options) -> None:
    context.configure(target_metadata=None, version_table=VERSION_TABLE, **options)


def run_migrations_offline() -> None:
    _configure(url=database_url(), literal_binds=True, dialect_opts={"paramstyle": "named"})
    with context.begin_transaction():
        context.run_migrations()


def _migrate(connection) -> None:  # type: ignore[no-untyped-def]
    _configure(connection=connection)
    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online() -> None:
    section = config.get_section(config.config_ini_section, {})
    section["sqlalchemy.url"] = database_url()
    engine = async_engine_from_config(section, prefix="sqlalchemy.", poolclass=pool.NullPool)
    try:
        async with engine.connect() as connection:
            await connection.run_sync(_migrate)
    finally:
        await engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
