"""
Alembic environment file – async-ready (SQLAlchemy ≥2.0)

Reads DATABASE_URL from the environment (or alembic.ini fallback), imports
the dose store metadata from *db/models.py*, and supports both offline (DDL
script generation) and online (direct DB) modes. SQLite URLs are passed
through untouched and migrated in batch mode.
"""

from __future__ import annotations

import os
import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine

# ---------------------------------------------------------------------
# 1. Logging
# ---------------------------------------------------------------------
config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# ---------------------------------------------------------------------
# 2. Model metadata
# ---------------------------------------------------------------------
from db.models import Base
target_metadata = Base.metadata

# ---------------------------------------------------------------------
# 3. Database URL helper
# ---------------------------------------------------------------------
def _database_url() -> str:
    """Determine the connection string Alembic should use."""
    from config import settings

    url = (
        settings.DATABASE_URL
        or settings.DATABASE_PUBLIC_URL
        or os.getenv("DATABASE_URL")
        or config.get_main_option("sqlalchemy.url")
    )
    if not url:
        raise RuntimeError(
            "DATABASE_URL not set and sqlalchemy.url missing from alembic.ini"
        )
    if url.startswith("sqlite"):
        return url

    # add async driver only if not present already
    if "+asyncpg" not in url:
        if url.startswith("postgres://"):
            url = url.replace("postgres://", "postgresql+asyncpg://", 1)
        elif url.startswith("postgresql://"):
            url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def _configure_kwargs(url: str) -> dict:
    return {"compare_type": True, "render_as_batch": url.startswith("sqlite")}

# ---------------------------------------------------------------------
# 4. Offline migrations (generate SQL only)
# ---------------------------------------------------------------------
def run_migrations_offline() -> None:
    url = _database_url()
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **_configure_kwargs(url),
    )

    with context.begin_transaction():
        context.run_migrations()

# ---------------------------------------------------------------------
# 5. Online migrations (run against DB) – async
# ---------------------------------------------------------------------
def _do_run_migrations(sync_conn, url: str) -> None:
    context.configure(
        connection=sync_conn,
        target_metadata=target_metadata,
        **_configure_kwargs(url),
    )
    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online() -> None:
    url = _database_url()
    engine: AsyncEngine = create_async_engine(url, poolclass=pool.NullPool)

    async with engine.connect() as conn:
        await conn.run_sync(_do_run_migrations, url)

    await engine.dispose()

# ---------------------------------------------------------------------
# 6. Entrypoint
# ---------------------------------------------------------------------
if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
