"""
Alembic environment for the crawl graph schema (async SQLAlchemy + asyncpg).

    alembic revision --autogenerate -m "..."
    alembic upgrade head
"""

import asyncio
import ssl
from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool
from sqlalchemy.ext.asyncio import create_async_engine

from crawlgraph.core.config import get_settings
from crawlgraph.core.database import Base
from crawlgraph.models import models  # noqa: F401  registers the tables on Base.metadata

settings = get_settings()
config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

CONTEXT_OPTIONS = {
    "target_metadata": Base.metadata,
    # Column type and server default drift show up in autogenerate
    "compare_type": True,
    "compare_server_default": True,
}


def connect_args() -> dict:
    """asyncpg arguments for TLS-only hosts fronted by a transaction-mode pooler."""
    if not settings.POSTGRES_SSL:
        return {}
    tls = ssl.create_default_context()
    tls.check_hostname = False
    tls.verify_mode = ssl.CERT_NONE
    return {"ssl": tls, "statement_cache_size": 0, "prepared_statement_cache_size": 0}


def run_offline() -> None:
    context.configure(
        url=settings.postgres_url,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **CONTEXT_OPTIONS,
    )
    with context.begin_transaction():
        context.run_migrations()


def _migrate(connection) -> None:
    context.configure(connection=connection, **CONTEXT_OPTIONS)
    with context.begin_transaction():
        context.run_migrations()


async def run_online() -> None:
    engine = create_async_engine(settings.postgres_url, poolclass=pool.NullPool, connect_args=connect_args())
    try:
        async with engine.connect() as connection:
            await connection.run_sync(_migrate)
    finally:
        await engine.dispose()


if context.is_offline_mode():
    run_offline()
else:
    asyncio.run(run_online())
