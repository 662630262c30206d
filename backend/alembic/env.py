import asyncio
import os
import sys

sys.path.append(os.path.dirname(os.path.dirname(__file__)))  # ensure backend/ on sys.path

from alembic import context
from sqlalchemy import pool
from sqlalchemy.ext.asyncio import create_async_engine

from setrank import models  # noqa: F401  # populate metadata
from setrank.db import Base, _normalize_url

config = context.config

if config.config_file_name:
    from logging.config import fileConfig

    try:
        fileConfig(config.config_file_name, disable_existing_loggers=False)
    except KeyError:
        pass  # INI without logging sections

target_metadata = Base.metadata

_raw_url = os.getenv("DATABASE_URL")
if not _raw_url:
    raise RuntimeError("DATABASE_URL environment variable is required")
DATABASE_URL = _normalize_url(_raw_url)


def _configure(**kwargs) -> None:
    context.configure(target_metadata=target_metadata, compare_type=True, **kwargs)
    with context.begin_transaction():
        context.run_migrations()


async def _run_online() -> None:
    engine = create_async_engine(DATABASE_URL, poolclass=pool.NullPool)
    async with engine.connect() as connection:
        await connection.run_sync(lambda conn: _configure(connection=conn))
    await engine.dispose()


if context.is_offline_mode():
    _configure(url=DATABASE_URL, literal_binds=True)
else:
    asyncio.run(_run_online())
