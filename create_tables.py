"""
Create the retry-engine tables without alembic.

Used by the test suite and for local SQLite/Postgres sandboxes; deployed
databases are migrated with `alembic upgrade head`.

    python create_tables.py           # create missing tables
    python create_tables.py --reset   # drop and recreate
"""
import asyncio
import sys

from hookrelay.database import engine
from hookrelay.logging_config import logger
from hookrelay.models.base import Base

# Registers the tables on Base.metadata
from hookrelay.models.retry_task import RetryTask  # noqa: F401
from hookrelay.models.activity_log import ActivityLogEntry  # noqa: F401
from hookrelay.models.webhook_config import WebhookConfig  # noqa: F401


async def create_all_tables(bind=engine):
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def drop_all_tables(bind=engine):
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


async def main(argv: list[str]):
    if "--reset" in argv:
        await drop_all_tables()
        logger.warning("tables_dropped", tables=sorted(Base.metadata.tables))
    await create_all_tables()
    logger.info("tables_created", tables=sorted(Base.metadata.tables))
    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main(sys.argv[1:]))
