"""
ARQ Background Worker for HookRelay.

Fires a retry scheduler pass on a cron schedule. Run with:

    arq hookrelay.worker.WorkerSettings

Several workers may run at once; passes coordinate through the task
store's conditional claims, not through Redis.
"""
import asyncio

import httpx
from arq import cron
from arq.connections import RedisSettings

from hookrelay.config import settings
from hookrelay.database import AsyncSessionLocal, engine
from hookrelay.exceptions import StoreUnavailable
from hookrelay.logging_config import configure_logging, get_logger
from hookrelay.sentry_config import configure_sentry
from hookrelay.services.retry_scheduler import build_retry_scheduler


log = get_logger(component="worker")


async def startup(ctx: dict):
    """Create the shared HTTP client and the scheduler once per worker process."""
    configure_logging()
    configure_sentry("worker")
    ctx["http_client"] = httpx.AsyncClient(timeout=settings.DELIVERY_TIMEOUT_SECONDS)
    ctx["scheduler"] = build_retry_scheduler(AsyncSessionLocal, ctx["http_client"])
    log.info("worker_started", redis=settings.REDIS_URL, interval_seconds=settings.RETRY_PASS_INTERVAL_SECONDS)


async def shutdown(ctx: dict):
    await ctx["http_client"].aclose()
    await engine.dispose()
    log.info("worker_stopped")


async def run_retry_pass(ctx: dict) -> dict:
    """
    Run one scheduler pass.

    A store outage is logged and reported (the scheduler does both); the
    next cron firing retries, so the job itself does not fail.
    """
    scheduler = ctx["scheduler"]
    try:
        summary = await scheduler.run_pass()
    except StoreUnavailable as e:
        return {"status": "store_unavailable", "error": str(e)}
    return {"status": "ok", **summary.as_dict()}


def pass_seconds(interval: int) -> set[int]:
    """Cron seconds for a pass every `interval` seconds (interval must divide a minute)."""
    if interval <= 0 or 60 % interval:
        raise ValueError(f"RETRY_PASS_INTERVAL_SECONDS must divide 60, got {interval}")
    return set(range(0, 60, interval))


def pass_timeout_seconds() -> int:
    """Worst case: every wave of the worker pool waits out the delivery timeout."""
    waves = -(-settings.RETRY_BATCH_LIMIT // settings.RETRY_WORKER_POOL_SIZE)
    return int(waves * settings.DELIVERY_TIMEOUT_SECONDS) + 60


# Register functions for ARQ
ARQ_FUNCTIONS = [
    run_retry_pass,
]


class WorkerSettings:
    """Settings for ARQ worker - use with 'arq hookrelay.worker.WorkerSettings'"""
    redis_settings = RedisSettings.from_dsn(settings.REDIS_URL)
    functions = ARQ_FUNCTIONS
    cron_jobs = [
        cron(
            run_retry_pass,
            second=pass_seconds(settings.RETRY_PASS_INTERVAL_SECONDS),
            run_at_startup=True,
            timeout=pass_timeout_seconds(),
        ),
    ]
    on_startup = startup
    on_shutdown = shutdown
    max_tries = 1


async def main():
    """Run a single pass outside of ARQ (useful from a system cron)."""
    ctx = {}
    await startup(ctx)
    try:
        result = await run_retry_pass(ctx)
        log.info("manual_pass_finished", **result)
    finally:
        await shutdown(ctx)


if __name__ == "__main__":
    asyncio.run(main())
