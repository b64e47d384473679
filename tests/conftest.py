import pytest_asyncio

from create_tables import create_all_tables
from hookrelay.database import build_engine, build_session_factory
from hookrelay.services.activity_log import ActivityLog
from hookrelay.services.backoff import BackoffPolicy
from hookrelay.services.delivery_client import DeliveryClient
from hookrelay.services.retry_scheduler import RetryScheduler
from hookrelay.services.task_store import TaskStore
from support import STALE_AFTER, FakeEndpoint


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'hookrelay.db'}")
    await create_all_tables(engine)
    yield build_session_factory(engine)
    await engine.dispose()


@pytest_asyncio.fixture
async def broken_session_factory(tmp_path):
    """Points at a database without the schema, so every query fails."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}")
    yield build_session_factory(engine)
    await engine.dispose()


@pytest_asyncio.fixture
async def store(session_factory):
    return TaskStore(session_factory, claim_stale_after=STALE_AFTER)


@pytest_asyncio.fixture
async def activity_log(session_factory):
    return ActivityLog(session_factory)


@pytest_asyncio.fixture
async def make_scheduler(store, activity_log):
    clients = []

    def factory(endpoint: FakeEndpoint, **kwargs) -> RetryScheduler:
        http_client = endpoint.client()
        clients.append(http_client)
        kwargs.setdefault("backoff", BackoffPolicy(base_seconds=60, cap_seconds=3600))
        kwargs.setdefault("pool_size", 4)
        return RetryScheduler(
            store=kwargs.pop("store", store),
            activity_log=activity_log,
            delivery_client=DeliveryClient(http_client, timeout_seconds=30),
            **kwargs,
        )

    yield factory
    for http_client in clients:
        await http_client.aclose()
