"""
Retry engine dependencies for FastAPI routes.

Routes never share a session with the scheduler; everything is built from
the session factory so tests can swap in their own database.
"""
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hookrelay.database import AsyncSessionLocal
from hookrelay.services.activity_log import ActivityLog
from hookrelay.services.delivery_client import DeliveryClient
from hookrelay.services.observers import WebhookConfigTouch
from hookrelay.services.retry_scheduler import RetryScheduler
from hookrelay.services.task_store import TaskStore


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return AsyncSessionLocal


def get_task_store(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory)
) -> TaskStore:
    return TaskStore(session_factory)


def get_activity_log(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory)
) -> ActivityLog:
    return ActivityLog(session_factory)


def get_delivery_client(request: Request) -> DeliveryClient:
    """Use the app-wide HTTP client created at startup, if there is one."""
    return DeliveryClient(getattr(request.app.state, "http_client", None))


def get_retry_scheduler(
    store: TaskStore = Depends(get_task_store),
    activity_log: ActivityLog = Depends(get_activity_log),
    delivery_client: DeliveryClient = Depends(get_delivery_client),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> RetryScheduler:
    return RetryScheduler(
        store=store,
        activity_log=activity_log,
        delivery_client=delivery_client,
        observers=[WebhookConfigTouch(session_factory)],
    )
