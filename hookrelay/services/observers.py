"""
Delivery observers.

Side effects that follow a successful delivery. They are best effort: a
failing observer is logged and reported, never allowed to undo the
task's success.
"""
from datetime import datetime
from typing import Protocol

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hookrelay.logging_config import logger
from hookrelay.models.retry_task import RetryTask
from hookrelay.models.webhook_config import WebhookConfig
from hookrelay.routes.metrics import track_observer_failure
from hookrelay.sentry_config import capture_exception


class DeliveryObserver(Protocol):
    name: str

    async def on_delivered(self, task: RetryTask, delivered_at: datetime) -> None:
        ...


class WebhookConfigTouch:
    """Record the last successful delivery time on the destination's configuration."""

    name = "webhook_config_touch"

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def on_delivered(self, task: RetryTask, delivered_at: datetime) -> None:
        if not task.webhook_config_id:
            return
        stmt = (
            update(WebhookConfig)
            .where(WebhookConfig.id == task.webhook_config_id)
            .values(last_triggered_at=delivered_at)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            await session.execute(stmt)
            await session.commit()


async def notify_delivered(
    observers: list[DeliveryObserver],
    task: RetryTask,
    delivered_at: datetime,
) -> None:
    """Fan a success out to every observer, isolating their failures."""
    for observer in observers:
        try:
            await observer.on_delivered(task, delivered_at)
        except Exception:
            logger.warning("delivery_observer_failed", observer=observer.name, exc_info=True)
            track_observer_failure(observer.name)
            capture_exception(task_id=task.id, observer=observer.name)
