"""
Activity log service.

Append-only: entries are never updated or deleted.
"""
from contextlib import asynccontextmanager
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hookrelay.config import settings
from hookrelay.exceptions import StoreUnavailable
from hookrelay.models.activity_log import ActivityLogEntry
from hookrelay.models.base import utcnow
from hookrelay.models.retry_task import RetryTask
from hookrelay.services.delivery_client import DeliveryResult, truncate


class ActivityLog:
    """Audit trail of every delivery attempt."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self):
        try:
            async with self._session_factory() as session:
                yield session
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Activity log unavailable: {e}") from e

    async def record(
        self,
        task: RetryTask,
        attempt_number: int,
        result: DeliveryResult,
        error_message: str | None = None,
        abandoned: bool = False,
        triggered_at: datetime | None = None,
    ) -> ActivityLogEntry:
        """
        Append one entry for one delivery attempt.

        Args:
            task: Task the attempt belongs to
            attempt_number: 1-based attempt number (the task's retry_count after the attempt)
            result: Classified delivery result
            error_message: Annotated failure text; None for successes
            abandoned: True on the attempt that exhausted max_retries
            triggered_at: When the attempt started
        """
        entry = ActivityLogEntry(
            task_id=task.id,
            webhook_config_id=task.webhook_config_id,
            user_id=task.user_id,
            clinic_id=task.clinic_id,
            webhook_name=task.webhook_name,
            trigger_type=task.trigger_type,
            webhook_url=task.webhook_url,
            request_payload=task.request_payload,
            attempt_number=attempt_number,
            outcome=result.outcome.value,
            abandoned=abandoned,
            response_status=result.status_code,
            response_body=truncate(result.body_excerpt, settings.RESPONSE_EXCERPT_LIMIT),
            error_message=error_message,
            duration_ms=result.duration_ms,
            triggered_at=triggered_at or utcnow(),
        )
        async with self._session() as session:
            session.add(entry)
            await session.commit()
        return entry

    async def for_task(self, task_id: str) -> list[ActivityLogEntry]:
        stmt = (
            select(ActivityLogEntry)
            .where(ActivityLogEntry.task_id == task_id)
            .order_by(ActivityLogEntry.triggered_at.asc(), ActivityLogEntry.attempt_number.asc())
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def recent(self, limit: int = 100, user_id: str | None = None) -> list[ActivityLogEntry]:
        stmt = select(ActivityLogEntry)
        if user_id:
            stmt = stmt.where(ActivityLogEntry.user_id == user_id)
        stmt = stmt.order_by(ActivityLogEntry.triggered_at.desc()).limit(limit)
        async with self._session() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())
