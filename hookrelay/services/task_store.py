"""
Task store for webhook retry tasks.

Every write that changes who owns a task is a conditional UPDATE on the
task's claim_version, so concurrent scheduler instances coordinate through
the database alone. Each operation uses its own short-lived session.
"""
import json
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hookrelay.config import settings
from hookrelay.exceptions import ClaimConflict, StoreUnavailable, TaskNotFound, TaskNotRetryable
from hookrelay.models.base import utcnow
from hookrelay.models.retry_task import RetryTask, TaskStatus


ACTIVE_STATUSES = (TaskStatus.PENDING.value, TaskStatus.CLAIMED.value)


def serialize_payload(payload: Any) -> str:
    """Serialize a payload once, at enqueue time. Pre-serialized bodies are kept verbatim."""
    if isinstance(payload, bytes):
        return payload.decode("utf-8")
    if isinstance(payload, str):
        return payload
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


def default_claim_stale_after() -> timedelta:
    return timedelta(seconds=settings.DELIVERY_TIMEOUT_SECONDS + settings.CLAIM_STALE_MARGIN_SECONDS)


class TaskStore:
    """Durable retry task queue backed by SQLAlchemy."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        claim_stale_after: timedelta | None = None,
    ):
        self._session_factory = session_factory
        self.claim_stale_after = claim_stale_after or default_claim_stale_after()

    @asynccontextmanager
    async def _session(self):
        try:
            async with self._session_factory() as session:
                yield session
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Task store unavailable: {e}") from e

    def _eligible(self, now: datetime):
        """Pending and due, or claimed by a worker that has been silent past the stale window."""
        stale_before = now - self.claim_stale_after
        return or_(
            and_(
                RetryTask.status == TaskStatus.PENDING.value,
                RetryTask.next_attempt_at <= now,
            ),
            and_(
                RetryTask.status == TaskStatus.CLAIMED.value,
                RetryTask.claimed_at <= stale_before,
            ),
        )

    async def enqueue(
        self,
        *,
        webhook_url: str,
        request_payload: Any,
        webhook_name: str,
        trigger_type: str,
        max_retries: int | None = None,
        webhook_config_id: str | None = None,
        user_id: str | None = None,
        clinic_id: str | None = None,
        now: datetime | None = None,
    ) -> RetryTask:
        """
        Create a new pending task, eligible immediately.

        Args:
            webhook_url: Destination endpoint
            request_payload: JSON-serializable body, or an already serialized str/bytes
            webhook_name: Free-text label for the destination
            trigger_type: Event that produced the webhook (e.g. "episode_discharged")
            max_retries: Attempt ceiling, defaults to DEFAULT_MAX_RETRIES
            webhook_config_id: External destination configuration id
            user_id: Owner context for log correlation
            clinic_id: Owner context for log correlation

        Returns:
            Newly created RetryTask
        """
        if not webhook_url or not webhook_url.strip():
            raise ValueError("webhook_url cannot be empty.")
        if max_retries is None:
            max_retries = settings.DEFAULT_MAX_RETRIES
        if max_retries < 1:
            raise ValueError(f"max_retries must be a positive integer, got {max_retries}")

        now = now or utcnow()
        task = RetryTask(
            webhook_config_id=webhook_config_id,
            webhook_name=webhook_name,
            trigger_type=trigger_type,
            webhook_url=webhook_url.strip(),
            request_payload=serialize_payload(request_payload),
            status=TaskStatus.PENDING.value,
            retry_count=0,
            max_retries=max_retries,
            next_attempt_at=now,
            claim_version=0,
            user_id=user_id,
            clinic_id=clinic_id,
            created_at=now,
            updated_at=now,
        )
        async with self._session() as session:
            session.add(task)
            await session.commit()
        return task

    async def get(self, task_id: str) -> RetryTask | None:
        async with self._session() as session:
            return await session.get(RetryTask, task_id)

    async def select_due(self, now: datetime, limit: int) -> list[RetryTask]:
        """Oldest-due first, so a backlog drains fairly."""
        stmt = (
            select(RetryTask)
            .where(self._eligible(now))
            .order_by(RetryTask.next_attempt_at.asc(), RetryTask.created_at.asc(), RetryTask.id.asc())
            .limit(limit)
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def claim(self, task: RetryTask, now: datetime) -> int:
        """
        Reserve a task for this worker.

        The update only matches if nobody has claimed the task since it was
        read. Returns the new claim version; raises ClaimConflict otherwise.
        """
        stmt = (
            update(RetryTask)
            .where(
                RetryTask.id == task.id,
                RetryTask.claim_version == task.claim_version,
                self._eligible(now),
            )
            .values(
                status=TaskStatus.CLAIMED.value,
                claimed_at=now,
                claim_version=RetryTask.claim_version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            await session.commit()
        if result.rowcount != 1:
            raise ClaimConflict(task.id)
        return task.claim_version + 1

    async def _apply_outcome(self, task_id: str, claim_version: int, **values) -> None:
        stmt = (
            update(RetryTask)
            .where(
                RetryTask.id == task_id,
                RetryTask.status == TaskStatus.CLAIMED.value,
                RetryTask.claim_version == claim_version,
            )
            .values(claimed_at=None, **values)
            .execution_options(synchronize_session=False)
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            await session.commit()
        if result.rowcount != 1:
            raise ClaimConflict(task_id)

    async def mark_succeeded(self, task_id: str, claim_version: int, retry_count: int) -> None:
        await self._apply_outcome(
            task_id,
            claim_version,
            status=TaskStatus.SUCCEEDED.value,
            retry_count=retry_count,
            last_error=None,
        )

    async def mark_retrying(
        self,
        task_id: str,
        claim_version: int,
        retry_count: int,
        next_attempt_at: datetime,
        last_error: str,
    ) -> None:
        await self._apply_outcome(
            task_id,
            claim_version,
            status=TaskStatus.PENDING.value,
            retry_count=retry_count,
            next_attempt_at=next_attempt_at,
            last_error=last_error,
        )

    async def mark_abandoned(self, task_id: str, claim_version: int, retry_count: int, last_error: str) -> None:
        await self._apply_outcome(
            task_id,
            claim_version,
            status=TaskStatus.ABANDONED.value,
            retry_count=retry_count,
            last_error=last_error,
        )

    async def expedite(self, task_id: str, now: datetime | None = None) -> RetryTask:
        """
        Make a pending task due immediately ("retry now").

        Claimed and terminal tasks are left untouched; abandoned tasks are
        never revived.
        """
        now = now or utcnow()
        stmt = (
            update(RetryTask)
            .where(RetryTask.id == task_id, RetryTask.status == TaskStatus.PENDING.value)
            .values(next_attempt_at=now)
            .execution_options(synchronize_session=False)
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            await session.commit()
            task = await session.get(RetryTask, task_id)

        if task is None:
            raise TaskNotFound(task_id)
        if result.rowcount != 1:
            raise TaskNotRetryable(task_id, task.status)
        return task

    async def list_tasks(
        self,
        status_filter: str = "active",
        user_id: str | None = None,
        limit: int = 100,
    ) -> list[RetryTask]:
        """
        List tasks newest first.

        status_filter is "active" (pending or claimed), "all", or a single status.
        """
        stmt = select(RetryTask)
        if status_filter == "active":
            stmt = stmt.where(RetryTask.status.in_(ACTIVE_STATUSES))
        elif status_filter != "all":
            stmt = stmt.where(RetryTask.status == TaskStatus(status_filter).value)
        if user_id:
            stmt = stmt.where(RetryTask.user_id == user_id)
        stmt = stmt.order_by(RetryTask.created_at.desc()).limit(limit)

        async with self._session() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def count_by_status(self) -> dict[str, int]:
        stmt = select(RetryTask.status, func.count()).group_by(RetryTask.status)
        async with self._session() as session:
            rows = (await session.execute(stmt)).all()
        counts = {status.value: 0 for status in TaskStatus}
        counts.update({status: count for status, count in rows})
        return counts
