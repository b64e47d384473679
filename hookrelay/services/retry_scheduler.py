"""
Retry Scheduler

Runs one pass over the retry queue: select due tasks, claim each one,
attempt delivery, then reschedule, abandon or complete it.

    pending -> claimed -> succeeded
                       -> pending (retry, with backoff)
                       -> abandoned

Passes are stateless and safe to run concurrently from several processes;
the store's conditional claim is the only coordination point.
"""
import asyncio
import enum
import time
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Callable

from hookrelay.config import settings
from hookrelay.exceptions import ClaimConflict, StoreUnavailable
from hookrelay.logging_config import get_logger, log_context
from hookrelay.models.base import utcnow
from hookrelay.models.retry_task import RetryTask
from hookrelay.routes.metrics import (
    track_attempt,
    track_claim_conflict,
    track_pass,
    track_pass_failure,
    track_task_result,
)
from hookrelay.sentry_config import capture_exception
from hookrelay.services.activity_log import ActivityLog
from hookrelay.services.backoff import BackoffPolicy
from hookrelay.services.delivery_client import DeliveryClient, DeliveryResult
from hookrelay.services.observers import DeliveryObserver, WebhookConfigTouch, notify_delivered
from hookrelay.services.task_store import TaskStore


class TaskResult(str, enum.Enum):
    SUCCEEDED = "succeeded"
    RETRYING = "retrying"
    ABANDONED = "abandoned"
    SKIPPED = "skipped"


@dataclass
class PassSummary:
    """Counts for operational visibility; correctness never depends on them."""
    processed: int = 0
    succeeded: int = 0
    failed_retrying: int = 0
    abandoned: int = 0
    skipped: int = 0

    def record(self, result: TaskResult):
        if result is TaskResult.SKIPPED:
            self.skipped += 1
            return
        self.processed += 1
        if result is TaskResult.SUCCEEDED:
            self.succeeded += 1
        elif result is TaskResult.RETRYING:
            self.failed_retrying += 1
        elif result is TaskResult.ABANDONED:
            self.abandoned += 1

    def as_dict(self) -> dict:
        return asdict(self)


class RetryScheduler:
    """Orchestrates retry passes over the task store."""

    def __init__(
        self,
        store: TaskStore,
        activity_log: ActivityLog,
        delivery_client: DeliveryClient,
        backoff: BackoffPolicy | None = None,
        observers: list[DeliveryObserver] | None = None,
        batch_limit: int | None = None,
        pool_size: int | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.activity_log = activity_log
        self.delivery_client = delivery_client
        self.backoff = backoff or BackoffPolicy.from_settings()
        self.observers = observers or []
        self.batch_limit = settings.RETRY_BATCH_LIMIT if batch_limit is None else batch_limit
        self.pool_size = settings.RETRY_WORKER_POOL_SIZE if pool_size is None else pool_size
        if self.batch_limit < 1 or self.pool_size < 1:
            raise ValueError("batch_limit and pool_size must be positive")
        self.clock = clock
        self.log = get_logger(component="retry_scheduler")

    async def run_pass(self, now: datetime | None = None) -> PassSummary:
        """
        Process up to batch_limit due tasks.

        Passing `now` pins the pass clock (selection, claims and backoff all
        use it); otherwise the scheduler's clock is read at each step.

        Raises:
            StoreUnavailable: the queue could not be read or a task could not be
                written. Claimed tasks left behind are reclaimed once stale.
        """
        clock = (lambda: now) if now is not None else self.clock
        started = time.monotonic()
        summary = PassSummary()

        try:
            tasks = await self.store.select_due(clock(), self.batch_limit)
        except StoreUnavailable:
            self.log.error("retry_pass_selection_failed", exc_info=True)
            track_pass_failure()
            capture_exception(stage="select_due")
            raise

        if not tasks:
            self.log.info("retry_pass_empty")
            track_pass(time.monotonic() - started)
            return summary

        self.log.info("retry_pass_started", task_count=len(tasks), batch_limit=self.batch_limit)
        semaphore = asyncio.Semaphore(self.pool_size)

        async def run_one(task: RetryTask):
            async with semaphore:
                try:
                    result = await self.process_task(task, clock)
                except StoreUnavailable:
                    raise
                except Exception as e:
                    # Left claimed; reclaimed once the stale window passes
                    self.log.error("retry_task_crashed", task_id=task.id, error=str(e), exc_info=True)
                    capture_exception(e, task_id=task.id, stage="process_task")
                    result = TaskResult.SKIPPED
                summary.record(result)

        try:
            async with asyncio.TaskGroup() as group:
                for task in tasks:
                    group.create_task(run_one(task))
        except ExceptionGroup as errors:
            store_errors = errors.subgroup(StoreUnavailable)
            if store_errors is None:
                raise
            error = store_errors.exceptions[0]
            self.log.error("retry_pass_aborted", error=str(error), **summary.as_dict())
            track_pass_failure()
            capture_exception(error, stage="settle")
            raise error

        track_pass(time.monotonic() - started)
        self.log.info(
            "retry_pass_complete",
            duration_ms=round((time.monotonic() - started) * 1000, 2),
            **summary.as_dict(),
        )
        return summary

    async def process_task(self, task: RetryTask, clock: Callable[[], datetime] | None = None) -> TaskResult:
        """Claim, attempt and settle a single task."""
        with log_context(**task.log_context()):
            return await self._process(task, clock or self.clock)

    async def _process(self, task: RetryTask, clock: Callable[[], datetime]) -> TaskResult:
        log = self.log

        try:
            claim_version = await self.store.claim(task, clock())
        except ClaimConflict:
            log.debug("retry_task_claim_conflict")
            track_claim_conflict()
            return TaskResult.SKIPPED

        attempt_number = task.retry_count + 1
        log = log.bind(attempt=attempt_number, max_retries=task.max_retries)
        log.info("retry_attempt_started", webhook_url=task.webhook_url)

        triggered_at = clock()
        result = await self.delivery_client.attempt(task.webhook_url, task.request_payload)
        track_attempt(result.outcome.value, result.duration_ms)

        if result.ok:
            return await self._settle_success(task, claim_version, attempt_number, result, triggered_at, clock, log)
        if attempt_number >= task.max_retries:
            return await self._settle_abandoned(task, claim_version, attempt_number, result, triggered_at, log)
        return await self._settle_retry(task, claim_version, attempt_number, result, triggered_at, clock, log)

    async def _settle_success(self, task, claim_version, attempt_number, result: DeliveryResult, triggered_at, clock, log):
        # Logged before the task update: every attempt that reached the network has an entry
        await self.activity_log.record(task, attempt_number, result, triggered_at=triggered_at)
        try:
            await self.store.mark_succeeded(task.id, claim_version, attempt_number)
        except ClaimConflict:
            return self._superseded(log)

        log.info("webhook_delivered", status_code=result.status_code, duration_ms=result.duration_ms)
        track_task_result(TaskResult.SUCCEEDED.value)
        await notify_delivered(self.observers, task, clock())
        return TaskResult.SUCCEEDED

    async def _settle_abandoned(self, task, claim_version, attempt_number, result: DeliveryResult, triggered_at, log):
        await self.activity_log.record(
            task,
            attempt_number,
            result,
            error_message=f"Abandoned after {attempt_number} attempts: {result.error}",
            abandoned=True,
            triggered_at=triggered_at,
        )
        try:
            await self.store.mark_abandoned(task.id, claim_version, attempt_number, result.error)
        except ClaimConflict:
            return self._superseded(log)

        log.warning(
            "webhook_abandoned",
            outcome=result.outcome.value,
            status_code=result.status_code,
            error=result.error,
        )
        track_task_result(TaskResult.ABANDONED.value)
        return TaskResult.ABANDONED

    async def _settle_retry(self, task, claim_version, attempt_number, result: DeliveryResult, triggered_at, clock, log):
        next_attempt_at = self.backoff.next_attempt_at(attempt_number, clock())
        await self.activity_log.record(
            task,
            attempt_number,
            result,
            error_message=f"Retry attempt {attempt_number}: {result.error}",
            triggered_at=triggered_at,
        )
        try:
            await self.store.mark_retrying(task.id, claim_version, attempt_number, next_attempt_at, result.error)
        except ClaimConflict:
            return self._superseded(log)

        log.info(
            "webhook_retry_scheduled",
            outcome=result.outcome.value,
            status_code=result.status_code,
            error=result.error,
            next_attempt_at=next_attempt_at.isoformat(),
        )
        track_task_result(TaskResult.RETRYING.value)
        return TaskResult.RETRYING

    def _superseded(self, log) -> TaskResult:
        log.warning("retry_task_claim_superseded")
        track_claim_conflict()
        return TaskResult.SKIPPED


def build_retry_scheduler(session_factory, http_client=None, **kwargs) -> RetryScheduler:
    """Wire a scheduler with the SQLAlchemy-backed store, log and config observer."""
    return RetryScheduler(
        store=TaskStore(session_factory),
        activity_log=ActivityLog(session_factory),
        delivery_client=DeliveryClient(http_client),
        observers=[WebhookConfigTouch(session_factory)],
        **kwargs,
    )
