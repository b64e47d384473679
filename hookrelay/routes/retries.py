"""
Webhook retry API routes.

Runs the retry scheduler on demand and exposes the retry queue and its
activity log for operational dashboards.
"""
from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel

from hookrelay.dependencies.retry_engine import get_activity_log, get_retry_scheduler, get_task_store
from hookrelay.exceptions import StoreUnavailable, TaskNotFound, TaskNotRetryable
from hookrelay.models.activity_log import ActivityLogEntry
from hookrelay.models.retry_task import RetryTask, TaskStatus
from hookrelay.routes.metrics import update_queue_depth
from hookrelay.services.activity_log import ActivityLog
from hookrelay.services.retry_scheduler import RetryScheduler
from hookrelay.services.task_store import TaskStore


router = APIRouter(prefix="/api/webhook-retries", tags=["webhook-retries"])

STATUS_FILTERS = {"active", "all", *(s.value for s in TaskStatus)}


class PassSummaryResponse(BaseModel):
    """Counts from one scheduler pass."""
    processed: int
    succeeded: int
    failed_retrying: int
    abandoned: int
    skipped: int


class RetryTaskResponse(BaseModel):
    """Response model for a retry task."""
    id: str
    webhook_config_id: str | None = None
    webhook_name: str
    trigger_type: str
    webhook_url: str
    request_payload: str
    status: str
    retry_count: int
    max_retries: int
    next_attempt_at: str
    last_error: str | None = None
    claimed_at: str | None = None
    user_id: str | None = None
    clinic_id: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


class ActivityLogResponse(BaseModel):
    """Response model for one delivery attempt."""
    id: str
    task_id: str
    attempt_number: int
    outcome: str
    abandoned: bool
    response_status: int | None = None
    response_body: str | None = None
    error_message: str | None = None
    duration_ms: int
    triggered_at: str


def task_to_response(task: RetryTask) -> RetryTaskResponse:
    """Convert RetryTask model to RetryTaskResponse."""
    return RetryTaskResponse(
        id=task.id,
        webhook_config_id=task.webhook_config_id,
        webhook_name=task.webhook_name,
        trigger_type=task.trigger_type,
        webhook_url=task.webhook_url,
        request_payload=task.request_payload,
        status=task.status,
        retry_count=task.retry_count,
        max_retries=task.max_retries,
        next_attempt_at=task.next_attempt_at.isoformat(),
        last_error=task.last_error,
        claimed_at=task.claimed_at.isoformat() if task.claimed_at else None,
        user_id=task.user_id,
        clinic_id=task.clinic_id,
        created_at=task.created_at.isoformat() if task.created_at else None,
        updated_at=task.updated_at.isoformat() if task.updated_at else None,
    )


def entry_to_response(entry: ActivityLogEntry) -> ActivityLogResponse:
    """Convert ActivityLogEntry model to ActivityLogResponse."""
    return ActivityLogResponse(
        id=entry.id,
        task_id=entry.task_id,
        attempt_number=entry.attempt_number,
        outcome=entry.outcome,
        abandoned=entry.abandoned,
        response_status=entry.response_status,
        response_body=entry.response_body,
        error_message=entry.error_message,
        duration_ms=entry.duration_ms,
        triggered_at=entry.triggered_at.isoformat(),
    )


@router.post("/run", response_model=PassSummaryResponse)
async def run_retry_pass(scheduler: RetryScheduler = Depends(get_retry_scheduler)):
    """
    Run one scheduler pass.

    Returns 200 with the pass counts even when individual deliveries fail;
    503 only if the retry queue itself cannot be read or written.
    """
    try:
        summary = await scheduler.run_pass()
    except StoreUnavailable as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(e)
        )
    return PassSummaryResponse(**summary.as_dict())


@router.get("", response_model=list[RetryTaskResponse])
async def list_retry_tasks(
    status_filter: str = Query("active", alias="status"),
    user_id: str | None = None,
    limit: int = Query(100, ge=1, le=500),
    store: TaskStore = Depends(get_task_store),
):
    """List retry tasks, newest first. status is active, all, or a single task status."""
    if status_filter not in STATUS_FILTERS:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Unknown status filter: {status_filter}"
        )
    tasks = await store.list_tasks(status_filter=status_filter, user_id=user_id, limit=limit)
    return [task_to_response(task) for task in tasks]


@router.get("/stats", response_model=dict)
async def retry_queue_stats(store: TaskStore = Depends(get_task_store)):
    """Task counts per status."""
    counts = await store.count_by_status()
    update_queue_depth(counts)
    return {"counts": counts, "total": sum(counts.values())}


@router.get("/{task_id}", response_model=RetryTaskResponse)
async def get_retry_task(task_id: str, store: TaskStore = Depends(get_task_store)):
    """Get a single retry task."""
    task = await store.get(task_id)
    if not task:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Retry task not found"
        )
    return task_to_response(task)


@router.get("/{task_id}/activity", response_model=list[ActivityLogResponse])
async def get_retry_task_activity(
    task_id: str,
    store: TaskStore = Depends(get_task_store),
    activity_log: ActivityLog = Depends(get_activity_log),
):
    """Every delivery attempt recorded for a task, oldest first."""
    if not await store.get(task_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Retry task not found"
        )
    entries = await activity_log.for_task(task_id)
    return [entry_to_response(entry) for entry in entries]


@router.post("/{task_id}/retry-now", response_model=RetryTaskResponse)
async def retry_task_now(task_id: str, store: TaskStore = Depends(get_task_store)):
    """
    Make a pending task due immediately.

    The next scheduler pass picks it up; claimed and finished tasks are rejected.
    """
    try:
        task = await store.expedite(task_id)
    except TaskNotFound:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Retry task not found"
        )
    except TaskNotRetryable as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(e)
        )
    return task_to_response(task)
