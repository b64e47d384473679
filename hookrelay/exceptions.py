"""
Error taxonomy for the retry engine.

Delivery errors are recovered per task by the scheduler. Only
StoreUnavailable is allowed to fail a whole scheduler pass.
"""


class RetryEngineError(Exception):
    """Base class for retry engine errors."""


class ClaimConflict(RetryEngineError):
    """Another worker owns the task (claim lost or outcome update fenced out)."""

    def __init__(self, task_id: str):
        super().__init__(f"Task {task_id} is claimed by another worker")
        self.task_id = task_id


class StoreUnavailable(RetryEngineError):
    """The task store or activity log could not be read or written."""


class TaskNotFound(RetryEngineError):
    def __init__(self, task_id: str):
        super().__init__(f"Retry task not found: {task_id}")
        self.task_id = task_id


class TaskNotRetryable(RetryEngineError):
    """Raised when an operation needs a pending task but the task is claimed or terminal."""

    def __init__(self, task_id: str, status: str):
        super().__init__(f"Retry task {task_id} is {status}, not pending")
        self.task_id = task_id
        self.status = status


class DeliveryError(RetryEngineError):
    """A single delivery attempt did not produce a 2xx response."""


class DeliveryTimeout(DeliveryError):
    def __init__(self, timeout_seconds: float):
        super().__init__(f"Request timed out after {timeout_seconds:g} seconds")
        self.timeout_seconds = timeout_seconds


class DeliveryHttpError(DeliveryError):
    def __init__(self, status_code: int, body_excerpt: str | None):
        super().__init__(f"HTTP {status_code}: {body_excerpt or ''}")
        self.status_code = status_code
        self.body_excerpt = body_excerpt


class DeliveryNetworkError(DeliveryError):
    """Connection, DNS or protocol failure before a response was received."""
