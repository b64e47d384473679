"""
Prometheus metrics endpoint.

Exposes HTTP and retry-engine metrics for monitoring.
"""
from fastapi import APIRouter, Response
from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST

router = APIRouter()

# ============================================
# HTTP Request Metrics
# ============================================

http_requests_total = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status']
)

http_request_duration = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# ============================================
# Delivery Metrics
# ============================================

webhook_attempts = Counter(
    'webhook_delivery_attempts_total',
    'Webhook delivery attempts by outcome',
    ['outcome']
)

webhook_attempt_duration = Histogram(
    'webhook_delivery_duration_seconds',
    'Duration of a single webhook delivery attempt',
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0]
)

# ============================================
# Retry Scheduler Metrics
# ============================================

retry_task_results = Counter(
    'webhook_retry_task_results_total',
    'Retry task results after an attempt',
    ['result']
)

retry_claim_conflicts = Counter(
    'webhook_retry_claim_conflicts_total',
    'Claims or outcome updates lost to another scheduler instance'
)

retry_pass_duration = Histogram(
    'webhook_retry_pass_duration_seconds',
    'Duration of one scheduler pass',
    buckets=[0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0]
)

retry_pass_failures = Counter(
    'webhook_retry_pass_failures_total',
    'Scheduler passes aborted because the store was unavailable'
)

retry_queue_depth = Gauge(
    'webhook_retry_queue_tasks',
    'Retry tasks per status',
    ['status']
)

observer_failures = Counter(
    'webhook_delivery_observer_failures_total',
    'Best-effort post-delivery side effects that failed',
    ['observer']
)


# ============================================
# Metrics Helper Functions
# ============================================

def track_request(method: str, endpoint: str, status: int, duration_seconds: float):
    """
    Record HTTP request metrics.

    Call this after each request.
    """
    http_requests_total.labels(
        method=method,
        endpoint=endpoint,
        status=status
    ).inc()

    http_request_duration.labels(
        method=method,
        endpoint=endpoint
    ).observe(duration_seconds)


def track_attempt(outcome: str, duration_ms: int):
    """Record one delivery attempt."""
    webhook_attempts.labels(outcome=outcome).inc()
    webhook_attempt_duration.observe(duration_ms / 1000)


def track_task_result(result: str):
    """Record what happened to a task after its attempt (succeeded, retrying, abandoned)."""
    retry_task_results.labels(result=result).inc()


def track_claim_conflict():
    retry_claim_conflicts.inc()


def track_pass(duration_seconds: float):
    retry_pass_duration.observe(duration_seconds)


def track_pass_failure():
    retry_pass_failures.inc()


def update_queue_depth(counts: dict[str, int]):
    """Update per-status task gauges."""
    for status, count in counts.items():
        retry_queue_depth.labels(status=status).set(count)


def track_observer_failure(observer: str):
    observer_failures.labels(observer=observer).inc()


# ============================================
# Prometheus Endpoint
# ============================================

@router.get("/metrics")
async def metrics():
    """
    Prometheus metrics endpoint.

    Returns all registered metrics in Prometheus format.
    """
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
