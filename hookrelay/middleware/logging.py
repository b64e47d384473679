"""
Request logging middleware.

Logs one event per HTTP request and records request metrics. A request
id (taken from X-Request-ID or generated) is bound for the duration of
the request, so scheduler events logged during POST /run carry it too.
"""
import time
import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from hookrelay.logging_config import log_context, logger
from hookrelay.routes.metrics import track_request

REQUEST_ID_HEADER = "X-Request-ID"


def route_template(request: Request) -> str:
    """Route path with placeholders, so task ids do not explode metric cardinality."""
    route = request.scope.get("route")
    return getattr(route, "path", request.url.path)


class LoggingMiddleware(BaseHTTPMiddleware):
    """Adds: request_id, method, route, status_code, duration_ms to every request log."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        started = time.perf_counter()

        with log_context(request_id=request_id, method=request.method, path=request.url.path):
            try:
                response = await call_next(request)
            except Exception as e:
                elapsed = time.perf_counter() - started
                logger.error("request_failed", duration_ms=round(elapsed * 1000, 2), error=str(e))
                track_request(request.method, route_template(request), 500, elapsed)
                raise

            elapsed = time.perf_counter() - started
            route = route_template(request)
            logger.info(
                "request_completed",
                route=route,
                status_code=response.status_code,
                duration_ms=round(elapsed * 1000, 2),
            )
            track_request(request.method, route, response.status_code, elapsed)

        response.headers[REQUEST_ID_HEADER] = request_id
        return response
