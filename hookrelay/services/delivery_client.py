"""
Webhook Delivery Client

Performs exactly one outbound POST per call. Retry policy lives in the
scheduler; this client only classifies what happened.
"""
import asyncio
import time
from dataclasses import dataclass

import httpx

from hookrelay.config import settings
from hookrelay.exceptions import (
    DeliveryError,
    DeliveryHttpError,
    DeliveryNetworkError,
    DeliveryTimeout,
)
from hookrelay.models.activity_log import AttemptOutcome


UNREADABLE_BODY = "Unable to read response body"


@dataclass(frozen=True)
class DeliveryResult:
    """Classified outcome of a single delivery attempt."""
    outcome: AttemptOutcome
    duration_ms: int
    status_code: int | None = None
    body_excerpt: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.outcome is AttemptOutcome.SUCCESS


def truncate(text: str | None, limit: int) -> str | None:
    if text is None:
        return None
    return text[:limit]


class DeliveryClient:
    """
    Single-attempt HTTP delivery with a hard timeout.

    Pass an httpx.AsyncClient to share a connection pool (the worker does)
    or to mount a mock transport in tests.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float | None = None,
        excerpt_limit: int | None = None,
    ):
        if timeout_seconds is None:
            timeout_seconds = settings.DELIVERY_TIMEOUT_SECONDS
        if excerpt_limit is None:
            excerpt_limit = settings.RESPONSE_EXCERPT_LIMIT
        if timeout_seconds <= 0:
            raise ValueError(f"timeout_seconds must be positive, got {timeout_seconds}")
        if excerpt_limit < 0:
            raise ValueError(f"excerpt_limit cannot be negative, got {excerpt_limit}")
        self.timeout_seconds = timeout_seconds
        self.excerpt_limit = excerpt_limit
        self._http_client = http_client

    async def send(self, url: str, payload: bytes) -> httpx.Response:
        """
        POST the payload once.

        timeout_seconds bounds the whole exchange (connect, upload and the
        full response body), not just each network phase.

        Returns the response on 2xx, raises a DeliveryError subclass otherwise.
        """
        headers = {"Content-Type": "application/json"}
        try:
            async with asyncio.timeout(self.timeout_seconds):
                if self._http_client is not None:
                    response = await self._http_client.post(
                        url, content=payload, headers=headers, timeout=self.timeout_seconds
                    )
                else:
                    async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                        response = await client.post(url, content=payload, headers=headers)
        except (httpx.TimeoutException, TimeoutError) as e:
            raise DeliveryTimeout(self.timeout_seconds) from e
        except (httpx.RequestError, httpx.InvalidURL) as e:
            # Transport failures, undecodable bodies, redirect loops
            raise DeliveryNetworkError(str(e) or type(e).__name__) from e

        if not response.is_success:
            raise DeliveryHttpError(response.status_code, self._excerpt(response))
        return response

    async def attempt(self, url: str, payload: str | bytes) -> DeliveryResult:
        """Deliver once and return a classified result. Never raises for delivery failures."""
        body = payload.encode() if isinstance(payload, str) else payload
        start_time = time.monotonic()

        try:
            response = await self.send(url, body)
        except DeliveryError as e:
            return DeliveryResult(
                outcome=_classify(e),
                duration_ms=_elapsed_ms(start_time),
                status_code=getattr(e, "status_code", None),
                body_excerpt=getattr(e, "body_excerpt", None),
                error=str(e),
            )

        return DeliveryResult(
            outcome=AttemptOutcome.SUCCESS,
            duration_ms=_elapsed_ms(start_time),
            status_code=response.status_code,
            body_excerpt=self._excerpt(response),
        )

    def _excerpt(self, response: httpx.Response) -> str:
        try:
            return truncate(response.text, self.excerpt_limit)
        except (httpx.HTTPError, UnicodeDecodeError, LookupError):
            return UNREADABLE_BODY


def _classify(error: DeliveryError) -> AttemptOutcome:
    if isinstance(error, DeliveryTimeout):
        return AttemptOutcome.TIMEOUT
    if isinstance(error, DeliveryHttpError):
        return AttemptOutcome.HTTP_ERROR
    return AttemptOutcome.NETWORK_ERROR


def _elapsed_ms(start_time: float) -> int:
    return int((time.monotonic() - start_time) * 1000)
