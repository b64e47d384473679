from datetime import datetime, timedelta, timezone

import httpx

from hookrelay.models.retry_task import RetryTask
from hookrelay.services.task_store import TaskStore

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
STALE_AFTER = timedelta(seconds=90)


class FakeEndpoint:
    """
    Scripted webhook receiver behind httpx.MockTransport.

    Each queued reply is an int status code or an exception class raised
    as if the network failed; once the script runs out every request gets 200.
    """

    def __init__(self, *replies):
        self.replies = list(replies)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        reply = self.replies.pop(0) if self.replies else 200
        if isinstance(reply, type) and issubclass(reply, Exception):
            raise reply("scripted failure", request=request)
        return httpx.Response(reply, text=f"reply {reply}")

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


async def enqueue(store: TaskStore, now: datetime = T0, **overrides) -> RetryTask:
    fields = {
        "webhook_url": "https://hooks.example.com/catch/123",
        "request_payload": {"event": "episode_discharged", "episode_id": "ep-1"},
        "webhook_name": "Zapier discharge",
        "trigger_type": "episode_discharged",
        "max_retries": 3,
        "user_id": "user-1",
        "clinic_id": "clinic-1",
    }
    fields.update(overrides)
    return await store.enqueue(now=now, **fields)
