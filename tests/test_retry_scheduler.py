import asyncio
from datetime import timedelta

import httpx
import pytest

from hookrelay.exceptions import StoreUnavailable
from hookrelay.models.activity_log import AttemptOutcome
from hookrelay.services.activity_log import ActivityLog
from hookrelay.models.retry_task import TaskStatus
from hookrelay.models.webhook_config import WebhookConfig
from hookrelay.services.observers import WebhookConfigTouch
from hookrelay.services.delivery_client import DeliveryClient
from hookrelay.services.retry_scheduler import PassSummary, RetryScheduler, TaskResult
from hookrelay.services.task_store import TaskStore
from support import STALE_AFTER, T0, FakeEndpoint, enqueue


@pytest.mark.asyncio
async def test_empty_queue_gives_empty_summary(make_scheduler):
    scheduler = make_scheduler(FakeEndpoint())

    summary = await scheduler.run_pass(now=T0)

    assert summary == PassSummary()


@pytest.mark.asyncio
async def test_first_attempt_success(store, activity_log, make_scheduler):
    endpoint = FakeEndpoint(200)
    scheduler = make_scheduler(endpoint)
    task = await enqueue(store)

    summary = await scheduler.run_pass(now=T0)

    assert summary.as_dict() == {
        "processed": 1,
        "succeeded": 1,
        "failed_retrying": 0,
        "abandoned": 0,
        "skipped": 0,
    }
    stored = await store.get(task.id)
    assert stored.status == TaskStatus.SUCCEEDED.value
    assert stored.retry_count == 1
    assert stored.claimed_at is None

    entries = await activity_log.for_task(task.id)
    assert len(entries) == 1
    assert entries[0].outcome == AttemptOutcome.SUCCESS.value
    assert entries[0].response_status == 200
    assert entries[0].error_message is None
    assert entries[0].abandoned is False


@pytest.mark.asyncio
async def test_three_timeouts_abandon_the_task(store, activity_log, make_scheduler):
    endpoint = FakeEndpoint(httpx.ReadTimeout, httpx.ReadTimeout, httpx.ReadTimeout)
    scheduler = make_scheduler(endpoint)
    task = await enqueue(store, max_retries=3)

    first = await scheduler.run_pass(now=T0)
    assert first.failed_retrying == 1
    stored = await store.get(task.id)
    assert stored.status == TaskStatus.PENDING.value
    assert stored.retry_count == 1
    assert stored.next_attempt_at == T0 + timedelta(seconds=60)
    assert stored.last_error == "Request timed out after 30 seconds"

    # Not due yet: nothing happens
    early = await scheduler.run_pass(now=T0 + timedelta(seconds=30))
    assert early.processed == 0

    second_at = T0 + timedelta(minutes=2)
    await scheduler.run_pass(now=second_at)
    stored = await store.get(task.id)
    assert stored.retry_count == 2
    assert stored.next_attempt_at == second_at + timedelta(seconds=120)

    third = await scheduler.run_pass(now=T0 + timedelta(minutes=10))
    assert third.abandoned == 1
    stored = await store.get(task.id)
    assert stored.status == TaskStatus.ABANDONED.value
    assert stored.retry_count == 3
    assert stored.last_error == "Request timed out after 30 seconds"

    entries = await activity_log.for_task(task.id)
    assert [e.attempt_number for e in entries] == [1, 2, 3]
    assert all(e.outcome == AttemptOutcome.TIMEOUT.value for e in entries)
    assert [e.abandoned for e in entries] == [False, False, True]
    assert entries[0].error_message == "Retry attempt 1: Request timed out after 30 seconds"
    assert entries[2].error_message == "Abandoned after 3 attempts: Request timed out after 30 seconds"

    # Abandoned tasks are never attempted again
    later = await scheduler.run_pass(now=T0 + timedelta(days=1))
    assert later.processed == 0
    assert len(endpoint.requests) == 3


@pytest.mark.asyncio
async def test_success_after_a_503_clears_last_error(store, activity_log, make_scheduler):
    scheduler = make_scheduler(FakeEndpoint(503, 200))
    task = await enqueue(store, max_retries=3)

    await scheduler.run_pass(now=T0)
    stored = await store.get(task.id)
    assert stored.last_error == "HTTP 503: reply 503"

    summary = await scheduler.run_pass(now=T0 + timedelta(minutes=5))

    assert summary.succeeded == 1
    stored = await store.get(task.id)
    assert stored.status == TaskStatus.SUCCEEDED.value
    assert stored.retry_count == 2
    assert stored.last_error is None

    entries = await activity_log.for_task(task.id)
    assert [e.outcome for e in entries] == [AttemptOutcome.HTTP_ERROR.value, AttemptOutcome.SUCCESS.value]
    assert entries[0].response_status == 503


@pytest.mark.asyncio
async def test_client_errors_are_retried_like_server_errors(store, make_scheduler):
    scheduler = make_scheduler(FakeEndpoint(404))
    task = await enqueue(store, max_retries=2)

    summary = await scheduler.run_pass(now=T0)

    assert summary.failed_retrying == 1
    assert (await store.get(task.id)).status == TaskStatus.PENDING.value


@pytest.mark.asyncio
async def test_single_attempt_budget_abandons_on_first_failure(store, activity_log, make_scheduler):
    scheduler = make_scheduler(FakeEndpoint(httpx.ConnectError))
    task = await enqueue(store, max_retries=1)

    summary = await scheduler.run_pass(now=T0)

    assert summary.abandoned == 1
    stored = await store.get(task.id)
    assert stored.status == TaskStatus.ABANDONED.value
    assert stored.retry_count == 1
    entries = await activity_log.for_task(task.id)
    assert entries[0].outcome == AttemptOutcome.NETWORK_ERROR.value
    assert entries[0].abandoned is True


@pytest.mark.asyncio
async def test_batch_limit_takes_the_oldest_due_tasks(store, make_scheduler):
    endpoint = FakeEndpoint()
    scheduler = make_scheduler(endpoint, batch_limit=50)
    tasks = [await enqueue(store, now=T0 + timedelta(seconds=i)) for i in range(60)]

    summary = await scheduler.run_pass(now=T0 + timedelta(hours=1))

    assert summary.processed == 50
    assert summary.succeeded == 50
    assert len(endpoint.requests) == 50
    remaining = {t.id for t in await store.list_tasks(status_filter="pending", limit=100)}
    assert remaining == {t.id for t in tasks[50:]}


@pytest.mark.asyncio
async def test_every_attempt_sends_identical_bytes(store, make_scheduler):
    endpoint = FakeEndpoint(500, 500, 200)
    scheduler = make_scheduler(endpoint)
    await enqueue(store, request_payload={"z": 1, "a": [1, 2], "name": "Zoë"})

    for minutes in (0, 5, 30):
        await scheduler.run_pass(now=T0 + timedelta(minutes=minutes))

    bodies = [request.content for request in endpoint.requests]
    assert len(bodies) == 3
    assert bodies[0] == bodies[1] == bodies[2]


@pytest.mark.asyncio
async def test_stale_claim_is_reclaimed_and_attempted_once(store, activity_log, make_scheduler):
    endpoint = FakeEndpoint()
    scheduler = make_scheduler(endpoint)
    task = await enqueue(store)
    crashed_version = await store.claim(task, T0)

    fresh = await scheduler.run_pass(now=T0 + timedelta(seconds=10))
    assert fresh.processed == 0

    summary = await scheduler.run_pass(now=T0 + STALE_AFTER)

    assert summary.succeeded == 1
    assert len(await activity_log.for_task(task.id)) == 1
    stored = await store.get(task.id)
    assert stored.status == TaskStatus.SUCCEEDED.value
    assert stored.claim_version == crashed_version + 1


@pytest.mark.asyncio
async def test_superseded_worker_does_not_overwrite_outcome(store, activity_log, make_scheduler):
    scheduler = make_scheduler(FakeEndpoint(500))
    task = await enqueue(store)
    snapshot = (await store.select_due(T0, limit=1))[0]

    class SlowClaimStore(TaskStore):
        async def claim(self, task, now):
            version = await super().claim(task, now)
            # Another worker reclaims while this one is still delivering
            stale = (await self.select_due(now + STALE_AFTER, limit=1))[0]
            await super().claim(stale, now + STALE_AFTER)
            return version

    scheduler.store = SlowClaimStore(store._session_factory, claim_stale_after=STALE_AFTER)

    result = await scheduler.process_task(snapshot, clock=lambda: T0)

    assert result is TaskResult.SKIPPED
    stored = await store.get(task.id)
    assert stored.status == TaskStatus.CLAIMED.value
    assert stored.retry_count == 0
    assert len(await activity_log.for_task(task.id)) == 1


@pytest.mark.asyncio
async def test_overlapping_passes_attempt_each_task_once(store, activity_log, make_scheduler):
    endpoint = FakeEndpoint()
    first = make_scheduler(endpoint)
    second = make_scheduler(endpoint)
    tasks = [await enqueue(store, now=T0 + timedelta(seconds=i)) for i in range(8)]

    summaries = await asyncio.gather(first.run_pass(now=T0 + timedelta(minutes=1)),
                                     second.run_pass(now=T0 + timedelta(minutes=1)))

    assert sum(s.succeeded for s in summaries) == 8
    assert len(endpoint.requests) == 8
    for task in tasks:
        assert len(await activity_log.for_task(task.id)) == 1


@pytest.mark.asyncio
async def test_retry_count_never_exceeds_max_retries(store, make_scheduler):
    scheduler = make_scheduler(FakeEndpoint(*([500] * 10)))
    task = await enqueue(store, max_retries=4)

    for hours in range(8):
        await scheduler.run_pass(now=T0 + timedelta(hours=hours))
        assert (await store.get(task.id)).retry_count <= 4

    assert (await store.get(task.id)).status == TaskStatus.ABANDONED.value


@pytest.mark.asyncio
async def test_success_touches_webhook_config(session_factory, store, make_scheduler):
    async with session_factory() as session:
        config = WebhookConfig(name="Zapier", url="https://hooks.example.com/catch/123")
        session.add(config)
        await session.commit()

    scheduler = make_scheduler(FakeEndpoint(), observers=[WebhookConfigTouch(session_factory)])
    await enqueue(store, webhook_config_id=config.id)

    await scheduler.run_pass(now=T0)

    async with session_factory() as session:
        touched = await session.get(WebhookConfig, config.id)
    assert touched.last_triggered_at == T0


@pytest.mark.asyncio
async def test_failing_observer_does_not_undo_success(store, make_scheduler):
    class BrokenObserver:
        name = "broken"

        async def on_delivered(self, task, delivered_at):
            raise RuntimeError("downstream bookkeeping failed")

    scheduler = make_scheduler(FakeEndpoint(), observers=[BrokenObserver()])
    task = await enqueue(store)

    summary = await scheduler.run_pass(now=T0)

    assert summary.succeeded == 1
    assert (await store.get(task.id)).status == TaskStatus.SUCCEEDED.value


@pytest.mark.asyncio
async def test_unreadable_queue_fails_the_pass(broken_session_factory, make_scheduler):
    scheduler = make_scheduler(FakeEndpoint(), store=TaskStore(broken_session_factory))

    with pytest.raises(StoreUnavailable):
        await scheduler.run_pass(now=T0)


@pytest.mark.asyncio
async def test_unwritable_activity_log_fails_the_pass(store, broken_session_factory, make_scheduler):
    scheduler = make_scheduler(FakeEndpoint())
    scheduler.activity_log = ActivityLog(broken_session_factory)
    task = await enqueue(store)

    with pytest.raises(StoreUnavailable):
        await scheduler.run_pass(now=T0)

    # Left claimed; the stale-claim window hands it to a later pass
    assert (await store.get(task.id)).status == TaskStatus.CLAIMED.value


@pytest.mark.asyncio
async def test_recent_activity_is_newest_first_and_filterable(store, activity_log, make_scheduler):
    scheduler = make_scheduler(FakeEndpoint())
    mine = await enqueue(store, user_id="user-1")
    theirs = await enqueue(store, now=T0 + timedelta(seconds=1), user_id="user-2")

    await scheduler.run_pass(now=T0)
    await scheduler.run_pass(now=T0 + timedelta(seconds=5))

    recent = await activity_log.recent()
    assert [e.task_id for e in recent] == [theirs.id, mine.id]

    filtered = await activity_log.recent(user_id="user-2")
    assert [e.task_id for e in filtered] == [theirs.id]


@pytest.mark.asyncio
async def test_undecodable_response_is_retried_not_fatal(store, activity_log, make_scheduler):
    def bad_gzip(request):
        return httpx.Response(200, headers={"Content-Encoding": "gzip"}, stream=httpx.ByteStream(b"not gzip"))

    scheduler = make_scheduler(FakeEndpoint())
    task = await enqueue(store)

    async with httpx.AsyncClient(transport=httpx.MockTransport(bad_gzip)) as http_client:
        scheduler.delivery_client = DeliveryClient(http_client, timeout_seconds=30)
        summary = await scheduler.run_pass(now=T0)

    assert summary.failed_retrying == 1
    stored = await store.get(task.id)
    assert stored.status == TaskStatus.PENDING.value
    assert stored.retry_count == 1
    entries = await activity_log.for_task(task.id)
    assert [e.outcome for e in entries] == [AttemptOutcome.NETWORK_ERROR.value]


@pytest.mark.asyncio
async def test_unexpected_error_in_one_task_spares_the_rest(store, activity_log, make_scheduler):
    class PoisonedClient(DeliveryClient):
        async def attempt(self, url, payload):
            if "poison" in url:
                raise RuntimeError("bug while delivering")
            return await super().attempt(url, payload)

    endpoint = FakeEndpoint()
    scheduler = make_scheduler(endpoint)
    healthy = [await enqueue(store, now=T0 + timedelta(seconds=i)) for i in range(4)]
    poisoned = await enqueue(store, webhook_url="https://poison.example.com/hook")

    async with endpoint.client() as http_client:
        scheduler.delivery_client = PoisonedClient(http_client, timeout_seconds=30)
        summary = await scheduler.run_pass(now=T0 + timedelta(minutes=1))

    assert summary.succeeded == 4
    assert summary.skipped == 1
    for task in healthy:
        assert (await store.get(task.id)).status == TaskStatus.SUCCEEDED.value
    stuck = await store.get(poisoned.id)
    assert stuck.status == TaskStatus.CLAIMED.value
    assert stuck.retry_count == 0
    assert await activity_log.for_task(poisoned.id) == []


@pytest.mark.parametrize("kwargs", [{"batch_limit": 0}, {"pool_size": 0}])
def test_zero_sized_passes_are_rejected(kwargs):
    with pytest.raises(ValueError):
        RetryScheduler(store=None, activity_log=None, delivery_client=DeliveryClient(), **kwargs)
