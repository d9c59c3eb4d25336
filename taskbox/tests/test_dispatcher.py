"""
Dispatcher Tests.

Validates claiming, retries, reclaiming and outcome fencing.
"""

import uuid
import asyncio
import pytest
from datetime import timedelta
from pydantic import ValidationError
from sqlalchemy import select

from taskbox.app.core.config import Settings
from taskbox.app.core.exceptions import FatalTaskError, TransientTaskError
from taskbox.app.core.timeutils import utcnow, as_utc
from taskbox.app.models.task import Task
from taskbox.app.models.task_enums import TaskStatus, TaskType
from taskbox.app.schemas.task_payloads import UserNotifyPayload
from taskbox.app.services.dispatcher import (
    CLAIM_EXPIRED,
    TaskDispatcher,
    compute_backoff_seconds,
)
from taskbox.app.services.outbox import enqueue
from taskbox.app.services.task_registry import TASK_DEFINITIONS, TaskDefinition

NOTIFY = {"user_id": 1, "title": "Hello", "body": "World"}


def replace_handler(mocker, task_type, payload_model, handler):
    mocker.patch.dict(
        TASK_DEFINITIONS,
        {task_type: TaskDefinition(task_type=task_type, payload_model=payload_model, handler=handler)},
    )


async def enqueue_one(session_factory, task_type=TaskType.USER_NOTIFY, payload=None, **kwargs):
    async with session_factory() as db:
        async with db.begin():
            handle = await enqueue(db, task_type, payload if payload is not None else NOTIFY, **kwargs)
    return handle.id


async def load(session_factory, task_id):
    async with session_factory() as db:
        return await db.get(Task, task_id)


async def insert_raw(session_factory, **values):
    """Insert a row bypassing enqueue validation (stale or corrupt rows)."""
    now = utcnow()
    task = Task(
        id=uuid.uuid4(),
        status=TaskStatus.PENDING,
        attempts=0,
        max_attempts=3,
        available_at=now,
        created_at=now,
        updated_at=now,
        **values,
    )
    async with session_factory() as db:
        async with db.begin():
            db.add(task)
    return task.id


# --- Backoff ---

def test_backoff_grows_exponentially():
    flat = lambda low, high: 1.0
    assert compute_backoff_seconds(4, jitter=flat) == 8
    assert compute_backoff_seconds(6, jitter=flat) == 32


def test_backoff_is_clamped():
    flat = lambda low, high: 1.0
    assert compute_backoff_seconds(1, jitter=flat) == 5
    assert compute_backoff_seconds(40, jitter=flat) == 3600
    assert compute_backoff_seconds(3, min_seconds=1, max_seconds=2, jitter=flat) == 2


def test_backoff_jitter_bounds():
    assert compute_backoff_seconds(5, jitter=lambda low, high: low) == pytest.approx(12.8)
    assert compute_backoff_seconds(5, jitter=lambda low, high: high) == pytest.approx(19.2)
    for _ in range(50):
        assert 12.8 <= compute_backoff_seconds(5) <= 19.2


# --- Dispatch cycle ---

@pytest.mark.asyncio
async def test_successful_task_is_done(session_factory, dispatcher):
    task_id = await enqueue_one(session_factory)

    result = await dispatcher.run_once(reason="test")

    assert result.claimed == 1
    assert result.skipped is False
    assert result.reason == "test"

    task = await load(session_factory, task_id)
    assert task.status == TaskStatus.DONE
    assert task.attempts == 1
    assert task.completed_at is not None
    assert task.claimed_by == "worker-a"


@pytest.mark.asyncio
async def test_future_task_is_not_claimed(session_factory, dispatcher):
    task_id = await enqueue_one(session_factory, available_at=utcnow() + timedelta(hours=1))

    result = await dispatcher.run_once()

    assert result.claimed == 0
    task = await load(session_factory, task_id)
    assert task.status == TaskStatus.PENDING
    assert task.attempts == 0


@pytest.mark.asyncio
async def test_claim_order_and_limit(session_factory, dispatcher):
    now = utcnow()
    late = await enqueue_one(session_factory, available_at=now - timedelta(minutes=1))
    early = await enqueue_one(session_factory, available_at=now - timedelta(minutes=5))

    claimed = await dispatcher.claim_batch(utcnow(), limit=1)

    assert [task.id for task in claimed] == [early]
    assert claimed[0].attempts == 1
    assert (await load(session_factory, late)).status == TaskStatus.PENDING


@pytest.mark.asyncio
async def test_transient_failure_retries_then_fails(session_factory, providers, test_settings, mocker):
    """attempt 1 of 2 fails -> retried; attempt 2 fails -> failed with attempts = 2."""
    handler = mocker.AsyncMock(side_effect=TransientTaskError("provider down"))
    replace_handler(mocker, TaskType.USER_NOTIFY, UserNotifyPayload, handler)
    task_id = await enqueue_one(session_factory, max_attempts=2)

    dispatcher = TaskDispatcher(session_factory, providers, test_settings, worker_id="worker-a")
    await dispatcher.run_once()

    task = await load(session_factory, task_id)
    assert task.status == TaskStatus.PENDING
    assert task.attempts == 1
    assert task.last_error == "provider down"
    assert task.claimed_at is None
    assert as_utc(task.available_at) > utcnow()

    # Not due until the backoff has elapsed
    assert (await dispatcher.run_once()).claimed == 0

    later = TaskDispatcher(
        session_factory, providers, test_settings,
        worker_id="worker-a", clock=lambda: utcnow() + timedelta(hours=2),
    )
    await later.run_once()

    task = await load(session_factory, task_id)
    assert task.status == TaskStatus.FAILED
    assert task.attempts == 2
    assert task.failed_at is not None
    assert handler.await_count == 2

    # Exhausted rows are never claimed again
    assert (await later.run_once()).claimed == 0


@pytest.mark.asyncio
async def test_fatal_error_fails_immediately(session_factory, dispatcher, mocker):
    handler = mocker.AsyncMock(side_effect=FatalTaskError("bad data"))
    replace_handler(mocker, TaskType.USER_NOTIFY, UserNotifyPayload, handler)
    task_id = await enqueue_one(session_factory, max_attempts=5)

    await dispatcher.run_once()

    task = await load(session_factory, task_id)
    assert task.status == TaskStatus.FAILED
    assert task.attempts == 1
    assert task.last_error == "bad data"


@pytest.mark.asyncio
async def test_timeout_counts_as_failed_attempt(session_factory, providers, test_settings, mocker):
    async def slow(payload, ctx):
        await asyncio.sleep(5)

    replace_handler(mocker, TaskType.USER_NOTIFY, UserNotifyPayload, slow)
    task_id = await enqueue_one(session_factory)
    settings = test_settings.model_copy(update={"outbox_task_timeout_seconds": 0.05})

    await TaskDispatcher(session_factory, providers, settings).run_once()

    task = await load(session_factory, task_id)
    assert task.status == TaskStatus.PENDING
    assert task.last_error == "timed out after 0.05s"


@pytest.mark.asyncio
async def test_unknown_type_fails_without_retry(session_factory, dispatcher):
    task_id = await insert_raw(session_factory, type="legacyTask", payload={})

    await dispatcher.run_once()

    task = await load(session_factory, task_id)
    assert task.status == TaskStatus.FAILED
    assert task.attempts == 1
    assert "Unknown task type" in task.last_error


@pytest.mark.asyncio
async def test_invalid_stored_payload_fails_without_retry(session_factory, dispatcher, mocker):
    handler = mocker.AsyncMock()
    replace_handler(mocker, TaskType.USER_NOTIFY, UserNotifyPayload, handler)
    task_id = await insert_raw(session_factory, type=TaskType.USER_NOTIFY.value, payload={"user_id": "x"})

    await dispatcher.run_once()

    task = await load(session_factory, task_id)
    assert task.status == TaskStatus.FAILED
    assert "Invalid payload" in task.last_error
    handler.assert_not_awaited()


@pytest.mark.asyncio
async def test_one_failing_task_does_not_affect_others(session_factory, dispatcher, mocker):
    async def picky(payload, ctx):
        if payload.title == "boom":
            raise RuntimeError("boom")

    replace_handler(mocker, TaskType.USER_NOTIFY, UserNotifyPayload, picky)
    bad = await enqueue_one(session_factory, payload={**NOTIFY, "title": "boom"})
    good = await enqueue_one(session_factory)

    result = await dispatcher.run_once()

    assert result.claimed == 2
    assert (await load(session_factory, bad)).status == TaskStatus.PENDING
    assert (await load(session_factory, good)).status == TaskStatus.DONE


# --- Reclaim and fencing ---

@pytest.mark.asyncio
async def test_stale_claim_is_released_once(session_factory, dispatcher):
    task_id = await enqueue_one(session_factory)
    now = utcnow()
    await dispatcher.claim_batch(now, limit=10)

    # Not stale yet
    assert await dispatcher.release_stale_claims(now + timedelta(seconds=60)) == 0

    later = now + timedelta(seconds=121)
    assert await dispatcher.release_stale_claims(later) == 1
    assert await dispatcher.release_stale_claims(later) == 0

    task = await load(session_factory, task_id)
    assert task.status == TaskStatus.PENDING
    assert task.attempts == 1
    assert task.claimed_by is None
    assert task.last_error == CLAIM_EXPIRED


@pytest.mark.asyncio
async def test_stale_claim_without_attempts_left_fails(session_factory, dispatcher):
    task_id = await enqueue_one(session_factory, max_attempts=1)
    now = utcnow()
    await dispatcher.claim_batch(now, limit=10)

    assert await dispatcher.release_stale_claims(now + timedelta(minutes=5)) == 1

    task = await load(session_factory, task_id)
    assert task.status == TaskStatus.FAILED
    assert task.attempts == 1
    assert task.last_error == CLAIM_EXPIRED


@pytest.mark.asyncio
async def test_late_finisher_cannot_overwrite_new_claim(session_factory, providers, test_settings):
    """A worker whose claim expired and was re-claimed elsewhere loses its outcome write."""
    task_id = await enqueue_one(session_factory)
    worker_a = TaskDispatcher(session_factory, providers, test_settings, worker_id="worker-a")
    worker_b = TaskDispatcher(session_factory, providers, test_settings, worker_id="worker-b")

    now = utcnow()
    [claim_a] = await worker_a.claim_batch(now, limit=10)
    await worker_b.release_stale_claims(now + timedelta(minutes=5))
    [claim_b] = await worker_b.claim_batch(now + timedelta(minutes=5), limit=10)
    assert claim_b.attempts == 2

    await worker_a.execute(claim_a)

    task = await load(session_factory, task_id)
    assert task.status == TaskStatus.CLAIMED
    assert task.claimed_by == "worker-b"
    assert task.attempts == 2

    await worker_b.execute(claim_b)
    assert (await load(session_factory, task_id)).status == TaskStatus.DONE


@pytest.mark.asyncio
async def test_attempts_never_exceed_max(session_factory, providers, test_settings, mocker):
    replace_handler(
        mocker, TaskType.USER_NOTIFY, UserNotifyPayload,
        mocker.AsyncMock(side_effect=RuntimeError("nope")),
    )
    task_id = await enqueue_one(session_factory, max_attempts=3)

    for hours in range(1, 8):
        await TaskDispatcher(
            session_factory, providers, test_settings,
            clock=lambda hours=hours: utcnow() + timedelta(hours=hours),
        ).run_once()

    task = await load(session_factory, task_id)
    assert task.status == TaskStatus.FAILED
    assert task.attempts == 3


# --- Cycle guards ---

@pytest.mark.asyncio
async def test_concurrent_cycle_reports_busy(dispatcher):
    async with dispatcher._cycle_lock:
        result = await dispatcher.run_once()

    assert result.skipped is True
    assert result.reason == "busy"


@pytest.mark.asyncio
async def test_disabled_dispatcher_skips(dispatcher):
    dispatcher.enabled = False

    result = await dispatcher.run_once()

    assert result.skipped is True
    assert result.reason == "disabled"


@pytest.mark.asyncio
async def test_missing_table_disables_dispatcher(engine, dispatcher):
    async with engine.begin() as conn:
        await conn.run_sync(Task.__table__.drop)

    result = await dispatcher.run_once()

    assert result.reason == "missing_table"
    assert dispatcher.enabled is False
    assert (await dispatcher.run_once()).reason == "disabled"


@pytest.mark.asyncio
async def test_cycle_error_is_reported_not_raised(dispatcher, mocker):
    mocker.patch.object(dispatcher, "release_stale_claims", side_effect=RuntimeError("db gone"))

    result = await dispatcher.run_once()

    assert result.skipped is True
    assert result.reason == "error"
    assert dispatcher.enabled is True


@pytest.mark.asyncio
async def test_handler_sees_attempt_context(session_factory, dispatcher, mocker):
    seen = {}

    async def record(payload, ctx):
        seen.update(attempt=ctx.attempt, max_attempts=ctx.max_attempts, final=ctx.is_final_attempt)

    replace_handler(mocker, TaskType.USER_NOTIFY, UserNotifyPayload, record)
    task_id = await enqueue_one(session_factory, max_attempts=1)

    await dispatcher.run_once()

    assert seen == {"attempt": 1, "max_attempts": 1, "final": True}
    async with session_factory() as db:
        statuses = (await db.execute(select(Task.status).where(Task.id == task_id))).scalars().all()
    assert statuses == [TaskStatus.DONE]


@pytest.mark.asyncio
async def test_queued_claim_is_not_run_by_two_workers(session_factory, providers, test_settings, mocker):
    """A row waiting for a free slot is skipped if another worker took it over meanwhile."""
    now = utcnow()
    first = await enqueue_one(session_factory, available_at=now - timedelta(minutes=2))
    second = await enqueue_one(session_factory, available_at=now - timedelta(minutes=1))
    calls = {first: 0, second: 0}
    started = asyncio.Event()
    release = asyncio.Event()

    async def handler(payload, ctx):
        calls[ctx.task_id] += 1
        if ctx.task_id == first and calls[first] == 1:
            started.set()
            await release.wait()

    replace_handler(mocker, TaskType.USER_NOTIFY, UserNotifyPayload, handler)
    worker_a = TaskDispatcher(session_factory, providers, test_settings, worker_id="worker-a", clock=lambda: now)
    worker_b = TaskDispatcher(
        session_factory, providers, test_settings,
        worker_id="worker-b", clock=lambda: now + timedelta(seconds=200),
    )

    run_a = asyncio.create_task(worker_a.run_once())
    await started.wait()
    await worker_b.run_once()
    release.set()
    await run_a

    assert calls[second] == 1
    task = await load(session_factory, second)
    assert task.status == TaskStatus.DONE
    assert task.claimed_by == "worker-b"
    assert task.attempts == 2


@pytest.mark.asyncio
async def test_definition_payload_model_validates_stored_payload(session_factory, dispatcher, mocker):
    class TicketPayload(UserNotifyPayload):
        ticket: str

    handler = mocker.AsyncMock()
    replace_handler(mocker, TaskType.USER_NOTIFY, TicketPayload, handler)
    task_id = await enqueue_one(session_factory)

    await dispatcher.run_once()

    task = await load(session_factory, task_id)
    assert task.status == TaskStatus.FAILED
    assert "Invalid payload" in task.last_error
    handler.assert_not_awaited()


def test_settings_reject_lock_timeout_below_task_timeout():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, outbox_lock_timeout_seconds=30, outbox_task_timeout_seconds=60)
