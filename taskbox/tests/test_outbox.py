"""
Outbox Enqueue Tests.

Validates dedupe, defaults and payload validation of `enqueue`.
"""

import pytest
from datetime import timedelta
from sqlalchemy import select, func, update

from taskbox.app.core.exceptions import TaskValidationError, UnknownTaskTypeError
from taskbox.app.core.timeutils import utcnow, as_utc
from taskbox.app.models.task import Task
from taskbox.app.models.task_enums import TaskStatus, TaskType
from taskbox.app.schemas.task_payloads import SendSmsPayload
from taskbox.app.services.outbox import enqueue


async def count_tasks(session_factory, **filters):
    async with session_factory() as db:
        query = select(func.count(Task.id))
        for column, value in filters.items():
            query = query.where(getattr(Task, column) == value)
        return (await db.execute(query)).scalar_one()


@pytest.mark.asyncio
async def test_enqueue_defaults(session_factory):
    """A plain enqueue is pending, due now, with the type's attempt budget."""
    before = utcnow()
    async with session_factory() as db:
        async with db.begin():
            handle = await enqueue(db, TaskType.SEND_SMS, {"id": 7})

    assert handle.created is True
    assert handle.task_type == TaskType.SEND_SMS

    async with session_factory() as db:
        task = await db.get(Task, handle.id)

    assert task.type == "sendSms"
    assert task.payload == {"id": 7}
    assert task.status == TaskStatus.PENDING
    assert task.attempts == 0
    assert task.max_attempts == 3
    assert as_utc(task.available_at) >= before - timedelta(seconds=1)


@pytest.mark.asyncio
async def test_enqueue_accepts_tag_and_model(session_factory):
    async with session_factory() as db:
        async with db.begin():
            handle = await enqueue(db, "sendSms", SendSmsPayload(id=3), max_attempts=9)

    async with session_factory() as db:
        task = await db.get(Task, handle.id)
    assert task.max_attempts == 9
    assert task.payload == {"id": 3}


@pytest.mark.asyncio
async def test_duplicate_active_dedupe_key_is_noop(session_factory):
    """Enqueueing the same key twice in sequence leaves one active row."""
    key = "chargePaymentPlans:2024-01-02T00:00:00.000Z"

    async with session_factory() as db:
        async with db.begin():
            first = await enqueue(db, TaskType.CHARGE_PAYMENT_PLANS, {}, dedupe_key=key)
    async with session_factory() as db:
        async with db.begin():
            second = await enqueue(db, TaskType.CHARGE_PAYMENT_PLANS, {}, dedupe_key=key)

    assert first.created is True
    assert second.created is False
    assert second.id == first.id
    assert await count_tasks(session_factory, dedupe_key=key) == 1


@pytest.mark.asyncio
async def test_duplicate_key_in_same_transaction(session_factory):
    async with session_factory() as db:
        async with db.begin():
            first = await enqueue(db, TaskType.SEND_MAIL, {"id": 1}, dedupe_key="mail:1")
            second = await enqueue(db, TaskType.SEND_MAIL, {"id": 1}, dedupe_key="mail:1")

    assert second.id == first.id
    assert await count_tasks(session_factory, dedupe_key="mail:1") == 1


@pytest.mark.asyncio
async def test_finished_row_does_not_block_its_key(session_factory):
    """Dedupe only covers pending and claimed rows."""
    async with session_factory() as db:
        async with db.begin():
            first = await enqueue(db, TaskType.SEND_MAIL, {"id": 1}, dedupe_key="mail:1")
            await db.execute(update(Task).where(Task.id == first.id).values(status=TaskStatus.DONE))

    async with session_factory() as db:
        async with db.begin():
            second = await enqueue(db, TaskType.SEND_MAIL, {"id": 1}, dedupe_key="mail:1")

    assert second.created is True
    assert second.id != first.id
    assert await count_tasks(session_factory, dedupe_key="mail:1") == 2


@pytest.mark.asyncio
async def test_enqueue_rolls_back_with_caller(session_factory):
    """Nothing is committed unless the caller's transaction commits."""
    async with session_factory() as db:
        await db.begin()
        await enqueue(db, TaskType.SEND_SMS, {"id": 1})
        await db.rollback()

    assert await count_tasks(session_factory) == 0


@pytest.mark.asyncio
async def test_unknown_type_rejected(session_factory):
    async with session_factory() as db:
        with pytest.raises(UnknownTaskTypeError):
            await enqueue(db, "doesNotExist", {})


@pytest.mark.asyncio
async def test_invalid_payload_rejected(session_factory):
    async with session_factory() as db:
        with pytest.raises(TaskValidationError):
            await enqueue(db, TaskType.SEND_SMS, {"id": "not-a-number"})
        with pytest.raises(TaskValidationError):
            await enqueue(db, TaskType.SEND_SMS, {"id": 1, "extra": True})

    assert await count_tasks(session_factory) == 0


@pytest.mark.asyncio
async def test_max_attempts_must_be_positive(session_factory):
    async with session_factory() as db:
        with pytest.raises(TaskValidationError):
            await enqueue(db, TaskType.SEND_SMS, {"id": 1}, max_attempts=0)
