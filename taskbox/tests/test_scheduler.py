"""
Recurring Scheduler Tests.

Validates cadences, slot dedupe, seeding and rescheduling by the dispatcher.
"""

import pytest
from datetime import datetime, timezone, timedelta
from sqlalchemy import select

from taskbox.app.models.task import Task
from taskbox.app.models.task_enums import TaskStatus, TaskType, ACTIVE_STATUSES
from taskbox.app.schemas.task_payloads import ScheduledTaskPayload
from taskbox.app.services import scheduler
from taskbox.app.services.dispatcher import TaskDispatcher
from taskbox.app.services.outbox import enqueue
from taskbox.app.services.scheduler import (
    RECURRING_TASKS,
    Scheduled,
    ScheduleFailed,
    build_scheduled_dedupe_key,
    next_utc_daily_time,
    next_utc_hourly_minute,
    next_utc_minute,
    reschedule_base,
    schedule_next_recurring_task_safe,
    seed_recurring_tasks,
)
from taskbox.app.services.task_registry import TASK_DEFINITIONS, TaskDefinition


def at(hour, minute, second=0, day=1):
    return datetime(2024, 1, day, hour, minute, second, tzinfo=timezone.utc)


# --- Cadences ---

def test_daily_time_later_today():
    assert next_utc_daily_time(at(8, 0), [(9, 0)]) == at(9, 0)


def test_daily_time_wraps_to_next_day():
    assert next_utc_daily_time(at(9, 30), [(9, 0)]) == at(9, 0, day=2)


def test_daily_time_is_strictly_after():
    assert next_utc_daily_time(at(9, 0), [(9, 0)]) == at(9, 0, day=2)


def test_daily_time_picks_soonest_slot():
    slots = [(12, 30), (0, 30)]
    assert next_utc_daily_time(at(0, 45), slots) == at(12, 30)
    assert next_utc_daily_time(at(13, 0), slots) == at(0, 30, day=2)


def test_hourly_minute_wraps_to_next_hour():
    assert next_utc_hourly_minute(at(10, 45), [0, 30]) == at(11, 0)


def test_hourly_minute_same_hour():
    assert next_utc_hourly_minute(at(10, 10), [0, 30]) == at(10, 30)


def test_hourly_minute_wraps_past_midnight():
    assert next_utc_hourly_minute(at(23, 40), [2, 32]) == at(0, 2, day=2)


def test_every_minute():
    assert next_utc_minute(at(10, 10, 15)) == at(10, 11)
    assert next_utc_minute(at(10, 10)) == at(10, 11)


def test_cadence_rejects_empty_slots():
    with pytest.raises(ValueError):
        next_utc_daily_time(at(1, 0), [])
    with pytest.raises(ValueError):
        next_utc_hourly_minute(at(1, 0), [])


def test_recurring_types_and_budgets():
    assert {t: c.max_attempts for t, c in RECURRING_TASKS.items()} == {
        TaskType.CHARGE_PAYMENT_PLANS: 2,
        TaskType.SEND_PAYMENT_REMINDERS: 1,
        TaskType.SEND_APPOINTMENT_REMINDERS: 1,
        TaskType.REFRESH_APP_STORE_RECEIPTS: 2,
        TaskType.TAG_TRIALLED_DIDNT_SUB: 1,
    }
    assert RECURRING_TASKS[TaskType.CHARGE_PAYMENT_PLANS].next_at(at(13, 0)) == at(0, 0, day=2)


def test_dedupe_key_format():
    key = build_scheduled_dedupe_key(TaskType.CHARGE_PAYMENT_PLANS, at(0, 0, day=2))
    assert key == "chargePaymentPlans:2024-01-02T00:00:00.000Z"


def test_reschedule_base_coalesces_missed_slots():
    now = at(12, 0)
    assert reschedule_base(at(3, 0), now) == now
    assert reschedule_base(at(13, 0), now) == at(13, 0)
    assert reschedule_base(None, now) == now


# --- Seeding ---

async def active_rows(session_factory):
    async with session_factory() as db:
        result = await db.execute(select(Task).where(Task.status.in_(ACTIVE_STATUSES)))
        return result.scalars().all()


@pytest.mark.asyncio
async def test_seeding_twice_creates_no_duplicates(session_factory):
    now = at(10, 10)

    first = await seed_recurring_tasks(session_factory, now=now)
    second = await seed_recurring_tasks(session_factory, now=now + timedelta(seconds=5))

    assert first == second
    rows = await active_rows(session_factory)
    assert sorted(row.type for row in rows) == sorted(t.value for t in RECURRING_TASKS)

    charge = next(row for row in rows if row.type == TaskType.CHARGE_PAYMENT_PLANS.value)
    assert charge.dedupe_key == "chargePaymentPlans:2024-01-02T00:00:00.000Z"
    assert charge.max_attempts == 2
    assert charge.payload == {"scheduled_at": "2024-01-02T00:00:00Z"}


@pytest.mark.asyncio
async def test_safe_schedule_reports_failure(session_factory, mocker):
    mocker.patch.object(scheduler, "schedule_next_recurring_task", side_effect=RuntimeError("db down"))

    result = await schedule_next_recurring_task_safe(session_factory, TaskType.SEND_PAYMENT_REMINDERS, at(10, 10))

    assert isinstance(result, ScheduleFailed)
    assert result.ok is False
    assert result.error == "db down"


@pytest.mark.asyncio
async def test_safe_schedule_returns_slot(session_factory):
    result = await schedule_next_recurring_task_safe(session_factory, TaskType.SEND_PAYMENT_REMINDERS, at(10, 10))

    assert isinstance(result, Scheduled)
    assert result.next_at == at(10, 30)
    assert result.handle.created is True


# --- Rescheduling through the dispatcher ---

CLOCK = datetime(2030, 1, 1, 10, 10, tzinfo=timezone.utc)


async def enqueue_occurrence(session_factory, task_type, scheduled_at):
    async with session_factory() as db:
        async with db.begin():
            handle = await enqueue(
                db,
                task_type,
                ScheduledTaskPayload(scheduled_at=scheduled_at),
                available_at=scheduled_at,
                dedupe_key=build_scheduled_dedupe_key(task_type, scheduled_at),
                max_attempts=RECURRING_TASKS[task_type].max_attempts,
            )
    return handle.id


@pytest.fixture
def fixed_dispatcher(session_factory, providers, test_settings):
    return TaskDispatcher(session_factory, providers, test_settings, worker_id="worker-a", clock=lambda: CLOCK)


@pytest.mark.asyncio
async def test_next_occurrence_scheduled_after_success(session_factory, fixed_dispatcher):
    task_id = await enqueue_occurrence(session_factory, TaskType.TAG_TRIALLED_DIDNT_SUB, CLOCK - timedelta(minutes=8))

    await fixed_dispatcher.run_once()

    async with session_factory() as db:
        assert (await db.get(Task, task_id)).status == TaskStatus.DONE
    rows = await active_rows(session_factory)
    assert [row.dedupe_key for row in rows] == ["tagTrialledDidntSub:2030-01-01T10:32:00.000Z"]
    assert rows[0].status == TaskStatus.PENDING


@pytest.mark.asyncio
async def test_next_occurrence_scheduled_after_failure(session_factory, fixed_dispatcher, mocker):
    mocker.patch.dict(TASK_DEFINITIONS, {
        TaskType.TAG_TRIALLED_DIDNT_SUB: TaskDefinition(
            task_type=TaskType.TAG_TRIALLED_DIDNT_SUB,
            payload_model=ScheduledTaskPayload,
            handler=mocker.AsyncMock(side_effect=RuntimeError("mailchimp down")),
        ),
    })
    task_id = await enqueue_occurrence(session_factory, TaskType.TAG_TRIALLED_DIDNT_SUB, CLOCK - timedelta(minutes=8))

    await fixed_dispatcher.run_once()

    async with session_factory() as db:
        task = await db.get(Task, task_id)
    assert task.status == TaskStatus.FAILED
    assert task.attempts == 1
    rows = await active_rows(session_factory)
    assert [row.dedupe_key for row in rows] == ["tagTrialledDidntSub:2030-01-01T10:32:00.000Z"]


@pytest.mark.asyncio
async def test_future_slot_is_base_for_next_occurrence(session_factory, providers, test_settings):
    """An occurrence run early (clock behind its slot) schedules the slot after it."""
    slot = CLOCK + timedelta(minutes=22)  # 10:32
    await enqueue_occurrence(session_factory, TaskType.TAG_TRIALLED_DIDNT_SUB, slot)

    await TaskDispatcher(session_factory, providers, test_settings, clock=lambda: slot).run_once()

    rows = await active_rows(session_factory)
    assert [row.dedupe_key for row in rows] == ["tagTrialledDidntSub:2030-01-01T11:02:00.000Z"]


@pytest.mark.asyncio
async def test_scheduler_failure_does_not_break_cycle(session_factory, fixed_dispatcher, mocker):
    mocker.patch.object(scheduler, "schedule_next_recurring_task", side_effect=RuntimeError("db down"))
    task_id = await enqueue_occurrence(session_factory, TaskType.TAG_TRIALLED_DIDNT_SUB, CLOCK - timedelta(minutes=8))
    other_id = await enqueue_occurrence(session_factory, TaskType.SEND_APPOINTMENT_REMINDERS, CLOCK - timedelta(minutes=1))

    result = await fixed_dispatcher.run_once()

    assert result.skipped is False
    assert result.claimed == 2
    async with session_factory() as db:
        assert (await db.get(Task, task_id)).status == TaskStatus.DONE
        assert (await db.get(Task, other_id)).status == TaskStatus.DONE
    assert await active_rows(session_factory) == []


@pytest.mark.asyncio
async def test_charge_payment_plans_slot_dedupe(session_factory):
    """Seeding and a finished occurrence both scheduling the same slot yield one row."""
    await seed_recurring_tasks(session_factory, now=at(10, 10))
    async with session_factory() as db:
        async with db.begin():
            next_at, handle = await scheduler.schedule_next_recurring_task(
                db, TaskType.CHARGE_PAYMENT_PLANS, at(0, 0)
            )

    assert next_at == at(0, 0, day=2)
    assert handle.created is False
    rows = [row for row in await active_rows(session_factory) if row.type == "chargePaymentPlans"]
    assert len(rows) == 1


@pytest.mark.asyncio
async def test_expired_recurring_claim_still_reschedules(session_factory, fixed_dispatcher):
    task_id = await enqueue_occurrence(session_factory, TaskType.TAG_TRIALLED_DIDNT_SUB, CLOCK - timedelta(minutes=8))
    await fixed_dispatcher.claim_batch(CLOCK, limit=10)

    assert await fixed_dispatcher.release_stale_claims(CLOCK + timedelta(minutes=5)) == 1

    async with session_factory() as db:
        assert (await db.get(Task, task_id)).status == TaskStatus.FAILED
    rows = await active_rows(session_factory)
    assert [row.dedupe_key for row in rows] == ["tagTrialledDidntSub:2030-01-01T10:32:00.000Z"]
