"""
Recurring task scheduler.

Each recurring type has a cadence (a pure `from -> next slot` function in
UTC) and an attempt budget. Scheduling enqueues the next slot with a dedupe
key derived from the type and the slot, so scheduling the same slot twice
(startup seeding, retries, several workers) leaves one active row.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Sequence, Tuple, Union

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taskbox.app.core.exceptions import describe_error
from taskbox.app.core.timeutils import utcnow, as_utc, to_iso_z
from taskbox.app.db.session import DbExecutor
from taskbox.app.models.task_enums import TaskType
from taskbox.app.schemas.task_payloads import ScheduledTaskPayload
from taskbox.app.services.outbox import TaskHandle, enqueue

logger = logging.getLogger("taskbox.scheduler")

DailyTime = Tuple[int, int]  # (hour, minute) UTC


# --- Cadences ---

def next_utc_daily_time(from_: datetime, times: Sequence[DailyTime]) -> datetime:
    """
    Soonest (hour, minute) slot strictly after `from_`.

    Wraps to the first slot of the next UTC day when none remain today.
    """
    if not times:
        raise ValueError("At least one daily time is required")
    from_ = as_utc(from_)
    slots = sorted(times)

    for hour, minute in slots:
        candidate = from_.replace(hour=hour, minute=minute, second=0, microsecond=0)
        if candidate > from_:
            return candidate

    hour, minute = slots[0]
    next_day = from_ + timedelta(days=1)
    return next_day.replace(hour=hour, minute=minute, second=0, microsecond=0)


def next_utc_hourly_minute(from_: datetime, minutes: Sequence[int]) -> datetime:
    """
    Soonest minute-of-hour strictly after `from_`.

    Wraps to the first minute of the next hour when none remain this hour.
    """
    if not minutes:
        raise ValueError("At least one minute is required")
    from_ = as_utc(from_)
    slots = sorted(minutes)

    for minute in slots:
        candidate = from_.replace(minute=minute, second=0, microsecond=0)
        if candidate > from_:
            return candidate

    next_hour = from_.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)
    return next_hour.replace(minute=slots[0])


def next_utc_minute(from_: datetime) -> datetime:
    """Start of the next whole UTC minute after `from_`."""
    return as_utc(from_).replace(second=0, microsecond=0) + timedelta(minutes=1)


@dataclass(frozen=True)
class RecurringTask:
    max_attempts: int
    next_at: Callable[[datetime], datetime]


RECURRING_TASKS: Dict[TaskType, RecurringTask] = {
    TaskType.CHARGE_PAYMENT_PLANS: RecurringTask(
        max_attempts=2,
        next_at=lambda from_: next_utc_daily_time(from_, [(0, 0)]),
    ),
    TaskType.SEND_PAYMENT_REMINDERS: RecurringTask(
        max_attempts=1,
        next_at=lambda from_: next_utc_hourly_minute(from_, [0, 30]),
    ),
    TaskType.SEND_APPOINTMENT_REMINDERS: RecurringTask(
        max_attempts=1,
        next_at=next_utc_minute,
    ),
    TaskType.REFRESH_APP_STORE_RECEIPTS: RecurringTask(
        max_attempts=2,
        next_at=lambda from_: next_utc_daily_time(from_, [(0, 30), (12, 30)]),
    ),
    TaskType.TAG_TRIALLED_DIDNT_SUB: RecurringTask(
        max_attempts=1,
        next_at=lambda from_: next_utc_hourly_minute(from_, [2, 32]),
    ),
}


def is_recurring(task_type: TaskType) -> bool:
    return task_type in RECURRING_TASKS


def build_scheduled_dedupe_key(task_type: TaskType, scheduled_at: datetime) -> str:
    return f"{task_type.value}:{to_iso_z(scheduled_at)}"


def parse_scheduled_at(payload: Any) -> Optional[datetime]:
    """`scheduled_at` of a stored recurring payload, or None if absent or unreadable."""
    try:
        return ScheduledTaskPayload.model_validate(payload).scheduled_at
    except ValidationError:
        return None


def reschedule_base(scheduled_at: Optional[datetime], now: Optional[datetime] = None) -> datetime:
    """
    Reference instant for the occurrence after one scheduled at `scheduled_at`.

    Slots already in the past coalesce into the next future slot instead
    of being replayed one by one.
    """
    now = as_utc(now or utcnow())
    if scheduled_at is None:
        return now
    return max(as_utc(scheduled_at), now)


async def schedule_next_recurring_task(
    executor: DbExecutor,
    task_type: TaskType,
    from_: datetime,
) -> Tuple[datetime, TaskHandle]:
    """
    Enqueue the next occurrence of `task_type` after `from_`.

    Runs on the caller's executor; the caller commits.

    Raises:
        KeyError: If `task_type` is not recurring
    """
    config = RECURRING_TASKS[task_type]
    next_at = config.next_at(from_)

    handle = await enqueue(
        executor,
        task_type,
        ScheduledTaskPayload(scheduled_at=next_at),
        available_at=next_at,
        dedupe_key=build_scheduled_dedupe_key(task_type, next_at),
        max_attempts=config.max_attempts,
    )
    return next_at, handle


# --- Explicit result of the reschedule step ---

@dataclass(frozen=True)
class Scheduled:
    task_type: TaskType
    next_at: datetime
    handle: TaskHandle
    ok: bool = True


@dataclass(frozen=True)
class ScheduleFailed:
    task_type: TaskType
    error: str
    ok: bool = False


ScheduleResult = Union[Scheduled, ScheduleFailed]


async def schedule_next_recurring_task_safe(
    session_factory: async_sessionmaker[AsyncSession],
    task_type: TaskType,
    from_: datetime,
) -> ScheduleResult:
    """
    Schedule the next occurrence in its own transaction.

    Never raises: failures come back as ScheduleFailed for the caller to log.
    """
    try:
        async with session_factory() as db:
            async with db.begin():
                next_at, handle = await schedule_next_recurring_task(db, task_type, from_)
    except Exception as exc:
        return ScheduleFailed(task_type=task_type, error=describe_error(exc))
    return Scheduled(task_type=task_type, next_at=next_at, handle=handle)


async def seed_recurring_tasks(
    session_factory: async_sessionmaker[AsyncSession],
    now: Optional[datetime] = None,
) -> Dict[TaskType, datetime]:
    """
    Make sure every recurring type has a pending occurrence.

    Called once per process start. Safe to repeat: slots are deduplicated.

    Returns:
        Next slot per recurring type
    """
    now = as_utc(now or utcnow())
    seeded: Dict[TaskType, datetime] = {}

    async with session_factory() as db:
        async with db.begin():
            for task_type in RECURRING_TASKS:
                next_at, _ = await schedule_next_recurring_task(db, task_type, now)
                seeded[task_type] = next_at

    logger.info(
        "Seeded recurring tasks: %s",
        ", ".join(f"{t.value}@{to_iso_z(at)}" for t, at in seeded.items()),
    )
    return seeded
