"""
Outbox Enqueue API.

Inserts task rows on the caller's executor so they commit (or roll back)
together with the business writes that made them necessary.
"""

import uuid
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Union

from sqlalchemy import select, text
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from taskbox.app.core.config import settings
from taskbox.app.core.exceptions import TaskValidationError
from taskbox.app.core.timeutils import utcnow, as_utc
from taskbox.app.db.session import DbExecutor, dialect_name
from taskbox.app.models.task import Task, ACTIVE_ROW_PREDICATE
from taskbox.app.models.task_enums import TaskType, TaskStatus, ACTIVE_STATUSES
from taskbox.app.schemas.task_payloads import (
    TaskPayload,
    resolve_task_type,
    parse_task_payload,
    serialize_task_payload,
)

logger = logging.getLogger("taskbox.outbox")

# Per-type attempt budgets. Recurring types get theirs from the scheduler.
TASK_MAX_ATTEMPTS: Dict[TaskType, int] = {
    TaskType.SEND_SMS: 3,
    TaskType.SEND_MAIL: 3,
    TaskType.USER_NOTIFY: 5,
}

# A conflicting active row can finish between our insert and the lookup.
_DEDUPE_INSERT_ROUNDS = 3


@dataclass(frozen=True)
class TaskHandle:
    """Identity of an enqueued (or already active, deduplicated) task."""
    id: uuid.UUID
    task_type: TaskType
    dedupe_key: Optional[str]
    created: bool


def default_max_attempts(task_type: TaskType) -> int:
    return TASK_MAX_ATTEMPTS.get(task_type, settings.outbox_default_max_attempts)


def _insert_statement(executor: DbExecutor):
    name = dialect_name(executor)
    if name == "postgresql":
        return pg_insert(Task)
    if name == "sqlite":
        return sqlite_insert(Task)
    raise RuntimeError(f"Outbox does not support the '{name}' dialect")


async def _find_active_task_id(executor: DbExecutor, dedupe_key: str) -> Optional[uuid.UUID]:
    result = await executor.execute(
        select(Task.id).where(
            Task.dedupe_key == dedupe_key,
            Task.status.in_(ACTIVE_STATUSES),
        )
    )
    return result.scalar_one_or_none()


async def enqueue(
    executor: DbExecutor,
    task_type: Union[TaskType, str],
    payload: Union[TaskPayload, Dict[str, Any]],
    *,
    available_at: Optional[datetime] = None,
    dedupe_key: Optional[str] = None,
    max_attempts: Optional[int] = None,
) -> TaskHandle:
    """
    Enqueue a task on the caller's executor.

    The caller owns the transaction: nothing is committed here.

    Args:
        executor: AsyncSession or AsyncConnection (possibly mid-transaction)
        task_type: TaskType member or its tag
        payload: Payload model or dict matching the type's schema
        available_at: Earliest claim time (default: now)
        dedupe_key: Skip the insert if an active row already has this key
        max_attempts: Attempt budget (default: type-specific)

    Returns:
        Handle of the new row, or of the existing active row when deduplicated

    Raises:
        UnknownTaskTypeError: If `task_type` is not a known tag
        TaskValidationError: If the payload does not match the schema
    """
    resolved = resolve_task_type(task_type)
    model = parse_task_payload(resolved, payload)

    if max_attempts is None:
        max_attempts = default_max_attempts(resolved)
    if max_attempts < 1:
        raise TaskValidationError(resolved.value, "max_attempts must be at least 1")

    now = utcnow()
    values = {
        "type": resolved.value,
        "payload": serialize_task_payload(model),
        "dedupe_key": dedupe_key,
        "status": TaskStatus.PENDING,
        "attempts": 0,
        "max_attempts": max_attempts,
        "available_at": as_utc(available_at) if available_at else now,
        "created_at": now,
        "updated_at": now,
    }

    for _ in range(_DEDUPE_INSERT_ROUNDS):
        task_id = uuid.uuid4()
        stmt = _insert_statement(executor).values(id=task_id, **values)
        if dedupe_key is not None:
            stmt = stmt.on_conflict_do_nothing(
                index_elements=["dedupe_key"],
                index_where=text(ACTIVE_ROW_PREDICATE),
            )
        result = await executor.execute(stmt.returning(Task.id))

        if result.scalar_one_or_none() is not None:
            logger.debug(
                "Enqueued task",
                extra={"task_id": str(task_id), "task_type": resolved.value},
            )
            return TaskHandle(id=task_id, task_type=resolved, dedupe_key=dedupe_key, created=True)

        existing_id = await _find_active_task_id(executor, dedupe_key)
        if existing_id is not None:
            logger.debug(
                "Dedupe key already active, enqueue skipped",
                extra={"task_id": str(existing_id), "task_type": resolved.value},
            )
            return TaskHandle(id=existing_id, task_type=resolved, dedupe_key=dedupe_key, created=False)

    raise RuntimeError(f"Could not enqueue '{resolved.value}' with dedupe key '{dedupe_key}'")
