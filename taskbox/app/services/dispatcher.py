"""
Outbox Dispatcher.

Claims due rows from the `tasks` table, runs their handlers and records the
outcome. Any number of dispatchers (threads of one process, or processes on
many hosts) may poll the same table: they coordinate only through row-level
claims.

Per cycle:
1. Release stale claims (crashed or stuck workers)
2. Claim a batch of due rows
3. Execute them with bounded concurrency
4. Reschedule recurring types, whatever the outcome
"""

import os
import socket
import uuid
import random
import asyncio
import logging
from contextlib import suppress
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional

from redis.exceptions import RedisError
from sqlalchemy import select, update
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taskbox.app.core.config import Settings, settings as default_settings
from taskbox.app.core.exceptions import (
    DispatcherAlreadyStartedError,
    FatalTaskError,
    TaskValidationError,
    describe_error,
)
from taskbox.app.core.reliability import run_with_timeout
from taskbox.app.core.timeutils import utcnow, as_utc, later_of
from taskbox.app.models.task import Task
from taskbox.app.models.task_enums import TaskStatus, TaskType
from taskbox.app.schemas.task_payloads import parse_task_payload
from taskbox.app.services.providers.factory import Providers
from taskbox.app.services.scheduler import (
    ScheduleFailed,
    is_recurring,
    parse_scheduled_at,
    reschedule_base,
    schedule_next_recurring_task_safe,
)
from taskbox.app.services.task_context import TaskContext
from taskbox.app.services.task_registry import get_task_definition

logger = logging.getLogger("taskbox.dispatcher")

CLAIM_EXPIRED = "claim expired"


def compute_backoff_seconds(
    attempts: int,
    min_seconds: float = 5,
    max_seconds: float = 3600,
    jitter: Callable[[float, float], float] = random.uniform,
) -> float:
    """
    Delay before the next attempt after `attempts` failed ones.

    Exponential (`2 ** (attempts - 1)` seconds), jittered by x[0.8, 1.2],
    then clamped to [min_seconds, max_seconds].
    """
    exponent = max(attempts - 1, 0)
    # Past 2**31 seconds the cap wins anyway.
    base = float(2 ** min(exponent, 31))
    delay = base * jitter(0.8, 1.2)
    return min(max(delay, min_seconds), max_seconds)


@dataclass(frozen=True)
class DispatchCycleResult:
    """Outcome of one `run_once` call."""
    claimed: int
    skipped: bool
    reason: str


@dataclass(frozen=True)
class ClaimedTask:
    """Snapshot of a row as claimed; `attempts` fences every outcome write."""
    id: uuid.UUID
    type: str
    payload: Any
    attempts: int
    max_attempts: int
    available_at: datetime

    @property
    def log_extra(self) -> dict:
        return {
            "task_id": str(self.id),
            "task_type": self.type,
            "attempt": self.attempts,
            "max_attempts": self.max_attempts,
        }


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


def _is_missing_table(error: DBAPIError) -> bool:
    message = str(error.orig).lower()
    if "no such table" in message:
        return True
    return "does not exist" in message and Task.__tablename__ in message


class TaskDispatcher:
    """
    One dispatcher instance.

    `run_once` never raises: per-task failures are recorded on their rows,
    cycle-level failures are logged and reported in the result.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        providers: Providers,
        settings: Settings = default_settings,
        worker_id: Optional[str] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.providers = providers
        self.settings = settings
        self.worker_id = worker_id or default_worker_id()
        self.clock = clock
        self.enabled = True
        self._cycle_lock = asyncio.Lock()

    def _log_extra(self, **fields) -> dict:
        return {"worker_id": self.worker_id, **fields}

    # --- Cycle ---

    async def run_once(self, limit: Optional[int] = None, reason: str = "manual") -> DispatchCycleResult:
        """
        Run one dispatch cycle.

        Args:
            limit: Max rows to claim (default: outbox_claim_batch_size)
            reason: Who asked (poller, api, manual); echoed in the result

        Returns:
            DispatchCycleResult; skipped cycles carry busy, disabled,
            missing_table or error as reason
        """
        if not self.enabled:
            return DispatchCycleResult(claimed=0, skipped=True, reason="disabled")
        if self._cycle_lock.locked():
            return DispatchCycleResult(claimed=0, skipped=True, reason="busy")

        async with self._cycle_lock:
            try:
                now = as_utc(self.clock())
                await self.release_stale_claims(now)
                tasks = await self.claim_batch(now, limit or self.settings.outbox_claim_batch_size)
                if tasks:
                    await self._execute_all(tasks)
            except DBAPIError as exc:
                if _is_missing_table(exc):
                    self.enabled = False
                    logger.warning(
                        "Table '%s' is missing, dispatcher disabled", Task.__tablename__,
                        extra=self._log_extra(reason="missing_table"),
                    )
                    return DispatchCycleResult(claimed=0, skipped=True, reason="missing_table")
                logger.exception("Dispatch cycle failed", extra=self._log_extra(reason=reason))
                return DispatchCycleResult(claimed=0, skipped=True, reason="error")
            except Exception:
                logger.exception("Dispatch cycle failed", extra=self._log_extra(reason=reason))
                return DispatchCycleResult(claimed=0, skipped=True, reason="error")

        if tasks:
            logger.info("Dispatch cycle finished", extra=self._log_extra(reason=reason, claimed=len(tasks)))
        return DispatchCycleResult(claimed=len(tasks), skipped=False, reason=reason)

    async def _execute_all(self, tasks: List[ClaimedTask]) -> None:
        semaphore = asyncio.Semaphore(max(self.settings.outbox_dispatch_concurrency, 1))

        async def _bounded(task: ClaimedTask) -> None:
            async with semaphore:
                await self.execute(task)

        await asyncio.gather(*(_bounded(task) for task in tasks))

    # --- Claims ---

    async def release_stale_claims(self, now: datetime) -> int:
        """
        Return rows whose claim outlived the lock timeout to the queue.

        Rows with attempts left go back to pending (available now); rows
        with none left become failed. Both updates are conditional on the
        row still being claimed before the cutoff, so each stale claim is
        released at most once.

        Returns:
            Number of rows released or failed
        """
        cutoff = now - timedelta(seconds=self.settings.outbox_lock_timeout_seconds)
        stale = (
            Task.status == TaskStatus.CLAIMED,
            Task.claimed_at < cutoff,
        )

        async with self.session_factory() as db:
            async with db.begin():
                exhausted = (await db.execute(
                    update(Task)
                    .where(*stale, Task.attempts >= Task.max_attempts)
                    .values(
                        status=TaskStatus.FAILED,
                        failed_at=now,
                        last_error=CLAIM_EXPIRED,
                        updated_at=now,
                    )
                    .returning(Task.id, Task.type, Task.payload, Task.attempts, Task.max_attempts)
                    .execution_options(synchronize_session=False)
                )).all()

                released = (await db.execute(
                    update(Task)
                    .where(*stale, Task.attempts < Task.max_attempts)
                    .values(
                        status=TaskStatus.PENDING,
                        available_at=now,
                        claimed_at=None,
                        claimed_by=None,
                        last_error=CLAIM_EXPIRED,
                        updated_at=now,
                    )
                    .returning(Task.id, Task.type)
                    .execution_options(synchronize_session=False)
                )).all()

        for row in exhausted:
            logger.error(
                "Task failed: claim expired with no attempts left",
                extra=self._log_extra(
                    task_id=str(row.id), task_type=row.type,
                    attempt=row.attempts, max_attempts=row.max_attempts,
                    status=TaskStatus.FAILED.value,
                ),
            )
            # Failed without a handler run: schedule the next occurrence here.
            await self._reschedule_if_recurring(row.type, row.payload, {"task_id": str(row.id), "task_type": row.type})
        for row in released:
            logger.warning(
                "Released expired claim",
                extra=self._log_extra(task_id=str(row.id), task_type=row.type, status=TaskStatus.PENDING.value),
            )
        return len(exhausted) + len(released)

    async def claim_batch(self, now: datetime, limit: int) -> List[ClaimedTask]:
        """
        Claim up to `limit` due rows for this worker.

        Candidates are locked with FOR UPDATE SKIP LOCKED (ignored on
        SQLite), then each is claimed with an update conditional on it still
        being pending at the same attempt count. Only rows whose update took
        effect are returned.
        """
        async with self.session_factory() as db:
            async with db.begin():
                candidates = (await db.execute(
                    select(Task.id, Task.attempts)
                    .where(
                        Task.status == TaskStatus.PENDING,
                        Task.available_at <= now,
                        Task.attempts < Task.max_attempts,
                    )
                    .order_by(Task.available_at, Task.created_at)
                    .limit(limit)
                    .with_for_update(skip_locked=True)
                )).all()

                claimed: List[ClaimedTask] = []
                for candidate in candidates:
                    row = (await db.execute(
                        update(Task)
                        .where(
                            Task.id == candidate.id,
                            Task.status == TaskStatus.PENDING,
                            Task.attempts == candidate.attempts,
                        )
                        .values(
                            status=TaskStatus.CLAIMED,
                            claimed_at=now,
                            claimed_by=self.worker_id,
                            attempts=Task.attempts + 1,
                            updated_at=now,
                        )
                        .returning(
                            Task.id, Task.type, Task.payload,
                            Task.attempts, Task.max_attempts, Task.available_at,
                        )
                        .execution_options(synchronize_session=False)
                    )).first()

                    if row is not None:
                        claimed.append(ClaimedTask(
                            id=row.id,
                            type=row.type,
                            payload=row.payload,
                            attempts=row.attempts,
                            max_attempts=row.max_attempts,
                            available_at=as_utc(row.available_at),
                        ))
        return claimed

    # --- Execution ---

    async def execute(self, task: ClaimedTask) -> TaskStatus:
        """
        Run one claimed task and record its outcome.

        Returns:
            The status written (or intended, if the claim was lost)
        """
        try:
            if not await self._confirm_claim(task):
                logger.warning(
                    "Claim lost before start, task skipped",
                    extra=self._log_extra(**task.log_extra),
                )
                return TaskStatus.CLAIMED
            status = await self._run(task)
        except Exception:
            # Outcome write failed; the claim expires and the row is retried.
            logger.exception("Recording task outcome failed", extra=self._log_extra(**task.log_extra))
            status = TaskStatus.CLAIMED

        await self._reschedule_if_recurring(task.type, task.payload, task.log_extra)
        return status

    async def _confirm_claim(self, task: ClaimedTask) -> bool:
        """
        Re-stamp `claimed_at` just before the handler runs.

        Rows wait in the batch for a free concurrency slot; the staleness
        window counts from here. False if the row was released or re-claimed
        meanwhile.
        """
        async with self.session_factory() as db:
            async with db.begin():
                row = (await db.execute(
                    update(Task)
                    .where(
                        Task.id == task.id,
                        Task.status == TaskStatus.CLAIMED,
                        Task.attempts == task.attempts,
                        Task.claimed_by == self.worker_id,
                    )
                    .values(claimed_at=as_utc(self.clock()))
                    .returning(Task.id)
                    .execution_options(synchronize_session=False)
                )).first()
        return row is not None

    async def _run(self, task: ClaimedTask) -> TaskStatus:
        try:
            definition = get_task_definition(task.type)
            payload = parse_task_payload(definition.task_type, task.payload, definition.payload_model)
        except TaskValidationError as exc:
            return await self._mark_failed(task, exc)

        ctx = TaskContext(
            session_factory=self.session_factory,
            settings=self.settings,
            providers=self.providers,
            task_id=task.id,
            task_type=definition.task_type,
            attempt=task.attempts,
            max_attempts=task.max_attempts,
        )
        timeout = self.settings.outbox_task_timeout_seconds

        try:
            await run_with_timeout(definition.handler(payload, ctx), timeout)
        except FatalTaskError as exc:
            return await self._mark_failed(task, exc)
        except asyncio.TimeoutError:
            return await self._retry_or_fail(task, f"timed out after {timeout}s")
        except Exception as exc:
            return await self._retry_or_fail(task, describe_error(exc))

        return await self._mark_done(task)

    async def _reschedule_if_recurring(self, tag: str, payload: Any, log_extra: dict) -> None:
        try:
            task_type = TaskType(tag)
        except ValueError:
            return
        if not is_recurring(task_type):
            return

        base = reschedule_base(parse_scheduled_at(payload), as_utc(self.clock()))
        result = await schedule_next_recurring_task_safe(self.session_factory, task_type, base)
        if isinstance(result, ScheduleFailed):
            logger.error(
                "Scheduling next occurrence failed: %s", result.error,
                extra=self._log_extra(**log_extra),
            )

    # --- Outcome writes, fenced on (id, attempts) ---

    async def _write_outcome(self, task: ClaimedTask, allowed: tuple, values: dict) -> bool:
        async with self.session_factory() as db:
            async with db.begin():
                row = (await db.execute(
                    update(Task)
                    .where(
                        Task.id == task.id,
                        Task.attempts == task.attempts,
                        Task.status.in_(allowed),
                    )
                    .values(updated_at=as_utc(self.clock()), **values)
                    .returning(Task.id)
                    .execution_options(synchronize_session=False)
                )).first()

        if row is None:
            logger.warning(
                "Lost claim, outcome not recorded",
                extra=self._log_extra(status=values["status"].value, **task.log_extra),
            )
            return False
        return True

    async def _mark_done(self, task: ClaimedTask) -> TaskStatus:
        # A row released as stale but not yet re-claimed still carries this attempt count.
        written = await self._write_outcome(
            task,
            (TaskStatus.CLAIMED, TaskStatus.PENDING),
            {"status": TaskStatus.DONE, "completed_at": as_utc(self.clock())},
        )
        if written:
            logger.info("Task done", extra=self._log_extra(status=TaskStatus.DONE.value, **task.log_extra))
        return TaskStatus.DONE

    async def _mark_failed(self, task: ClaimedTask, error: Any) -> TaskStatus:
        message = error if isinstance(error, str) else describe_error(error)
        written = await self._write_outcome(
            task,
            (TaskStatus.CLAIMED,),
            {"status": TaskStatus.FAILED, "failed_at": as_utc(self.clock()), "last_error": message},
        )
        if written:
            logger.error(
                "Task failed: %s", message,
                extra=self._log_extra(status=TaskStatus.FAILED.value, **task.log_extra),
            )
        return TaskStatus.FAILED

    async def _retry_or_fail(self, task: ClaimedTask, message: str) -> TaskStatus:
        if task.attempts >= task.max_attempts:
            return await self._mark_failed(task, message)

        now = as_utc(self.clock())
        delay = compute_backoff_seconds(
            task.attempts,
            min_seconds=self.settings.outbox_backoff_min_seconds,
            max_seconds=self.settings.outbox_backoff_max_seconds,
        )
        available_at = later_of(task.available_at, now + timedelta(seconds=delay))

        written = await self._write_outcome(
            task,
            (TaskStatus.CLAIMED,),
            {
                "status": TaskStatus.PENDING,
                "available_at": available_at,
                "claimed_at": None,
                "claimed_by": None,
                "last_error": message,
            },
        )
        if written:
            logger.warning(
                "Task attempt failed, retrying in %.0fs: %s", delay, message,
                extra=self._log_extra(status=TaskStatus.PENDING.value, **task.log_extra),
            )
        return TaskStatus.PENDING


class DispatcherController:
    """
    Owns the polling loop of one TaskDispatcher.

    Created by the composition root (FastAPI lifespan or the worker CLI) and
    stored on `app.state`; there is no module-level dispatcher handle.
    """

    def __init__(
        self,
        dispatcher: TaskDispatcher,
        poll_interval_seconds: Optional[float] = None,
        redis=None,
        wake_channel: Optional[str] = None,
    ):
        self.dispatcher = dispatcher
        self.poll_interval_seconds = (
            poll_interval_seconds
            if poll_interval_seconds is not None
            else dispatcher.settings.outbox_poll_interval_seconds
        )
        self.redis = redis
        self.wake_channel = wake_channel or dispatcher.settings.outbox_wake_channel
        self._wake = asyncio.Event()
        self._loop_task: Optional[asyncio.Task] = None
        self._listener_task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def start(self) -> None:
        """
        Start polling in the background.

        Raises:
            DispatcherAlreadyStartedError: If the loop is already running
        """
        if self.running:
            raise DispatcherAlreadyStartedError()

        self._wake.clear()
        self._loop_task = asyncio.create_task(self._poll(), name="taskbox-dispatcher")
        if self.redis is not None:
            self._listener_task = asyncio.create_task(self._listen(), name="taskbox-dispatcher-wake")
        logger.info(
            "Dispatcher started",
            extra=self.dispatcher._log_extra(),
        )

    async def stop(self) -> None:
        """Cancel the loop (and wake listener) and wait for them to finish."""
        for task in (self._listener_task, self._loop_task):
            if task is None:
                continue
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        self._listener_task = None
        self._loop_task = None
        logger.info("Dispatcher stopped", extra=self.dispatcher._log_extra())

    def wake(self) -> None:
        """Cut the current poll sleep short."""
        self._wake.set()

    async def run_now(self, limit: Optional[int] = None, reason: str = "api") -> DispatchCycleResult:
        return await self.dispatcher.run_once(limit=limit, reason=reason)

    async def _poll(self) -> None:
        batch_size = self.dispatcher.settings.outbox_claim_batch_size
        while True:
            result = await self.dispatcher.run_once(reason="poller")
            if result.reason in ("disabled", "missing_table"):
                logger.warning("Dispatcher loop exiting", extra=self.dispatcher._log_extra(reason=result.reason))
                return

            # A full batch means more rows are probably due.
            if result.claimed >= batch_size:
                continue

            with suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._wake.wait(), timeout=self.poll_interval_seconds)
            self._wake.clear()

    async def _listen(self) -> None:
        pubsub = self.redis.pubsub()
        try:
            await pubsub.subscribe(self.wake_channel)
            async for message in pubsub.listen():
                if message.get("type") == "message":
                    self.wake()
        except (RedisError, OSError):
            logger.warning("Wake listener stopped, falling back to polling", exc_info=True)
        finally:
            await pubsub.aclose()


def install_dispatcher(app, controller: DispatcherController) -> DispatcherController:
    """
    Attach the process's single controller to `app.state`.

    Raises:
        DispatcherAlreadyStartedError: If one is already installed
    """
    if getattr(app.state, "dispatcher", None) is not None:
        raise DispatcherAlreadyStartedError()
    app.state.dispatcher = controller
    return controller
