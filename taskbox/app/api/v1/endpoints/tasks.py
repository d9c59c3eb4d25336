"""
Task Ops API Endpoints.

Manual dispatch trigger and read-only inspection of outbox rows.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Path, Query, Request, status
from sqlalchemy import desc, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taskbox.app.core.config import settings
from taskbox.app.core.dependencies import require_dispatch_token
from taskbox.app.core.exceptions import ResourceNotFoundError
from taskbox.app.db.session import get_db, get_session_factory
from taskbox.app.models.task import Task
from taskbox.app.models.task_enums import TaskStatus
from taskbox.app.schemas.task import DispatchResponse, TaskListResponse, TaskResponse
from taskbox.app.services.dispatcher import TaskDispatcher

router = APIRouter(prefix="/tasks", tags=["Tasks"])


@router.post("/dispatch", response_model=DispatchResponse, dependencies=[Depends(require_dispatch_token)])
async def dispatch_tasks(
    request: Request,
    limit: Optional[int] = Query(None, ge=1, le=500, description="Max rows to claim"),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    """
    Run one dispatch cycle now.

    Uses the process's dispatcher when one is installed; otherwise (loop
    disabled, e.g. serverless deployments driven by a cron pinger) a
    one-off dispatcher runs the cycle.
    """
    controller = getattr(request.app.state, "dispatcher", None)
    if controller is not None:
        result = await controller.run_now(limit=limit, reason="api")
    else:
        providers = getattr(request.app.state, "providers", None)
        if providers is None:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Provider clients are not initialised",
            )
        dispatcher = TaskDispatcher(session_factory, providers, settings)
        result = await dispatcher.run_once(limit=limit, reason="api")

    return DispatchResponse(claimed=result.claimed, skipped=result.skipped, reason=result.reason)


@router.get("", response_model=TaskListResponse)
async def list_tasks(
    task_status: Optional[TaskStatus] = Query(None, alias="status"),
    task_type: Optional[str] = Query(None, alias="type"),
    limit: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_db)
):
    """List tasks, newest first. Filter by status to find terminal failures."""
    filters = []
    if task_status is not None:
        filters.append(Task.status == task_status)
    if task_type:
        filters.append(Task.type == task_type)

    total = (await db.execute(select(func.count(Task.id)).where(*filters))).scalar_one()

    result = await db.execute(
        select(Task).where(*filters).order_by(desc(Task.created_at)).limit(limit)
    )
    tasks = [TaskResponse.model_validate(task) for task in result.scalars().all()]
    return TaskListResponse(tasks=tasks, total=total)


@router.get("/{task_id}", response_model=TaskResponse)
async def get_task(
    task_id: UUID = Path(..., description="Task ID"),
    db: AsyncSession = Depends(get_db)
):
    """Get a single task."""
    task = await db.get(Task, task_id)
    if task is None:
        raise ResourceNotFoundError("Task", task_id)
    return task
