"""
Task schemas for the ops API.
"""

from pydantic import BaseModel
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from taskbox.app.models.task_enums import TaskStatus


class TaskResponse(BaseModel):
    """Schema for a task row."""
    id: UUID
    type: str
    payload: Dict[str, Any]
    dedupe_key: Optional[str]
    status: TaskStatus
    attempts: int
    max_attempts: int
    available_at: datetime
    claimed_at: Optional[datetime]
    claimed_by: Optional[str]
    completed_at: Optional[datetime]
    failed_at: Optional[datetime]
    last_error: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


class TaskListResponse(BaseModel):
    """Schema for a filtered task list."""
    tasks: List[TaskResponse]
    total: int


class DispatchResponse(BaseModel):
    """Result of a manually triggered dispatch cycle."""
    status: str = "ok"
    claimed: int
    skipped: bool
    reason: str
