"""
Execution context handed to every task handler.
"""

import uuid
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taskbox.app.core.config import Settings
from taskbox.app.models.task_enums import TaskType
from taskbox.app.services.providers.factory import Providers


@dataclass(frozen=True)
class TaskContext:
    """
    What a handler may use besides its payload.

    Handlers open their own sessions from `session_factory`; the dispatcher's
    claim/outcome writes never share a transaction with handler work.
    """
    session_factory: async_sessionmaker[AsyncSession]
    settings: Settings
    providers: Providers
    task_id: uuid.UUID
    task_type: TaskType
    attempt: int
    max_attempts: int

    @property
    def is_final_attempt(self) -> bool:
        return self.attempt >= self.max_attempts

    @property
    def log_extra(self) -> dict:
        return {
            "task_id": str(self.task_id),
            "task_type": self.task_type.value,
            "attempt": self.attempt,
            "max_attempts": self.max_attempts,
        }
