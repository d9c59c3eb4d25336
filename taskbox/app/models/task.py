"""
Task outbox database model.

One row per unit of background work. The single source of truth for the
dispatcher: claiming, retry counting and dedupe are all conditional
mutations of this table.
"""

import uuid

from sqlalchemy import Column, Integer, String, Text, DateTime, JSON, Enum, Uuid, Index, text
from sqlalchemy.sql import func
from taskbox.app.db.session import Base
from taskbox.app.models.task_enums import TaskStatus

# Predicate shared by the partial unique index and ON CONFLICT inference.
ACTIVE_ROW_PREDICATE = "status IN ('pending', 'claimed')"


class Task(Base):
    """
    Outbox task row.

    Enforces one active row per dedupe key through a partial unique index;
    completed and failed rows may share historical keys.
    """
    __tablename__ = "tasks"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)

    type = Column(String(64), nullable=False, index=True)
    payload = Column(JSON, nullable=False)
    dedupe_key = Column(String(255), nullable=True)

    status = Column(
        Enum(
            TaskStatus,
            name="task_status",
            native_enum=False,
            length=16,
            values_callable=lambda statuses: [s.value for s in statuses],
        ),
        default=TaskStatus.PENDING,
        nullable=False,
    )
    attempts = Column(Integer, default=0, nullable=False)
    max_attempts = Column(Integer, nullable=False)

    # Scheduling / claim lifecycle
    available_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    claimed_by = Column(String(255), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)
    last_error = Column(Text, nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index(
            "ux_tasks_active_dedupe_key", "dedupe_key", unique=True,
            postgresql_where=text(ACTIVE_ROW_PREDICATE),
            sqlite_where=text(ACTIVE_ROW_PREDICATE),
        ),
        Index("ix_tasks_status_available", "status", "available_at", "created_at"),
        Index("ix_tasks_status_claimed", "status", "claimed_at"),
    )

    def __repr__(self):
        return f"<Task(id={self.id}, type='{self.type}', status='{self.status}', attempts={self.attempts}/{self.max_attempts})>"
