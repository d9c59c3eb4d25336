"""
In-app notification database model.
"""

from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, ForeignKey, Enum
from sqlalchemy.sql import func
from taskbox.app.db.session import Base
import enum


class MessageType(str, enum.Enum):
    DEFAULT = "DEFAULT"
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"


class NotificationCategory(str, enum.Enum):
    TRANSACTION = "TRANSACTION"
    REMINDER = "REMINDER"
    GENERAL = "GENERAL"


class Notification(Base):
    """
    In-App Notification.
    Written by the `user.notify` task for a trainer's user account.
    """
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Recipient
    user_id = Column(Integer, nullable=False, index=True)
    trainer_id = Column(Integer, ForeignKey("trainers.id"), nullable=True, index=True)

    # Subject references
    client_id = Column(Integer, nullable=True)
    payment_plan_id = Column(Integer, nullable=True)

    # Content
    message_type = Column(Enum(MessageType), default=MessageType.DEFAULT, nullable=False)
    category = Column(Enum(NotificationCategory), default=NotificationCategory.GENERAL, nullable=False)
    title = Column(String(255), nullable=False)
    body = Column(Text, nullable=False)

    # Idempotency: one notification per originating task
    source_task_id = Column(String(64), nullable=True, unique=True)

    # State
    is_read = Column(Boolean, default=False, nullable=False, index=True)
    read_at = Column(DateTime(timezone=True), nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<Notification(id={self.id}, user={self.user_id}, title='{self.title}')>"
