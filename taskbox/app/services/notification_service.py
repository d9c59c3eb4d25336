"""
Notification Service.

Writes in-app notifications on behalf of the `user.notify` task.
"""

import logging
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from typing import Optional

from taskbox.app.models.notification import Notification, MessageType, NotificationCategory
from taskbox.app.models.trainer import Trainer

logger = logging.getLogger("taskbox.notifications")


class NotificationService:

    @staticmethod
    async def find_by_source_task(db: AsyncSession, source_task_id: str) -> Optional[Notification]:
        result = await db.execute(
            select(Notification).where(Notification.source_task_id == source_task_id)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def create_notification(
        db: AsyncSession,
        user_id: int,
        title: str,
        body: str,
        message_type: MessageType = MessageType.DEFAULT,
        category: NotificationCategory = NotificationCategory.GENERAL,
        client_id: Optional[int] = None,
        payment_plan_id: Optional[int] = None,
        source_task_id: Optional[str] = None,
    ) -> Optional[Notification]:
        """
        Create an in-app notification for a trainer's user account.

        Idempotent per `source_task_id`: a re-run of the same task returns
        the notification written by the earlier attempt.

        Returns:
            The notification, or None if the user is not a trainer
        """
        if source_task_id:
            existing = await NotificationService.find_by_source_task(db, source_task_id)
            if existing:
                return existing

        trainer_id = (await db.execute(
            select(Trainer.id).where(Trainer.user_id == user_id)
        )).scalar_one_or_none()

        if trainer_id is None:
            logger.info("No trainer for user, notification skipped", extra={"user_id": user_id})
            return None

        notif = Notification(
            user_id=user_id,
            trainer_id=trainer_id,
            client_id=client_id,
            payment_plan_id=payment_plan_id,
            message_type=message_type,
            category=category,
            title=title,
            body=body,
            source_task_id=source_task_id,
        )
        db.add(notif)
        await db.flush()  # Caller commits
        return notif
