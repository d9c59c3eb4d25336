"""
`user.notify` handler.
"""

import logging

from taskbox.app.schemas.task_payloads import UserNotifyPayload
from taskbox.app.services.notification_service import NotificationService
from taskbox.app.services.task_context import TaskContext

logger = logging.getLogger("taskbox.handlers.notify")


async def handle_user_notify(payload: UserNotifyPayload, ctx: TaskContext) -> None:
    async with ctx.session_factory() as db:
        async with db.begin():
            notification = await NotificationService.create_notification(
                db,
                user_id=payload.user_id,
                title=payload.title,
                body=payload.body,
                message_type=payload.message_type,
                category=payload.category,
                client_id=payload.client_id,
                payment_plan_id=payload.payment_plan_id,
                source_task_id=str(ctx.task_id),
            )

    if notification is None:
        logger.info("Recipient is not a trainer, nothing to notify", extra=ctx.log_extra)
