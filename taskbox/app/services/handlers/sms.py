"""
`sendSms` handler.

Each SMS row settles exactly once: queued (Twilio accepted it) or
queue-failed. Rows already settled are skipped, so re-running the task is
harmless.
"""

import logging

from sqlalchemy import update

from taskbox.app.core.exceptions import ProviderError, TransientTaskError, describe_error
from taskbox.app.core.timeutils import utcnow
from taskbox.app.models.client import Client
from taskbox.app.models.notification import MessageType, NotificationCategory
from taskbox.app.models.sms import Sms
from taskbox.app.models.task_enums import TaskType
from taskbox.app.models.trainer import Trainer
from taskbox.app.schemas.task_payloads import SendSmsPayload, UserNotifyPayload
from taskbox.app.services.outbox import enqueue
from taskbox.app.services.providers.twilio import is_invalid_number_error
from taskbox.app.services.task_context import TaskContext

logger = logging.getLogger("taskbox.handlers.sms")


def _unsettled(sms_id: int):
    return (
        Sms.id == sms_id,
        Sms.queued_at.is_(None),
        Sms.queue_failed_at.is_(None),
    )


async def _record_failure(ctx: TaskContext, sms: Sms, error: Exception) -> None:
    """Mark the SMS failed and, for an invalid number, tell the trainer."""
    reason = error.detail if isinstance(error, ProviderError) and error.detail else describe_error(error)

    async with ctx.session_factory() as db:
        async with db.begin():
            result = await db.execute(
                update(Sms)
                .where(*_unsettled(sms.id))
                .values(queue_failed_at=utcnow(), queue_failed_reason=reason)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return

            if not (isinstance(error, ProviderError) and is_invalid_number_error(error)):
                return

            trainer = await db.get(Trainer, sms.trainer_id)
            client = await db.get(Client, sms.client_id) if sms.client_id else None
            if trainer is None or client is None or not client.full_name:
                return

            await enqueue(
                db,
                TaskType.USER_NOTIFY,
                UserNotifyPayload(
                    user_id=trainer.user_id,
                    title="Text reminder didn't send.",
                    body=(
                        f"Sending a text reminder to {client.full_name} ({sms.to_number}) failed "
                        "because the number was invalid. Your credit has been refunded."
                    ),
                    message_type=MessageType.FAILURE,
                    category=NotificationCategory.GENERAL,
                    client_id=client.id,
                ),
            )

    logger.warning(
        "SMS failed: %s", reason,
        extra={**ctx.log_extra, "sms_id": sms.id},
    )


async def handle_send_sms(payload: SendSmsPayload, ctx: TaskContext) -> None:
    twilio = ctx.providers.twilio

    async with ctx.session_factory() as db:
        sms = await db.get(Sms, payload.id)

    if sms is None or sms.is_settled:
        logger.info("SMS missing or already settled, skipping", extra={**ctx.log_extra, "sms_id": payload.id})
        return

    if not twilio.can_send_from(sms.from_number):
        raise TransientTaskError("Twilio is not configured")

    try:
        message = await twilio.send_message(sms.to_number, sms.body, from_number=sms.from_number)
    except TransientTaskError as exc:
        # Twilio answered with an error: final, whatever the attempt.
        rejected = isinstance(exc, ProviderError) and not exc.is_network_error
        if not rejected and not ctx.is_final_attempt:
            raise
        await _record_failure(ctx, sms, exc)
        return

    sid = message.get("sid")
    if not sid:
        logger.warning("Twilio response had no message sid", extra={**ctx.log_extra, "sms_id": sms.id})
        return

    async with ctx.session_factory() as db:
        async with db.begin():
            await db.execute(
                update(Sms)
                .where(*_unsettled(sms.id))
                .values(queued_at=utcnow(), twilio_message_sid=sid)
                .execution_options(synchronize_session=False)
            )
