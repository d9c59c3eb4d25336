"""
`sendMail` handler.
"""

import logging

from sqlalchemy import update

from taskbox.app.core.exceptions import ProviderError, TransientTaskError, describe_error
from taskbox.app.core.timeutils import utcnow
from taskbox.app.models.mail import Mail
from taskbox.app.schemas.task_payloads import SendMailPayload
from taskbox.app.services.task_context import TaskContext

logger = logging.getLogger("taskbox.handlers.mail")

# Mandrill result statuses that mean the message will not be delivered.
REJECTED_STATUSES = ("rejected", "invalid")


def _unsent(mail_id: int):
    return (
        Mail.id == mail_id,
        Mail.mandrill_message_id.is_(None),
        Mail.queued_at.is_(None),
        Mail.sent_at.is_(None),
        Mail.rejected_at.is_(None),
    )


def _is_unsent(mail: Mail) -> bool:
    return (
        mail.mandrill_message_id is None
        and mail.queued_at is None
        and mail.sent_at is None
        and mail.rejected_at is None
    )


async def _reject(ctx: TaskContext, mail_id: int, reason: str) -> None:
    async with ctx.session_factory() as db:
        async with db.begin():
            await db.execute(
                update(Mail)
                .where(*_unsent(mail_id))
                .values(rejected_at=utcnow(), reject_reason=reason)
                .execution_options(synchronize_session=False)
            )
    logger.warning("Mail rejected: %s", reason, extra={**ctx.log_extra, "mail_id": mail_id})


def build_mandrill_message(mail: Mail) -> dict:
    message = {
        "from_email": mail.from_email,
        "to": [{"email": mail.to_email, "name": mail.to_name} if mail.to_name else {"email": mail.to_email}],
        "subject": mail.subject,
        "html": mail.html,
        "metadata": {"mailId": str(mail.id)},
    }
    if mail.from_name:
        message["from_name"] = mail.from_name
    if mail.reply_to:
        message["headers"] = {"Reply-To": mail.reply_to}
    return message


async def handle_send_mail(payload: SendMailPayload, ctx: TaskContext) -> None:
    mandrill = ctx.providers.mandrill

    async with ctx.session_factory() as db:
        mail = await db.get(Mail, payload.id)

    if mail is None or not _is_unsent(mail):
        logger.info("Mail missing or already handled, skipping", extra={**ctx.log_extra, "mail_id": payload.id})
        return

    if not mandrill.configured:
        await _reject(ctx, mail.id, "MANDRILL_API_KEY is not configured")
        return

    try:
        result = await mandrill.send_message(build_mandrill_message(mail))
    except TransientTaskError as exc:
        rejected = isinstance(exc, ProviderError) and not exc.is_network_error
        if not rejected and not ctx.is_final_attempt:
            raise
        await _reject(ctx, mail.id, describe_error(exc))
        return

    now = utcnow()
    status = result.get("status")
    async with ctx.session_factory() as db:
        async with db.begin():
            await db.execute(
                update(Mail)
                .where(*_unsent(mail.id))
                .values(
                    queued_at=now,
                    sent_at=now if status == "sent" else None,
                    rejected_at=now if status in REJECTED_STATUSES else None,
                    reject_reason=result.get("reject_reason"),
                    mandrill_message_id=result.get("_id"),
                )
                .execution_options(synchronize_session=False)
            )

    if status in REJECTED_STATUSES:
        logger.warning(
            "Mandrill rejected mail: %s", result.get("reject_reason"),
            extra={**ctx.log_extra, "mail_id": mail.id},
        )
