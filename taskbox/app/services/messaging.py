"""
Messaging helpers.

Insert an outbound SMS or mail row and enqueue its send task on the same
executor, so the message exists if and only if its send task does.
"""

from html import escape
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from taskbox.app.models.mail import Mail
from taskbox.app.models.sms import Sms
from taskbox.app.models.task_enums import TaskType
from taskbox.app.schemas.task_payloads import SendMailPayload, SendSmsPayload
from taskbox.app.services.outbox import enqueue

NO_REPLY_EMAIL = "no-reply@taskbox.app"
APP_NAME = "Taskbox"


def client_dashboard_link(base_url: str, client_id: int) -> str:
    return f"{base_url.rstrip('/')}/client-dashboard/{client_id}"


def cta_email(*, heading: str, body_html: str, button_text: str, link: str, receiving_reason: str) -> str:
    """Minimal call-to-action email body."""
    return (
        "<html><body style=\"font-family:sans-serif\">"
        f"<h2>{escape(heading)}</h2>"
        f"{body_html}"
        f"<p><a href=\"{escape(link)}\" style=\"font-weight:700\">{escape(button_text)}</a></p>"
        f"<p style=\"color:#888;font-size:12px\">You are receiving this email because {escape(receiving_reason)}.</p>"
        "</body></html>"
    )


async def queue_sms(
    db: AsyncSession,
    *,
    trainer_id: int,
    to_number: str,
    body: str,
    client_id: Optional[int] = None,
    from_number: Optional[str] = None,
) -> Sms:
    """
    Create an SMS row and its `sendSms` task in the caller's transaction.

    The caller commits.
    """
    sms = Sms(
        trainer_id=trainer_id,
        client_id=client_id,
        from_number=from_number,
        to_number=to_number,
        body=body,
    )
    db.add(sms)
    await db.flush()

    await enqueue(db, TaskType.SEND_SMS, SendSmsPayload(id=sms.id))
    return sms


async def queue_mail(
    db: AsyncSession,
    *,
    to_email: str,
    subject: str,
    html: str,
    trainer_id: Optional[int] = None,
    client_id: Optional[int] = None,
    to_name: Optional[str] = None,
    from_email: str = NO_REPLY_EMAIL,
    from_name: Optional[str] = None,
    reply_to: Optional[str] = None,
) -> Mail:
    """
    Create a mail row and its `sendMail` task in the caller's transaction.

    The caller commits.
    """
    mail = Mail(
        trainer_id=trainer_id,
        client_id=client_id,
        from_email=from_email,
        from_name=from_name or APP_NAME,
        to_email=to_email,
        to_name=to_name,
        reply_to=reply_to,
        subject=subject,
        html=html,
    )
    db.add(mail)
    await db.flush()

    await enqueue(db, TaskType.SEND_MAIL, SendMailPayload(id=mail.id))
    return mail
