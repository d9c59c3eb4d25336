"""
Reminder handlers: `sendPaymentReminders` and `sendAppointmentReminders`.

Both stamp the row they remind about in the same transaction that queues
the outbound message, so a reminder is queued at most once.
"""

import logging
from datetime import timedelta

from sqlalchemy import func, select

from taskbox.app.core.redis_client import wake_dispatchers
from taskbox.app.core.timeutils import utcnow, as_utc
from taskbox.app.models.appointment import Appointment
from taskbox.app.models.billing_enums import PaymentPlanPaymentStatus
from taskbox.app.models.client import Client
from taskbox.app.models.notification import MessageType, NotificationCategory
from taskbox.app.models.payment_plan import PaymentPlan, PaymentPlanPayment
from taskbox.app.models.task_enums import TaskType
from taskbox.app.models.trainer import Trainer
from taskbox.app.schemas.task_payloads import ScheduledTaskPayload, UserNotifyPayload
from taskbox.app.services.messaging import APP_NAME, client_dashboard_link, cta_email, queue_mail, queue_sms
from taskbox.app.services.outbox import enqueue
from taskbox.app.services.task_context import TaskContext

logger = logging.getLogger("taskbox.handlers.reminders")

# Payment reminders start this long after a payment is missed...
OVERDUE_GRACE = timedelta(days=2)
# ...stop this long after the most recent missed payment...
REMINDER_HORIZON = timedelta(days=15)
# ...and are at least this far apart per client.
REMINDER_GAP = timedelta(hours=47)
# From this age on the trainer is told that reminders are running out.
LAST_REMINDER_AGE = timedelta(days=13)


async def handle_send_payment_reminders(payload: ScheduledTaskPayload, ctx: TaskContext) -> None:
    """
    Email clients with rejected plan payments.

    Clients without an email address are reported to their trainer instead.
    Each client is handled in its own transaction.
    """
    now = utcnow()

    async with ctx.session_factory() as db:
        result = await db.execute(
            select(
                PaymentPlan.trainer_id,
                PaymentPlan.client_id,
                func.max(PaymentPlanPayment.due_at).label("most_overdue"),
                func.count(PaymentPlanPayment.id).label("overdue_count"),
            )
            .join(PaymentPlan, PaymentPlan.id == PaymentPlanPayment.payment_plan_id)
            .where(
                PaymentPlanPayment.status == PaymentPlanPaymentStatus.REJECTED,
                PaymentPlanPayment.amount_outstanding_cents > 0,
                PaymentPlanPayment.due_at < now - OVERDUE_GRACE,
            )
            .group_by(PaymentPlan.trainer_id, PaymentPlan.client_id)
        )
        due = [
            row for row in result.all()
            if now < as_utc(row.most_overdue) + REMINDER_HORIZON
        ]

    sent = 0
    notified = 0
    for row in due:
        async with ctx.session_factory() as db:
            async with db.begin():
                client = await db.get(Client, row.client_id, with_for_update=True)
                trainer = await db.get(Trainer, row.trainer_id)
                if client is None or trainer is None:
                    continue
                if client.last_payment_reminder_at and now <= as_utc(client.last_payment_reminder_at) + REMINDER_GAP:
                    continue

                client.last_payment_reminder_at = now

                if not client.email:
                    await enqueue(
                        db,
                        TaskType.USER_NOTIFY,
                        UserNotifyPayload(
                            user_id=trainer.user_id,
                            title=client.full_name,
                            body=(
                                "We attempted to send them a payment reminder but there is no email "
                                "on file. Add one to help you get paid."
                            ),
                            message_type=MessageType.FAILURE,
                            category=NotificationCategory.REMINDER,
                            client_id=client.id,
                        ),
                    )
                    notified += 1
                    continue

                if now - as_utc(row.most_overdue) >= LAST_REMINDER_AGE:
                    await enqueue(
                        db,
                        TaskType.USER_NOTIFY,
                        UserNotifyPayload(
                            user_id=trainer.user_id,
                            title=client.full_name,
                            body=(
                                "We've reminded this client about outstanding payments over the past "
                                "14 days. We'd suggest following up."
                            ),
                            message_type=MessageType.DEFAULT,
                            category=NotificationCategory.REMINDER,
                            client_id=client.id,
                        ),
                    )

                provider_name = trainer.display_name
                link = client_dashboard_link(ctx.settings.base_url, client.id)
                overdue_label = "outstanding payments" if row.overdue_count > 1 else "an outstanding payment"
                await queue_mail(
                    db,
                    to_email=client.email,
                    to_name=client.full_name,
                    trainer_id=trainer.id,
                    client_id=client.id,
                    from_name=f"{provider_name} via {APP_NAME}",
                    subject=f"Payment Reminder for {provider_name}",
                    html=cta_email(
                        heading="Payment Reminder",
                        body_html=(
                            "<p>Hi there,</p>"
                            f"<p>Just a reminder that you have {overdue_label} due for {provider_name}.</p>"
                            f"<p>Best regards,<br> The {APP_NAME} Team</p>"
                        ),
                        button_text="Review your outstanding payments",
                        link=link,
                        receiving_reason=f"you have an overdue payment for {provider_name}",
                    ),
                )
                sent += 1

    logger.info("Queued %d payment reminder(s)", sent, extra=ctx.log_extra)
    if sent or notified:
        await wake_dispatchers(ctx.task_type.value, ctx.settings)


def _appointment_reminder_body(client: Client, trainer: Trainer, appointment: Appointment) -> str:
    starts_at = as_utc(appointment.starts_at)
    return (
        f"Hi {client.first_name}, this is a reminder of your appointment with "
        f"{trainer.display_name} on {starts_at:%a %d %b} at {starts_at:%H:%M} UTC."
    )


async def handle_send_appointment_reminders(payload: ScheduledTaskPayload, ctx: TaskContext) -> None:
    """Queue an SMS for every appointment that has entered its reminder window."""
    now = utcnow()
    queued = 0

    async with ctx.session_factory() as db:
        async with db.begin():
            result = await db.execute(
                select(Appointment, Client, Trainer)
                .join(Client, Client.id == Appointment.client_id)
                .join(Trainer, Trainer.id == Appointment.trainer_id)
                .where(
                    Appointment.sms_reminder_enabled.is_(True),
                    Appointment.reminder_queued_at.is_(None),
                    Appointment.cancelled_at.is_(None),
                    Appointment.starts_at > now,
                    Client.phone_number.isnot(None),
                )
                .order_by(Appointment.starts_at)
                .with_for_update(of=Appointment)
            )

            for appointment, client, trainer in result.all():
                window_opens = as_utc(appointment.starts_at) - timedelta(minutes=appointment.reminder_minutes_before)
                if window_opens > now:
                    continue

                appointment.reminder_queued_at = now
                await queue_sms(
                    db,
                    trainer_id=trainer.id,
                    client_id=client.id,
                    to_number=client.phone_number,
                    body=_appointment_reminder_body(client, trainer, appointment),
                )
                queued += 1

    if queued:
        logger.info("Queued %d appointment reminder(s)", queued, extra=ctx.log_extra)
        await wake_dispatchers(ctx.task_type.value, ctx.settings)
