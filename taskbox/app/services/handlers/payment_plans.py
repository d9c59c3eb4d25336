"""
Payment plan handlers: `chargePaymentPlans` (daily fan-out) and
`payment-plan.charge-outstanding` (one plan).
"""

import logging
from html import escape
from typing import Optional

from taskbox.app.core.exceptions import PaymentDeclinedError, TransientTaskError, describe_error
from taskbox.app.core.redis_client import wake_dispatchers
from taskbox.app.core.timeutils import utcnow, as_utc
from taskbox.app.domain.billing.payment_plan_service import PaymentPlanService, format_amount
from taskbox.app.models.client import Client
from taskbox.app.models.notification import MessageType, NotificationCategory
from taskbox.app.models.task_enums import TaskType
from taskbox.app.models.trainer import Trainer
from taskbox.app.schemas.task_payloads import (
    ChargeOutstandingPayload,
    ScheduledTaskPayload,
    UserNotifyPayload,
)
from taskbox.app.services.messaging import APP_NAME, client_dashboard_link, cta_email, queue_mail
from taskbox.app.services.outbox import enqueue
from taskbox.app.services.task_context import TaskContext

logger = logging.getLogger("taskbox.handlers.payment_plans")


async def handle_charge_payment_plans(payload: ScheduledTaskPayload, ctx: TaskContext) -> None:
    """
    End expired plans, then enqueue one charge task per plan with due payments.

    Charge tasks are deduplicated per plan and day, so a retried run does
    not charge a plan twice.
    """
    now = utcnow()
    day = as_utc(payload.scheduled_at or now).date().isoformat()

    async with ctx.session_factory() as db:
        async with db.begin():
            ended = await PaymentPlanService.end_expired_plans(db, now)
            plan_ids = await PaymentPlanService.plans_with_chargeable_payments(db, now)

            for plan_id in plan_ids:
                await enqueue(
                    db,
                    TaskType.CHARGE_OUTSTANDING,
                    ChargeOutstandingPayload(payment_plan_id=plan_id, for_scheduled_task=True),
                    dedupe_key=f"{TaskType.CHARGE_OUTSTANDING.value}:{plan_id}:{day}",
                )

    logger.info(
        "Payment plans: %d ended, %d queued for charging", ended, len(plan_ids),
        extra=ctx.log_extra,
    )
    if plan_ids:
        await wake_dispatchers(ctx.task_type.value, ctx.settings)


async def handle_charge_outstanding(payload: ChargeOutstandingPayload, ctx: TaskContext) -> None:
    """
    Charge every outstanding payment of one plan in a single PaymentIntent.

    Declines are recorded (payments rejected, trainer and client told) and
    do not fail the task. Transient failures are retried; the last attempt
    records the failure before giving up.
    """
    try:
        await _charge(payload, ctx)
    except PaymentDeclinedError as exc:
        await _record_failed_charge(payload, ctx, exc, declined=True)
    except TransientTaskError as exc:
        if not ctx.is_final_attempt:
            raise
        await _record_failed_charge(payload, ctx, exc, declined=False)
        raise


async def _charge(payload: ChargeOutstandingPayload, ctx: TaskContext) -> None:
    stripe = ctx.providers.stripe
    if not stripe.configured:
        raise TransientTaskError("Stripe is not configured")

    now = utcnow()
    async with ctx.session_factory() as db:
        async with db.begin():
            plan, payments = await PaymentPlanService.lock_chargeable_payments(
                db, payload.payment_plan_id, now, payload.for_scheduled_task
            )
            if plan is None:
                logger.info("Nothing outstanding", extra=ctx.log_extra)
                return

            if not plan.stripe_customer_id or not plan.stripe_payment_method_id:
                raise PaymentDeclinedError("No payment method on file", decline_code="no_payment_method")

            total_cents = sum(payment.amount_outstanding_cents for payment in payments)
            payment_ids = [str(payment.id) for payment in payments]
            due_dates = ", ".join(as_utc(payment.due_at).strftime("%b %d, %Y") for payment in payments)

            intent = await stripe.create_payment_intent(
                amount_cents=total_cents,
                currency=plan.currency,
                customer=plan.stripe_customer_id,
                payment_method=plan.stripe_payment_method_id,
                description=f"{plan.name} Outstanding Payments for {due_dates}",
                metadata={
                    "paymentPlanId": str(plan.id),
                    "paymentPlanPaymentIds": ",".join(payment_ids),
                },
                idempotency_key=f"{ctx.task_id}:{'-'.join(payment_ids)}",
            )

            PaymentPlanService.mark_paid(payments, intent.get("id"), now)

            trainer = await db.get(Trainer, plan.trainer_id)
            client = await db.get(Client, plan.client_id)
            await enqueue(
                db,
                TaskType.USER_NOTIFY,
                UserNotifyPayload(
                    user_id=trainer.user_id,
                    title=client.full_name,
                    body=(
                        f"Payment Processed!\nPayment of {format_amount(total_cents, plan.currency)} "
                        f"has gone through for subscription: {plan.name}"
                    ),
                    message_type=MessageType.SUCCESS,
                    category=NotificationCategory.TRANSACTION,
                    payment_plan_id=plan.id,
                ),
            )

    logger.info(
        "Charged %d payment(s) of plan %s", len(payments), payload.payment_plan_id,
        extra=ctx.log_extra,
    )


async def _record_failed_charge(
    payload: ChargeOutstandingPayload,
    ctx: TaskContext,
    error: Exception,
    declined: bool,
) -> None:
    """Reject the plan's chargeable payments and tell the trainer (and, on a decline, the client)."""
    now = utcnow()
    async with ctx.session_factory() as db:
        async with db.begin():
            plan, payments = await PaymentPlanService.lock_chargeable_payments(
                db, payload.payment_plan_id, now, payload.for_scheduled_task
            )
            if plan is None:
                return

            PaymentPlanService.mark_rejected(payments, now)

            trainer = await db.get(Trainer, plan.trainer_id)
            client = await db.get(Client, plan.client_id)

            if not declined:
                body = f"A payment for Subscription: {plan.name} has failed. We will try again tomorrow"
            elif client.email:
                body = (
                    f"A payment for Subscription: {plan.name} has failed. "
                    "We've already let your client know and will try again tomorrow."
                )
            else:
                body = (
                    f"A payment for Subscription: {plan.name} has failed. We couldn't notify your client "
                    "because they don't have an email on file, but we will try again tomorrow."
                )

            await enqueue(
                db,
                TaskType.USER_NOTIFY,
                UserNotifyPayload(
                    user_id=trainer.user_id,
                    title=client.full_name,
                    body=body,
                    message_type=MessageType.FAILURE,
                    category=NotificationCategory.TRANSACTION,
                    payment_plan_id=plan.id,
                ),
            )

            if declined and client.email:
                await _queue_payment_failed_mail(db, ctx, trainer, client, describe_error(error))

    logger.warning(
        "Charge failed for plan %s: %s", payload.payment_plan_id, describe_error(error),
        extra=ctx.log_extra,
    )


async def _queue_payment_failed_mail(db, ctx: TaskContext, trainer: Trainer, client: Client, reason: Optional[str]):
    provider_name = trainer.display_name
    link = client_dashboard_link(ctx.settings.base_url, client.id)
    because = f" because:</p><p style=\"font-weight:700\">{escape(reason)}</p>" if reason else ".</p>"

    await queue_mail(
        db,
        to_email=client.email,
        to_name=client.full_name,
        trainer_id=trainer.id,
        client_id=client.id,
        from_name=f"{provider_name} via {APP_NAME}",
        subject=f"{provider_name} via {APP_NAME}: Subscription Payment Failed",
        html=cta_email(
            heading="Subscription Payment Failed",
            body_html=(
                "<p>Hi,</p>"
                "<p>Just a quick email to let you know we tried to deduct a subscription payment "
                f"out of your account on behalf of {provider_name} but unfortunately it failed{because}"
                "<p>We'll try again in another 24 hours. If you need to update your card details "
                "before then, use the link below to access your account.</p>"
            ),
            button_text="Go to Dashboard",
            link=link,
            receiving_reason=f"you have a subscription with {provider_name}",
        ),
    )
