"""
Payment Plan Service (Domain Logic).

Finds chargeable plan payments, settles them after a charge, and records
rejected charges. Every method runs inside the caller's transaction.
"""

from datetime import datetime, timedelta
from typing import List, Optional, Sequence, Tuple

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from taskbox.app.models.billing_enums import (
    PaymentPlanStatus,
    PaymentPlanPaymentStatus,
    MAX_PAYMENT_RETRIES,
)
from taskbox.app.models.payment_plan import PaymentPlan, PaymentPlanPayment

# A rejected payment is retried by the daily run at most once per window.
RETRY_WINDOW = timedelta(hours=16)


def format_amount(amount_cents: int, currency: str) -> str:
    return f"{amount_cents / 100:,.2f} {currency.upper()}"


class PaymentPlanService:

    @staticmethod
    def chargeable_clause(now: datetime, for_scheduled_task: bool):
        """
        Filter for payments that may be charged now.

        Pending payments of active, unexpired plans always qualify. Rejected
        payments qualify for a manual charge at any time; the daily run only
        retries them after RETRY_WINDOW and up to MAX_PAYMENT_RETRIES.
        """
        pending = and_(
            PaymentPlanPayment.status == PaymentPlanPaymentStatus.PENDING,
            PaymentPlan.status == PaymentPlanStatus.ACTIVE,
            PaymentPlan.ends_at > now,
        )
        rejected = PaymentPlanPayment.status == PaymentPlanPaymentStatus.REJECTED
        if for_scheduled_task:
            rejected = and_(
                rejected,
                PaymentPlanPayment.retry_count < MAX_PAYMENT_RETRIES,
                or_(
                    PaymentPlanPayment.last_retry_at.is_(None),
                    PaymentPlanPayment.last_retry_at <= now - RETRY_WINDOW,
                ),
            )
        return and_(
            PaymentPlanPayment.due_at <= now,
            PaymentPlanPayment.amount_outstanding_cents > 0,
            or_(pending, rejected),
        )

    @staticmethod
    async def end_expired_plans(db: AsyncSession, now: datetime) -> int:
        result = await db.execute(
            update(PaymentPlan)
            .where(
                PaymentPlan.ends_at <= now,
                PaymentPlan.status.notin_([PaymentPlanStatus.CANCELLED, PaymentPlanStatus.ENDED]),
            )
            .values(status=PaymentPlanStatus.ENDED)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    @staticmethod
    async def plans_with_chargeable_payments(db: AsyncSession, now: datetime) -> List[int]:
        result = await db.execute(
            select(PaymentPlanPayment.payment_plan_id)
            .join(PaymentPlan, PaymentPlan.id == PaymentPlanPayment.payment_plan_id)
            .where(PaymentPlanService.chargeable_clause(now, for_scheduled_task=True))
            .distinct()
            .order_by(PaymentPlanPayment.payment_plan_id)
        )
        return list(result.scalars().all())

    @staticmethod
    async def lock_chargeable_payments(
        db: AsyncSession,
        payment_plan_id: int,
        now: datetime,
        for_scheduled_task: bool,
    ) -> Tuple[Optional[PaymentPlan], List[PaymentPlanPayment]]:
        """
        Lock the plan's chargeable payments for the rest of the transaction.

        Returns:
            (plan, payments); the plan is None when nothing is chargeable
        """
        result = await db.execute(
            select(PaymentPlanPayment, PaymentPlan)
            .join(PaymentPlan, PaymentPlan.id == PaymentPlanPayment.payment_plan_id)
            .where(
                PaymentPlanPayment.payment_plan_id == payment_plan_id,
                PaymentPlanService.chargeable_clause(now, for_scheduled_task),
            )
            .order_by(PaymentPlanPayment.due_at, PaymentPlanPayment.id)
            .with_for_update()
        )
        rows = result.all()
        if not rows:
            return None, []
        return rows[0][1], [payment for payment, _ in rows]

    @staticmethod
    def mark_paid(payments: Sequence[PaymentPlanPayment], payment_intent_id: str, now: datetime) -> None:
        for payment in payments:
            payment.status = PaymentPlanPaymentStatus.PAID
            payment.amount_outstanding_cents = 0
            payment.retry_count += 1
            payment.last_retry_at = now
            payment.paid_at = now
            payment.stripe_payment_intent_id = payment_intent_id

    @staticmethod
    def mark_rejected(payments: Sequence[PaymentPlanPayment], now: datetime) -> None:
        for payment in payments:
            payment.status = PaymentPlanPaymentStatus.REJECTED
            payment.retry_count += 1
            payment.last_retry_at = now
