"""
Payment plan database models.

A plan owns a series of dated payments. The `chargePaymentPlans` task
charges every due payment once a day.
"""

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Enum
from sqlalchemy.sql import func
from taskbox.app.db.session import Base
from taskbox.app.models.billing_enums import PaymentPlanStatus, PaymentPlanPaymentStatus


class PaymentPlan(Base):
    """Recurring payment plan between a trainer and a client."""
    __tablename__ = "payment_plans"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    trainer_id = Column(Integer, ForeignKey("trainers.id"), nullable=False, index=True)
    client_id = Column(Integer, ForeignKey("clients.id"), nullable=False, index=True)

    name = Column(String(255), nullable=False)
    status = Column(Enum(PaymentPlanStatus), default=PaymentPlanStatus.ACTIVE, nullable=False, index=True)
    currency = Column(String(3), default="usd", nullable=False)
    ends_at = Column(DateTime(timezone=True), nullable=False)

    # Stripe references for off-session charges
    stripe_customer_id = Column(String(64), nullable=True)
    stripe_payment_method_id = Column(String(64), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<PaymentPlan(id={self.id}, name='{self.name}', status='{self.status}')>"


class PaymentPlanPayment(Base):
    """A single dated payment of a plan."""
    __tablename__ = "payment_plan_payments"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    payment_plan_id = Column(Integer, ForeignKey("payment_plans.id"), nullable=False, index=True)

    due_at = Column(DateTime(timezone=True), nullable=False, index=True)
    amount_cents = Column(Integer, nullable=False)
    amount_outstanding_cents = Column(Integer, nullable=False)
    status = Column(Enum(PaymentPlanPaymentStatus), default=PaymentPlanPaymentStatus.PENDING, nullable=False, index=True)

    retry_count = Column(Integer, default=0, nullable=False)
    last_retry_at = Column(DateTime(timezone=True), nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    stripe_payment_intent_id = Column(String(64), nullable=True)

    def __repr__(self):
        return f"<PaymentPlanPayment(id={self.id}, plan={self.payment_plan_id}, status='{self.status}')>"
