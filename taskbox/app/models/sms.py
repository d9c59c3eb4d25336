"""
Outbound SMS database model.

A row is queued by inserting it together with a `sendSms` task; the
handler moves it to queued (Twilio accepted) or queue-failed exactly once.
"""

from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey
from sqlalchemy.sql import func
from taskbox.app.db.session import Base


class Sms(Base):
    """Outbound text message."""
    __tablename__ = "sms"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    trainer_id = Column(Integer, ForeignKey("trainers.id"), nullable=False, index=True)
    client_id = Column(Integer, ForeignKey("clients.id"), nullable=True, index=True)

    from_number = Column(String(32), nullable=True)
    to_number = Column(String(32), nullable=False)
    body = Column(Text, nullable=False)

    # Delivery state
    queued_at = Column(DateTime(timezone=True), nullable=True)
    twilio_message_sid = Column(String(64), nullable=True, unique=True)
    queue_failed_at = Column(DateTime(timezone=True), nullable=True)
    queue_failed_reason = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    @property
    def is_settled(self) -> bool:
        return (
            self.queued_at is not None
            or self.twilio_message_sid is not None
            or self.queue_failed_at is not None
        )

    def __repr__(self):
        return f"<Sms(id={self.id}, to='{self.to_number}', settled={self.is_settled})>"
