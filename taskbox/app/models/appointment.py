"""
Appointment database model (reminder-relevant columns only).
"""

from sqlalchemy import Column, Integer, Boolean, DateTime, ForeignKey
from taskbox.app.db.session import Base


class Appointment(Base):
    """A booked session that may trigger an SMS reminder."""
    __tablename__ = "appointments"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    trainer_id = Column(Integer, ForeignKey("trainers.id"), nullable=False, index=True)
    client_id = Column(Integer, ForeignKey("clients.id"), nullable=False, index=True)

    starts_at = Column(DateTime(timezone=True), nullable=False, index=True)
    sms_reminder_enabled = Column(Boolean, default=True, nullable=False)
    reminder_minutes_before = Column(Integer, default=60, nullable=False)
    reminder_queued_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<Appointment(id={self.id}, starts_at={self.starts_at})>"
