"""
Trainer database model.

Only the columns background tasks read or write are modelled here.
"""

from sqlalchemy import Column, Integer, String, Boolean, DateTime
from sqlalchemy.sql import func
from taskbox.app.db.session import Base


class Trainer(Base):
    """
    Trainer (account holder).

    Mailing-list sync and trial tagging key off the email and trial columns.
    """
    __tablename__ = "trainers"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    user_id = Column(Integer, nullable=False, unique=True, index=True)

    email = Column(String(255), nullable=False)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=True)
    business_name = Column(String(255), nullable=True)

    # Trial / subscription state
    trial_ends_at = Column(DateTime(timezone=True), nullable=True)
    subscribed = Column(Boolean, default=False, nullable=False)
    trialled_didnt_sub_tag_applied = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    @property
    def display_name(self) -> str:
        if self.business_name:
            return self.business_name
        return " ".join(part for part in (self.first_name, self.last_name) if part)

    def __repr__(self):
        return f"<Trainer(id={self.id}, email='{self.email}')>"
