"""
App Store receipt database model.
"""

from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey
from taskbox.app.db.session import Base


class AppStoreReceipt(Base):
    """
    Latest known receipt per original transaction.

    Refreshed twice daily so subscription expiry stays current.
    """
    __tablename__ = "app_store_receipts"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    trainer_id = Column(Integer, ForeignKey("trainers.id"), nullable=False, index=True)

    original_transaction_id = Column(String(64), nullable=False, unique=True)
    encoded_receipt = Column(Text, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    refreshed_at = Column(DateTime(timezone=True), nullable=True)
    last_status = Column(Integer, nullable=True)

    def __repr__(self):
        return f"<AppStoreReceipt(id={self.id}, trainer={self.trainer_id}, expires_at={self.expires_at})>"
