"""CreditTransaction model for the credit ledger."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


TRANSACTION_TYPES = ("initial", "subscription", "purchase", "usage", "refund")


class CreditTransaction(Base):
    """Immutable credit ledger entry. ``balance_after`` is the user balance right after ``amount``."""

    __tablename__ = "credit_transactions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    transaction_type = Column(String, nullable=False, index=True)
    description = Column(String, nullable=True)
    related_id = Column(String, nullable=True, index=True)
    balance_after = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    user = relationship("User", back_populates="credit_transactions")
