"""Payment attempt audit record."""

import uuid

from sqlalchemy import Column, DateTime, Float, ForeignKey, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class PaymentHistory(Base):
    """Immutable record per payment attempt. Not used for balance computation."""

    __tablename__ = "payment_history"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    subscription_id = Column(String, ForeignKey("subscriptions.id"), nullable=True, index=True)
    # invoice id, checkout session id or App Store transaction id
    external_payment_id = Column(String, unique=True, nullable=True)
    stripe_payment_intent_id = Column(String, nullable=True)
    payment_provider = Column(String, nullable=False, default="stripe")
    amount = Column(Float, nullable=False, default=0.0)
    currency = Column(String, nullable=False, default="usd")
    status = Column(String, nullable=False)
    receipt_data = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    user = relationship("User", back_populates="payments")
    subscription = relationship("Subscription", back_populates="payments")
