"""Subscription model: one row per purchase or Stripe subscription."""

import uuid

from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


SUBSCRIPTION_STATUSES = ("pending", "completed", "failed", "cancelled")


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    payment_provider = Column(String, nullable=False, default="stripe")
    external_subscription_id = Column(String, unique=True, nullable=True)
    apple_transaction_id = Column(String, unique=True, nullable=True)
    stripe_price_id = Column(String, nullable=True)
    tier = Column(String, nullable=False)
    price = Column(Float, nullable=False, default=0.0)
    credits_per_month = Column(Integer, nullable=False, default=0)
    images_per_month = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False, default="pending", index=True)
    purchased_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    auto_renew = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    user = relationship("User", back_populates="subscriptions")
    payments = relationship("PaymentHistory", back_populates="subscription")
