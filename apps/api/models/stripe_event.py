"""Processed Stripe webhook events."""

from sqlalchemy import Column, DateTime, String
from sqlalchemy.sql import func

from database import Base


class StripeEvent(Base):
    """One row per Stripe event id applied. The primary key makes redelivery a no-op."""

    __tablename__ = "stripe_events"

    id = Column(String, primary_key=True)
    event_type = Column(String, nullable=False)
    outcome = Column(String, nullable=False)
    processed_at = Column(DateTime(timezone=True), server_default=func.now())
