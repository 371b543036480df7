"""Subscription model: one entitlement record per account."""

from sqlalchemy import BigInteger, Boolean, Column, DateTime, ForeignKey, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class Subscription(Base):
    """Subscription state machine record. Timestamps are Unix milliseconds."""

    __tablename__ = "subscriptions"

    account_id = Column(String, ForeignKey("accounts.id"), primary_key=True)
    status = Column(String, nullable=False, default="trialing")  # trialing, active, past_due, cancelled
    plan = Column(String, nullable=False, default="free")
    stripe_subscription_id = Column(String, nullable=True, index=True)
    started_at_ms = Column(BigInteger, nullable=False)
    current_period_end_ms = Column(BigInteger, nullable=False)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    last_provider_event_ms = Column(BigInteger, nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    account = relationship("Account", back_populates="subscription")
