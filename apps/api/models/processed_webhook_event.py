"""ProcessedWebhookEvent model for webhook idempotency."""

from sqlalchemy import Column, DateTime, String
from sqlalchemy.sql import func

from database import Base


class ProcessedWebhookEvent(Base):
    """One row per provider event id; the primary key rejects a second application."""

    __tablename__ = "processed_webhook_events"

    event_id = Column(String, primary_key=True)
    event_type = Column(String, nullable=False)
    account_id = Column(String, nullable=True, index=True)
    outcome = Column(String, nullable=False)  # applied, ignored
    detail = Column(String, nullable=True)
    received_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
