"""Account model: the authoritative credit balance per account."""

import uuid

from sqlalchemy import CheckConstraint, Column, DateTime, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class Account(Base):
    """Metered account. Balance and counters are only mutated by the ledger."""

    __tablename__ = "accounts"
    __table_args__ = (
        CheckConstraint("credits >= 0", name="ck_accounts_credits_non_negative"),
        CheckConstraint("total_generations >= 0", name="ck_accounts_generations_non_negative"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String, nullable=True, index=True)
    stripe_customer_id = Column(String, nullable=True, unique=True, index=True)
    credits = Column(Integer, nullable=False, default=0)
    plan = Column(String, nullable=False, default="free")
    total_generations = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    subscription = relationship("Subscription", back_populates="account", uselist=False, cascade="all, delete-orphan")
    credit_entries = relationship("CreditLedger", back_populates="account", cascade="all, delete-orphan")

    # Concurrent writers from another process fail with StaleDataError instead of overwriting.
    __mapper_args__ = {"version_id_col": version}
