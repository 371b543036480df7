"""PendingOperation model: durable record of a deduction awaiting its outcome."""

from sqlalchemy import BigInteger, Column, ForeignKey, Integer, String

from database import Base


class PendingOperation(Base):
    """A deduction is pending until the caller confirms or refunds it."""

    __tablename__ = "pending_operations"

    id = Column(String, primary_key=True)
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False, index=True)
    operation_type = Column(String, nullable=True)
    cost = Column(Integer, nullable=False)
    status = Column(String, nullable=False, default="pending", index=True)  # pending, confirmed, refunded
    created_at_ms = Column(BigInteger, nullable=False, index=True)
    resolved_at_ms = Column(BigInteger, nullable=True)
