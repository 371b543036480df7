"""BillingHistoryItem model."""

from sqlalchemy import BigInteger, Column, ForeignKey, Integer, String

from database import Base


class BillingHistoryItem(Base):
    """Immutable billing history row, capped per account by the subscription service."""

    __tablename__ = "billing_history"

    pk = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String, nullable=False, unique=True)
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False, index=True)
    billed_at_ms = Column(BigInteger, nullable=False, index=True)
    amount = Column(String, nullable=False)
    description = Column(String, nullable=False)
    status = Column(String, nullable=False)  # paid, pending, failed
