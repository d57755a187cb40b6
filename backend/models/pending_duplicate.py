"""PendingDuplicate model - an imported row held back for manual review."""

from sqlalchemy import JSON, Boolean, Column, Date, DateTime, ForeignKey, Numeric, String
from sqlalchemy.orm import relationship

from database import Base
from models.utils import generate_uuid, utcnow


class PendingDuplicate(Base):
    """A fetched transaction that looked like one already stored.

    Created only when an import runs with ``create_pending_for_duplicates``.
    The user later either keeps the existing row or imports this one.
    """

    __tablename__ = "pending_duplicates"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    bank_account_id = Column(
        String(36), ForeignKey("bank_accounts.id"), nullable=False, index=True
    )
    existing_transaction_id = Column(
        String(36), ForeignKey("transactions.id"), nullable=True
    )
    external_id = Column(String, nullable=True, index=True)
    booking_date = Column(Date, nullable=False)
    amount = Column(Numeric(18, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="EUR")
    description = Column(String, nullable=True)
    raw_data = Column(JSON, nullable=True)
    resolved = Column(Boolean, nullable=False, default=False)
    resolution = Column(String, nullable=True)  # "kept_existing" | "imported"
    created_at = Column(DateTime, default=utcnow)
    resolved_at = Column(DateTime, nullable=True)

    bank_account = relationship("BankAccount", back_populates="pending_duplicates")
    existing_transaction = relationship("Transaction")
