"""Transaction model - a booked movement on a local bank account."""

from sqlalchemy import Column, Date, DateTime, ForeignKey, Numeric, String
from sqlalchemy.orm import relationship

from database import Base
from models.utils import generate_uuid, utcnow


class Transaction(Base):
    """A single booked transaction.

    ``amount`` is signed the way the bank reports it: negative for money
    leaving the account. ``type`` is derived from the sign.
    """

    __tablename__ = "transactions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    bank_account_id = Column(
        String(36), ForeignKey("bank_accounts.id"), nullable=False, index=True
    )
    external_id = Column(String, nullable=True, index=True)  # GoCardless transactionId
    booking_date = Column(Date, nullable=False, index=True)
    amount = Column(Numeric(18, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="EUR")
    description = Column(String, nullable=True)
    type = Column(String, nullable=False)  # "income" | "expense"
    source = Column(String, nullable=False, default="manual")  # "manual" | "gocardless"
    created_at = Column(DateTime, default=utcnow)

    bank_account = relationship("BankAccount", back_populates="transactions")
