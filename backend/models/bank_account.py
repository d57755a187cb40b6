"""BankAccount model - a local bank account, optionally linked to GoCardless."""

from sqlalchemy import Column, DateTime, Numeric, String
from sqlalchemy.orm import relationship

from database import Base
from models.utils import generate_uuid, utcnow


class BankAccount(Base):
    """A local bank account.

    An account is "connected" when ``gocardless_account_id`` is set. The
    column is unique so an external account can back at most one local
    account at a time.
    """

    __tablename__ = "bank_accounts"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    name = Column(String, nullable=False)
    balance = Column(Numeric(18, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="EUR")
    account_type = Column(String, nullable=False, default="Checking")
    gocardless_account_id = Column(String, unique=True, index=True, nullable=True)
    last_balance_sync_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    transactions = relationship(
        "Transaction", back_populates="bank_account", cascade="all, delete-orphan"
    )
    pending_duplicates = relationship(
        "PendingDuplicate", back_populates="bank_account", cascade="all, delete-orphan"
    )

    @property
    def is_connected(self) -> bool:
        return self.gocardless_account_id is not None
