"""SQLAlchemy ORM models."""

from .bank_account import BankAccount
from .gocardless_connection import GocardlessConnection
from .pending_duplicate import PendingDuplicate
from .transaction import Transaction
from .utils import generate_uuid, utcnow

__all__ = ["BankAccount", "GocardlessConnection", "PendingDuplicate", "Transaction", "generate_uuid", "utcnow"]
