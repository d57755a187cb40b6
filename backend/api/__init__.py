"""API route handlers."""
from . import authorizations, bank_accounts, gocardless, pending_duplicates

__all__ = ["authorizations", "bank_accounts", "gocardless", "pending_duplicates"]
