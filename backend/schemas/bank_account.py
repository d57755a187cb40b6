"""Pydantic schemas for bank account endpoints."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import Field

from schemas.gocardless import CamelModel, ConnectionAlertResponse


class BankAccountCreate(CamelModel):
    """Schema for creating a bank account."""

    name: str = Field(min_length=1)
    balance: Decimal = Decimal("0")
    currency: str = Field("EUR", min_length=3, max_length=3)
    account_type: str = Field("Checking", alias="type")
    gocardless_account_id: Optional[str] = None


class BankAccountUpdate(CamelModel):
    """Schema for updating a bank account.

    Sending ``gocardlessAccountId: null`` explicitly unlinks the account;
    leaving it out keeps the current link.
    """

    name: Optional[str] = Field(None, min_length=1)
    balance: Optional[Decimal] = None
    gocardless_account_id: Optional[str] = None


class BankAccountResponse(CamelModel):
    """Schema for bank account API responses."""

    id: str
    name: str
    balance: Decimal
    currency: str
    account_type: str = Field(alias="type")
    gocardless_account_id: Optional[str] = None
    last_balance_sync_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    connection_alert: Optional[ConnectionAlertResponse] = None
