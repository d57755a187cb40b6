"""Aggregator protocol definitions.

Normalized shapes for what the bank-data aggregator returns, plus the
client interface the services depend on. The GoCardless client maps its
JSON onto these; tests substitute an in-memory implementation.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Protocol

# Requisition status meaning "accounts linked, data access granted"
REQUISITION_LINKED = "LN"


@dataclass(frozen=True)
class Institution:
    """A bank the user can connect to.

    Immutable once loaded; the institution directory caches lists of these
    per country.
    """

    id: str
    name: str
    bic: str = ""
    transaction_total_days: int = 90  # How far back transactions can be fetched
    logo: str = ""
    countries: tuple[str, ...] = ()
    max_access_valid_for_days: int | None = None


@dataclass
class ExternalAccount:
    """A bank account as the aggregator exposes it after authorization."""

    id: str
    iban: str = ""
    name: str = ""
    currency: str = "EUR"

    @classmethod
    def placeholder(cls, account_id: str) -> "ExternalAccount":
        """Details used when the aggregator returns nothing for an account."""
        return cls(id=account_id, iban="", name=f"Account {account_id[-4:]}", currency="EUR")


@dataclass
class Agreement:
    """End-user agreement governing history depth and access lifetime."""

    id: str
    institution_id: str
    max_historical_days: int
    access_valid_for_days: int
    accepted: datetime | None = None


@dataclass
class Requisition:
    """An authorization request and, once linked, its granted accounts."""

    id: str
    status: str
    institution_id: str
    reference: str = ""
    agreement_id: str | None = None
    link: str = ""
    created: datetime | None = None
    accounts: list[str] = field(default_factory=list)

    @property
    def is_linked(self) -> bool:
        return self.status == REQUISITION_LINKED


@dataclass
class AggregatorBalance:
    """One balance entry for an account (several types per account)."""

    balance_type: str  # e.g. "expected", "interimAvailable", "closingBooked"
    amount: Decimal
    currency: str


@dataclass
class AggregatorTransaction:
    """A booked transaction, amount signed as the bank reports it."""

    account_id: str
    booking_date: date
    amount: Decimal
    currency: str
    external_id: str | None = None  # Aggregator transactionId, not always present
    value_date: date | None = None
    description: str = ""
    raw_data: dict | None = None


class AggregatorClient(Protocol):
    """Operations the services need from the bank-data aggregator."""

    def is_configured(self) -> bool:
        """Whether credentials are present."""
        ...

    def list_institutions(self, country: str) -> list[Institution]:
        ...

    def get_institution(self, institution_id: str) -> Institution:
        ...

    def create_agreement(
        self,
        institution_id: str,
        max_historical_days: int,
        access_valid_for_days: int,
    ) -> Agreement:
        ...

    def get_agreement(self, agreement_id: str) -> Agreement:
        ...

    def create_requisition(
        self,
        institution_id: str,
        redirect_url: str,
        reference: str,
        agreement_id: str | None = None,
        user_language: str | None = None,
    ) -> Requisition:
        ...

    def get_requisition(self, requisition_id: str) -> Requisition:
        ...

    def find_requisition_by_reference(self, reference: str) -> Requisition | None:
        ...

    def delete_requisition(self, requisition_id: str) -> None:
        ...

    def get_account_details(self, account_id: str) -> ExternalAccount:
        ...

    def get_balances(self, account_id: str) -> list[AggregatorBalance]:
        ...

    def get_transactions(
        self,
        account_id: str,
        date_from: date | None = None,
        date_to: date | None = None,
    ) -> list[AggregatorTransaction]:
        ...
