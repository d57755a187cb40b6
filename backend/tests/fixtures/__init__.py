"""Test fixtures and sample data."""
import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from models import BankAccount, GocardlessConnection, Transaction
from sqlalchemy.orm import Session


def create_connection(
    db: Session,
    linked_account_ids: list[str],
    expires_in: timedelta = timedelta(days=60),
    requisition_id: str = "req-existing",
    institution_id: str = "INTESA_SANPAOLO_BCITITMM",
    status: str = "active",
    now: datetime | None = None,
) -> GocardlessConnection:
    """Create a registered connection expiring ``expires_in`` from ``now``.

    This is a helper function (not a fixture) for tests that need several
    connections with different lifetimes.
    """
    now = now or datetime.now(timezone.utc)
    connection = GocardlessConnection(
        requisition_id=requisition_id,
        institution_id=institution_id,
        institution_name="Intesa Sanpaolo",
        status=status,
        connected_at=now - timedelta(days=90) + expires_in,
        expires_at=now + expires_in,
        access_valid_for_days=90,
        linked_account_ids=list(linked_account_ids),
    )
    db.add(connection)
    db.flush()
    return connection


def create_transaction(
    db: Session,
    account: BankAccount,
    booking_date,
    amount: str,
    description: str = "",
    external_id: str | None = None,
) -> Transaction:
    row = Transaction(
        bank_account_id=account.id,
        external_id=external_id,
        booking_date=booking_date,
        amount=Decimal(amount),
        currency="EUR",
        description=description,
        type="income" if Decimal(amount) > 0 else "expense",
        source="gocardless",
    )
    db.add(row)
    db.flush()
    return row


@pytest.fixture
def bank_account(db: Session) -> BankAccount:
    """A local account without a GoCardless link."""
    account = BankAccount(name="Household", balance=Decimal("250.00"), currency="EUR")
    db.add(account)
    db.commit()
    db.refresh(account)
    return account


@pytest.fixture
def linked_account(db: Session) -> BankAccount:
    """A local account linked to the ``acc-main`` external account."""
    account = BankAccount(
        name="Conto Corrente",
        balance=Decimal("1000.00"),
        currency="EUR",
        gocardless_account_id="acc-main",
    )
    db.add(account)
    db.commit()
    db.refresh(account)
    return account


@pytest.fixture
def second_linked_account(db: Session) -> BankAccount:
    """A local account linked to the ``acc-savings`` external account."""
    account = BankAccount(
        name="Conto Deposito",
        balance=Decimal("5000.00"),
        currency="EUR",
        gocardless_account_id="acc-savings",
    )
    db.add(account)
    db.commit()
    db.refresh(account)
    return account


@pytest.fixture
def connection(db: Session, linked_account: BankAccount) -> GocardlessConnection:
    """An active connection covering ``linked_account``, far from expiry."""
    conn = create_connection(db, [linked_account.gocardless_account_id])
    db.commit()
    return conn
