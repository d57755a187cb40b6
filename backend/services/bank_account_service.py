"""Bank account service - local account reads and writes."""

import logging
from decimal import Decimal

from sqlalchemy.orm import Session

from models import BankAccount

logger = logging.getLogger(__name__)

DEFAULT_ACCOUNT_TYPE = "Checking"

_UNSET = object()


class BankAccountNotFoundError(Exception):
    pass


class AccountLinkConflictError(Exception):
    """The external account already backs a different local account."""

    def __init__(self, gocardless_account_id: str, linked_account_id: str):
        self.gocardless_account_id = gocardless_account_id
        self.linked_account_id = linked_account_id
        super().__init__(
            f"External account {gocardless_account_id} is already linked to "
            f"bank account {linked_account_id}"
        )


class BankAccountService:
    """Service for bank account CRUD and GoCardless linking.

    Methods ``flush()``; committing is left to the caller.
    """

    @staticmethod
    def list_accounts(db: Session) -> list[BankAccount]:
        return db.query(BankAccount).order_by(BankAccount.name).all()

    @staticmethod
    def list_connected(db: Session) -> list[BankAccount]:
        """Accounts with a GoCardless link, in name order."""
        return (
            db.query(BankAccount)
            .filter(BankAccount.gocardless_account_id.isnot(None))
            .order_by(BankAccount.name)
            .all()
        )

    @staticmethod
    def get_account(db: Session, account_id: str) -> BankAccount | None:
        return db.query(BankAccount).filter(BankAccount.id == account_id).first()

    @staticmethod
    def find_by_external_id(db: Session, gocardless_account_id: str) -> BankAccount | None:
        return (
            db.query(BankAccount)
            .filter(BankAccount.gocardless_account_id == gocardless_account_id)
            .first()
        )

    @staticmethod
    def _check_link(db: Session, gocardless_account_id: str, account_id: str | None) -> None:
        linked = BankAccountService.find_by_external_id(db, gocardless_account_id)
        if linked is not None and linked.id != account_id:
            raise AccountLinkConflictError(gocardless_account_id, linked.id)

    @staticmethod
    def create_account(
        db: Session,
        *,
        name: str,
        balance: Decimal = Decimal("0"),
        currency: str = "EUR",
        account_type: str = DEFAULT_ACCOUNT_TYPE,
        gocardless_account_id: str | None = None,
    ) -> BankAccount:
        """Create a local account, optionally already linked.

        Raises:
            AccountLinkConflictError: ``gocardless_account_id`` backs another account.
        """
        if gocardless_account_id:
            BankAccountService._check_link(db, gocardless_account_id, None)
        account = BankAccount(
            name=name,
            balance=balance,
            currency=currency,
            account_type=account_type,
            gocardless_account_id=gocardless_account_id or None,
        )
        db.add(account)
        db.flush()
        logger.info("Bank account created: %s (id=%s)", account.name, account.id)
        return account

    @staticmethod
    def update_account(
        db: Session,
        account: BankAccount,
        *,
        name: str | None = None,
        balance: Decimal | None = None,
        gocardless_account_id=_UNSET,
    ) -> BankAccount:
        """Update fields; pass ``gocardless_account_id=None`` to unlink.

        Raises:
            AccountLinkConflictError: The new external id backs another account.
        """
        if name is not None:
            account.name = name
        if balance is not None:
            account.balance = balance
        if gocardless_account_id is not _UNSET:
            if gocardless_account_id:
                BankAccountService._check_link(db, gocardless_account_id, account.id)
            account.gocardless_account_id = gocardless_account_id or None
        db.flush()
        return account

    @staticmethod
    def link(
        db: Session,
        account: BankAccount,
        gocardless_account_id: str,
        balance: Decimal | None = None,
    ) -> BankAccount:
        """Associate ``account`` with an external account (and refresh its balance)."""
        BankAccountService.update_account(
            db, account, balance=balance, gocardless_account_id=gocardless_account_id
        )
        logger.info("Bank account %s linked to %s", account.id, gocardless_account_id)
        return account
