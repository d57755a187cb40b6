"""Balance service - picks and stores the current balance of linked accounts."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from integrations.aggregator_protocol import AggregatorBalance, AggregatorClient
from integrations.exceptions import AggregatorError
from models import BankAccount
from services.bank_account_service import BankAccountService

logger = logging.getLogger(__name__)

# Balance types that reflect the spendable position, in preference order
PREFERRED_BALANCE_TYPES = ("expected", "interimAvailable")


def select_current_balance(balances: list[AggregatorBalance]) -> AggregatorBalance | None:
    """Pick the balance to show for an account.

    The first ``expected`` or ``interimAvailable`` entry wins; otherwise the
    first entry; ``None`` if there are no entries at all.
    """
    for entry in balances:
        if entry.balance_type in PREFERRED_BALANCE_TYPES:
            return entry
    return balances[0] if balances else None


@dataclass
class BalanceSyncResult:
    bank_account_id: str
    account_name: str
    success: bool
    balance: Decimal | None = None
    error: str | None = None


@dataclass
class BalanceSyncSummary:
    total_accounts: int = 0
    synchronized: int = 0
    failed: int = 0
    results: list[BalanceSyncResult] = field(default_factory=list)


class BalanceService:
    """Fetches balances from the aggregator and writes them to local accounts."""

    def __init__(self, client: AggregatorClient):
        self._client = client

    def fetch_current_balance(self, gocardless_account_id: str) -> Decimal | None:
        """Current balance for an external account, ``None`` if none reported.

        Raises:
            AggregatorError: The balance request failed.
        """
        selected = select_current_balance(self._client.get_balances(gocardless_account_id))
        return selected.amount if selected is not None else None

    def sync_account_balance(self, db: Session, account: BankAccount) -> Decimal | None:
        """Refresh one linked account's balance (flushes, does not commit).

        Returns:
            The stored balance, or ``None`` when the bank reported none and
            the existing balance was left alone.
        """
        if not account.gocardless_account_id:
            raise ValueError(f"Bank account {account.id} is not linked")
        amount = self.fetch_current_balance(account.gocardless_account_id)
        if amount is None:
            logger.info("No balance reported for %s", account.gocardless_account_id)
            return None
        account.balance = amount
        account.last_balance_sync_at = datetime.now(timezone.utc)
        db.flush()
        return amount

    def sync_all(self, db: Session) -> BalanceSyncSummary:
        """Refresh every connected account; failures are isolated per account."""
        summary = BalanceSyncSummary()
        for account in BankAccountService.list_connected(db):
            summary.total_accounts += 1
            try:
                amount = self.sync_account_balance(db, account)
                db.commit()
            except AggregatorError as exc:
                db.rollback()
                logger.warning("Balance sync failed for %s: %s", account.name, exc)
                self._record_failure(summary, account, str(exc))
                continue
            except SQLAlchemyError as exc:
                db.rollback()
                logger.error("Saving balance for %s failed", account.name, exc_info=True)
                self._record_failure(summary, account, f"Could not save balance: {exc}")
                continue
            except Exception as exc:
                # Safety net for unexpected errors
                db.rollback()
                logger.error(
                    "Unexpected error syncing balance for %s: %s",
                    account.name, exc, exc_info=True,
                )
                self._record_failure(summary, account, str(exc))
                continue
            summary.synchronized += 1
            summary.results.append(BalanceSyncResult(account.id, account.name, True, balance=amount))
        logger.info(
            "Balance sync: %d/%d accounts synchronized",
            summary.synchronized,
            summary.total_accounts,
        )
        return summary

    @staticmethod
    def _record_failure(summary: BalanceSyncSummary, account: BankAccount, error: str) -> None:
        summary.failed += 1
        summary.results.append(BalanceSyncResult(account.id, account.name, False, error=error))
