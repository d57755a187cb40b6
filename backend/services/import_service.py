"""Import service - fetches, de-duplicates and stores bank transactions.

Runs over one or all connected accounts. Each account is handled on its
own: transactions are written inside a savepoint and committed before
the next account starts, so one failing bank never loses another bank's
rows and an interrupted run can simply be repeated. The balance is
synchronized after the transaction step settles, whether it succeeded
or not, and is counted separately.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Callable

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import settings
from integrations.aggregator_protocol import AggregatorClient, AggregatorTransaction
from integrations.exceptions import AggregatorError
from models import BankAccount, PendingDuplicate, Transaction
from services.balance_service import BalanceService
from services.bank_account_service import BankAccountNotFoundError, BankAccountService
from services.connection_registrar import ConnectionRegistrar
from services.duplicate_detector import (
    DuplicateDetector,
    TransactionFingerprint,
    normalize_description,
)

logger = logging.getLogger(__name__)

TRANSACTION_SOURCE = "gocardless"


class NoConnectedAccountsError(Exception):
    """There is nothing to import from; the user needs to connect a bank."""

    pass


class ImportInProgressError(Exception):
    pass


@dataclass
class ImportOptions:
    """How an import treats transactions that look like ones already stored.

    ``create_pending_for_duplicates`` only applies when duplicate checking
    is on; with ``skip_duplicate_check`` every fetched row is imported.
    """

    skip_duplicate_check: bool = False
    create_pending_for_duplicates: bool = False
    date_from: date | None = None
    date_to: date | None = None

    def __post_init__(self):
        if self.date_from and self.date_to and self.date_from > self.date_to:
            raise ValueError("date_from must not be after date_to")

    @property
    def create_pending(self) -> bool:
        return self.create_pending_for_duplicates and not self.skip_duplicate_check

    def window(self, today: date | None = None) -> tuple[date, date]:
        """Resolve the date window, defaulting to the last few days."""
        date_to = self.date_to or today or date.today()
        date_from = self.date_from or date_to - timedelta(days=settings.DEFAULT_IMPORT_DAYS)
        return date_from, date_to


@dataclass
class AccountImportResult:
    bank_account_id: str
    gocardless_account_id: str
    account_name: str
    success: bool = False
    new_transactions: int = 0
    duplicates: int = 0
    pending_duplicates: int = 0
    balance_synchronized: bool = False
    error: str | None = None
    balance_error: str | None = None


@dataclass
class ImportSummary:
    total_accounts: int = 0
    successful_accounts: int = 0
    failed_accounts: int = 0
    total_new_transactions: int = 0
    total_duplicates: int = 0
    total_pending_duplicates: int = 0
    balances_synchronized: int = 0

    @classmethod
    def from_results(cls, results: list[AccountImportResult]) -> "ImportSummary":
        successes = [r for r in results if r.success]
        return cls(
            total_accounts=len(results),
            successful_accounts=len(successes),
            failed_accounts=len(results) - len(successes),
            total_new_transactions=sum(r.new_transactions for r in results),
            total_duplicates=sum(r.duplicates for r in results),
            total_pending_duplicates=sum(r.pending_duplicates for r in results),
            balances_synchronized=sum(1 for r in results if r.balance_synchronized),
        )


@dataclass
class ImportProgress:
    """Advisory progress update; the final summary is authoritative."""

    percent: int
    step: str
    log_line: str | None = None

    def to_dict(self) -> dict:
        return {"percent": self.percent, "step": self.step, "log_line": self.log_line}


@dataclass
class ImportResult:
    summary: ImportSummary
    account_results: list[AccountImportResult] = field(default_factory=list)
    logs: list[str] = field(default_factory=list)


ProgressCallback = Callable[[ImportProgress], None]


def format_summary(summary: ImportSummary) -> list[str]:
    """User-facing lines; all four figures are always reported."""
    lines = [
        f"Imported {summary.total_new_transactions} new transaction(s) "
        f"from {summary.successful_accounts} of {summary.total_accounts} account(s)",
        f"Duplicates skipped: {summary.total_duplicates}",
        f"Pending duplicates for review: {summary.total_pending_duplicates}",
        f"Balances synchronized: {summary.balances_synchronized} of {summary.total_accounts}",
    ]
    if summary.failed_accounts:
        lines.append(f"Accounts with errors: {summary.failed_accounts}")
    return lines


def _pending_key(external_id: str | None, booking_date: date, amount, description: str | None):
    if external_id:
        return ("id", external_id)
    return ("content", booking_date, amount, normalize_description(description))


class ImportService:
    """Service for importing transactions from connected bank accounts."""

    # Class-level lock shared across all instances to prevent concurrent imports.
    # Single-process only, like the rest of the app.
    _import_lock = threading.Lock()

    def __init__(
        self,
        client: AggregatorClient,
        balance_service: BalanceService | None = None,
        date_tolerance_days: int | None = None,
    ):
        self._client = client
        self._balances = balance_service or BalanceService(client)
        self._date_tolerance_days = (
            settings.DUPLICATE_DATE_TOLERANCE_DAYS
            if date_tolerance_days is None
            else date_tolerance_days
        )

    @classmethod
    def is_import_in_progress(cls) -> bool:
        acquired = cls._import_lock.acquire(blocking=False)
        if acquired:
            cls._import_lock.release()
            return False
        return True

    def import_all(
        self,
        db: Session,
        options: ImportOptions | None = None,
        progress: ProgressCallback | None = None,
    ) -> ImportResult:
        """Import every connected account.

        Raises:
            NoConnectedAccountsError: No local account is linked to a bank.
            ImportInProgressError: Another import is running.
        """
        accounts = BankAccountService.list_connected(db)
        if not accounts:
            raise NoConnectedAccountsError(
                "No bank accounts are connected. Connect a bank first."
            )
        return self._run(db, accounts, options or ImportOptions(), progress)

    def import_single(
        self,
        db: Session,
        gocardless_account_id: str,
        bank_account_id: str | None = None,
        options: ImportOptions | None = None,
        progress: ProgressCallback | None = None,
    ) -> ImportResult:
        """Import one external account into its linked local account.

        Raises:
            BankAccountNotFoundError: No local account is linked to it.
            ImportInProgressError: Another import is running.
        """
        if bank_account_id:
            account = BankAccountService.get_account(db, bank_account_id)
        else:
            account = BankAccountService.find_by_external_id(db, gocardless_account_id)
        if account is None or account.gocardless_account_id != gocardless_account_id:
            raise BankAccountNotFoundError(
                f"No bank account linked to {gocardless_account_id}"
            )
        return self._run(db, [account], options or ImportOptions(), progress)

    def _run(
        self,
        db: Session,
        accounts: list[BankAccount],
        options: ImportOptions,
        progress: ProgressCallback | None,
    ) -> ImportResult:
        if not self._import_lock.acquire(blocking=False):
            raise ImportInProgressError("An import is already in progress")
        try:
            logs: list[str] = []
            results: list[AccountImportResult] = []
            date_from, date_to = options.window()
            total = len(accounts)

            def emit(percent: int, step: str, log_line: str | None = None) -> None:
                if log_line:
                    logs.append(log_line)
                if progress is None:
                    return
                try:
                    progress(ImportProgress(percent, step, log_line))
                except Exception:
                    logger.warning("Import progress callback failed", exc_info=True)

            emit(
                0,
                "Starting import",
                f"Importing {total} account(s) from {date_from.isoformat()} to {date_to.isoformat()}",
            )
            for index, account in enumerate(accounts):
                emit(index * 100 // total, f"Importing {account.name}")
                result = self._import_account(db, account, options, date_from, date_to)
                result.balance_synchronized = self._sync_balance(db, account, result)
                self._record_sync(db, account, result)
                results.append(result)
                emit((index + 1) * 100 // total, f"Imported {account.name}", _account_log_line(result))

            summary = ImportSummary.from_results(results)
            for line in format_summary(summary):
                logs.append(line)
            emit(100, "Import complete")
            logger.info(
                "Import finished: %d new, %d duplicates, %d pending, %d/%d balances, %d failed",
                summary.total_new_transactions,
                summary.total_duplicates,
                summary.total_pending_duplicates,
                summary.balances_synchronized,
                summary.total_accounts,
                summary.failed_accounts,
            )
            return ImportResult(summary=summary, account_results=results, logs=logs)
        finally:
            self._import_lock.release()

    def _import_account(
        self,
        db: Session,
        account: BankAccount,
        options: ImportOptions,
        date_from: date,
        date_to: date,
    ) -> AccountImportResult:
        result = AccountImportResult(
            bank_account_id=account.id,
            gocardless_account_id=account.gocardless_account_id,
            account_name=account.name,
        )
        try:
            fetched = self._client.get_transactions(account.gocardless_account_id, date_from, date_to)
        except AggregatorError as exc:
            logger.warning("Transactions for %s unavailable: %s", account.name, exc)
            result.error = str(exc)
            return result
        except Exception as exc:
            # Safety net for unexpected errors
            logger.error(
                "Unexpected error fetching transactions for %s: %s",
                account.name, exc, exc_info=True,
            )
            result.error = str(exc)
            return result

        savepoint = db.begin_nested()
        try:
            self._store_transactions(db, account, fetched, options, date_from, date_to, result)
            savepoint.commit()
            db.commit()
        except SQLAlchemyError as exc:
            if savepoint.is_active:
                savepoint.rollback()
            db.rollback()
            logger.error("Storing transactions for %s failed", account.name, exc_info=True)
            result.new_transactions = result.duplicates = result.pending_duplicates = 0
            result.error = f"Could not save transactions: {exc}"
            return result
        except Exception as exc:
            if savepoint.is_active:
                savepoint.rollback()
            db.rollback()
            logger.error(
                "Unexpected error storing transactions for %s: %s",
                account.name, exc, exc_info=True,
            )
            result.new_transactions = result.duplicates = result.pending_duplicates = 0
            result.error = str(exc)
            return result

        result.success = True
        return result

    def _seed_detector(
        self,
        db: Session,
        account: BankAccount,
        fetched: list[AggregatorTransaction],
        date_from: date,
        date_to: date,
    ) -> DuplicateDetector:
        detector = DuplicateDetector(self._date_tolerance_days)
        slack = timedelta(days=self._date_tolerance_days)
        lows = [t.booking_date for t in fetched] + [date_from]
        highs = [t.booking_date for t in fetched] + [date_to]
        external_ids = [t.external_id for t in fetched if t.external_id]
        conditions = [Transaction.booking_date.between(min(lows) - slack, max(highs) + slack)]
        if external_ids:
            conditions.append(Transaction.external_id.in_(external_ids))
        stored = (
            db.query(Transaction)
            .filter(Transaction.bank_account_id == account.id, or_(*conditions))
            .all()
        )
        detector.extend(
            TransactionFingerprint(
                external_id=row.external_id,
                booking_date=row.booking_date,
                amount=row.amount,
                description=row.description or "",
                transaction_id=row.id,
            )
            for row in stored
        )
        return detector

    def _store_transactions(
        self,
        db: Session,
        account: BankAccount,
        fetched: list[AggregatorTransaction],
        options: ImportOptions,
        date_from: date,
        date_to: date,
        result: AccountImportResult,
    ) -> None:
        detector = None
        if not options.skip_duplicate_check:
            detector = self._seed_detector(db, account, fetched, date_from, date_to)

        pending_keys = set()
        if options.create_pending:
            pending_keys = {
                _pending_key(p.external_id, p.booking_date, p.amount, p.description)
                for p in db.query(PendingDuplicate)
                .filter(PendingDuplicate.bank_account_id == account.id)
                .all()
            }

        for tx in fetched:
            fingerprint = TransactionFingerprint(
                external_id=tx.external_id,
                booking_date=tx.booking_date,
                amount=tx.amount,
                description=tx.description,
            )
            if detector is not None:
                match = detector.find_duplicate(fingerprint)
                if match is not None:
                    key = _pending_key(tx.external_id, tx.booking_date, tx.amount, tx.description)
                    # Exact id matches are certain; only content matches need review
                    if options.create_pending and not match.exact and key not in pending_keys:
                        db.add(
                            PendingDuplicate(
                                bank_account_id=account.id,
                                existing_transaction_id=match.existing.transaction_id,
                                external_id=tx.external_id,
                                booking_date=tx.booking_date,
                                amount=tx.amount,
                                currency=tx.currency,
                                description=tx.description,
                                raw_data=tx.raw_data,
                            )
                        )
                        pending_keys.add(key)
                        result.pending_duplicates += 1
                    else:
                        result.duplicates += 1
                    continue

            row = Transaction(
                bank_account_id=account.id,
                external_id=tx.external_id,
                booking_date=tx.booking_date,
                amount=tx.amount,
                currency=tx.currency,
                description=tx.description,
                type="income" if tx.amount > 0 else "expense",
                source=TRANSACTION_SOURCE,
            )
            db.add(row)
            db.flush()
            if detector is not None:
                detector.add(
                    TransactionFingerprint(
                        external_id=row.external_id,
                        booking_date=row.booking_date,
                        amount=row.amount,
                        description=row.description or "",
                        transaction_id=row.id,
                    )
                )
            result.new_transactions += 1

    def _sync_balance(self, db: Session, account: BankAccount, result: AccountImportResult) -> bool:
        try:
            self._balances.sync_account_balance(db, account)
            db.commit()
        except (AggregatorError, SQLAlchemyError) as exc:
            db.rollback()
            logger.warning("Balance sync for %s failed: %s", account.name, exc)
            result.balance_error = str(exc)
            return False
        except Exception as exc:
            db.rollback()
            logger.error(
                "Unexpected error syncing balance for %s: %s",
                account.name, exc, exc_info=True,
            )
            result.balance_error = str(exc)
            return False
        return True

    def _record_sync(self, db: Session, account: BankAccount, result: AccountImportResult) -> None:
        connection = ConnectionRegistrar.connection_for_account(db, account.gocardless_account_id)
        if connection is None:
            return
        connection.last_sync_at = datetime.now(timezone.utc)
        connection.last_sync_error = result.error
        try:
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.warning(
                "Could not record sync time on connection %s", connection.requisition_id, exc_info=True
            )


def _account_log_line(result: AccountImportResult) -> str:
    if not result.success:
        return f"{result.account_name}: failed ({result.error})"
    line = (
        f"{result.account_name}: {result.new_transactions} new, "
        f"{result.duplicates} duplicate(s), {result.pending_duplicates} pending"
    )
    if not result.balance_synchronized:
        line += ", balance not updated"
    return line
