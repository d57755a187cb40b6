"""Unit tests for ImportService."""

from datetime import date, timedelta
from decimal import Decimal

import httpx
import pytest

from models import PendingDuplicate, Transaction
from services.bank_account_service import BankAccountNotFoundError
from services.import_service import (
    ImportInProgressError,
    ImportOptions,
    ImportService,
    ImportSummary,
    NoConnectedAccountsError,
    format_summary,
)
from tests.fixtures import create_transaction
from tests.fixtures.mocks import MockGocardlessClient, expected_balance, make_transaction

MARCH = dict(date_from=date(2024, 3, 1), date_to=date(2024, 3, 31))


def march_transactions(account_id="acc-main"):
    return [
        make_transaction(account_id, date(2024, 3, 4), "-12.50", "Coffee Bar", "tx-1"),
        make_transaction(account_id, date(2024, 3, 5), "1500.00", "Salary March", "tx-2"),
        make_transaction(account_id, date(2024, 3, 9), "-60.00", "Groceries", "tx-3"),
    ]


@pytest.fixture
def client():
    return MockGocardlessClient(
        balances={
            "acc-main": [expected_balance("2427.50")],
            "acc-savings": [expected_balance("8000.00")],
        },
        transactions={
            "acc-main": march_transactions(),
            "acc-savings": [
                make_transaction("acc-savings", date(2024, 3, 31), "4.20", "Interest", "sv-1")
            ],
        },
    )


@pytest.fixture
def service(client):
    return ImportService(client, date_tolerance_days=1)


def stored(db, account):
    return db.query(Transaction).filter(Transaction.bank_account_id == account.id).all()


class TestImportOptions:
    def test_rejects_inverted_window(self):
        with pytest.raises(ValueError):
            ImportOptions(date_from=date(2024, 3, 2), date_to=date(2024, 3, 1))

    def test_default_window(self):
        date_from, date_to = ImportOptions().window(today=date(2024, 3, 31))
        assert date_to == date(2024, 3, 31)
        assert date_from == date(2024, 3, 31) - timedelta(days=7)

    def test_skip_disables_pending(self):
        options = ImportOptions(skip_duplicate_check=True, create_pending_for_duplicates=True)
        assert options.create_pending is False


class TestImportAll:
    def test_imports_new_transactions(self, db, service, linked_account):
        result = service.import_all(db, ImportOptions(**MARCH))

        summary = result.summary
        assert summary.total_accounts == 1
        assert summary.successful_accounts == 1
        assert summary.total_new_transactions == 3
        assert summary.total_duplicates == 0
        assert summary.balances_synchronized == 1

        rows = stored(db, linked_account)
        assert {r.external_id for r in rows} == {"tx-1", "tx-2", "tx-3"}
        salary = next(r for r in rows if r.external_id == "tx-2")
        assert salary.type == "income"
        assert salary.source == "gocardless"
        db.refresh(linked_account)
        assert linked_account.balance == Decimal("2427.50")

    def test_rerun_is_idempotent(self, db, service, linked_account):
        service.import_all(db, ImportOptions(**MARCH))
        result = service.import_all(db, ImportOptions(**MARCH))

        assert result.summary.total_new_transactions == 0
        assert result.summary.total_duplicates == 3
        assert len(stored(db, linked_account)) == 3

    def test_rerun_with_pending_enabled_creates_no_pending(self, db, service, linked_account):
        service.import_all(db, ImportOptions(**MARCH))
        result = service.import_all(
            db, ImportOptions(create_pending_for_duplicates=True, **MARCH)
        )
        assert result.summary.total_pending_duplicates == 0
        assert db.query(PendingDuplicate).count() == 0

    def test_skip_duplicate_check_imports_everything(self, db, service, linked_account):
        service.import_all(db, ImportOptions(**MARCH))
        result = service.import_all(
            db,
            ImportOptions(
                skip_duplicate_check=True, create_pending_for_duplicates=True, **MARCH
            ),
        )
        assert result.summary.total_new_transactions == 3
        assert result.summary.total_pending_duplicates == 0
        assert db.query(PendingDuplicate).count() == 0
        assert len(stored(db, linked_account)) == 6

    def test_content_match_becomes_pending(self, db, service, linked_account):
        existing = create_transaction(db, linked_account, date(2024, 3, 5), "-12.50", "coffee bar")
        db.commit()

        result = service.import_all(db, ImportOptions(create_pending_for_duplicates=True, **MARCH))

        assert result.summary.total_pending_duplicates == 1
        assert result.summary.total_new_transactions == 2
        pending = db.query(PendingDuplicate).one()
        assert pending.external_id == "tx-1"
        assert pending.existing_transaction_id == existing.id
        assert pending.resolved is False

    def test_pending_not_recreated_on_rerun(self, db, service, linked_account):
        create_transaction(db, linked_account, date(2024, 3, 5), "-12.50", "coffee bar")
        db.commit()
        options = ImportOptions(create_pending_for_duplicates=True, **MARCH)

        service.import_all(db, options)
        result = service.import_all(db, options)

        assert result.summary.total_pending_duplicates == 0
        assert db.query(PendingDuplicate).count() == 1

    def test_content_match_without_pending_is_skipped(self, db, service, linked_account):
        create_transaction(db, linked_account, date(2024, 3, 5), "-12.50", "coffee bar")
        db.commit()
        result = service.import_all(db, ImportOptions(**MARCH))
        assert result.summary.total_duplicates == 1
        assert result.summary.total_pending_duplicates == 0

    def test_same_batch_repeats_are_duplicates(self, db, client, service, linked_account):
        client.transactions["acc-main"] = [
            make_transaction("acc-main", date(2024, 3, 4), "-3.00", "Parking"),
            make_transaction("acc-main", date(2024, 3, 4), "-3.00", "Parking"),
        ]
        result = service.import_all(db, ImportOptions(**MARCH))
        assert result.summary.total_new_transactions == 1
        assert result.summary.total_duplicates == 1

    def test_failing_account_still_yields_summary(
        self, db, client, service, linked_account, second_linked_account
    ):
        client.fail_transactions_for = {"acc-main"}
        result = service.import_all(db, ImportOptions(**MARCH))

        summary = result.summary
        assert summary.total_accounts == 2
        assert summary.failed_accounts == 1
        assert summary.successful_accounts == 1
        assert summary.total_new_transactions == 1
        failed = next(r for r in result.account_results if not r.success)
        assert failed.gocardless_account_id == "acc-main"
        assert failed.error
        assert "Accounts with errors: 1" in result.logs

    def test_unexpected_fetch_error_isolated_to_account(
        self, db, client, service, linked_account, second_linked_account
    ):
        original = client.get_transactions

        def flaky(account_id, date_from=None, date_to=None):
            if account_id == "acc-main":
                raise httpx.ReadError("connection reset by peer")
            return original(account_id, date_from, date_to)

        client.get_transactions = flaky
        result = service.import_all(db, ImportOptions(**MARCH))

        summary = result.summary
        assert summary.total_accounts == 2
        assert summary.failed_accounts == 1
        assert summary.total_new_transactions == 1
        failed = next(r for r in result.account_results if not r.success)
        assert failed.gocardless_account_id == "acc-main"
        assert "connection reset" in failed.error

    def test_unexpected_store_error_rolls_back_account(
        self, db, service, linked_account, second_linked_account, monkeypatch
    ):
        original = ImportService._store_transactions

        def broken(self, db, account, *args):
            if account.gocardless_account_id == "acc-main":
                raise AttributeError("unexpected payload shape")
            return original(self, db, account, *args)

        monkeypatch.setattr(ImportService, "_store_transactions", broken)
        result = service.import_all(db, ImportOptions(**MARCH))

        assert result.summary.failed_accounts == 1
        assert result.summary.successful_accounts == 1
        assert stored(db, linked_account) == []
        assert len(stored(db, second_linked_account)) == 1

    def test_unexpected_balance_error_does_not_fail_import(
        self, db, client, service, linked_account
    ):
        def broken(account_id):
            raise httpx.RemoteProtocolError("server disconnected")

        client.get_balances = broken
        result = service.import_all(db, ImportOptions(**MARCH))

        account_result = result.account_results[0]
        assert account_result.success is True
        assert account_result.balance_synchronized is False
        assert "server disconnected" in account_result.balance_error

    def test_balance_failure_does_not_fail_import(self, db, client, service, linked_account):
        client.fail_balances_for = {"acc-main"}
        result = service.import_all(db, ImportOptions(**MARCH))

        account_result = result.account_results[0]
        assert account_result.success is True
        assert account_result.balance_synchronized is False
        assert account_result.balance_error
        assert result.summary.balances_synchronized == 0

    def test_records_sync_on_connection(self, db, client, service, linked_account, connection):
        client.fail_transactions_for = {"acc-main"}
        service.import_all(db, ImportOptions(**MARCH))
        db.refresh(connection)
        assert connection.last_sync_at is not None
        assert connection.last_sync_error

    def test_no_connected_accounts(self, db, service, bank_account):
        with pytest.raises(NoConnectedAccountsError):
            service.import_all(db)

    def test_concurrent_import_rejected(self, db, service, linked_account):
        assert ImportService._import_lock.acquire(blocking=False)
        try:
            assert ImportService.is_import_in_progress() is True
            with pytest.raises(ImportInProgressError):
                service.import_all(db, ImportOptions(**MARCH))
        finally:
            ImportService._import_lock.release()
        assert ImportService.is_import_in_progress() is False


class TestProgress:
    def test_progress_reaches_100(self, db, service, linked_account, second_linked_account):
        updates = []
        service.import_all(db, ImportOptions(**MARCH), progress=updates.append)
        percents = [u.percent for u in updates]
        assert percents == sorted(percents)
        assert percents[-1] == 100
        assert updates[-1].to_dict()["step"] == "Import complete"

    def test_failing_progress_callback_is_ignored(self, db, service, linked_account):
        def broken(update):
            raise RuntimeError("UI went away")

        result = service.import_all(db, ImportOptions(**MARCH), progress=broken)
        assert result.summary.total_new_transactions == 3


class TestImportSingle:
    def test_imports_one_account(self, db, service, linked_account, second_linked_account):
        result = service.import_single(db, "acc-savings", options=ImportOptions(**MARCH))
        assert result.summary.total_accounts == 1
        assert result.account_results[0].bank_account_id == second_linked_account.id
        assert result.summary.total_new_transactions == 1

    def test_unlinked_account(self, db, service, linked_account):
        with pytest.raises(BankAccountNotFoundError):
            service.import_single(db, "acc-unknown")

    def test_bank_account_must_match_external_id(self, db, service, linked_account, bank_account):
        with pytest.raises(BankAccountNotFoundError):
            service.import_single(db, "acc-main", bank_account_id=bank_account.id)


class TestFormatSummary:
    def test_reports_all_four_figures(self):
        lines = format_summary(
            ImportSummary(
                total_accounts=2,
                successful_accounts=2,
                total_new_transactions=5,
                total_duplicates=3,
                total_pending_duplicates=1,
                balances_synchronized=2,
            )
        )
        assert lines == [
            "Imported 5 new transaction(s) from 2 of 2 account(s)",
            "Duplicates skipped: 3",
            "Pending duplicates for review: 1",
            "Balances synchronized: 2 of 2",
        ]

    def test_zero_figures_still_reported(self):
        lines = format_summary(ImportSummary(total_accounts=1, failed_accounts=1))
        assert "Duplicates skipped: 0" in lines
        assert "Pending duplicates for review: 0" in lines
        assert lines[-1] == "Accounts with errors: 1"
