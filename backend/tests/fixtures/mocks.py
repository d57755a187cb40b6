"""Mock implementations for external services."""

import itertools
from datetime import date
from decimal import Decimal

from integrations.aggregator_protocol import (
    REQUISITION_LINKED,
    AggregatorBalance,
    AggregatorTransaction,
    Agreement,
    ExternalAccount,
    Institution,
    Requisition,
)
from integrations.exceptions import (
    AggregatorAPIError,
    AggregatorAuthError,
    AggregatorConnectionError,
    AggregatorError,
)
from services.authorization_broker import FlowStart


SAMPLE_INSTITUTIONS = [
    Institution(
        id="INTESA_SANPAOLO_BCITITMM",
        name="Intesa Sanpaolo",
        bic="BCITITMM",
        transaction_total_days=540,
        logo="https://cdn.example/intesa.png",
        countries=("IT",),
        max_access_valid_for_days=180,
    ),
    Institution(
        id="FINECO_FEBIITM2",
        name="Fineco",
        bic="FEBIITM2",
        transaction_total_days=730,
        countries=("IT",),
    ),
    Institution(
        id="UNICREDIT_UNCRITMM",
        name="UniCredit",
        bic="UNCRITMM",
        transaction_total_days=90,
        countries=("IT",),
    ),
]

SAMPLE_ACCOUNTS = {
    "acc-main": ExternalAccount(
        id="acc-main", iban="IT60X0542811101000000123456", name="Conto Corrente", currency="EUR"
    ),
    "acc-savings": ExternalAccount(
        id="acc-savings", iban="IT60X0542811101000000654321", name="Conto Deposito", currency="EUR"
    ),
}


class MockGocardlessClient:
    """In-memory stand-in for GocardlessClient.

    ``create_requisition`` records a requisition in status ``CR``; tests
    complete the bank side with :meth:`link_requisition`.
    """

    def __init__(
        self,
        institutions: list[Institution] | None = None,
        accounts: dict[str, ExternalAccount] | None = None,
        balances: dict[str, list[AggregatorBalance]] | None = None,
        transactions: dict[str, list[AggregatorTransaction]] | None = None,
        should_fail: bool = False,
        failure_message: str = "Mock GoCardless error",
        failure_type: str = "generic",
        configured: bool = True,
        fail_transactions_for: set[str] | None = None,
        fail_balances_for: set[str] | None = None,
        fail_agreements: bool = False,
    ):
        self.institutions = list(institutions or [])
        self.accounts = dict(accounts or {})
        self.balances = dict(balances or {})
        self.transactions = dict(transactions or {})
        self.requisitions: dict[str, Requisition] = {}
        self.agreements: dict[str, Agreement] = {}
        self.deleted_requisitions: list[str] = []
        self.calls: list[str] = []
        self.should_fail = should_fail
        self._failure_message = failure_message
        self._failure_type = failure_type
        self._configured = configured
        self.fail_transactions_for = set(fail_transactions_for or ())
        self.fail_balances_for = set(fail_balances_for or ())
        self.fail_agreements = fail_agreements
        self._ids = itertools.count(1)

    def _raise_failure(self) -> None:
        """Raise the appropriate exception based on failure_type."""
        if self._failure_type == "auth":
            raise AggregatorAuthError(self._failure_message)
        elif self._failure_type == "connection":
            raise AggregatorConnectionError(self._failure_message)
        elif self._failure_type == "api":
            raise AggregatorAPIError(self._failure_message, status_code=500)
        else:
            raise AggregatorError(self._failure_message)

    def _call(self, name: str) -> None:
        self.calls.append(name)
        if self.should_fail:
            self._raise_failure()

    def is_configured(self) -> bool:
        return self._configured

    # Institutions

    def list_institutions(self, country: str) -> list[Institution]:
        self._call("list_institutions")
        return [
            inst
            for inst in self.institutions
            if not inst.countries or country.upper() in inst.countries
        ]

    def get_institution(self, institution_id: str) -> Institution:
        self._call("get_institution")
        for inst in self.institutions:
            if inst.id == institution_id:
                return inst
        raise AggregatorAPIError(f"Unknown institution {institution_id}", status_code=404)

    # Agreements and requisitions

    def create_agreement(
        self, institution_id: str, max_historical_days: int, access_valid_for_days: int
    ) -> Agreement:
        self._call("create_agreement")
        if self.fail_agreements:
            raise AggregatorAPIError("Agreement rejected", status_code=400)
        agreement = Agreement(
            id=f"agr-{next(self._ids)}",
            institution_id=institution_id,
            max_historical_days=max_historical_days,
            access_valid_for_days=access_valid_for_days,
        )
        self.agreements[agreement.id] = agreement
        return agreement

    def get_agreement(self, agreement_id: str) -> Agreement:
        self._call("get_agreement")
        if agreement_id not in self.agreements:
            raise AggregatorAPIError(f"Unknown agreement {agreement_id}", status_code=404)
        return self.agreements[agreement_id]

    def create_requisition(
        self,
        institution_id: str,
        redirect_url: str,
        reference: str,
        agreement_id: str | None = None,
        user_language: str | None = None,
    ) -> Requisition:
        self._call("create_requisition")
        requisition_id = f"req-{next(self._ids)}"
        requisition = Requisition(
            id=requisition_id,
            status="CR",
            institution_id=institution_id,
            reference=reference,
            agreement_id=agreement_id,
            link=f"https://ob.gocardless.com/psd2/start/{requisition_id}/{institution_id}",
        )
        self.requisitions[requisition_id] = requisition
        return requisition

    def link_requisition(self, requisition_id: str, account_ids: list[str]) -> Requisition:
        """Simulate the user finishing authorization at the bank."""
        requisition = self.requisitions[requisition_id]
        requisition.status = REQUISITION_LINKED
        requisition.accounts = list(account_ids)
        return requisition

    def add_requisition(self, requisition: Requisition) -> Requisition:
        self.requisitions[requisition.id] = requisition
        return requisition

    def get_requisition(self, requisition_id: str) -> Requisition:
        self._call("get_requisition")
        if requisition_id not in self.requisitions:
            raise AggregatorAPIError(f"Unknown requisition {requisition_id}", status_code=404)
        return self.requisitions[requisition_id]

    def find_requisition_by_reference(self, reference: str) -> Requisition | None:
        self._call("find_requisition_by_reference")
        for requisition in self.requisitions.values():
            if requisition.reference == reference:
                return requisition
        return None

    def delete_requisition(self, requisition_id: str) -> None:
        self._call("delete_requisition")
        self.deleted_requisitions.append(requisition_id)
        self.requisitions.pop(requisition_id, None)

    # Accounts

    def get_account_details(self, account_id: str) -> ExternalAccount:
        self._call("get_account_details")
        if account_id not in self.accounts:
            raise AggregatorAPIError(f"Unknown account {account_id}", status_code=404)
        return self.accounts[account_id]

    def get_balances(self, account_id: str) -> list[AggregatorBalance]:
        self._call("get_balances")
        if account_id in self.fail_balances_for:
            raise AggregatorConnectionError(f"Balances for {account_id} unavailable")
        return list(self.balances.get(account_id, []))

    def get_transactions(
        self,
        account_id: str,
        date_from: date | None = None,
        date_to: date | None = None,
    ) -> list[AggregatorTransaction]:
        self._call("get_transactions")
        if account_id in self.fail_transactions_for:
            raise AggregatorAPIError(
                f"Transactions for {account_id} unavailable", status_code=503
            )
        return [
            tx
            for tx in self.transactions.get(account_id, [])
            if (date_from is None or tx.booking_date >= date_from)
            and (date_to is None or tx.booking_date <= date_to)
        ]


def make_transaction(
    account_id: str,
    booking_date: date,
    amount: str,
    description: str = "",
    external_id: str | None = None,
    currency: str = "EUR",
) -> AggregatorTransaction:
    """Build an AggregatorTransaction with a Decimal amount."""
    return AggregatorTransaction(
        account_id=account_id,
        booking_date=booking_date,
        amount=Decimal(amount),
        currency=currency,
        external_id=external_id,
        description=description,
        raw_data={"transactionId": external_id} if external_id else {},
    )


def expected_balance(amount: str, currency: str = "EUR") -> AggregatorBalance:
    return AggregatorBalance(balance_type="expected", amount=Decimal(amount), currency=currency)


class FakeWindow:
    """Authorization window whose closed state tests control."""

    def __init__(self, url: str):
        self.url = url
        self.closed = False
        self.close_calls = 0

    def close(self) -> None:
        self.close_calls += 1
        self.closed = True


class FakeOpener:
    """Window opener that can simulate a popup blocker."""

    def __init__(self, blocked: bool = False):
        self.blocked = blocked
        self.windows: list[FakeWindow] = []

    def open(self, url: str) -> FakeWindow | None:
        if self.blocked:
            return None
        window = FakeWindow(url)
        self.windows.append(window)
        return window


class FakeFlowStarter:
    """Flow starter returning predictable ids, or raising ``error``."""

    def __init__(self, error: Exception | None = None):
        self.error = error
        self.started: list[tuple[str, str]] = []

    def start_flow(self, institution_id: str, redirect_url: str) -> FlowStart:
        self.started.append((institution_id, redirect_url))
        if self.error is not None:
            raise self.error
        n = len(self.started)
        return FlowStart(
            auth_url=f"https://ob.gocardless.com/psd2/start/req-{n}",
            requisition_id=f"req-{n}",
            reference=f"ref-{n}",
        )
