"""Unit tests for GocardlessClient (mocked httpx transport)."""

import json
from datetime import date
from decimal import Decimal

import httpx
import pytest

from integrations.exceptions import (
    AggregatorAPIError,
    AggregatorAuthError,
    AggregatorConnectionError,
    AggregatorDataError,
)
from integrations.gocardless_client import GocardlessClient

BASE_URL = "https://gc.test/api/v2"


class FakeApi:
    """Routes requests to canned responses and records what was sent."""

    def __init__(self, routes: dict | None = None):
        self.routes = routes or {}
        self.requests: list[httpx.Request] = []
        self.token_requests = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path.removeprefix("/api/v2")
        if path == "/token/new/":
            self.token_requests += 1
            return httpx.Response(
                200, json={"access": f"token-{self.token_requests}", "access_expires": 86400}
            )
        handler = self.routes.get((request.method, path))
        if handler is None:
            return httpx.Response(404, json={"detail": "Not found."})
        if callable(handler):
            return handler(request)
        return httpx.Response(200, json=handler)


def make_client(api: FakeApi, secret_id: str = "sid", secret_key: str = "skey") -> GocardlessClient:
    http_client = httpx.Client(base_url=BASE_URL, transport=httpx.MockTransport(api))
    return GocardlessClient(secret_id=secret_id, secret_key=secret_key, http_client=http_client)


class TestAuthentication:
    def test_not_configured_raises_before_any_request(self):
        api = FakeApi()
        client = make_client(api, secret_id="", secret_key="")
        assert client.is_configured() is False
        with pytest.raises(AggregatorAuthError, match="not configured"):
            client.list_institutions("IT")
        assert api.requests == []

    def test_token_requested_once_and_reused(self):
        api = FakeApi({("GET", "/institutions/"): []})
        client = make_client(api)
        client.list_institutions("IT")
        client.list_institutions("DE")
        assert api.token_requests == 1

    def test_bearer_token_sent(self):
        api = FakeApi({("GET", "/institutions/"): []})
        make_client(api).list_institutions("IT")
        data_request = api.requests[-1]
        assert data_request.headers["Authorization"] == "Bearer token-1"

    def test_token_body_carries_secrets(self):
        api = FakeApi({("GET", "/institutions/"): []})
        make_client(api).list_institutions("IT")
        body = json.loads(api.requests[0].content)
        assert body == {"secret_id": "sid", "secret_key": "skey"}

    def test_rejected_token_refreshed_once(self):
        calls = {"n": 0}

        def institutions(request):
            calls["n"] += 1
            if calls["n"] == 1:
                return httpx.Response(401, json={"detail": "Token expired"})
            return httpx.Response(200, json=[])

        api = FakeApi({("GET", "/institutions/"): institutions})
        assert make_client(api).list_institutions("IT") == []
        assert api.token_requests == 2

    def test_persistent_403_raises_auth_error(self):
        api = FakeApi({("GET", "/institutions/"): lambda r: httpx.Response(403, json={})})
        with pytest.raises(AggregatorAuthError):
            make_client(api).list_institutions("IT")

    def test_missing_access_token_is_data_error(self):
        def handler(request):
            return httpx.Response(200, json={"refresh": "x"})

        client = GocardlessClient(
            secret_id="sid",
            secret_key="skey",
            http_client=httpx.Client(base_url=BASE_URL, transport=httpx.MockTransport(handler)),
        )
        with pytest.raises(AggregatorDataError):
            client.list_institutions("IT")


class TestErrorMapping:
    def test_server_error_is_retriable_api_error(self):
        api = FakeApi(
            {("GET", "/institutions/"): lambda r: httpx.Response(500, json={"summary": "boom"})}
        )
        with pytest.raises(AggregatorAPIError) as exc_info:
            make_client(api).list_institutions("IT")
        assert exc_info.value.status_code == 500
        assert exc_info.value.retriable is True
        assert "boom" in str(exc_info.value)

    def test_connect_error_mapped(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = GocardlessClient(
            secret_id="sid",
            secret_key="skey",
            http_client=httpx.Client(base_url=BASE_URL, transport=httpx.MockTransport(handler)),
        )
        with pytest.raises(AggregatorConnectionError):
            client.list_institutions("IT")

    @pytest.mark.parametrize(
        "error_cls", [httpx.ReadError, httpx.RemoteProtocolError, httpx.WriteError]
    )
    def test_transport_errors_mapped(self, error_cls):
        def transactions(request):
            raise error_cls("reset", request=request)

        api = FakeApi({("GET", "/accounts/acc-1/transactions/"): transactions})
        with pytest.raises(AggregatorConnectionError) as exc_info:
            make_client(api).get_transactions("acc-1")
        assert exc_info.value.retriable is True

    def test_invalid_json_is_data_error(self):
        api = FakeApi(
            {("GET", "/institutions/"): lambda r: httpx.Response(200, content=b"<html>")}
        )
        with pytest.raises(AggregatorDataError):
            make_client(api).list_institutions("IT")

    def test_non_list_institutions_is_data_error(self):
        api = FakeApi({("GET", "/institutions/"): {"detail": "odd"}})
        with pytest.raises(AggregatorDataError):
            make_client(api).list_institutions("IT")


class TestInstitutions:
    def test_parses_institutions_and_lowercases_country(self):
        api = FakeApi(
            {
                ("GET", "/institutions/"): [
                    {
                        "id": "FINECO_FEBIITM2",
                        "name": "Fineco",
                        "bic": "FEBIITM2",
                        "transaction_total_days": "730",
                        "max_access_valid_for_days": "180",
                        "countries": ["IT"],
                        "logo": "https://cdn/fineco.png",
                    }
                ]
            }
        )
        institutions = make_client(api).list_institutions("IT")
        assert api.requests[-1].url.params["country"] == "it"
        assert len(institutions) == 1
        inst = institutions[0]
        assert inst.id == "FINECO_FEBIITM2"
        assert inst.transaction_total_days == 730
        assert inst.max_access_valid_for_days == 180
        assert inst.countries == ("IT",)

    def test_institution_without_id_is_data_error(self):
        api = FakeApi({("GET", "/institutions/"): [{"name": "Nameless"}]})
        with pytest.raises(AggregatorDataError):
            make_client(api).list_institutions("IT")


class TestRequisitions:
    def test_create_requisition_body(self):
        def create(request):
            body = json.loads(request.content)
            assert body == {
                "redirect": "http://localhost/cb",
                "institution_id": "FINECO_FEBIITM2",
                "reference": "ref-1",
                "agreement": "agr-1",
            }
            return httpx.Response(
                201,
                json={
                    "id": "req-1",
                    "status": "CR",
                    "institution_id": "FINECO_FEBIITM2",
                    "reference": "ref-1",
                    "agreement": "agr-1",
                    "link": "https://ob.gocardless.com/psd2/start/req-1",
                    "accounts": [],
                },
            )

        api = FakeApi({("POST", "/requisitions/"): create})
        requisition = make_client(api).create_requisition(
            "FINECO_FEBIITM2", "http://localhost/cb", "ref-1", agreement_id="agr-1"
        )
        assert requisition.id == "req-1"
        assert requisition.link.endswith("req-1")
        assert requisition.is_linked is False

    def test_find_by_reference_pages_through_results(self):
        def listing(request):
            offset = int(request.url.params["offset"])
            if offset == 0:
                return httpx.Response(
                    200,
                    json={
                        "next": "page-2",
                        "results": [{"id": "req-a", "status": "LN", "reference": "other"}],
                    },
                )
            return httpx.Response(
                200,
                json={
                    "next": None,
                    "results": [
                        {"id": "req-b", "status": "LN", "reference": "wanted", "accounts": ["acc-1"]}
                    ],
                },
            )

        api = FakeApi({("GET", "/requisitions/"): listing})
        requisition = make_client(api).find_requisition_by_reference("wanted")
        assert requisition.id == "req-b"
        assert requisition.is_linked is True
        assert requisition.accounts == ["acc-1"]

    def test_find_by_reference_not_found(self):
        api = FakeApi({("GET", "/requisitions/"): {"next": None, "results": []}})
        assert make_client(api).find_requisition_by_reference("missing") is None

    def test_delete_with_empty_body(self):
        api = FakeApi({("DELETE", "/requisitions/req-1/"): lambda r: httpx.Response(204)})
        assert make_client(api).delete_requisition("req-1") is None


class TestAccounts:
    def test_details_fall_back_to_placeholder_name(self):
        api = FakeApi(
            {("GET", "/accounts/acc-7788/details/"): {"account": {"iban": "IT60X054"}}}
        )
        details = make_client(api).get_account_details("acc-7788")
        assert details.iban == "IT60X054"
        assert details.name == "Account 7788"
        assert details.currency == "EUR"

    def test_details_prefer_account_name(self):
        api = FakeApi(
            {
                ("GET", "/accounts/acc-1/details/"): {
                    "account": {"name": "Main", "product": "Current", "currency": "GBP"}
                }
            }
        )
        details = make_client(api).get_account_details("acc-1")
        assert details.name == "Main"
        assert details.currency == "GBP"

    def test_balances_parsed(self):
        api = FakeApi(
            {
                ("GET", "/accounts/acc-1/balances/"): {
                    "balances": [
                        {
                            "balanceType": "closingBooked",
                            "balanceAmount": {"amount": "100.10", "currency": "EUR"},
                        },
                        {
                            "balanceType": "expected",
                            "balanceAmount": {"amount": "90.00", "currency": "EUR"},
                        },
                    ]
                }
            }
        )
        balances = make_client(api).get_balances("acc-1")
        assert [b.balance_type for b in balances] == ["closingBooked", "expected"]
        assert balances[0].amount == Decimal("100.10")

    def test_transactions_booked_only_and_malformed_skipped(self):
        def transactions(request):
            assert request.url.params["date_from"] == "2024-03-01"
            assert request.url.params["date_to"] == "2024-03-31"
            return httpx.Response(
                200,
                json={
                    "transactions": {
                        "booked": [
                            {
                                "transactionId": "tx-1",
                                "bookingDate": "2024-03-05",
                                "transactionAmount": {"amount": "-12.50", "currency": "EUR"},
                                "remittanceInformationUnstructured": " Coffee Bar ",
                            },
                            {
                                "bookingDate": "2024-03-06",
                                "transactionAmount": {"amount": "1500.00", "currency": "EUR"},
                                "remittanceInformationUnstructuredArray": ["SALARY", "MARCH"],
                            },
                            {
                                "transactionId": "tx-bad",
                                "transactionAmount": {"amount": "1.00", "currency": "EUR"},
                            },
                        ],
                        "pending": [
                            {
                                "transactionId": "tx-pending",
                                "bookingDate": "2024-03-07",
                                "transactionAmount": {"amount": "-3.00", "currency": "EUR"},
                            }
                        ],
                    }
                },
            )

        api = FakeApi({("GET", "/accounts/acc-1/transactions/"): transactions})
        result = make_client(api).get_transactions(
            "acc-1", date(2024, 3, 1), date(2024, 3, 31)
        )
        assert [t.external_id for t in result] == ["tx-1", None]
        assert result[0].description == "Coffee Bar"
        assert result[0].amount == Decimal("-12.50")
        assert result[1].description == "SALARY MARCH"
        assert result[1].booking_date == date(2024, 3, 6)
