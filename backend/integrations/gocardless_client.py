"""GoCardless Bank Account Data client.

Wraps the REST API used for every bank-side step of the connection
lifecycle: institution discovery, end-user agreements, requisitions
(the authorization request), and account details, balances and
transactions.

Authentication is a short-lived access token obtained from the secret
id/key pair. The token is cached until shortly before it expires and
refreshed once if a data call comes back 401.
"""

import logging
from datetime import date, datetime, timedelta, timezone
from functools import lru_cache
from typing import Any

import httpx

from config import settings
from integrations.aggregator_protocol import (
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
    AggregatorDataError,
)
from integrations.parsing_utils import (
    parse_decimal,
    parse_int,
    parse_iso_date,
    parse_iso_datetime,
)

logger = logging.getLogger(__name__)

_AGGREGATOR_NAME = "GoCardless"

# Refresh the access token this long before the API says it expires
_TOKEN_EXPIRY_MARGIN = timedelta(seconds=60)

_REQUISITION_PAGE_SIZE = 100


def _describe_transaction(raw: dict) -> str:
    """Best human-readable description available on a booked transaction."""
    text = raw.get("remittanceInformationUnstructured")
    if text:
        return str(text).strip()
    parts = raw.get("remittanceInformationUnstructuredArray") or []
    if parts:
        return " ".join(str(p).strip() for p in parts if p)
    for key in ("creditorName", "debtorName", "additionalInformation"):
        if raw.get(key):
            return str(raw[key]).strip()
    return ""


class GocardlessClient:
    """HTTP client for the GoCardless Bank Account Data API."""

    def __init__(
        self,
        secret_id: str | None = None,
        secret_key: str | None = None,
        base_url: str | None = None,
        http_client: httpx.Client | None = None,
    ):
        """Initialize the client.

        Args:
            secret_id: API secret id (defaults to settings).
            secret_key: API secret key (defaults to settings).
            base_url: API root (defaults to settings).
            http_client: Pre-built httpx client, used by tests to inject a
                mock transport.
        """
        self._secret_id = secret_id if secret_id is not None else settings.GOCARDLESS_SECRET_ID
        self._secret_key = secret_key if secret_key is not None else settings.GOCARDLESS_SECRET_KEY
        self._client = http_client or httpx.Client(
            base_url=base_url or settings.GOCARDLESS_BASE_URL,
            timeout=30.0,
            headers={"Accept": "application/json"},
        )
        self._access_token: str | None = None
        self._access_expires_at: datetime | None = None

    def close(self) -> None:
        """Close the underlying HTTP client."""
        self._client.close()

    @property
    def aggregator_name(self) -> str:
        return _AGGREGATOR_NAME

    def is_configured(self) -> bool:
        """True when both the secret id and key are set."""
        return bool(self._secret_id and self._secret_key)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _check_credentials(self) -> None:
        if not self.is_configured():
            raise AggregatorAuthError(
                "GoCardless credentials not configured. "
                "Run 'python -m scripts.setup_gocardless' to set them up.",
                aggregator_name=_AGGREGATOR_NAME,
            )

    def _token_valid(self) -> bool:
        return (
            self._access_token is not None
            and self._access_expires_at is not None
            and datetime.now(timezone.utc) < self._access_expires_at
        )

    def invalidate_token(self) -> None:
        self._access_token = None
        self._access_expires_at = None

    def _get_access_token(self) -> str:
        """Return a cached access token, requesting a new one when stale."""
        if self._token_valid():
            return self._access_token

        self._check_credentials()
        data = self._send(
            "POST",
            "/token/new/",
            json={"secret_id": self._secret_id, "secret_key": self._secret_key},
        )
        token = data.get("access") if isinstance(data, dict) else None
        if not token:
            raise AggregatorDataError(
                "GoCardless token response missing access token",
                aggregator_name=_AGGREGATOR_NAME,
            )
        lifetime = parse_int(data.get("access_expires"), default=0)
        self._access_token = token
        self._access_expires_at = (
            datetime.now(timezone.utc) + timedelta(seconds=lifetime) - _TOKEN_EXPIRY_MARGIN
        )
        logger.debug("GoCardless: obtained access token (valid %ds)", lifetime)
        return token

    def _send(
        self,
        method: str,
        path: str,
        *,
        params: dict | None = None,
        json: dict | None = None,
        headers: dict | None = None,
    ) -> Any:
        """Issue one request and map failures onto the exception hierarchy."""
        try:
            response = self._client.request(
                method, path, params=params, json=json, headers=headers
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            detail = _error_detail(exc.response)
            if status in (401, 403):
                raise AggregatorAuthError(
                    f"GoCardless authentication failed (HTTP {status}): {detail}",
                    aggregator_name=_AGGREGATOR_NAME,
                ) from exc
            raise AggregatorAPIError(
                f"GoCardless API error (HTTP {status}) on {method} {path}: {detail}",
                aggregator_name=_AGGREGATOR_NAME,
                status_code=status,
            ) from exc
        except httpx.TransportError as exc:
            raise AggregatorConnectionError(
                f"GoCardless connection failed: {exc}",
                aggregator_name=_AGGREGATOR_NAME,
            ) from exc

        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise AggregatorDataError(
                f"GoCardless returned invalid JSON for {method} {path}",
                aggregator_name=_AGGREGATOR_NAME,
            ) from exc

    def _request(self, method: str, path: str, **kwargs) -> Any:
        """Authenticated request; retries once with a fresh token on 401."""
        token = self._get_access_token()
        try:
            return self._send(
                method, path, headers={"Authorization": f"Bearer {token}"}, **kwargs
            )
        except AggregatorAuthError:
            logger.info("GoCardless: access token rejected, refreshing")
            self.invalidate_token()
            token = self._get_access_token()
            return self._send(
                method, path, headers={"Authorization": f"Bearer {token}"}, **kwargs
            )

    # ------------------------------------------------------------------
    # Institutions
    # ------------------------------------------------------------------

    def list_institutions(self, country: str) -> list[Institution]:
        """List all institutions available in a country (ISO alpha-2)."""
        data = self._request("GET", "/institutions/", params={"country": country.lower()})
        if not isinstance(data, list):
            raise AggregatorDataError(
                "GoCardless institutions response is not a list",
                aggregator_name=_AGGREGATOR_NAME,
            )
        institutions = [_parse_institution(item) for item in data]
        logger.info("GoCardless: %d institutions for %s", len(institutions), country.upper())
        return institutions

    def get_institution(self, institution_id: str) -> Institution:
        data = self._request("GET", f"/institutions/{institution_id}/")
        return _parse_institution(data)

    # ------------------------------------------------------------------
    # Agreements and requisitions
    # ------------------------------------------------------------------

    def create_agreement(
        self,
        institution_id: str,
        max_historical_days: int,
        access_valid_for_days: int,
    ) -> Agreement:
        """Create an end-user agreement fixing history depth and access lifetime."""
        data = self._request(
            "POST",
            "/agreements/enduser/",
            json={
                "institution_id": institution_id,
                "max_historical_days": max_historical_days,
                "access_valid_for_days": access_valid_for_days,
                "access_scope": ["balances", "details", "transactions"],
            },
        )
        return _parse_agreement(data)

    def get_agreement(self, agreement_id: str) -> Agreement:
        data = self._request("GET", f"/agreements/enduser/{agreement_id}/")
        return _parse_agreement(data)

    def create_requisition(
        self,
        institution_id: str,
        redirect_url: str,
        reference: str,
        agreement_id: str | None = None,
        user_language: str | None = None,
    ) -> Requisition:
        """Create a requisition; its ``link`` is the bank authorization URL."""
        body: dict[str, Any] = {
            "redirect": redirect_url,
            "institution_id": institution_id,
            "reference": reference,
        }
        if agreement_id:
            body["agreement"] = agreement_id
        if user_language:
            body["user_language"] = user_language
        data = self._request("POST", "/requisitions/", json=body)
        requisition = _parse_requisition(data)
        logger.info(
            "GoCardless: created requisition %s for %s", requisition.id, institution_id
        )
        return requisition

    def get_requisition(self, requisition_id: str) -> Requisition:
        data = self._request("GET", f"/requisitions/{requisition_id}/")
        return _parse_requisition(data)

    def find_requisition_by_reference(self, reference: str) -> Requisition | None:
        """Page through requisitions looking for one with this reference."""
        offset = 0
        while True:
            data = self._request(
                "GET",
                "/requisitions/",
                params={"limit": _REQUISITION_PAGE_SIZE, "offset": offset},
            )
            results = data.get("results", []) if isinstance(data, dict) else []
            for item in results:
                if item.get("reference") == reference:
                    return _parse_requisition(item)
            if not data.get("next") or not results:
                return None
            offset += len(results)

    def delete_requisition(self, requisition_id: str) -> None:
        self._request("DELETE", f"/requisitions/{requisition_id}/")
        logger.info("GoCardless: deleted requisition %s", requisition_id)

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def get_account_details(self, account_id: str) -> ExternalAccount:
        """Fetch IBAN, display name and currency for an account."""
        data = self._request("GET", f"/accounts/{account_id}/details/")
        details = data.get("account", {}) if isinstance(data, dict) else {}
        fallback = ExternalAccount.placeholder(account_id)
        return ExternalAccount(
            id=account_id,
            iban=details.get("iban") or fallback.iban,
            name=(
                details.get("name")
                or details.get("displayName")
                or details.get("product")
                or details.get("ownerName")
                or fallback.name
            ),
            currency=details.get("currency") or fallback.currency,
        )

    def get_balances(self, account_id: str) -> list[AggregatorBalance]:
        data = self._request("GET", f"/accounts/{account_id}/balances/")
        balances = []
        for entry in (data or {}).get("balances", []):
            amount_block = entry.get("balanceAmount") or {}
            amount = parse_decimal(amount_block.get("amount"))
            if amount is None:
                raise AggregatorDataError(
                    f"Unparseable balance amount for account {account_id}",
                    aggregator_name=_AGGREGATOR_NAME,
                )
            balances.append(
                AggregatorBalance(
                    balance_type=entry.get("balanceType", ""),
                    amount=amount,
                    currency=amount_block.get("currency", "EUR"),
                )
            )
        return balances

    def get_transactions(
        self,
        account_id: str,
        date_from: date | None = None,
        date_to: date | None = None,
    ) -> list[AggregatorTransaction]:
        """Fetch booked transactions in a date window (pending ones are skipped)."""
        params: dict[str, str] = {}
        if date_from:
            params["date_from"] = date_from.isoformat()
        if date_to:
            params["date_to"] = date_to.isoformat()
        data = self._request("GET", f"/accounts/{account_id}/transactions/", params=params)
        booked = ((data or {}).get("transactions") or {}).get("booked", [])

        transactions = []
        for raw in booked:
            booking_date = parse_iso_date(raw.get("bookingDate") or raw.get("valueDate"))
            amount_block = raw.get("transactionAmount") or {}
            amount = parse_decimal(amount_block.get("amount"))
            if booking_date is None or amount is None:
                logger.warning(
                    "GoCardless: skipping malformed transaction on %s: %s",
                    account_id,
                    raw.get("transactionId") or raw.get("internalTransactionId"),
                )
                continue
            transactions.append(
                AggregatorTransaction(
                    account_id=account_id,
                    external_id=raw.get("transactionId") or raw.get("internalTransactionId"),
                    booking_date=booking_date,
                    value_date=parse_iso_date(raw.get("valueDate")),
                    amount=amount,
                    currency=amount_block.get("currency", "EUR"),
                    description=_describe_transaction(raw),
                    raw_data=raw,
                )
            )
        logger.info(
            "GoCardless: %d booked transactions for %s", len(transactions), account_id
        )
        return transactions


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        return str(body.get("detail") or body.get("summary") or body)[:200]
    return str(body)[:200]


def _require(data: Any, key: str, what: str) -> Any:
    if not isinstance(data, dict) or not data.get(key):
        raise AggregatorDataError(
            f"GoCardless {what} response missing '{key}'",
            aggregator_name=_AGGREGATOR_NAME,
        )
    return data[key]


def _parse_institution(item: dict) -> Institution:
    return Institution(
        id=_require(item, "id", "institution"),
        name=item.get("name", ""),
        bic=item.get("bic") or "",
        transaction_total_days=parse_int(item.get("transaction_total_days"), default=90),
        logo=item.get("logo") or "",
        countries=tuple(item.get("countries") or ()),
        max_access_valid_for_days=parse_int(item.get("max_access_valid_for_days")),
    )


def _parse_agreement(data: dict) -> Agreement:
    return Agreement(
        id=_require(data, "id", "agreement"),
        institution_id=data.get("institution_id", ""),
        max_historical_days=parse_int(data.get("max_historical_days"), default=90),
        access_valid_for_days=parse_int(data.get("access_valid_for_days"), default=90),
        accepted=parse_iso_datetime(data.get("accepted")),
    )


def _parse_requisition(data: dict) -> Requisition:
    return Requisition(
        id=_require(data, "id", "requisition"),
        status=data.get("status", ""),
        institution_id=data.get("institution_id", ""),
        reference=data.get("reference") or "",
        agreement_id=data.get("agreement") or None,
        link=data.get("link") or "",
        created=parse_iso_datetime(data.get("created")),
        accounts=list(data.get("accounts") or []),
    )


@lru_cache
def get_gocardless_client() -> GocardlessClient:
    """Process-wide client so the access token is shared between requests."""
    return GocardlessClient()
