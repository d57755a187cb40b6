"""GoCardless API endpoints.

Institution discovery, flow start, account lookups, connection
bookkeeping and transaction import. The interactive authorization
sessions live in :mod:`api.authorizations`.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from api.helpers import (
    aggregator_http_error,
    alert_response,
    bank_account_response,
    connection_response,
    import_response,
)
from config import settings
from database import get_db
from integrations.aggregator_protocol import AggregatorClient
from integrations.exceptions import AggregatorError
from integrations.gocardless_client import get_gocardless_client
from schemas.bank_account import BankAccountResponse
from schemas.gocardless import (
    BalanceAmount,
    BalanceEntry,
    BalancesResponse,
    BalanceSyncResponse,
    BalanceSyncResultResponse,
    ConnectionCompleteRequest,
    ConnectionResponse,
    ConnectionStatusResponse,
    ExternalAccountResponse,
    FlowStartRequest,
    FlowStartResponse,
    ImportRequest,
    ImportResponse,
    ImportSingleRequest,
    InstitutionResponse,
    RequisitionResponse,
)
from services.balance_service import BalanceService
from services.bank_account_service import BankAccountNotFoundError, BankAccountService
from services.connection_registrar import ConnectionNotFoundError, ConnectionRegistrar
from services.expiration_monitor import ExpirationMonitor
from services.flow_service import FlowService
from services.import_service import (
    ImportInProgressError,
    ImportOptions,
    ImportService,
    NoConnectedAccountsError,
)
from services.institution_directory import InstitutionDirectory, InstitutionDirectoryError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/gocardless", tags=["gocardless"])

_directory: InstitutionDirectory | None = None


def get_aggregator_client() -> AggregatorClient:
    """Dependency for injecting the GoCardless client (overridable in tests)."""
    return get_gocardless_client()


def get_institution_directory(
    client: AggregatorClient = Depends(get_aggregator_client),
) -> InstitutionDirectory:
    """Process-wide directory so the institution cache survives requests."""
    global _directory
    if _directory is None:
        _directory = InstitutionDirectory(client)
    return _directory


def get_import_service(
    client: AggregatorClient = Depends(get_aggregator_client),
) -> ImportService:
    return ImportService(client)


def require_configured(client: AggregatorClient) -> None:
    if not client.is_configured():
        raise HTTPException(status_code=400, detail="GoCardless is not configured")


def callback_url(request: Request) -> str:
    """Where the bank sends the user after authorization."""
    return settings.AUTHORIZATION_REDIRECT_URL or str(request.url_for("authorization_callback"))


# ------------------------------------------------------------------
# Institutions, flow start, lookups
# ------------------------------------------------------------------


@router.get("/institutions", response_model=list[InstitutionResponse])
def list_institutions(
    country: Optional[str] = Query(None, min_length=2, max_length=2),
    search: Optional[str] = None,
    directory: InstitutionDirectory = Depends(get_institution_directory),
):
    """List banks for a country, optionally filtered by name or BIC.

    An empty list is a normal answer. 503 means the list could not be
    loaded and the request can be retried.
    """
    try:
        institutions = directory.search(search or "", country)
    except InstitutionDirectoryError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return [
        InstitutionResponse(
            id=inst.id,
            name=inst.name,
            bic=inst.bic,
            transaction_total_days=inst.transaction_total_days,
            logo=inst.logo,
            countries=list(inst.countries),
        )
        for inst in institutions
    ]


@router.post("/flow/start", response_model=FlowStartResponse)
def start_flow(
    body: FlowStartRequest,
    request: Request,
    client: AggregatorClient = Depends(get_aggregator_client),
):
    """Create an agreement and requisition, returning the bank link."""
    require_configured(client)
    try:
        flow = FlowService(client).start_flow(
            body.institution_id, body.redirect_url or callback_url(request)
        )
    except AggregatorError as e:
        raise aggregator_http_error(e, "start the bank authorization")
    return FlowStartResponse(
        auth_url=flow.auth_url, requisition_id=flow.requisition_id, reference=flow.reference
    )


@router.get("/requisitions/by-reference/{reference}", response_model=RequisitionResponse)
def get_requisition_by_reference(
    reference: str,
    client: AggregatorClient = Depends(get_aggregator_client),
):
    try:
        requisition = client.find_requisition_by_reference(reference)
    except AggregatorError as e:
        raise aggregator_http_error(e, "look up the requisition")
    if requisition is None:
        raise HTTPException(status_code=404, detail=f"Requisition not found: {reference}")
    return RequisitionResponse(
        id=requisition.id,
        status=requisition.status,
        institution_id=requisition.institution_id,
        reference=requisition.reference,
        agreement_id=requisition.agreement_id,
        link=requisition.link,
        accounts=requisition.accounts,
    )


@router.get("/accounts/{account_id}/details", response_model=ExternalAccountResponse)
def get_account_details(
    account_id: str,
    client: AggregatorClient = Depends(get_aggregator_client),
):
    try:
        details = client.get_account_details(account_id)
    except AggregatorError as e:
        raise aggregator_http_error(e, "load account details")
    return ExternalAccountResponse(
        id=details.id, iban=details.iban, name=details.name, currency=details.currency
    )


@router.get("/accounts/{account_id}/balances", response_model=BalancesResponse)
def get_account_balances(
    account_id: str,
    client: AggregatorClient = Depends(get_aggregator_client),
):
    try:
        balances = client.get_balances(account_id)
    except AggregatorError as e:
        raise aggregator_http_error(e, "load balances")
    return BalancesResponse(
        balances=[
            BalanceEntry(
                balance_type=b.balance_type,
                balance_amount=BalanceAmount(amount=b.amount, currency=b.currency),
            )
            for b in balances
        ]
    )


@router.get("/connected-accounts", response_model=list[BankAccountResponse])
def list_connected_accounts(db: Session = Depends(get_db)):
    """Local accounts linked to a GoCardless account."""
    return [bank_account_response(a) for a in BankAccountService.list_connected(db)]


# ------------------------------------------------------------------
# Connections
# ------------------------------------------------------------------


@router.post("/connections/complete", response_model=ConnectionResponse)
def complete_connection(
    body: ConnectionCompleteRequest,
    db: Session = Depends(get_db),
    client: AggregatorClient = Depends(get_aggregator_client),
):
    """Register a connection after its accounts have been mapped."""
    try:
        connection = ConnectionRegistrar(client).register(
            db, body.requisition_id, body.institution_id, body.linked_account_ids
        )
    except AggregatorError as e:
        db.rollback()
        raise aggregator_http_error(e, "register the connection")
    db.commit()
    db.refresh(connection)
    return connection_response(connection)


@router.get("/connections", response_model=list[ConnectionResponse])
def list_connections(db: Session = Depends(get_db)):
    return [connection_response(c) for c in ConnectionRegistrar.list_connections(db)]


@router.post("/connections/{connection_id}/disconnect", response_model=ConnectionResponse)
def disconnect_connection(
    connection_id: str,
    db: Session = Depends(get_db),
    client: AggregatorClient = Depends(get_aggregator_client),
):
    """Revoke a connection; linked accounts keep their data."""
    try:
        connection = ConnectionRegistrar(client).disconnect(db, connection_id)
    except ConnectionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    db.commit()
    db.refresh(connection)
    return connection_response(connection)


@router.get("/connection-status", response_model=ConnectionStatusResponse)
def get_connection_status(db: Session = Depends(get_db)):
    """Expiration overview across all registered connections."""
    summary = ExpirationMonitor().evaluate(db)
    return ConnectionStatusResponse(
        total_connections=summary.total_connections,
        active_connections=summary.active_connections,
        expiring_soon_connections=summary.expiring_soon_connections,
        expired_connections=summary.expired_connections,
        error_connections=summary.error_connections,
        alerts=[alert_response(a) for a in summary.alerts],
    )


# ------------------------------------------------------------------
# Import and balances
# ------------------------------------------------------------------


def _options(body: ImportRequest) -> ImportOptions:
    return ImportOptions(
        skip_duplicate_check=body.skip_duplicate_check,
        create_pending_for_duplicates=body.create_pending_for_duplicates,
        date_from=body.date_from,
        date_to=body.date_to,
    )


@router.post("/import/all", response_model=ImportResponse)
def import_all(
    body: ImportRequest,
    db: Session = Depends(get_db),
    import_service: ImportService = Depends(get_import_service),
):
    """Import transactions for every connected account.

    Always returns 200 with a summary when there is something to import;
    per-account failures are reported inside it.

    Raises:
        HTTPException:
            - 404 Not Found: No connected accounts
            - 409 Conflict: Import already in progress
    """
    try:
        result = import_service.import_all(db, _options(body))
    except NoConnectedAccountsError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ImportInProgressError:
        raise HTTPException(
            status_code=409,
            detail="Import already in progress. Please wait for the current import to complete.",
        )
    except Exception:
        logger.error("Unexpected error during import", exc_info=True)
        raise HTTPException(status_code=500, detail="Import failed unexpectedly")
    return import_response(result)


@router.post("/import-single", response_model=ImportResponse)
def import_single(
    body: ImportSingleRequest,
    db: Session = Depends(get_db),
    import_service: ImportService = Depends(get_import_service),
):
    """Import transactions for one connected account."""
    try:
        result = import_service.import_single(
            db, body.account_id, bank_account_id=body.bank_account_id, options=_options(body)
        )
    except BankAccountNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ImportInProgressError:
        raise HTTPException(
            status_code=409,
            detail="Import already in progress. Please wait for the current import to complete.",
        )
    except Exception:
        logger.error("Unexpected error during single-account import", exc_info=True)
        raise HTTPException(status_code=500, detail="Import failed unexpectedly")
    return import_response(result)


@router.post("/sync-balances", response_model=BalanceSyncResponse)
def sync_balances(
    db: Session = Depends(get_db),
    client: AggregatorClient = Depends(get_aggregator_client),
):
    """Refresh balances of all connected accounts."""
    summary = BalanceService(client).sync_all(db)
    return BalanceSyncResponse(
        total_accounts=summary.total_accounts,
        synchronized=summary.synchronized,
        failed=summary.failed,
        results=[
            BalanceSyncResultResponse(
                bank_account_id=r.bank_account_id,
                account_name=r.account_name,
                success=r.success,
                balance=r.balance,
                error=r.error,
            )
            for r in summary.results
        ],
    )
