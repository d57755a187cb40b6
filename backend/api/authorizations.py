"""Authorization session endpoints.

The browser drives a bank authorization through these routes:

1. ``POST /authorizations`` starts a session and returns the bank link,
   which the browser opens in a popup.
2. The bank redirects the popup to ``GET /callback``; the outcome is
   routed to the session's broker.
3. If the user closes the popup first, the browser reports it through
   ``POST /authorizations/{id}/window-closed``.
4. ``GET /authorizations/{id}`` reports the state and, once completed,
   the proposed account mappings; ``POST .../mappings`` saves them.
"""

import html
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import HTMLResponse
from sqlalchemy.orm import Session

from api.gocardless import callback_url, get_aggregator_client, require_configured
from api.helpers import aggregator_http_error, connection_response
from database import get_db
from integrations.aggregator_protocol import AggregatorClient
from integrations.exceptions import AggregatorError
from schemas.gocardless import (
    AuthorizationCreateRequest,
    AuthorizationSessionResponse,
    BankAccountOption,
    CommitMappingsRequest,
    CommitMappingsResponse,
    ExternalAccountResponse,
    MappingFailureResponse,
    MappingProposalResponse,
)
from services.account_mapping_service import (
    AccountMappingResolver,
    MappingAction,
    MappingError,
)
from services.authorization_broker import BrokerState, PendingConnection
from services.authorization_sessions import (
    AuthorizationSession,
    AuthorizationSessionRegistry,
    UnknownSessionError,
    origin_of,
)
from services.balance_service import BalanceService
from services.bank_account_service import BankAccountService
from services.connection_registrar import ConnectionRegistrar
from services.flow_service import FlowService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/gocardless", tags=["authorizations"])

_registry: AuthorizationSessionRegistry | None = None


def get_session_registry(
    client: AggregatorClient = Depends(get_aggregator_client),
) -> AuthorizationSessionRegistry:
    """Process-wide session registry (overridable in tests)."""
    global _registry
    if _registry is None:
        _registry = AuthorizationSessionRegistry(FlowService(client))
    return _registry


def get_mapping_resolver(
    client: AggregatorClient = Depends(get_aggregator_client),
) -> AccountMappingResolver:
    return AccountMappingResolver(BalanceService(client), ConnectionRegistrar(client))


def _get_session(registry: AuthorizationSessionRegistry, session_id: str) -> AuthorizationSession:
    try:
        return registry.get(session_id)
    except UnknownSessionError as e:
        raise HTTPException(status_code=404, detail=str(e))


def _session_response(db: Session, session: AuthorizationSession) -> AuthorizationSessionResponse:
    outcome = session.outcome
    response = AuthorizationSessionResponse(
        session_id=session.id,
        institution_id=session.institution_id,
        state=session.state.value,
        auth_url=session.auth_url,
        requisition_id=session.requisition_id,
        mappings_committed=session.mappings_committed,
    )
    if outcome is None:
        return response
    if outcome.status != BrokerState.COMPLETED:
        response.error = outcome.error
        return response

    response.accounts = [
        ExternalAccountResponse(id=a.id, iban=a.iban, name=a.name, currency=a.currency)
        for a in outcome.accounts
    ]
    if session.mappings_committed:
        return response

    local_accounts = BankAccountService.list_accounts(db)
    for mapping in AccountMappingResolver.propose(outcome.accounts, local_accounts):
        external = mapping.external_account
        response.proposed_mappings.append(
            MappingProposalResponse(
                external_account=ExternalAccountResponse(
                    id=external.id, iban=external.iban, name=external.name, currency=external.currency
                ),
                action=mapping.action.value,
                local_account_id=mapping.local_account_id,
                new_account_name=mapping.new_account_name,
                candidates=[
                    BankAccountOption(
                        id=acct.id,
                        name=acct.name,
                        currency=acct.currency,
                        gocardless_account_id=acct.gocardless_account_id,
                    )
                    for acct in AccountMappingResolver.candidates_for(external, local_accounts)
                ],
            )
        )
    return response


def _start_session(
    request: Request,
    institution_id: str,
    client: AggregatorClient,
    registry: AuthorizationSessionRegistry,
) -> AuthorizationSession:
    require_configured(client)
    try:
        return registry.create(institution_id, callback_url(request))
    except AggregatorError as e:
        raise aggregator_http_error(e, "start the bank authorization")


@router.post("/authorizations", response_model=AuthorizationSessionResponse)
def create_authorization(
    body: AuthorizationCreateRequest,
    request: Request,
    db: Session = Depends(get_db),
    client: AggregatorClient = Depends(get_aggregator_client),
    registry: AuthorizationSessionRegistry = Depends(get_session_registry),
):
    """Start an authorization session; open ``authUrl`` in a popup."""
    session = _start_session(request, body.institution_id, client, registry)
    return _session_response(db, session)


@router.post(
    "/connections/{connection_id}/reconnect", response_model=AuthorizationSessionResponse
)
def reconnect(
    connection_id: str,
    request: Request,
    db: Session = Depends(get_db),
    client: AggregatorClient = Depends(get_aggregator_client),
    registry: AuthorizationSessionRegistry = Depends(get_session_registry),
):
    """Re-authorize an expiring or expired connection's bank.

    The linked accounts already store their external ids, so the proposed
    mappings default to associating with them again.
    """
    connection = ConnectionRegistrar.get_connection(db, connection_id)
    if connection is None:
        raise HTTPException(status_code=404, detail=f"Connection not found: {connection_id}")
    session = _start_session(request, connection.institution_id, client, registry)
    return _session_response(db, session)


@router.get("/authorizations/{session_id}", response_model=AuthorizationSessionResponse)
def get_authorization(
    session_id: str,
    db: Session = Depends(get_db),
    registry: AuthorizationSessionRegistry = Depends(get_session_registry),
):
    """Current state; proposed mappings are included once completed."""
    return _session_response(db, _get_session(registry, session_id))


@router.post(
    "/authorizations/{session_id}/window-closed", response_model=AuthorizationSessionResponse
)
def report_window_closed(
    session_id: str,
    db: Session = Depends(get_db),
    registry: AuthorizationSessionRegistry = Depends(get_session_registry),
):
    """The popup was closed; the broker resolves as cancelled on its next poll."""
    try:
        session = registry.report_window_closed(session_id)
    except UnknownSessionError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return _session_response(db, session)


@router.delete("/authorizations/{session_id}")
def cancel_authorization(
    session_id: str,
    registry: AuthorizationSessionRegistry = Depends(get_session_registry),
):
    """Cancel and forget a session."""
    _get_session(registry, session_id)
    registry.remove(session_id)
    return {"status": "ok", "session_id": session_id}


@router.post(
    "/authorizations/{session_id}/mappings", response_model=CommitMappingsResponse
)
def commit_mappings(
    session_id: str,
    body: CommitMappingsRequest,
    db: Session = Depends(get_db),
    registry: AuthorizationSessionRegistry = Depends(get_session_registry),
    resolver: AccountMappingResolver = Depends(get_mapping_resolver),
):
    """Save the user's account mappings and register the connection.

    Raises:
        HTTPException:
            - 400 Bad Request: A choice names an unknown account or an
              account that is not a valid target
            - 409 Conflict: The authorization has not completed, or its
              mappings were already saved
    """
    session = _get_session(registry, session_id)
    outcome = session.outcome
    if outcome is None or outcome.status != BrokerState.COMPLETED:
        raise HTTPException(status_code=409, detail="Authorization has not completed")

    with session.lock:
        if session.mappings_committed:
            raise HTTPException(status_code=409, detail="Account mappings were already saved")

        local_accounts = BankAccountService.list_accounts(db)
        proposals = {
            m.external_account.id: m
            for m in AccountMappingResolver.propose(outcome.accounts, local_accounts)
        }
        mappings = []
        for choice in body.mappings:
            proposal = proposals.get(choice.external_account_id)
            if proposal is None:
                raise HTTPException(
                    status_code=400,
                    detail=f"Account {choice.external_account_id} was not authorized in this session",
                )
            try:
                mappings.append(
                    AccountMappingResolver.override(
                        proposal,
                        local_accounts,
                        MappingAction(choice.action),
                        local_account_id=choice.local_account_id,
                        new_account_name=choice.new_account_name,
                    )
                )
            except MappingError as e:
                raise HTTPException(status_code=400, detail=str(e))

        pending = session.broker.consume_pending_connection() or PendingConnection(
            requisition_id=outcome.requisition_id, institution_id=session.institution_id
        )
        result = resolver.commit(db, mappings, pending)
        session.mappings_committed = True

    return CommitMappingsResponse(
        linked_account_ids=result.linked_account_ids,
        failures=[
            MappingFailureResponse(external_account_id=f.external_account_id, error=f.error)
            for f in result.failures
        ],
        connection=connection_response(result.connection) if result.connection else None,
        registration_error=result.registration_error,
    )


_CALLBACK_PAGE = """<!doctype html>
<html>
<head><meta charset="utf-8"><title>{title}</title></head>
<body>
<p>{text}</p>
<script>setTimeout(function () {{ window.close(); }}, 1500);</script>
</body>
</html>
"""


@router.get("/callback", response_class=HTMLResponse, name="authorization_callback")
def authorization_callback(
    request: Request,
    ref: Optional[str] = None,
    requisition_id: Optional[str] = None,
    legacy_id: Optional[str] = Query(None, alias="id"),
    error: Optional[str] = None,
    client: AggregatorClient = Depends(get_aggregator_client),
    registry: AuthorizationSessionRegistry = Depends(get_session_registry),
):
    """Landing page for the bank redirect.

    Resolves the requisition, routes the outcome to the owning session,
    and tells the user they can close the window.
    """
    reference = ref or requisition_id or legacy_id
    message = FlowService(client).resolve_callback(reference, origin_of(str(request.url)), error)
    delivered = registry.deliver(reference, message) if reference else False
    if not delivered:
        logger.warning("Authorization callback for %s had no waiting session", reference)

    if message.error:
        title, text = "Authorization failed", message.error
    else:
        title, text = "Bank connected", "Your bank is connected. You can close this window."
    return HTMLResponse(_CALLBACK_PAGE.format(title=html.escape(title), text=html.escape(text)))


def close_sessions() -> None:
    """Cancel all live authorization sessions."""
    if _registry is not None:
        _registry.close_all()
