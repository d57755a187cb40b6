"""Shared API helpers for route handlers.

Common query patterns, response builders and error mapping used across
multiple route files.
"""

import logging
from typing import TypeVar

from fastapi import HTTPException
from sqlalchemy.orm import Session

from database import Base
from integrations.exceptions import (
    AggregatorAPIError,
    AggregatorAuthError,
    AggregatorConnectionError,
    AggregatorError,
)
from models import BankAccount, GocardlessConnection
from schemas.bank_account import BankAccountResponse
from schemas.gocardless import (
    AccountImportResultResponse,
    ConnectionAlertResponse,
    ConnectionResponse,
    ImportResponse,
    ImportSummaryResponse,
)
from services.expiration_monitor import ConnectionAlert
from services.import_service import ImportResult, format_summary

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=Base)


def get_or_404(db: Session, model: type[T], entity_id: str, detail: str = "Not found") -> T:
    """Fetch a single entity by primary key or raise 404.

    Args:
        db: Database session.
        model: SQLAlchemy model class.
        entity_id: Primary key value.
        detail: Error message for the 404 response.

    Returns:
        The entity instance.

    Raises:
        HTTPException: 404 if the entity doesn't exist.
    """
    entity = db.query(model).filter(model.id == entity_id).first()
    if not entity:
        raise HTTPException(status_code=404, detail=detail)
    return entity


def aggregator_http_error(exc: AggregatorError, action: str) -> HTTPException:
    """Map an aggregator failure to the HTTP error shown to the user.

    Args:
        exc: The aggregator exception.
        action: What was being attempted, e.g. ``"load balances"``.
    """
    if isinstance(exc, AggregatorAuthError):
        logger.error("GoCardless auth error during %s: %s", action, exc)
        return HTTPException(
            status_code=502,
            detail="GoCardless rejected the configured credentials. Check your secret id and key.",
        )
    if isinstance(exc, AggregatorConnectionError):
        logger.warning("GoCardless unreachable during %s: %s", action, exc)
        return HTTPException(
            status_code=503,
            detail=f"Could not reach GoCardless to {action}. Please try again.",
        )
    if isinstance(exc, AggregatorAPIError) and exc.status_code == 404:
        return HTTPException(status_code=404, detail=f"Not found at GoCardless ({action})")
    logger.warning("GoCardless error during %s: %s", action, exc)
    retry_hint = " Please try again." if exc.retriable else ""
    return HTTPException(status_code=502, detail=f"Failed to {action}.{retry_hint}")


def alert_response(alert: ConnectionAlert) -> ConnectionAlertResponse:
    return ConnectionAlertResponse(
        connection_id=alert.connection_id,
        institution_id=alert.institution_id,
        institution_name=alert.institution_name,
        institution_logo=alert.institution_logo,
        status=alert.status.value,
        expires_at=alert.expires_at,
        days_until_expiration=alert.days_until_expiration,
        message=alert.message,
        linked_account_ids=alert.linked_account_ids,
    )


def bank_account_response(
    account: BankAccount, alert: ConnectionAlert | None = None
) -> BankAccountResponse:
    """Build a BankAccountResponse, attaching the expiration alert if any."""
    return BankAccountResponse(
        id=account.id,
        name=account.name,
        balance=account.balance,
        currency=account.currency,
        account_type=account.account_type,
        gocardless_account_id=account.gocardless_account_id,
        last_balance_sync_at=account.last_balance_sync_at,
        created_at=account.created_at,
        connection_alert=alert_response(alert) if alert is not None else None,
    )


def connection_response(connection: GocardlessConnection) -> ConnectionResponse:
    return ConnectionResponse(
        id=connection.id,
        requisition_id=connection.requisition_id,
        institution_id=connection.institution_id,
        institution_name=connection.institution_name,
        institution_logo=connection.institution_logo,
        status=connection.status,
        connected_at=connection.connected_at,
        expires_at=connection.expires_at,
        access_valid_for_days=connection.access_valid_for_days,
        last_sync_at=connection.last_sync_at,
        last_sync_error=connection.last_sync_error,
        linked_account_ids=list(connection.linked_account_ids or []),
    )


def import_response(result: ImportResult) -> ImportResponse:
    summary = result.summary
    return ImportResponse(
        summary=ImportSummaryResponse(
            total_accounts=summary.total_accounts,
            successful_accounts=summary.successful_accounts,
            failed_accounts=summary.failed_accounts,
            total_new_transactions=summary.total_new_transactions,
            total_duplicates=summary.total_duplicates,
            total_pending_duplicates=summary.total_pending_duplicates,
            balances_synchronized=summary.balances_synchronized,
        ),
        account_results=[
            AccountImportResultResponse(
                bank_account_id=r.bank_account_id,
                gocardless_account_id=r.gocardless_account_id,
                account_name=r.account_name,
                success=r.success,
                new_transactions=r.new_transactions,
                duplicates=r.duplicates,
                pending_duplicates=r.pending_duplicates,
                balance_synchronized=r.balance_synchronized,
                error=r.error,
                balance_error=r.balance_error,
            )
            for r in result.account_results
        ],
        logs=result.logs,
        messages=format_summary(summary),
    )
