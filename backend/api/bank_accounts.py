"""Bank account API endpoints."""

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from api.helpers import bank_account_response, get_or_404
from database import get_db
from models import BankAccount
from schemas.bank_account import BankAccountCreate, BankAccountResponse, BankAccountUpdate
from services.bank_account_service import AccountLinkConflictError, BankAccountService
from services.expiration_monitor import ExpirationMonitor, alerts_by_account

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/bank-accounts", tags=["bank-accounts"])


@router.get("", response_model=list[BankAccountResponse])
def list_bank_accounts(db: Session = Depends(get_db)):
    """List bank accounts, each with its connection expiration alert (if any)."""
    alerts = alerts_by_account(ExpirationMonitor().evaluate(db))
    return [
        bank_account_response(
            account,
            alerts.get(account.gocardless_account_id) if account.gocardless_account_id else None,
        )
        for account in BankAccountService.list_accounts(db)
    ]


@router.get("/{account_id}", response_model=BankAccountResponse)
def get_bank_account(account_id: str, db: Session = Depends(get_db)):
    account = get_or_404(db, BankAccount, account_id, "Bank account not found")
    return bank_account_response(account)


@router.post("", response_model=BankAccountResponse, status_code=201)
def create_bank_account(body: BankAccountCreate, db: Session = Depends(get_db)):
    """Create a bank account, optionally linked to a GoCardless account.

    Raises:
        HTTPException: 409 if the GoCardless account backs another account.
    """
    try:
        account = BankAccountService.create_account(
            db,
            name=body.name,
            balance=body.balance,
            currency=body.currency.upper(),
            account_type=body.account_type,
            gocardless_account_id=body.gocardless_account_id,
        )
    except AccountLinkConflictError as e:
        db.rollback()
        raise HTTPException(status_code=409, detail=str(e))
    db.commit()
    db.refresh(account)
    return bank_account_response(account)


@router.patch("/{account_id}", response_model=BankAccountResponse)
def update_bank_account(
    account_id: str,
    body: BankAccountUpdate,
    db: Session = Depends(get_db),
):
    """Update name, balance or GoCardless link.

    Raises:
        HTTPException: 404 if not found, 409 on a link conflict.
    """
    account = get_or_404(db, BankAccount, account_id, "Bank account not found")
    changes = {}
    if "gocardless_account_id" in body.model_fields_set:
        changes["gocardless_account_id"] = body.gocardless_account_id
    try:
        BankAccountService.update_account(
            db, account, name=body.name, balance=body.balance, **changes
        )
    except AccountLinkConflictError as e:
        db.rollback()
        raise HTTPException(status_code=409, detail=str(e))
    db.commit()
    db.refresh(account)
    logger.info("Bank account updated: %s (id=%s)", account.name, account.id)
    return bank_account_response(account)
