"""Pending duplicate review endpoints."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from database import get_db
from schemas.gocardless import PendingDuplicateResponse, ResolvePendingDuplicateRequest
from services.pending_duplicate_service import (
    PendingDuplicateAction,
    PendingDuplicateAlreadyResolvedError,
    PendingDuplicateNotFoundError,
    PendingDuplicateService,
)

router = APIRouter(prefix="/api/pending-duplicates", tags=["pending-duplicates"])


@router.get("", response_model=list[PendingDuplicateResponse])
def list_pending_duplicates(
    bank_account_id: Optional[str] = None,
    db: Session = Depends(get_db),
):
    """Unresolved possible duplicates, newest booking date first."""
    return [
        PendingDuplicateResponse.model_validate(p)
        for p in PendingDuplicateService.list_pending(db, bank_account_id)
    ]


@router.post("/{pending_id}/resolve", response_model=PendingDuplicateResponse)
def resolve_pending_duplicate(
    pending_id: str,
    body: ResolvePendingDuplicateRequest,
    db: Session = Depends(get_db),
):
    """Keep the stored transaction or import the held-back one."""
    try:
        pending = PendingDuplicateService.resolve(
            db, pending_id, PendingDuplicateAction(body.action)
        )
    except PendingDuplicateNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except PendingDuplicateAlreadyResolvedError as e:
        raise HTTPException(status_code=409, detail=str(e))
    db.commit()
    db.refresh(pending)
    return PendingDuplicateResponse.model_validate(pending)
