"""Pending duplicate service - review queue for possible duplicates."""

import logging
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy.orm import Session

from models import PendingDuplicate, Transaction
from services.import_service import TRANSACTION_SOURCE

logger = logging.getLogger(__name__)


class PendingDuplicateAction(str, Enum):
    KEEP_EXISTING = "keep_existing"
    IMPORT = "import"


class PendingDuplicateNotFoundError(Exception):
    pass


class PendingDuplicateAlreadyResolvedError(Exception):
    pass


class PendingDuplicateService:
    """Lists and resolves held-back transactions (flushes, does not commit)."""

    @staticmethod
    def list_pending(db: Session, bank_account_id: str | None = None) -> list[PendingDuplicate]:
        query = db.query(PendingDuplicate).filter(PendingDuplicate.resolved.is_(False))
        if bank_account_id:
            query = query.filter(PendingDuplicate.bank_account_id == bank_account_id)
        return query.order_by(PendingDuplicate.booking_date.desc()).all()

    @staticmethod
    def resolve(
        db: Session,
        pending_id: str,
        action: PendingDuplicateAction,
    ) -> PendingDuplicate:
        """Keep the stored transaction, or import the held-back one as well.

        Raises:
            PendingDuplicateNotFoundError: Unknown id.
            PendingDuplicateAlreadyResolvedError: Already decided.
        """
        pending = db.query(PendingDuplicate).filter(PendingDuplicate.id == pending_id).first()
        if pending is None:
            raise PendingDuplicateNotFoundError(f"Pending duplicate not found: {pending_id}")
        if pending.resolved:
            raise PendingDuplicateAlreadyResolvedError(
                f"Pending duplicate {pending_id} was already resolved ({pending.resolution})"
            )

        if action == PendingDuplicateAction.IMPORT:
            db.add(
                Transaction(
                    bank_account_id=pending.bank_account_id,
                    external_id=pending.external_id,
                    booking_date=pending.booking_date,
                    amount=pending.amount,
                    currency=pending.currency,
                    description=pending.description,
                    type="income" if pending.amount > 0 else "expense",
                    source=TRANSACTION_SOURCE,
                )
            )
            pending.resolution = "imported"
        else:
            pending.resolution = "kept_existing"

        pending.resolved = True
        pending.resolved_at = datetime.now(timezone.utc)
        db.flush()
        logger.info("Pending duplicate %s resolved: %s", pending_id, pending.resolution)
        return pending
