"""Connection registrar - records an authorized connection and its lifetime."""

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy.orm import Session

from config import settings
from integrations.aggregator_protocol import AggregatorClient
from integrations.exceptions import AggregatorError
from models import GocardlessConnection

logger = logging.getLogger(__name__)

STATUS_ACTIVE = "active"
STATUS_DISCONNECTED = "disconnected"
STATUS_ERROR = "error"


class ConnectionNotFoundError(Exception):
    pass


class ConnectionRegistrar:
    """Creates and maintains ``GocardlessConnection`` rows."""

    def __init__(self, client: AggregatorClient):
        self._client = client

    def register(
        self,
        db: Session,
        requisition_id: str,
        institution_id: str,
        linked_account_ids: list[str],
        now: datetime | None = None,
    ) -> GocardlessConnection:
        """Record a connection for a linked requisition (flushes, does not commit).

        The access lifetime comes from the requisition's agreement, falling
        back to the configured default when the agreement can't be read.
        Re-registering the same requisition refreshes it in place. Older
        active connections that shared any of these accounts are marked
        disconnected, since the new authorization replaces them.

        Raises:
            AggregatorError: The requisition itself could not be fetched.
        """
        now = now or datetime.now(timezone.utc)
        requisition = self._client.get_requisition(requisition_id)

        access_days = settings.GOCARDLESS_ACCESS_VALID_FOR_DAYS
        if requisition.agreement_id:
            try:
                access_days = self._client.get_agreement(requisition.agreement_id).access_valid_for_days
            except AggregatorError as exc:
                logger.warning(
                    "Agreement %s unreadable, assuming %d days: %s",
                    requisition.agreement_id,
                    access_days,
                    exc,
                )

        institution_name = institution_id
        institution_logo = None
        try:
            institution = self._client.get_institution(institution_id)
            institution_name = institution.name or institution_id
            institution_logo = institution.logo or None
        except AggregatorError as exc:
            logger.warning("Institution %s details unavailable: %s", institution_id, exc)

        connection = (
            db.query(GocardlessConnection)
            .filter(GocardlessConnection.requisition_id == requisition_id)
            .first()
        )
        if connection is None:
            connection = GocardlessConnection(requisition_id=requisition_id)
            db.add(connection)

        connection.agreement_id = requisition.agreement_id
        connection.institution_id = institution_id
        connection.institution_name = institution_name
        connection.institution_logo = institution_logo
        connection.status = STATUS_ACTIVE
        connection.connected_at = now
        connection.access_valid_for_days = access_days
        connection.expires_at = now + timedelta(days=access_days)
        connection.linked_account_ids = sorted(set(linked_account_ids))
        connection.last_sync_error = None
        db.flush()

        self._supersede(db, connection)
        logger.info(
            "Registered connection %s for %s (%d account(s), expires %s)",
            requisition_id,
            institution_name,
            len(connection.linked_account_ids),
            connection.expires_at.date().isoformat(),
        )
        return connection

    def try_register(
        self,
        db: Session,
        requisition_id: str,
        institution_id: str,
        linked_account_ids: list[str],
    ) -> tuple[GocardlessConnection | None, str | None]:
        """Best-effort :meth:`register`, committed on success.

        Failures are logged and returned, never raised: a connection that
        could not be recorded must not undo account mappings that were
        already saved.

        Returns:
            ``(connection, None)`` on success, ``(None, error)`` otherwise.
        """
        savepoint = db.begin_nested()
        try:
            connection = self.register(db, requisition_id, institution_id, linked_account_ids)
            savepoint.commit()
            db.commit()
        except Exception as exc:
            if savepoint.is_active:
                savepoint.rollback()
            logger.warning(
                "Could not register connection %s: %s", requisition_id, exc, exc_info=True
            )
            return None, str(exc)
        return connection, None

    def _supersede(self, db: Session, connection: GocardlessConnection) -> None:
        linked = set(connection.linked_account_ids or [])
        if not linked:
            return
        others = (
            db.query(GocardlessConnection)
            .filter(
                GocardlessConnection.id != connection.id,
                GocardlessConnection.status == STATUS_ACTIVE,
            )
            .all()
        )
        for other in others:
            if linked & set(other.linked_account_ids or []):
                other.status = STATUS_DISCONNECTED
                logger.info(
                    "Connection %s superseded by %s", other.requisition_id, connection.requisition_id
                )
        db.flush()

    @staticmethod
    def list_connections(db: Session) -> list[GocardlessConnection]:
        return (
            db.query(GocardlessConnection)
            .order_by(GocardlessConnection.connected_at.desc())
            .all()
        )

    @staticmethod
    def get_connection(db: Session, connection_id: str) -> GocardlessConnection | None:
        return (
            db.query(GocardlessConnection)
            .filter(GocardlessConnection.id == connection_id)
            .first()
        )

    @staticmethod
    def connection_for_account(
        db: Session, gocardless_account_id: str
    ) -> GocardlessConnection | None:
        """Most recent active connection that covers an external account."""
        for connection in ConnectionRegistrar.list_connections(db):
            if connection.status != STATUS_DISCONNECTED and gocardless_account_id in (
                connection.linked_account_ids or []
            ):
                return connection
        return None

    def disconnect(self, db: Session, connection_id: str) -> GocardlessConnection:
        """Mark a connection disconnected and revoke it at the aggregator.

        Revocation is best-effort; the local row is updated either way.

        Raises:
            ConnectionNotFoundError: No connection with that id.
        """
        connection = self.get_connection(db, connection_id)
        if connection is None:
            raise ConnectionNotFoundError(f"Connection not found: {connection_id}")
        try:
            self._client.delete_requisition(connection.requisition_id)
        except AggregatorError as exc:
            logger.warning(
                "Failed to revoke requisition %s remotely (disconnecting locally anyway): %s",
                connection.requisition_id,
                exc,
            )
        connection.status = STATUS_DISCONNECTED
        db.flush()
        logger.info("Disconnected connection %s", connection.requisition_id)
        return connection
