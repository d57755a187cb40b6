"""Expiration monitor - flags connections that are about to lose bank access.

Bank authorizations are valid for a limited number of days. The monitor
classifies each registered connection by its expiry and produces alerts
the UI shows next to the affected accounts. Evaluation is on demand;
there is no background timer.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum

from sqlalchemy.orm import Session

from config import settings
from integrations.parsing_utils import ensure_utc
from models import GocardlessConnection
from services.connection_registrar import STATUS_DISCONNECTED, STATUS_ERROR

logger = logging.getLogger(__name__)

_SECONDS_PER_DAY = 86400


class ConnectionHealth(str, Enum):
    OK = "ok"
    EXPIRING_SOON = "expiring_soon"
    EXPIRED = "expired"


def classify_expiration(
    expires_at: datetime,
    now: datetime,
    warning_days: int | None = None,
) -> ConnectionHealth:
    """Expired once ``now`` reaches ``expires_at``; expiring soon within the window."""
    if warning_days is None:
        warning_days = settings.CONNECTION_WARNING_DAYS
    expires_at, now = ensure_utc(expires_at), ensure_utc(now)
    if now >= expires_at:
        return ConnectionHealth.EXPIRED
    if expires_at - now <= timedelta(days=warning_days):
        return ConnectionHealth.EXPIRING_SOON
    return ConnectionHealth.OK


def days_until_expiration(expires_at: datetime, now: datetime) -> int:
    """Whole days left, rounded up; zero or negative once expired."""
    remaining = (ensure_utc(expires_at) - ensure_utc(now)).total_seconds()
    return math.ceil(remaining / _SECONDS_PER_DAY)


def format_expiration_message(days: int, expired: bool = False) -> str:
    if expired or days < 0:
        elapsed = abs(days)
        if elapsed == 0:
            return "Expired today"
        return f"Expired {elapsed} day{'s' if elapsed != 1 else ''} ago"
    if days == 0:
        return "Expires today"
    if days == 1:
        return "Expires tomorrow"
    return f"Expires in {days} days"


@dataclass
class ConnectionAlert:
    connection_id: str
    requisition_id: str
    institution_id: str
    institution_name: str
    institution_logo: str | None
    status: ConnectionHealth
    expires_at: datetime
    days_until_expiration: int
    linked_account_ids: list[str] = field(default_factory=list)

    @property
    def message(self) -> str:
        return format_expiration_message(
            self.days_until_expiration, expired=self.status == ConnectionHealth.EXPIRED
        )


@dataclass
class ConnectionStatusSummary:
    total_connections: int = 0
    active_connections: int = 0
    expiring_soon_connections: int = 0
    expired_connections: int = 0
    error_connections: int = 0
    alerts: list[ConnectionAlert] = field(default_factory=list)


def alerts_by_account(summary: ConnectionStatusSummary) -> dict[str, ConnectionAlert]:
    """Map each external account id to the alert covering it.

    When two alerts cover one account, the more urgent one wins.
    """
    lookup: dict[str, ConnectionAlert] = {}
    for alert in summary.alerts:
        for account_id in alert.linked_account_ids:
            current = lookup.get(account_id)
            if current is None or alert.days_until_expiration < current.days_until_expiration:
                lookup[account_id] = alert
    return lookup


class ExpirationMonitor:
    """Evaluates registered connections against the warning window."""

    def __init__(self, warning_days: int | None = None):
        self._warning_days = (
            settings.CONNECTION_WARNING_DAYS if warning_days is None else warning_days
        )

    def evaluate(self, db: Session, now: datetime | None = None) -> ConnectionStatusSummary:
        now = now or datetime.now(timezone.utc)
        summary = ConnectionStatusSummary()
        connections = (
            db.query(GocardlessConnection)
            .filter(GocardlessConnection.status != STATUS_DISCONNECTED)
            .order_by(GocardlessConnection.expires_at)
            .all()
        )
        for connection in connections:
            summary.total_connections += 1
            if connection.status == STATUS_ERROR:
                summary.error_connections += 1
            health = classify_expiration(connection.expires_at, now, self._warning_days)
            if health == ConnectionHealth.OK:
                if connection.status != STATUS_ERROR:
                    summary.active_connections += 1
                continue
            if health == ConnectionHealth.EXPIRED:
                summary.expired_connections += 1
            else:
                summary.expiring_soon_connections += 1
            summary.alerts.append(self._alert(connection, health, now))

        if summary.alerts:
            logger.info(
                "Connection status: %d expiring soon, %d expired",
                summary.expiring_soon_connections,
                summary.expired_connections,
            )
        return summary

    def _alert(
        self, connection: GocardlessConnection, health: ConnectionHealth, now: datetime
    ) -> ConnectionAlert:
        return ConnectionAlert(
            connection_id=connection.id,
            requisition_id=connection.requisition_id,
            institution_id=connection.institution_id,
            institution_name=connection.institution_name or connection.institution_id,
            institution_logo=connection.institution_logo,
            status=health,
            expires_at=ensure_utc(connection.expires_at),
            days_until_expiration=days_until_expiration(connection.expires_at, now),
            linked_account_ids=list(connection.linked_account_ids or []),
        )
