#!/usr/bin/env python
"""Print the expiration status of every registered bank connection.

Usage:
    python -m scripts.connection_status
    python -m scripts.connection_status --warning-days 14
"""

import argparse

from dotenv import load_dotenv

from database import get_session_local
from services.connection_registrar import ConnectionRegistrar
from services.expiration_monitor import ExpirationMonitor


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Show bank connection expiration status.")
    parser.add_argument(
        "--warning-days",
        type=int,
        default=None,
        help="Days before expiry to start warning (defaults to settings)",
    )
    args = parser.parse_args(argv)

    load_dotenv()

    SessionLocal = get_session_local()
    db = SessionLocal()
    try:
        connections = ConnectionRegistrar.list_connections(db)
        summary = ExpirationMonitor(warning_days=args.warning_days).evaluate(db)
    finally:
        db.close()

    print(f"{'Institution':<30} {'Status':<14} {'Expires':<12} Accounts")
    print("-" * 70)
    for connection in connections:
        print(
            f"{(connection.institution_name or connection.institution_id):<30} "
            f"{connection.status:<14} "
            f"{connection.expires_at.date().isoformat():<12} "
            f"{', '.join(connection.linked_account_ids or [])}"
        )

    print()
    print(f"Connections: {summary.total_connections}")
    print(f"  Active: {summary.active_connections}")
    print(f"  Expiring soon: {summary.expiring_soon_connections}")
    print(f"  Expired: {summary.expired_connections}")
    print(f"  With errors: {summary.error_connections}")
    for alert in summary.alerts:
        print(f"  ! {alert.institution_name}: {alert.message}")


if __name__ == "__main__":
    main()
