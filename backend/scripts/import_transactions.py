#!/usr/bin/env python
"""Run a transaction import from the command line.

Imports the configured window for every connected account (or one
account with --account) and prints the summary the UI would show.

Usage:
    python -m scripts.import_transactions
    python -m scripts.import_transactions --from 2024-03-01 --to 2024-03-31
    python -m scripts.import_transactions --account acc-123 --pending
"""

import argparse
import sys
from datetime import date

from dotenv import load_dotenv

from database import get_session_local
from integrations.gocardless_client import GocardlessClient
from logging_config import setup_logging
from services.bank_account_service import BankAccountNotFoundError
from services.import_service import (
    ImportInProgressError,
    ImportOptions,
    ImportProgress,
    ImportService,
    NoConnectedAccountsError,
    format_summary,
)


def print_progress(update: ImportProgress) -> None:
    line = f"  [{update.percent:3d}%] {update.step}"
    if update.log_line:
        line += f" - {update.log_line}"
    print(line)


def main(argv: list[str] | None = None) -> None:
    """Entry point: parse args and run the import."""
    parser = argparse.ArgumentParser(
        description="Import GoCardless transactions into the local database.",
    )
    parser.add_argument("--from", dest="date_from", type=date.fromisoformat, help="YYYY-MM-DD")
    parser.add_argument("--to", dest="date_to", type=date.fromisoformat, help="YYYY-MM-DD")
    parser.add_argument("--account", help="Import only this GoCardless account id")
    parser.add_argument(
        "--pending",
        action="store_true",
        help="Hold back possible duplicates for review instead of skipping them",
    )
    parser.add_argument(
        "--skip-duplicate-check",
        action="store_true",
        help="Import every fetched transaction",
    )
    args = parser.parse_args(argv)

    load_dotenv()
    setup_logging()

    try:
        options = ImportOptions(
            skip_duplicate_check=args.skip_duplicate_check,
            create_pending_for_duplicates=args.pending,
            date_from=args.date_from,
            date_to=args.date_to,
        )
    except ValueError as e:
        print(f"Error: {e}")
        sys.exit(1)

    client = GocardlessClient()
    if not client.is_configured():
        print("Error: GoCardless is not configured. Run scripts/setup_gocardless.py first.")
        sys.exit(1)

    service = ImportService(client)
    SessionLocal = get_session_local()
    db = SessionLocal()
    try:
        if args.account:
            result = service.import_single(db, args.account, options=options, progress=print_progress)
        else:
            result = service.import_all(db, options, progress=print_progress)
    except (NoConnectedAccountsError, BankAccountNotFoundError, ImportInProgressError) as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        db.close()

    print("-" * 60)
    for line in format_summary(result.summary):
        print(line)
    for account_result in result.account_results:
        if account_result.error:
            print(f"  {account_result.account_name}: {account_result.error}")


if __name__ == "__main__":
    main()
