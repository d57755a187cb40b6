#!/usr/bin/env python3
"""GoCardless Bank Account Data setup script.

This script validates GoCardless secrets by requesting an access token
and listing the institutions of one country. Banks are connected through
the browser, not through this CLI script.

Usage:
    1. Sign up at https://bankaccountdata.gocardless.com/
    2. Create a secret under User secrets
    3. Run this script and follow the prompts
    4. Add the resulting env vars to your .env file (or store them in the keychain)
"""

import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv

from integrations.exceptions import AggregatorAuthError, AggregatorError
from integrations.gocardless_client import GocardlessClient
from services.credential_manager import mask_credential, set_credential


def _offer_keychain_store(credentials: dict[str, str]) -> None:
    """Prompt the user to store credentials in the system keychain."""
    answer = input("\nStore these credentials in the system keychain? [Y/n] ").strip().lower()
    if answer in ("", "y", "yes"):
        for key, value in credentials.items():
            if set_credential(key, value):
                print(f"  Stored {key} in keychain")
            else:
                print(f"  Failed to store {key}")
    else:
        print("  Skipped keychain storage.")


def validate_credentials(secret_id: str, secret_key: str, country: str) -> int:
    """Request a token and list institutions.

    Returns:
        Number of institutions available for ``country``.

    Raises:
        AggregatorError: If the API call fails.
    """
    client = GocardlessClient(secret_id=secret_id, secret_key=secret_key)
    return len(client.list_institutions(country))


def main():
    """Prompt for credentials and validate them."""
    load_dotenv(Path(__file__).parent.parent / ".env")

    print("GoCardless Bank Account Data Setup")
    print("=" * 50)
    print()
    print("To get GoCardless credentials:")
    print("  1. Sign in at https://bankaccountdata.gocardless.com/")
    print("  2. Go to Developers > User secrets")
    print("  3. Create a secret and copy its id and key")
    print()

    secret_id = input("Enter your secret id: ").strip()
    if not secret_id:
        print("Error: No secret id provided")
        sys.exit(1)

    secret_key = input("Enter your secret key: ").strip()
    if not secret_key:
        print("Error: No secret key provided")
        sys.exit(1)

    country = input("Country to test with [IT]: ").strip().upper() or "IT"

    print()
    print(f"Validating credentials {mask_credential(secret_id)} against GoCardless...")

    try:
        count = validate_credentials(secret_id, secret_key, country)
    except AggregatorAuthError as e:
        print(f"Error: {e}")
        print()
        print("Common issues:")
        print("  - Secret id and key swapped or mistyped")
        print("  - Secret revoked in the GoCardless portal")
        sys.exit(1)
    except AggregatorError as e:
        print(f"Error: {e}")
        print("  - Network connectivity issue or GoCardless outage")
        sys.exit(1)

    print()
    print(f"Success! {count} bank(s) available in {country}.")
    print()
    print("Add the following to your .env file:")
    print()
    print(f"GOCARDLESS_SECRET_ID={secret_id}")
    print(f"GOCARDLESS_SECRET_KEY={secret_key}")
    print(f"GOCARDLESS_DEFAULT_COUNTRY={country}")

    _offer_keychain_store({
        "GOCARDLESS_SECRET_ID": secret_id,
        "GOCARDLESS_SECRET_KEY": secret_key,
    })

    print()
    print("Keep these credentials secure - they provide access to")
    print("your bank data via the GoCardless API.")


if __name__ == "__main__":
    main()
