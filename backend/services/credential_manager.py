"""Keyring-backed storage for the GoCardless secrets.

Wraps the ``keyring`` library so the secret id/key pair can live in the
macOS Keychain (or any other keyring backend) instead of a ``.env`` file.
Lookups never raise: a missing or broken backend reads as "not stored"
and the settings chain falls through to environment variables.
"""

import logging

import keyring
from keyring.errors import KeyringError

logger = logging.getLogger(__name__)

SERVICE_NAME = "bank-sync"

CREDENTIAL_KEYS: frozenset[str] = frozenset(
    {
        "GOCARDLESS_SECRET_ID",
        "GOCARDLESS_SECRET_KEY",
    }
)


def get_credential(key: str) -> str | None:
    """Retrieve a credential from the keychain.

    Args:
        key: The credential name (e.g. ``"GOCARDLESS_SECRET_ID"``).

    Returns:
        The credential value, or ``None`` if not stored or the keyring
        backend is unusable.
    """
    try:
        return keyring.get_password(SERVICE_NAME, key)
    except (KeyringError, RuntimeError):
        logger.debug("keyring lookup failed for %s", key, exc_info=True)
        return None


def set_credential(key: str, value: str) -> bool:
    """Store a credential in the keychain.

    Only keys listed in :data:`CREDENTIAL_KEYS` are accepted.

    Returns:
        ``True`` if stored successfully, ``False`` otherwise.
    """
    if key not in CREDENTIAL_KEYS:
        logger.warning("Attempted to store non-credential key: %s", key)
        return False
    if not value or not value.strip():
        logger.warning("Attempted to store empty value for %s", key)
        return False

    try:
        keyring.set_password(SERVICE_NAME, key, value.strip())
    except (KeyringError, RuntimeError):
        logger.warning("Failed to store %s in keychain", key, exc_info=True)
        return False
    logger.info("Stored %s in keychain", key)
    return True


def delete_credential(key: str) -> bool:
    """Remove a credential from the keychain.

    Returns:
        ``True`` if deleted, ``False`` if the key is unknown or absent.
    """
    if key not in CREDENTIAL_KEYS:
        logger.warning("Attempted to delete non-credential key: %s", key)
        return False

    try:
        keyring.delete_password(SERVICE_NAME, key)
    except (KeyringError, RuntimeError):
        logger.debug("Failed to delete %s from keychain", key, exc_info=True)
        return False
    logger.info("Deleted %s from keychain", key)
    return True


def mask_credential(value: str | None) -> str:
    """Render a secret for display, keeping only its last four characters."""
    if not value:
        return "(not set)"
    if len(value) <= 4:
        return "****"
    return "*" * (len(value) - 4) + value[-4:]
