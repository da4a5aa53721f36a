"""Plaid API keys in the OS keychain.

Settings reads ``PLAID_CLIENT_ID`` and ``PLAID_SECRET`` from here before
falling back to the environment (see ``config.KeychainSettingsSource``).
Per-connection access tokens are not stored here; they live on the
Connection rows and in the credential backup files.
"""

import logging

import keyring
from keyring.errors import KeyringError

logger = logging.getLogger(__name__)

SERVICE_NAME = "account-sync-engine"

CREDENTIAL_KEYS: frozenset[str] = frozenset({"PLAID_CLIENT_ID", "PLAID_SECRET"})


def get_credential(key: str) -> str | None:
    """Look up ``key`` in the keychain.

    Returns:
        The stored value, or None if it is missing or no keychain backend
        is usable.
    """
    try:
        return keyring.get_password(SERVICE_NAME, key)
    except KeyringError as e:
        logger.debug("Keychain lookup failed for %s: %s", key, e)
        return None


def store_credential(key: str, value: str) -> bool:
    """Save a Plaid API key to the keychain.

    Args:
        key: One of :data:`CREDENTIAL_KEYS`.
        value: Non-blank value.

    Returns:
        True if stored, False if the key or value was rejected or the
        keychain refused the write.
    """
    if key not in CREDENTIAL_KEYS:
        logger.warning("Refusing to store non-credential key %s", key)
        return False
    value = (value or "").strip()
    if not value:
        logger.warning("Refusing to store an empty value for %s", key)
        return False
    try:
        keyring.set_password(SERVICE_NAME, key, value)
    except KeyringError as e:
        logger.warning("Failed to store %s in keychain: %s", key, e)
        return False
    logger.info("Stored %s in keychain", key)
    return True


def delete_credential(key: str) -> bool:
    """Remove a Plaid API key from the keychain; False if it was not there."""
    if key not in CREDENTIAL_KEYS:
        return False
    try:
        keyring.delete_password(SERVICE_NAME, key)
    except KeyringError:
        return False
    return True
