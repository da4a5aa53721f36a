#!/usr/bin/env python
"""Store the Plaid API keys in the OS keychain.

Once stored, PLAID_CLIENT_ID and PLAID_SECRET no longer need to be in
``.env``. Get them from the Plaid dashboard under Developers > Keys.

Usage:
    python -m scripts.store_credentials
    python -m scripts.store_credentials --delete
"""

import argparse
import getpass
import sys

from services.credential_manager import CREDENTIAL_KEYS, delete_credential, store_credential


def store_plaid_keys(client_id: str, secret: str) -> list[str]:
    """Store both keys; returns the names that could not be stored."""
    values = {"PLAID_CLIENT_ID": client_id, "PLAID_SECRET": secret}
    return [key for key, value in values.items() if not store_credential(key, value)]


def main(args: argparse.Namespace) -> int:
    if args.delete:
        for key in sorted(CREDENTIAL_KEYS):
            print(f"  {key}: {'deleted' if delete_credential(key) else 'not stored'}")
        return 0

    client_id = input("Plaid client_id: ").strip()
    secret = getpass.getpass("Plaid secret: ").strip()
    if not client_id or not secret:
        print("Error: both client_id and secret are required")
        return 1

    failed = store_plaid_keys(client_id, secret)
    if failed:
        print(f"Failed to store: {', '.join(failed)}")
        return 1
    print("Stored Plaid keys in keychain")
    return 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Manage Plaid API keys in the OS keychain")
    parser.add_argument("--delete", action="store_true", help="Remove the stored keys")
    sys.exit(main(parser.parse_args()))
