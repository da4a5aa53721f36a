"""Rules deciding which accounts may be refreshed or synced upstream."""

from dataclasses import dataclass, field

from models import Account, Connection


class AccountValidationError(ValueError):
    """Account identity or credential shape makes an upstream call pointless."""

    def __init__(self, account_id: str | None, message: str):
        self.account_id = account_id
        super().__init__(message)


@dataclass
class Eligibility:
    eligible: bool
    reasons: list[str] = field(default_factory=list)


def check_eligibility(account: Account) -> Eligibility:
    """Explain whether an account can take part in upstream refreshes.

    The account's ``connection`` relationship must be loaded.

    Returns:
        Eligibility with human-readable reasons when ineligible.
    """
    reasons: list[str] = []
    connection = account.connection
    if account.archived:
        reasons.append("Account is archived")
    # A missing connection is reported by validate_account_identity instead
    if connection is not None and connection.is_manual:
        reasons.append("Manual account (no upstream sync)")
    elif connection is not None and not connection.is_active:
        reasons.append("Connection is disconnected; reconnect required")
    return Eligibility(eligible=not reasons, reasons=reasons)


def is_eligible(account: Account) -> bool:
    return check_eligibility(account).eligible


def is_connection_eligible(connection: Connection) -> bool:
    """True if upstream calls may be made with the connection's credential."""
    return connection.is_active and not connection.is_manual and bool(connection.access_token)


def validate_account_identity(account: Account) -> None:
    """Reject accounts that cannot be matched against a provider response.

    Raises:
        AccountValidationError: If the external id, connection, credential,
            type or name is missing.
    """
    if not account.id:
        raise AccountValidationError(None, "Missing account id")
    if not account.external_id:
        raise AccountValidationError(account.id, "Missing external account id")
    if account.connection is None:
        raise AccountValidationError(account.id, "Missing connection")
    if not account.connection.access_token:
        raise AccountValidationError(account.id, "Missing access token for institution")
    if not account.type:
        raise AccountValidationError(account.id, "Missing account type")
    if not account.name:
        raise AccountValidationError(account.id, "Missing account name")
