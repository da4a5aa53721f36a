"""Errors raised by upstream provider clients.

Callers branch on the type: a dead credential disconnects the connection,
a rejected cursor restarts the feed once, and everything else is reported
per account and retried on the next cycle.
"""


class ProviderError(Exception):
    """Base class; ``provider_name`` says which aggregator failed."""

    def __init__(self, message: str, provider_name: str = ""):
        self.provider_name = provider_name
        super().__init__(message)


class ProviderAuthError(ProviderError):
    """The credential was rejected (expired, revoked, login required).

    No further calls may be made with it until the user re-links; the
    owning connection is marked disconnected with ``error_code``.
    """

    def __init__(self, message: str, provider_name: str = "", error_code: str | None = None):
        self.error_code = error_code
        super().__init__(message, provider_name)


class ProviderConnectionError(ProviderError):
    """The provider could not be reached or did not answer in time."""

    def __init__(self, message: str, provider_name: str = "", retriable: bool = True):
        self.retriable = retriable
        super().__init__(message, provider_name)


class ProviderAPIError(ProviderError):
    """The provider answered with an error status."""

    def __init__(
        self,
        message: str,
        provider_name: str = "",
        status_code: int | None = None,
        error_code: str | None = None,
    ):
        self.status_code = status_code
        self.error_code = error_code
        super().__init__(message, provider_name)

    @property
    def retriable(self) -> bool:
        """True for rate limiting (429) and server errors (5xx)."""
        if self.status_code is None:
            return False
        return self.status_code == 429 or self.status_code >= 500


class CursorInvalidError(ProviderAPIError):
    """The transaction feed cursor does not belong to the credential.

    Recovered once by discarding the cursor and reading the feed from the
    beginning.
    """


class ProviderDataError(ProviderError):
    """The response could not be parsed into the expected payload."""
