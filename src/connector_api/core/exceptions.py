"""Exception hierarchy for the connection and sync engine."""

from typing import Optional


class ConnectorError(Exception):
    """Base class for all connector errors."""


class OAuthConfigurationError(ConnectorError):
    """Requested platform has no (or incomplete) OAuth2 configuration."""


class OAuthUnauthorizedError(ConnectorError):
    """Authorization failed: bad/expired state, rejected code or refresh token."""


class TokenRefreshError(OAuthUnauthorizedError):
    """Refresh failed for good; the connection has been marked EXPIRED."""

    def __init__(self, connection_id: str, message: str):
        super().__init__(f"Token refresh failed for connection {connection_id}: {message}")
        self.connection_id = connection_id


class TokenEndpointError(ConnectorError):
    """Error response (or transport failure) from a platform token endpoint."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code
        self.retryable = retryable


class ConnectionNotFoundError(ConnectorError):
    """No platform connection with the given id."""


class ConnectionInactiveError(ConnectorError):
    """Connection exists but is not usable (expired or revoked)."""


class TokenCipherError(ConnectorError):
    """Token could not be encrypted or decrypted."""


class SheetRateLimitError(ConnectorError):
    """Sheet provider rate limit or quota exhausted; retry later."""


class SheetAccessError(ConnectorError):
    """Sheet provider refused access to the spreadsheet."""


class SyncConfigurationError(ConnectorError):
    """Spreadsheet is not linked for order sync, or its config is unusable."""


class SyncOperationStateError(ConnectorError):
    """Attempt to mutate a SyncOperation that already reached a terminal status."""
