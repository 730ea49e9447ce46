"""Map connector exceptions onto HTTP responses."""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from connector_api.core.exceptions import (
    ConnectionInactiveError,
    ConnectionNotFoundError,
    ConnectorError,
    OAuthConfigurationError,
    OAuthUnauthorizedError,
    SheetAccessError,
    SheetRateLimitError,
    SyncConfigurationError,
)
from connector_api.core.logger import setup_logger

logger = setup_logger(__name__)

# Checked in order; first matching class wins
ERROR_STATUS_CODES = [
    (OAuthUnauthorizedError, 401),
    (SheetAccessError, 403),
    (ConnectionNotFoundError, 404),
    (SyncConfigurationError, 404),
    (ConnectionInactiveError, 409),
    (SheetRateLimitError, 429),
    (OAuthConfigurationError, 501),
]


def status_code_for(error: ConnectorError) -> int:
    for error_cls, status_code in ERROR_STATUS_CODES:
        if isinstance(error, error_cls):
            return status_code
    return 400


async def connector_error_handler(request: Request, exc: ConnectorError) -> JSONResponse:
    status_code = status_code_for(exc)
    body = {"error": type(exc).__name__, "message": str(exc)}
    if isinstance(exc, SheetRateLimitError):
        body["message"] = "Rate limit exceeded. Please wait before trying again."
        body["retryable"] = True

    logger.warning(f"{request.method} {request.url.path} -> {status_code}: {exc}")
    return JSONResponse(status_code=status_code, content=body)


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ConnectorError, connector_error_handler)
