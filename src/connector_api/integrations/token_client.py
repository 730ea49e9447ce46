"""HTTP client for platform OAuth2 token endpoints."""

from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel, ValidationError

from connector_api.config.constants import RETRYABLE_TOKEN_ERROR_CODES, TOKEN_ENDPOINT_TIMEOUT
from connector_api.core.exceptions import TokenEndpointError
from connector_api.core.logger import setup_logger
from connector_api.integrations.oauth_platforms import OAuthPlatformConfig

logger = setup_logger(__name__)


class TokenResponse(BaseModel):
    """Token endpoint response (authorization_code and refresh_token grants)."""

    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    token_type: Optional[str] = "Bearer"
    scope: Optional[str] = None

    class Config:
        extra = "allow"

    def __repr__(self) -> str:
        # Keep tokens out of logs and tracebacks
        return f"TokenResponse(token_type={self.token_type!r}, expires_in={self.expires_in!r}, scope={self.scope!r})"

    __str__ = __repr__


class TokenEndpointClient:
    """Form-encoded POSTs against a platform token endpoint."""

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None):
        self.client = http_client or httpx.AsyncClient(timeout=TOKEN_ENDPOINT_TIMEOUT)

    async def close(self):
        await self.client.aclose()

    async def exchange_code(
        self,
        config: OAuthPlatformConfig,
        code: str,
        code_verifier: Optional[str] = None,
        shop: Optional[str] = None,
    ) -> TokenResponse:
        form = {
            "grant_type": "authorization_code",
            "client_id": config.client_id,
            "client_secret": config.client_secret,
            "code": code,
            "redirect_uri": config.redirect_uri,
        }
        if code_verifier:
            form["code_verifier"] = code_verifier
        return await self._post(config.resolve_token_url(shop), form)

    async def refresh(
        self,
        config: OAuthPlatformConfig,
        refresh_token: str,
        shop: Optional[str] = None,
    ) -> TokenResponse:
        form = {
            "grant_type": "refresh_token",
            "client_id": config.client_id,
            "client_secret": config.client_secret,
            "refresh_token": refresh_token,
        }
        return await self._post(config.resolve_token_url(shop), form)

    async def _post(self, url: str, form: Dict[str, str]) -> TokenResponse:
        grant_type = form["grant_type"]
        try:
            response = await self.client.post(
                url,
                data=form,
                headers={"Accept": "application/json"},
            )
        except httpx.TimeoutException as e:
            raise TokenEndpointError(f"Token endpoint timeout: {e}", retryable=True) from e
        except httpx.TransportError as e:
            raise TokenEndpointError(f"Token endpoint network error: {e}", retryable=True) from e

        if response.status_code >= 400:
            raise self._error_from_response(response)

        try:
            token = TokenResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise TokenEndpointError(
                "Token endpoint response did not contain an access token",
                status_code=response.status_code,
            ) from e

        logger.info(f"Token endpoint {grant_type} succeeded (expires_in={token.expires_in})")
        return token

    def _error_from_response(self, response: httpx.Response) -> TokenEndpointError:
        error_code = None
        description = None
        try:
            body: Any = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            error_code = body.get("error")
            description = body.get("error_description")
            if not isinstance(error_code, str):
                error_code = None

        status = response.status_code
        retryable = (
            status >= 500
            or status == 429
            or (error_code in RETRYABLE_TOKEN_ERROR_CODES)
        )
        message = f"Token endpoint returned {status}"
        if error_code:
            message += f": {error_code}"
        if description:
            message += f" ({description})"

        logger.warning(f"{message} (retryable={retryable})")
        return TokenEndpointError(
            message,
            status_code=status,
            error_code=error_code,
            retryable=retryable,
        )
