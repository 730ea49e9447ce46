"""
Connection Lifecycle Manager.

Issues authorization URLs, exchanges codes, keeps access tokens fresh and
revokes connections.

State machine:
    (none) -> ACTIVE            successful code exchange
    ACTIVE -> EXPIRED           refresh failed for good
    EXPIRED -> ACTIVE           later refresh succeeded
    ACTIVE|EXPIRED -> REVOKED   explicit user action only, terminal
"""

import asyncio
import base64
import hashlib
import secrets
import time
from dataclasses import asdict, dataclass
from datetime import timedelta
from typing import Callable, Optional, Tuple
from urllib.parse import urlencode

from connector_api.config.constants import (
    OAUTH_STATE_TTL_SECONDS,
    TOKEN_REFRESH_BASE_DELAY_SECONDS,
    TOKEN_REFRESH_MAX_ATTEMPTS,
    TOKEN_REFRESH_WINDOW_SECONDS,
)
from connector_api.core.exceptions import (
    ConnectionInactiveError,
    OAuthUnauthorizedError,
    TokenCipherError,
    TokenEndpointError,
    TokenRefreshError,
)
from connector_api.core.logger import setup_logger
from connector_api.core.monitoring import capture_exception
from connector_api.core.single_flight import SingleFlight
from connector_api.core.token_cipher import TokenCipher
from connector_api.db.base import utcnow
from connector_api.db.models import ConnectionStatus, PlatformConnection, PlatformType
from connector_api.db.platform_data import (
    PLATFORM_DATA_MODELS,
    ShopifyPlatformData,
    read_platform_data,
)
from connector_api.integrations.oauth_platforms import OAuthPlatformRegistry
from connector_api.integrations.state_store import AuthorizationStateStore
from connector_api.integrations.token_client import TokenEndpointClient, TokenResponse
from connector_api.repositories.connection_repository import ConnectionRepository

logger = setup_logger(__name__)


@dataclass
class AuthorizationRequest:
    authorization_url: str
    state: str


@dataclass
class AuthorizationContext:
    """What was known about the user when the authorization started."""

    owner_id: str
    organization_id: str
    platform: str
    issued_at: float
    shop: Optional[str] = None

    @property
    def platform_type(self) -> PlatformType:
        return PlatformType(self.platform)


def generate_pkce_pair() -> Tuple[str, str]:
    """Return (code_verifier, S256 code_challenge), both base64url without padding."""
    verifier = base64.urlsafe_b64encode(secrets.token_bytes(32)).rstrip(b"=").decode()
    digest = hashlib.sha256(verifier.encode()).digest()
    challenge = base64.urlsafe_b64encode(digest).rstrip(b"=").decode()
    return verifier, challenge


class ConnectionManager:
    """OAuth2 connection lifecycle for all configured platforms."""

    def __init__(
        self,
        repository: ConnectionRepository,
        cipher: TokenCipher,
        platforms: OAuthPlatformRegistry,
        state_store: AuthorizationStateStore,
        token_client: TokenEndpointClient,
        single_flight: Optional[SingleFlight] = None,
        retry_base_delay: float = TOKEN_REFRESH_BASE_DELAY_SECONDS,
        max_refresh_attempts: int = TOKEN_REFRESH_MAX_ATTEMPTS,
        clock: Callable[[], float] = time.time,
    ):
        self.repository = repository
        self.cipher = cipher
        self.platforms = platforms
        self.state_store = state_store
        self.token_client = token_client
        self.single_flight = single_flight or SingleFlight()
        self.retry_base_delay = retry_base_delay
        self.max_refresh_attempts = max_refresh_attempts
        self.clock = clock

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    async def begin_authorization(
        self,
        platform: PlatformType,
        owner_id: str,
        organization_id: str,
        shop: Optional[str] = None,
    ) -> AuthorizationRequest:
        """Create a state (and PKCE pair if supported) and build the authorization URL."""
        config = self.platforms.get(platform)
        authorization_url = config.resolve_authorization_url(shop)

        state = secrets.token_urlsafe(32)
        context = AuthorizationContext(
            owner_id=owner_id,
            organization_id=organization_id,
            platform=platform.value,
            issued_at=self.clock(),
            shop=shop,
        )

        params = {
            "response_type": "code",
            "client_id": config.client_id,
            "redirect_uri": config.redirect_uri,
            "scope": " ".join(config.scopes),
            "state": state,
            "prompt": "consent",
            "access_type": "offline",
        }

        code_verifier = None
        if config.use_pkce:
            code_verifier, code_challenge = generate_pkce_pair()
            params["code_challenge"] = code_challenge
            params["code_challenge_method"] = "S256"

        await self.state_store.save(state, asdict(context), code_verifier)
        logger.info(f"Authorization started for {platform.value} (organization {organization_id}, pkce={config.use_pkce})")

        return AuthorizationRequest(
            authorization_url=f"{authorization_url}?{urlencode(params)}",
            state=state,
        )

    async def complete_authorization(
        self,
        code: str,
        state: str,
        expected_platform: Optional[PlatformType] = None,
    ) -> Tuple[TokenResponse, AuthorizationContext]:
        """
        Validate the state, exchange the code and return the tokens with their context.

        A state is only redeemable on the callback of the platform it was issued
        for. State and verifier are deleted on every path, success or failure.
        """
        try:
            raw_context = await self.state_store.load_context(state)
            if raw_context is None:
                raise OAuthUnauthorizedError("Invalid or expired authorization state")

            context = AuthorizationContext(**raw_context)
            if self.clock() - context.issued_at > OAUTH_STATE_TTL_SECONDS:
                raise OAuthUnauthorizedError("Authorization state has expired")
            if expected_platform is not None and context.platform_type != expected_platform:
                raise OAuthUnauthorizedError(
                    f"Authorization state was issued for {context.platform}, not {expected_platform.value}"
                )

            code_verifier = await self.state_store.load_verifier(state)
        except TypeError as e:
            await self.state_store.discard(state)
            raise OAuthUnauthorizedError("Malformed authorization state") from e
        except OAuthUnauthorizedError:
            await self.state_store.discard(state)
            raise

        await self.state_store.discard(state)

        config = self.platforms.get(context.platform_type)
        try:
            token = await self.token_client.exchange_code(config, code, code_verifier, shop=context.shop)
        except TokenEndpointError as e:
            logger.error(f"Code exchange failed for {context.platform}: {e}")
            raise OAuthUnauthorizedError(f"Failed to exchange authorization code: {e}") from e

        if not token.access_token:
            raise OAuthUnauthorizedError("Token response did not include an access token")

        logger.info(f"Authorization code exchanged for {context.platform} (organization {context.organization_id})")
        return token, context

    async def store_connection(self, token: TokenResponse, context: AuthorizationContext) -> PlatformConnection:
        """Persist a new ACTIVE connection with encrypted tokens."""
        platform = context.platform_type
        expires_at = utcnow() + timedelta(seconds=token.expires_in) if token.expires_in else None
        scopes = token.scope.split() if token.scope else list(self.platforms.get(platform).scopes)

        data_model = PLATFORM_DATA_MODELS[platform]()
        if isinstance(data_model, ShopifyPlatformData):
            data_model.shop_domain = context.shop

        return await self.repository.create(
            platform_type=platform,
            owner_id=context.owner_id,
            organization_id=context.organization_id,
            access_token=self.cipher.encrypt(token.access_token),
            refresh_token=self.cipher.encrypt(token.refresh_token) if token.refresh_token else None,
            token_expires_at=expires_at,
            scopes=scopes,
            platform_data=data_model.model_dump(mode="json", exclude_none=True),
        )

    async def connect(
        self, code: str, state: str, expected_platform: Optional[PlatformType] = None
    ) -> PlatformConnection:
        """Complete the authorization and store the resulting connection."""
        token, context = await self.complete_authorization(code, state, expected_platform)
        return await self.store_connection(token, context)

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    async def get_access_token(self, connection_id: str) -> str:
        """
        Return a usable plaintext access token for an ACTIVE connection.

        Tokens within the refresh window are refreshed first. Concurrent
        callers for one connection share a single refresh.
        """
        connection = await self.repository.get_or_raise(connection_id)
        if connection.status != ConnectionStatus.ACTIVE:
            raise ConnectionInactiveError(
                f"Connection {connection_id} is {connection.status.value}, reauthorization required"
            )

        if not self._needs_refresh(connection):
            return self.cipher.decrypt(connection.access_token)

        return await self.single_flight.do(connection_id, lambda: self._fresh_access_token(connection_id))

    async def refresh_shared(self, connection_id: str) -> str:
        """Force a refresh, joining one already in flight for this connection."""
        return await self.single_flight.do(connection_id, lambda: self._refreshed_access_token(connection_id))

    async def _refreshed_access_token(self, connection_id: str) -> str:
        token = await self.refresh_access_token(connection_id)
        return token.access_token

    async def _fresh_access_token(self, connection_id: str) -> str:
        # Another flight may have refreshed between our read and now
        connection = await self.repository.get_or_raise(connection_id)
        if connection.status == ConnectionStatus.ACTIVE and not self._needs_refresh(connection):
            return self.cipher.decrypt(connection.access_token)
        token = await self.refresh_access_token(connection_id)
        return token.access_token

    def _needs_refresh(self, connection: PlatformConnection) -> bool:
        if not connection.access_token:
            return True
        if connection.token_expires_at is None:
            return False
        remaining = (connection.token_expires_at - utcnow()).total_seconds()
        return remaining <= TOKEN_REFRESH_WINDOW_SECONDS

    async def refresh_access_token(self, connection_id: str) -> TokenResponse:
        """
        Refresh the connection's tokens.

        Retryable failures (network, timeout, 5xx, rate limits) are retried
        with exponential backoff up to `max_refresh_attempts` attempts in
        total. Terminal or exhausted failures mark the connection EXPIRED.
        """
        connection = await self.repository.get_or_raise(connection_id)
        if connection.status == ConnectionStatus.REVOKED:
            raise ConnectionInactiveError(f"Connection {connection_id} has been revoked")

        if not connection.refresh_token:
            await self._expire(connection_id, "No refresh token available")

        try:
            refresh_token = self.cipher.decrypt(connection.refresh_token)
        except TokenCipherError as e:
            await self._expire(connection_id, f"Stored refresh token unreadable: {e}", e)

        config = self.platforms.get(PlatformType(connection.platform_type))
        platform_data = read_platform_data(connection)
        shop = getattr(platform_data, "shop_domain", None)

        last_error: Optional[TokenEndpointError] = None
        for attempt in range(1, self.max_refresh_attempts + 1):
            try:
                token = await self.token_client.refresh(config, refresh_token, shop=shop)
            except TokenEndpointError as e:
                last_error = e
                if not e.retryable or attempt == self.max_refresh_attempts:
                    break
                delay = self.retry_base_delay * (2 ** (attempt - 1))
                logger.warning(
                    f"Token refresh attempt {attempt}/{self.max_refresh_attempts} failed for "
                    f"{connection_id}: {e}. Retrying in {delay}s"
                )
                await asyncio.sleep(delay)
                continue

            await self.repository.update_tokens(
                connection_id,
                access_token=self.cipher.encrypt(token.access_token),
                refresh_token=self.cipher.encrypt(token.refresh_token) if token.refresh_token else None,
                token_expires_at=utcnow() + timedelta(seconds=token.expires_in) if token.expires_in else None,
                scopes=token.scope.split() if token.scope else None,
            )
            logger.info(f"Token refreshed for connection {connection_id} (attempt {attempt})")
            return token

        await self._expire(connection_id, str(last_error), last_error)

    async def _expire(self, connection_id: str, message: str, cause: Optional[Exception] = None):
        await self.repository.mark_expired(connection_id, message)
        error = TokenRefreshError(connection_id, message)
        capture_exception(error, context={"connection_id": connection_id})
        if cause is not None:
            raise error from cause
        raise error

    async def revoke(self, connection_id: str) -> None:
        """Revoke the connection: tokens are nulled and it can never be used again."""
        await self.repository.mark_revoked(connection_id)
