"""Tests for the OAuth2 connection lifecycle (authorize, exchange, refresh, revoke)."""

import asyncio
import json
from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from conftest import FakeClock
from connector_api.config.constants import OAUTH_PKCE_KEY_PREFIX, OAUTH_STATE_KEY_PREFIX
from connector_api.core.exceptions import (
    ConnectionInactiveError,
    OAuthConfigurationError,
    OAuthUnauthorizedError,
    TokenRefreshError,
)
from connector_api.db.base import utcnow
from connector_api.db.models import ConnectionStatus, PlatformConnection, PlatformType
from connector_api.integrations.oauth_platforms import OAuthPlatformConfig, OAuthPlatformRegistry
from connector_api.integrations.state_store import AuthorizationStateStore
from connector_api.integrations.token_client import TokenEndpointClient
from connector_api.services.connection_manager import ConnectionManager

TOKEN_URL = "https://oauth.example.com/token"


def google_registry() -> OAuthPlatformRegistry:
    return OAuthPlatformRegistry({
        PlatformType.GOOGLE_SHEETS: OAuthPlatformConfig(
            platform=PlatformType.GOOGLE_SHEETS,
            client_id="client-id",
            client_secret="client-secret",
            redirect_uri="https://app.example.com/oauth/callback",
            authorization_url="https://accounts.example.com/auth",
            token_url=TOKEN_URL,
            scopes=["spreadsheets", "drive.readonly"],
        )
    })


class TokenEndpoint:
    """Scripted token endpoint: pops one response per request."""

    def __init__(self, *responses, delay: float = 0.0):
        self.responses = list(responses)
        self.requests = []
        self.delay = delay

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(parse_qs(request.content.decode()))
        if self.delay:
            await asyncio.sleep(self.delay)
        status, body = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        return httpx.Response(status, json=body)

    @property
    def calls(self) -> int:
        return len(self.requests)


def tokens(access="access-new", refresh="refresh-new", expires_in=3600):
    body = {"access_token": access, "expires_in": expires_in, "token_type": "Bearer"}
    if refresh:
        body["refresh_token"] = refresh
    return 200, body


def build_manager(repository, cipher, fake_redis, endpoint, clock=None):
    client = httpx.AsyncClient(transport=httpx.MockTransport(endpoint))
    return ConnectionManager(
        repository=repository,
        cipher=cipher,
        platforms=google_registry(),
        state_store=AuthorizationStateStore(fake_redis),
        token_client=TokenEndpointClient(client),
        retry_base_delay=0,
        clock=clock or FakeClock(),
    )


class TestAuthorization:

    @pytest.mark.asyncio
    async def test_authorization_url_carries_state_and_pkce(self, connection_repository, cipher, fake_redis):
        manager = build_manager(connection_repository, cipher, fake_redis, TokenEndpoint(tokens()))

        request = await manager.begin_authorization(PlatformType.GOOGLE_SHEETS, "user-1", "org-1")

        query = parse_qs(urlparse(request.authorization_url).query)
        assert query["response_type"] == ["code"]
        assert query["client_id"] == ["client-id"]
        assert query["scope"] == ["spreadsheets drive.readonly"]
        assert query["state"] == [request.state]
        assert query["access_type"] == ["offline"]
        assert query["prompt"] == ["consent"]
        assert query["code_challenge_method"] == ["S256"]
        assert OAUTH_STATE_KEY_PREFIX + request.state in fake_redis.store
        assert OAUTH_PKCE_KEY_PREFIX + request.state in fake_redis.store
        assert fake_redis.ttl[OAUTH_STATE_KEY_PREFIX + request.state] == 600

    @pytest.mark.asyncio
    async def test_unconfigured_platform_is_rejected(self, connection_repository, cipher, fake_redis):
        manager = build_manager(connection_repository, cipher, fake_redis, TokenEndpoint(tokens()))

        with pytest.raises(OAuthConfigurationError):
            await manager.begin_authorization(PlatformType.SHOPIFY, "user-1", "org-1", shop="demo")

    @pytest.mark.asyncio
    async def test_connect_stores_encrypted_tokens(self, connection_repository, cipher, fake_redis):
        endpoint = TokenEndpoint(tokens(access="access-1", refresh="refresh-1"))
        manager = build_manager(connection_repository, cipher, fake_redis, endpoint)
        request = await manager.begin_authorization(PlatformType.GOOGLE_SHEETS, "user-1", "org-1")
        verifier = fake_redis.store[OAUTH_PKCE_KEY_PREFIX + request.state]

        connection = await manager.connect("auth-code", request.state)

        assert connection.status == ConnectionStatus.ACTIVE
        assert connection.organization_id == "org-1"
        assert connection.access_token != "access-1"
        assert cipher.decrypt(connection.access_token) == "access-1"
        assert cipher.decrypt(connection.refresh_token) == "refresh-1"
        assert connection.token_expires_at > utcnow()

        form = endpoint.requests[0]
        assert form["grant_type"] == ["authorization_code"]
        assert form["code"] == ["auth-code"]
        assert form["code_verifier"] == [verifier]
        assert fake_redis.store == {}

    @pytest.mark.asyncio
    async def test_expired_state_fails_and_removes_both_keys(self, connection_repository, cipher, fake_redis):
        clock = FakeClock(1_700_000_000.0)
        endpoint = TokenEndpoint(tokens())
        manager = build_manager(connection_repository, cipher, fake_redis, endpoint, clock=clock)
        request = await manager.begin_authorization(PlatformType.GOOGLE_SHEETS, "user-1", "org-1")

        clock.advance(601)
        with pytest.raises(OAuthUnauthorizedError, match="expired"):
            await manager.complete_authorization("auth-code", request.state)

        assert OAUTH_STATE_KEY_PREFIX + request.state not in fake_redis.store
        assert OAUTH_PKCE_KEY_PREFIX + request.state not in fake_redis.store
        assert endpoint.calls == 0

    @pytest.mark.asyncio
    async def test_unknown_state_is_unauthorized(self, connection_repository, cipher, fake_redis):
        manager = build_manager(connection_repository, cipher, fake_redis, TokenEndpoint(tokens()))

        with pytest.raises(OAuthUnauthorizedError):
            await manager.complete_authorization("auth-code", "never-issued")

    @pytest.mark.asyncio
    async def test_rejected_code_is_unauthorized_and_state_is_gone(self, connection_repository, cipher, fake_redis):
        endpoint = TokenEndpoint((400, {"error": "invalid_grant"}))
        manager = build_manager(connection_repository, cipher, fake_redis, endpoint)
        request = await manager.begin_authorization(PlatformType.GOOGLE_SHEETS, "user-1", "org-1")

        with pytest.raises(OAuthUnauthorizedError):
            await manager.complete_authorization("bad-code", request.state)

        assert fake_redis.store == {}

    @pytest.mark.asyncio
    async def test_state_redeemed_on_another_platform_is_rejected(self, connection_repository, cipher, fake_redis):
        endpoint = TokenEndpoint(tokens())
        manager = build_manager(connection_repository, cipher, fake_redis, endpoint)
        request = await manager.begin_authorization(PlatformType.GOOGLE_SHEETS, "user-1", "org-1")

        with pytest.raises(OAuthUnauthorizedError, match="issued for GOOGLE_SHEETS"):
            await manager.connect("auth-code", request.state, expected_platform=PlatformType.SHOPIFY)

        assert endpoint.calls == 0
        assert fake_redis.store == {}
        assert await connection_repository.list_for_organization("org-1") == []

    @pytest.mark.asyncio
    async def test_state_redeemed_on_its_own_platform(self, connection_repository, cipher, fake_redis):
        manager = build_manager(connection_repository, cipher, fake_redis, TokenEndpoint(tokens()))
        request = await manager.begin_authorization(PlatformType.GOOGLE_SHEETS, "user-1", "org-1")

        connection = await manager.connect("auth-code", request.state, expected_platform=PlatformType.GOOGLE_SHEETS)

        assert connection.platform_type == PlatformType.GOOGLE_SHEETS


class TestRefresh:

    @pytest.mark.asyncio
    async def test_retry_after_503_succeeds_on_second_attempt(
        self, connection_repository, cipher, fake_redis, make_connection
    ):
        connection = await make_connection(expires_in=timedelta(minutes=-5))
        endpoint = TokenEndpoint((503, {"error": "temporarily_unavailable"}), tokens(access="access-2"))
        manager = build_manager(connection_repository, cipher, fake_redis, endpoint)

        token = await manager.refresh_access_token(connection.id)

        assert token.access_token == "access-2"
        assert endpoint.calls == 2
        stored = await connection_repository.get(connection.id)
        assert stored.status == ConnectionStatus.ACTIVE
        assert cipher.decrypt(stored.access_token) == "access-2"
        assert stored.platform_data.get("last_token_refresh")

    @pytest.mark.asyncio
    async def test_invalid_grant_expires_connection(self, connection_repository, cipher, fake_redis, make_connection):
        connection = await make_connection(expires_in=timedelta(minutes=-5))
        endpoint = TokenEndpoint((400, {"error": "invalid_grant", "error_description": "Token has been revoked"}))
        manager = build_manager(connection_repository, cipher, fake_redis, endpoint)

        with pytest.raises(TokenRefreshError):
            await manager.refresh_access_token(connection.id)

        assert endpoint.calls <= 3
        stored = await connection_repository.get(connection.id)
        assert stored.status == ConnectionStatus.EXPIRED
        assert "invalid_grant" in stored.last_error_message
        assert stored.last_error_at is not None

    @pytest.mark.asyncio
    async def test_persistent_5xx_stops_after_three_attempts(
        self, connection_repository, cipher, fake_redis, make_connection
    ):
        connection = await make_connection(expires_in=timedelta(minutes=-5))
        endpoint = TokenEndpoint((503, {"error": "server_error"}))
        manager = build_manager(connection_repository, cipher, fake_redis, endpoint)

        with pytest.raises(TokenRefreshError):
            await manager.refresh_access_token(connection.id)

        assert endpoint.calls == 3
        assert (await connection_repository.get(connection.id)).status == ConnectionStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_refresh_without_new_refresh_token_keeps_old_one(
        self, connection_repository, cipher, fake_redis, make_connection
    ):
        connection = await make_connection(refresh_token="refresh-keep", expires_in=timedelta(minutes=-5))
        endpoint = TokenEndpoint(tokens(access="access-2", refresh=None))
        manager = build_manager(connection_repository, cipher, fake_redis, endpoint)

        await manager.refresh_access_token(connection.id)

        stored = await connection_repository.get(connection.id)
        assert cipher.decrypt(stored.refresh_token) == "refresh-keep"
        assert endpoint.requests[0]["refresh_token"] == ["refresh-keep"]

    @pytest.mark.asyncio
    async def test_missing_refresh_token_expires_connection(
        self, connection_repository, cipher, fake_redis, make_connection
    ):
        connection = await make_connection(refresh_token=None, expires_in=timedelta(minutes=-5))
        endpoint = TokenEndpoint(tokens())
        manager = build_manager(connection_repository, cipher, fake_redis, endpoint)

        with pytest.raises(TokenRefreshError):
            await manager.refresh_access_token(connection.id)

        assert endpoint.calls == 0
        assert (await connection_repository.get(connection.id)).status == ConnectionStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_refresh_reactivates_expired_connection(
        self, connection_repository, cipher, fake_redis, make_connection
    ):
        connection = await make_connection(expires_in=timedelta(minutes=-5))
        await connection_repository.mark_expired(connection.id, "earlier failure")
        manager = build_manager(connection_repository, cipher, fake_redis, TokenEndpoint(tokens()))

        await manager.refresh_access_token(connection.id)

        stored = await connection_repository.get(connection.id)
        assert stored.status == ConnectionStatus.ACTIVE
        assert stored.last_error_message is None


class TestAccessToken:

    @pytest.mark.asyncio
    async def test_fresh_token_is_returned_without_refresh(
        self, connection_repository, cipher, fake_redis, make_connection
    ):
        connection = await make_connection(access_token="access-valid", expires_in=timedelta(hours=1))
        endpoint = TokenEndpoint(tokens())
        manager = build_manager(connection_repository, cipher, fake_redis, endpoint)

        assert await manager.get_access_token(connection.id) == "access-valid"
        assert endpoint.calls == 0

    @pytest.mark.asyncio
    async def test_token_inside_refresh_window_is_refreshed(
        self, connection_repository, cipher, fake_redis, make_connection
    ):
        connection = await make_connection(expires_in=timedelta(minutes=5))
        endpoint = TokenEndpoint(tokens(access="access-2"))
        manager = build_manager(connection_repository, cipher, fake_redis, endpoint)

        assert await manager.get_access_token(connection.id) == "access-2"
        assert endpoint.calls == 1

    @pytest.mark.asyncio
    async def test_expired_connection_is_inactive(self, connection_repository, cipher, fake_redis, make_connection):
        connection = await make_connection()
        await connection_repository.mark_expired(connection.id, "gone")
        manager = build_manager(connection_repository, cipher, fake_redis, TokenEndpoint(tokens()))

        with pytest.raises(ConnectionInactiveError):
            await manager.get_access_token(connection.id)

    @pytest.mark.asyncio
    async def test_concurrent_callers_trigger_one_refresh(self, cipher, fake_redis):
        connection = PlatformConnection(
            id="conn-1",
            platform_type=PlatformType.GOOGLE_SHEETS,
            status=ConnectionStatus.ACTIVE,
            access_token=cipher.encrypt("access-old"),
            refresh_token=cipher.encrypt("refresh-old"),
            token_expires_at=utcnow() + timedelta(minutes=2),
            platform_data={},
            owner_id="user-1",
            organization_id="org-1",
        )

        async def update_tokens(connection_id, access_token, refresh_token, token_expires_at, scopes=None):
            connection.access_token = access_token
            connection.token_expires_at = token_expires_at
            return connection

        repository = SimpleNamespace(
            get_or_raise=AsyncMock(return_value=connection),
            update_tokens=AsyncMock(side_effect=update_tokens),
            mark_expired=AsyncMock(),
        )
        endpoint = TokenEndpoint(tokens(access="access-2"), delay=0.05)
        manager = build_manager(repository, cipher, fake_redis, endpoint)

        results = await asyncio.gather(*(manager.get_access_token("conn-1") for _ in range(5)))

        assert results == ["access-2"] * 5
        assert endpoint.calls == 1
        assert not manager.single_flight.in_flight("conn-1")


class TestRevoke:

    @pytest.mark.asyncio
    async def test_revoke_nulls_tokens_and_blocks_use(self, connection_repository, cipher, fake_redis, make_connection):
        connection = await make_connection()
        endpoint = TokenEndpoint(tokens())
        manager = build_manager(connection_repository, cipher, fake_redis, endpoint)

        await manager.revoke(connection.id)

        stored = await connection_repository.get(connection.id)
        assert stored.status == ConnectionStatus.REVOKED
        assert stored.access_token is None
        assert stored.refresh_token is None
        assert stored.last_error_message == "Connection revoked by user"

        with pytest.raises(ConnectionInactiveError):
            await manager.get_access_token(connection.id)
        with pytest.raises(ConnectionInactiveError):
            await manager.refresh_access_token(connection.id)
        assert endpoint.calls == 0

    @pytest.mark.asyncio
    async def test_revoked_connection_is_not_marked_expired(self, connection_repository, make_connection):
        connection = await make_connection()
        await connection_repository.mark_revoked(connection.id)

        await connection_repository.mark_expired(connection.id, "late failure")

        assert (await connection_repository.get(connection.id)).status == ConnectionStatus.REVOKED


class TestTokenHealth:

    @pytest.mark.asyncio
    async def test_counts_by_state(self, connection_repository, make_connection):
        await make_connection(expires_in=timedelta(hours=5))
        await make_connection(expires_in=timedelta(minutes=30))
        await make_connection(expires_in=timedelta(minutes=10))
        expired = await make_connection()
        await connection_repository.mark_expired(expired.id, "gone")

        health = await connection_repository.token_health(
            "org-1",
            expiring_soon=timedelta(hours=1),
            refresh_window=timedelta(minutes=15),
        )

        assert health == {"total": 4, "active": 3, "expiring_soon": 2, "expired": 1, "needing_refresh": 1}


class TestPlatformData:

    @pytest.mark.asyncio
    async def test_update_merges_with_existing_fields(self, connection_repository, cipher, make_connection):
        connection = await make_connection()
        await connection_repository.update_tokens(
            connection.id, cipher.encrypt("access-new"), None, utcnow() + timedelta(hours=1)
        )

        updated = await connection_repository.update_platform_data(
            connection.id, connected_spreadsheets=["sheet-1"]
        )

        assert updated.platform_data["connected_spreadsheets"] == ["sheet-1"]
        assert "last_token_refresh" in updated.platform_data

    @pytest.mark.asyncio
    async def test_update_unknown_connection(self, connection_repository):
        from connector_api.core.exceptions import ConnectionNotFoundError

        with pytest.raises(ConnectionNotFoundError):
            await connection_repository.update_platform_data("missing", connected_spreadsheets=[])


def test_token_response_repr_hides_tokens():
    from connector_api.integrations.token_client import TokenResponse

    token = TokenResponse(access_token="secret-access", refresh_token="secret-refresh", expires_in=3600)

    assert "secret" not in repr(token)
    assert "secret" not in str(token)
    assert json.loads(token.model_dump_json())["access_token"] == "secret-access"
