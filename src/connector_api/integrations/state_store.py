"""Redis-backed storage for OAuth2 authorization state and PKCE verifiers."""

import json
from typing import Any, Dict, Optional

import redis.asyncio as aioredis

from connector_api.config.constants import (
    OAUTH_PKCE_KEY_PREFIX,
    OAUTH_STATE_KEY_PREFIX,
    OAUTH_STATE_TTL_SECONDS,
)
from connector_api.config.settings import settings
from connector_api.core.logger import setup_logger

logger = setup_logger(__name__)


class AuthorizationStateStore:
    """Short-lived authorization context keyed by the OAuth2 `state` value.

    Two keys per authorization:
    - oauth2:state:{state} -> JSON context (owner, organization, platform, issued_at)
    - oauth2:pkce:{state}  -> PKCE code verifier
    """

    def __init__(
        self,
        redis_client: Optional[aioredis.Redis] = None,
        ttl_seconds: int = OAUTH_STATE_TTL_SECONDS,
    ):
        self._redis = redis_client
        self.ttl_seconds = ttl_seconds

    async def _get_redis(self) -> aioredis.Redis:
        """Get or create Redis connection."""
        if self._redis is None:
            self._redis = aioredis.Redis(
                host=settings.redis_host,
                port=settings.redis_port,
                db=settings.redis_db,
                decode_responses=True,
            )
        return self._redis

    async def close(self):
        """Close Redis connection."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def save(self, state: str, context: Dict[str, Any], code_verifier: Optional[str] = None) -> None:
        redis = await self._get_redis()
        await redis.set(OAUTH_STATE_KEY_PREFIX + state, json.dumps(context), ex=self.ttl_seconds)
        if code_verifier:
            await redis.set(OAUTH_PKCE_KEY_PREFIX + state, code_verifier, ex=self.ttl_seconds)

    async def load_context(self, state: str) -> Optional[Dict[str, Any]]:
        redis = await self._get_redis()
        raw = await redis.get(OAUTH_STATE_KEY_PREFIX + state)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Discarding unreadable authorization state")
            return None

    async def load_verifier(self, state: str) -> Optional[str]:
        redis = await self._get_redis()
        return await redis.get(OAUTH_PKCE_KEY_PREFIX + state)

    async def discard(self, state: str) -> None:
        """Delete both the state and the verifier."""
        redis = await self._get_redis()
        await redis.delete(OAUTH_STATE_KEY_PREFIX + state, OAUTH_PKCE_KEY_PREFIX + state)
