"""Wiring of the shared connection services (used by both API and worker apps)."""

from dataclasses import dataclass
from typing import Optional

import redis.asyncio as aioredis

from connector_api.config.settings import Settings
from connector_api.core.logger import setup_logger
from connector_api.core.token_cipher import TokenCipher
from connector_api.db.base import get_engine, get_session_factory, init_db
from connector_api.integrations.oauth_platforms import OAuthPlatformRegistry
from connector_api.integrations.state_store import AuthorizationStateStore
from connector_api.integrations.token_client import TokenEndpointClient
from connector_api.repositories.connection_repository import ConnectionRepository
from connector_api.services.connection_manager import ConnectionManager

logger = setup_logger(__name__)


@dataclass
class ConnectionServices:
    engine: object
    session_factory: object
    redis: aioredis.Redis
    repository: ConnectionRepository
    connection_manager: ConnectionManager

    async def close(self):
        """Release HTTP, Redis and database resources."""
        await self.connection_manager.token_client.close()
        await self.redis.aclose()
        await self.engine.dispose()


async def build_connection_services(
    settings: Settings,
    redis_client: Optional[aioredis.Redis] = None,
) -> ConnectionServices:
    """Create engine, tables, Redis client and the ConnectionManager."""
    logger.info("Initializing database...")
    engine = get_engine(settings.database_url)
    await init_db(engine)
    session_factory = get_session_factory(engine)
    logger.info("✓ Database initialized")

    redis_client = redis_client or aioredis.Redis(
        host=settings.redis_host,
        port=settings.redis_port,
        db=settings.redis_db,
        decode_responses=True,
    )

    repository = ConnectionRepository(session_factory)
    connection_manager = ConnectionManager(
        repository=repository,
        cipher=TokenCipher(settings.token_encryption_key),
        platforms=OAuthPlatformRegistry.from_settings(settings),
        state_store=AuthorizationStateStore(redis_client),
        token_client=TokenEndpointClient(),
    )
    logger.info(f"✓ Connection manager initialized ({len(connection_manager.platforms.platforms)} platform(s))")

    return ConnectionServices(
        engine=engine,
        session_factory=session_factory,
        redis=redis_client,
        repository=repository,
        connection_manager=connection_manager,
    )
