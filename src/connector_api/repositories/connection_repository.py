"""Connection Store: persistence for PlatformConnection records."""

from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy import select

from connector_api.config.constants import REVOKED_CONNECTION_MESSAGE
from connector_api.core.exceptions import ConnectionInactiveError, ConnectionNotFoundError
from connector_api.core.logger import setup_logger
from connector_api.db.base import utcnow
from connector_api.db.models import ConnectionStatus, PlatformConnection, PlatformType
from connector_api.db.platform_data import read_platform_data, write_platform_data

logger = setup_logger(__name__)


class ConnectionRepository:
    """Data access layer for PlatformConnection.

    Token columns always hold ciphertext; callers encrypt before writing.
    Every method runs in its own session and commits before returning.
    """

    def __init__(self, session_factory):
        """Initialize repository with an async session factory."""
        self.session_factory = session_factory

    async def create(
        self,
        platform_type: PlatformType,
        owner_id: str,
        organization_id: str,
        access_token: str,
        refresh_token: Optional[str],
        token_expires_at: Optional[datetime],
        scopes: List[str],
        platform_data: Optional[dict] = None,
        platform_account_name: Optional[str] = None,
    ) -> PlatformConnection:
        """Insert a new ACTIVE connection."""
        connection = PlatformConnection(
            platform_type=platform_type,
            owner_id=owner_id,
            organization_id=organization_id,
            status=ConnectionStatus.ACTIVE,
            access_token=access_token,
            refresh_token=refresh_token,
            token_expires_at=token_expires_at,
            scopes=list(scopes),
            platform_data=platform_data or {},
            platform_account_name=platform_account_name,
            sync_count=0,
        )
        async with self.session_factory() as session:
            session.add(connection)
            await session.commit()
            await session.refresh(connection)
        logger.info(f"Created {platform_type.value} connection {connection.id} for organization {organization_id}")
        return connection

    async def get(self, connection_id: str) -> Optional[PlatformConnection]:
        async with self.session_factory() as session:
            return await session.get(PlatformConnection, connection_id)

    async def get_or_raise(self, connection_id: str) -> PlatformConnection:
        connection = await self.get(connection_id)
        if connection is None:
            raise ConnectionNotFoundError(f"Connection {connection_id} not found")
        return connection

    async def list_for_organization(self, organization_id: str) -> List[PlatformConnection]:
        query = (
            select(PlatformConnection)
            .where(PlatformConnection.organization_id == organization_id)
            .order_by(PlatformConnection.created_at.desc())
        )
        async with self.session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def list_refresh_candidates(self, window: timedelta) -> List[PlatformConnection]:
        """ACTIVE connections with a refresh token whose access token expires within `window`."""
        cutoff = utcnow() + window
        query = select(PlatformConnection).where(
            PlatformConnection.status == ConnectionStatus.ACTIVE,
            PlatformConnection.refresh_token.is_not(None),
            PlatformConnection.token_expires_at.is_not(None),
            PlatformConnection.token_expires_at <= cutoff,
        )
        async with self.session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def update_tokens(
        self,
        connection_id: str,
        access_token: str,
        refresh_token: Optional[str],
        token_expires_at: Optional[datetime],
        scopes: Optional[List[str]] = None,
    ) -> PlatformConnection:
        """
        Store freshly issued (encrypted) tokens and reactivate the connection.

        A missing refresh token keeps the previous one. Revoked connections are
        never brought back.
        """
        async with self.session_factory() as session:
            connection = await session.get(PlatformConnection, connection_id)
            if connection is None:
                raise ConnectionNotFoundError(f"Connection {connection_id} not found")
            if connection.status == ConnectionStatus.REVOKED:
                raise ConnectionInactiveError(f"Connection {connection_id} has been revoked")

            connection.access_token = access_token
            if refresh_token:
                connection.refresh_token = refresh_token
            connection.token_expires_at = token_expires_at
            if scopes:
                connection.scopes = list(scopes)
            connection.status = ConnectionStatus.ACTIVE
            connection.last_error_at = None
            connection.last_error_message = None

            data = read_platform_data(connection)
            data.last_token_refresh = utcnow()
            write_platform_data(connection, data)

            await session.commit()
            await session.refresh(connection)
            return connection

    async def mark_expired(self, connection_id: str, message: str) -> None:
        """Transition to EXPIRED and record the error. Revoked connections stay revoked."""
        async with self.session_factory() as session:
            connection = await session.get(PlatformConnection, connection_id)
            if connection is None:
                raise ConnectionNotFoundError(f"Connection {connection_id} not found")
            if connection.status == ConnectionStatus.REVOKED:
                logger.warning(f"Connection {connection_id} is revoked, not marking expired")
                return

            connection.status = ConnectionStatus.EXPIRED
            connection.last_error_at = utcnow()
            connection.last_error_message = message[:1000]
            await session.commit()
        logger.warning(f"Connection {connection_id} marked EXPIRED: {message}")

    async def mark_revoked(self, connection_id: str) -> None:
        """Null both tokens and set REVOKED. Terminal."""
        async with self.session_factory() as session:
            connection = await session.get(PlatformConnection, connection_id)
            if connection is None:
                raise ConnectionNotFoundError(f"Connection {connection_id} not found")

            connection.status = ConnectionStatus.REVOKED
            connection.access_token = None
            connection.refresh_token = None
            connection.token_expires_at = None
            connection.last_error_at = utcnow()
            connection.last_error_message = REVOKED_CONNECTION_MESSAGE
            await session.commit()
        logger.info(f"Connection {connection_id} revoked")

    async def record_sync(self, connection_id: str) -> None:
        async with self.session_factory() as session:
            connection = await session.get(PlatformConnection, connection_id)
            if connection is None:
                return
            connection.sync_count = (connection.sync_count or 0) + 1
            connection.last_sync_at = utcnow()
            await session.commit()

    async def update_platform_data(self, connection_id: str, **changes) -> PlatformConnection:
        """Merge changes into the connection's platform data, validated by its platform schema."""
        async with self.session_factory() as session:
            connection = await session.get(PlatformConnection, connection_id)
            if connection is None:
                raise ConnectionNotFoundError(f"Connection {connection_id} not found")

            current = read_platform_data(connection)
            updated = type(current).model_validate({**current.model_dump(), **changes})
            write_platform_data(connection, updated)
            await session.commit()
            await session.refresh(connection)
            return connection

    async def token_health(
        self,
        organization_id: Optional[str] = None,
        expiring_soon: timedelta = timedelta(hours=1),
        refresh_window: timedelta = timedelta(minutes=15),
    ) -> Dict[str, int]:
        """Summarize token state across connections."""
        query = select(PlatformConnection)
        if organization_id:
            query = query.where(PlatformConnection.organization_id == organization_id)

        async with self.session_factory() as session:
            result = await session.execute(query)
            connections = list(result.scalars().all())

        now = utcnow()
        health = {"total": len(connections), "active": 0, "expiring_soon": 0, "expired": 0, "needing_refresh": 0}
        for connection in connections:
            if connection.status == ConnectionStatus.EXPIRED:
                health["expired"] += 1
                continue
            if connection.status != ConnectionStatus.ACTIVE:
                continue

            health["active"] += 1
            expires_at = connection.token_expires_at
            if expires_at is None:
                continue
            if expires_at <= now + expiring_soon:
                health["expiring_soon"] += 1
            if connection.refresh_token and expires_at <= now + refresh_window:
                health["needing_refresh"] += 1
        return health
