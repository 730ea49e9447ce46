"""API routes for platform connections (OAuth2 flow and token management)."""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Query
from pydantic import BaseModel

from connector_api.core.exceptions import ConnectionNotFoundError
from connector_api.core.logger import setup_logger
from connector_api.db.models import PlatformConnection, PlatformType
from connector_api.services.connection_manager import ConnectionManager
from connector_api.services.token_refresh_scheduler import TokenRefreshScheduler

logger = setup_logger(__name__)
router = APIRouter()

# Global instances (initialized in app.py on startup)
connection_manager: ConnectionManager = None
token_refresh_scheduler: TokenRefreshScheduler = None


def set_connection_manager(manager: ConnectionManager):
    """Set the global connection manager instance.

    Called by app.py during startup event.
    """
    global connection_manager
    connection_manager = manager


def set_token_refresh_scheduler(scheduler: TokenRefreshScheduler):
    """Set the global token refresh scheduler instance."""
    global token_refresh_scheduler
    token_refresh_scheduler = scheduler


class ConnectionSummary(BaseModel):
    """Connection as exposed over HTTP (never includes tokens)."""

    id: str
    platform_type: PlatformType
    status: str
    organization_id: str
    owner_id: str
    scopes: List[str]
    token_expires_at: Optional[datetime] = None
    last_error_at: Optional[datetime] = None
    last_error_message: Optional[str] = None
    sync_count: int
    last_sync_at: Optional[datetime] = None

    @classmethod
    def from_connection(cls, connection: PlatformConnection) -> "ConnectionSummary":
        return cls(
            id=connection.id,
            platform_type=connection.platform_type,
            status=connection.status.value,
            organization_id=connection.organization_id,
            owner_id=connection.owner_id,
            scopes=connection.scopes or [],
            token_expires_at=connection.token_expires_at,
            last_error_at=connection.last_error_at,
            last_error_message=connection.last_error_message,
            sync_count=connection.sync_count,
            last_sync_at=connection.last_sync_at,
        )


@router.get("/health")
async def health_check() -> dict:
    """Health check endpoint for monitoring."""
    if not connection_manager:
        return {"status": "unhealthy", "service": "connector-api", "error": "Not initialized"}

    return {
        "status": "healthy",
        "service": "connector-api",
        "platforms": [p.value for p in connection_manager.platforms.platforms],
        "token_refresh_scheduler": bool(token_refresh_scheduler and token_refresh_scheduler.is_running),
    }


@router.get("/oauth/{platform}/authorize")
async def authorize(
    platform: PlatformType,
    owner_id: str = Query(...),
    organization_id: str = Query(...),
    shop: Optional[str] = Query(None),
) -> dict:
    """Start an OAuth2 authorization; the client redirects the user to `authorization_url`."""
    request = await connection_manager.begin_authorization(platform, owner_id, organization_id, shop=shop)
    return {"authorization_url": request.authorization_url, "state": request.state}


@router.get("/oauth/{platform}/callback")
async def oauth_callback(
    platform: PlatformType,
    code: str = Query(...),
    state: str = Query(...),
) -> ConnectionSummary:
    """OAuth2 redirect target: exchange the code and store the connection."""
    connection = await connection_manager.connect(code, state, expected_platform=platform)
    logger.info(f"Connected {platform.value} account as connection {connection.id}")
    return ConnectionSummary.from_connection(connection)


@router.get("/connections")
async def list_connections(organization_id: str = Query(...)) -> List[ConnectionSummary]:
    connections = await connection_manager.repository.list_for_organization(organization_id)
    return [ConnectionSummary.from_connection(c) for c in connections]


@router.get("/connections/health")
async def connections_health(organization_id: Optional[str] = Query(None)) -> dict:
    """Token health summary (total/active/expiring soon/expired/needing refresh)."""
    return await token_refresh_scheduler.get_token_health(organization_id)


@router.get("/connections/{connection_id}")
async def get_connection(connection_id: str) -> ConnectionSummary:
    connection = await connection_manager.repository.get(connection_id)
    if connection is None:
        raise ConnectionNotFoundError(f"Connection {connection_id} not found")
    return ConnectionSummary.from_connection(connection)


@router.post("/connections/{connection_id}/refresh")
async def refresh_connection(connection_id: str) -> ConnectionSummary:
    """Manually refresh a connection's tokens (also reactivates EXPIRED ones)."""
    await connection_manager.refresh_shared(connection_id)
    connection = await connection_manager.repository.get_or_raise(connection_id)
    return ConnectionSummary.from_connection(connection)


@router.post("/connections/{connection_id}/revoke")
async def revoke_connection(connection_id: str) -> ConnectionSummary:
    await connection_manager.revoke(connection_id)
    connection = await connection_manager.repository.get_or_raise(connection_id)
    return ConnectionSummary.from_connection(connection)
