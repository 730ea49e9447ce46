"""Persistence for spreadsheet links and push-notification subscriptions."""

from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import select

from connector_api.core.logger import setup_logger
from connector_api.db.base import utcnow
from connector_api.db.models import (
    ConnectionStatus,
    PlatformConnection,
    SpreadsheetConnection,
    WebhookSubscription,
)

logger = setup_logger(__name__)


class SpreadsheetRepository:
    """Data access layer for SpreadsheetConnection and WebhookSubscription."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def link_spreadsheet(
        self,
        connection_id: str,
        spreadsheet_id: str,
        spreadsheet_name: Optional[str] = None,
        order_sync_config: Optional[dict] = None,
    ) -> SpreadsheetConnection:
        """Create or update the link between a connection and a spreadsheet."""
        async with self.session_factory() as session:
            link = await session.scalar(
                select(SpreadsheetConnection).where(
                    SpreadsheetConnection.connection_id == connection_id,
                    SpreadsheetConnection.spreadsheet_id == spreadsheet_id,
                )
            )
            if link is None:
                link = SpreadsheetConnection(connection_id=connection_id, spreadsheet_id=spreadsheet_id)
                session.add(link)
            if spreadsheet_name is not None:
                link.spreadsheet_name = spreadsheet_name
            if order_sync_config is not None:
                link.is_order_sync = True
                link.order_sync_config = order_sync_config
            await session.commit()
            await session.refresh(link)
            return link

    async def get_order_sync_link(self, connection_id: str, spreadsheet_id: str) -> Optional[SpreadsheetConnection]:
        """The link for this pair, only if it is enabled for order sync."""
        async with self.session_factory() as session:
            return await session.scalar(
                select(SpreadsheetConnection).where(
                    SpreadsheetConnection.connection_id == connection_id,
                    SpreadsheetConnection.spreadsheet_id == spreadsheet_id,
                    SpreadsheetConnection.is_order_sync.is_(True),
                )
            )

    async def list_order_sync_links(self) -> List[SpreadsheetConnection]:
        """Order-sync links whose connection is ACTIVE (polling candidates)."""
        query = (
            select(SpreadsheetConnection)
            .join(PlatformConnection, SpreadsheetConnection.connection_id == PlatformConnection.id)
            .where(
                SpreadsheetConnection.is_order_sync.is_(True),
                PlatformConnection.status == ConnectionStatus.ACTIVE,
            )
        )
        async with self.session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def update_sync_stats(
        self,
        link_id: str,
        last_row: Optional[int],
        orders_created: int,
        processed_rows: Iterable[int] = (),
        failed_rows: Iterable[int] = (),
    ) -> None:
        """Record a finished run.

        Rows processed in this run leave the retry list; rows that errored
        in this run join it.
        """
        async with self.session_factory() as session:
            link = await session.get(SpreadsheetConnection, link_id)
            if link is None:
                return
            link.last_sync_at = utcnow()
            if last_row is not None:
                link.last_sync_row = max(link.last_sync_row or 0, last_row)
            link.total_orders = (link.total_orders or 0) + orders_created
            pending = (set(link.failed_rows or []) - set(processed_rows)) | set(failed_rows)
            link.failed_rows = sorted(pending)
            await session.commit()

    async def add_subscription(
        self,
        connection_id: str,
        spreadsheet_id: str,
        subscription_id: str,
        resource_id: str,
        expiration=None,
    ) -> WebhookSubscription:
        subscription = WebhookSubscription(
            connection_id=connection_id,
            spreadsheet_id=spreadsheet_id,
            subscription_id=subscription_id,
            resource_id=resource_id,
            expiration=expiration,
            is_active=True,
        )
        async with self.session_factory() as session:
            session.add(subscription)
            await session.commit()
            await session.refresh(subscription)
        return subscription

    async def find_subscription(
        self, resource_id: str, subscription_id: Optional[str] = None
    ) -> Optional[WebhookSubscription]:
        """Active subscription for a notification's resource id (and channel id, when given)."""
        query = select(WebhookSubscription).where(
            WebhookSubscription.resource_id == resource_id,
            WebhookSubscription.is_active.is_(True),
        )
        if subscription_id:
            query = query.where(WebhookSubscription.subscription_id == subscription_id)
        async with self.session_factory() as session:
            return await session.scalar(query.limit(1))

    async def deactivate_subscription(self, subscription_id: str) -> None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(WebhookSubscription).where(WebhookSubscription.subscription_id == subscription_id)
            )
            for subscription in result.scalars().all():
                subscription.is_active = False
            await session.commit()
        logger.info(f"Deactivated webhook subscription {subscription_id}")

    async def list_active_subscriptions(self, connection_id: str, spreadsheet_id: str) -> List[WebhookSubscription]:
        query = (
            select(WebhookSubscription)
            .where(
                WebhookSubscription.connection_id == connection_id,
                WebhookSubscription.spreadsheet_id == spreadsheet_id,
                WebhookSubscription.is_active.is_(True),
            )
            .order_by(WebhookSubscription.created_at.desc())
        )
        async with self.session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def list_subscriptions_expiring(
        self, before: datetime, after: Optional[datetime] = None
    ) -> List[WebhookSubscription]:
        """Active subscriptions whose channel expires before `before` (and not before `after`)."""
        query = select(WebhookSubscription).where(
            WebhookSubscription.is_active.is_(True),
            WebhookSubscription.expiration.is_not(None),
            WebhookSubscription.expiration < before,
        )
        if after is not None:
            query = query.where(WebhookSubscription.expiration >= after)
        async with self.session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())
