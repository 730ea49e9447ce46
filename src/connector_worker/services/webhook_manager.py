"""
Spreadsheet push-notification channels.

A Drive `files.watch` channel is opened when a spreadsheet is linked with
auto sync, renewed before it expires and stopped when auto sync is turned
off. Every active channel has one WebhookSubscription row; notifications
are matched against it by resource id.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from connector_api.config.constants import WEBHOOK_CHANNEL_TTL_HOURS, WEBHOOK_RENEWAL_WINDOW_HOURS
from connector_api.core.logger import setup_logger
from connector_api.db.base import utcnow
from connector_api.db.models import WebhookSubscription
from connector_worker.integrations.sheets_client import SheetsClient
from connector_worker.repositories.spreadsheet_repository import SpreadsheetRepository

logger = setup_logger(__name__)


@dataclass
class WebhookMaintenanceResult:
    """Outcome of one renewal or cleanup pass."""
    succeeded: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


def parse_channel_expiration(value) -> Optional[datetime]:
    """Drive reports expiration as epoch milliseconds (string); stored as naive UTC."""
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc).replace(tzinfo=None)


class SheetWebhookManager:
    """Opens, renews and stops push-notification channels for linked spreadsheets."""

    def __init__(
        self,
        sheets_client: SheetsClient,
        spreadsheets: SpreadsheetRepository,
        token_provider,
        webhook_url: str,
        channel_ttl: timedelta = timedelta(hours=WEBHOOK_CHANNEL_TTL_HOURS),
    ):
        self.sheets_client = sheets_client
        self.spreadsheets = spreadsheets
        self.token_provider = token_provider
        self.webhook_url = webhook_url
        self.channel_ttl = channel_ttl

    async def ensure_subscription(self, connection_id: str, spreadsheet_id: str) -> WebhookSubscription:
        """Reuse a live channel for the spreadsheet or open a new one."""
        now = utcnow()
        for subscription in await self.spreadsheets.list_active_subscriptions(connection_id, spreadsheet_id):
            if subscription.expiration is None or subscription.expiration > now:
                return subscription
        return await self.setup_subscription(connection_id, spreadsheet_id)

    async def setup_subscription(self, connection_id: str, spreadsheet_id: str) -> WebhookSubscription:
        access_token = await self.token_provider.get_access_token(connection_id)
        channel = await self.sheets_client.watch_file(
            access_token,
            spreadsheet_id,
            channel_id=str(uuid.uuid4()),
            address=self.webhook_url,
            expiration=utcnow() + self.channel_ttl,
        )
        expiration = parse_channel_expiration(channel.get("expiration")) or utcnow() + self.channel_ttl

        subscription = await self.spreadsheets.add_subscription(
            connection_id,
            spreadsheet_id,
            subscription_id=channel["id"],
            resource_id=channel["resourceId"],
            expiration=expiration,
        )
        logger.info(f"Opened push channel {subscription.subscription_id} for {spreadsheet_id} until {expiration}")
        return subscription

    async def remove_subscription(self, subscription: WebhookSubscription) -> None:
        """Stop the channel at the provider (best effort) and deactivate it locally."""
        try:
            access_token = await self.token_provider.get_access_token(subscription.connection_id)
            await self.sheets_client.stop_channel(access_token, subscription.subscription_id, subscription.resource_id)
        except Exception as e:
            # Expired channels and revoked connections cannot be stopped remotely
            logger.warning(f"Could not stop push channel {subscription.subscription_id}: {e}")
        await self.spreadsheets.deactivate_subscription(subscription.subscription_id)

    async def remove_subscriptions(self, connection_id: str, spreadsheet_id: str) -> int:
        subscriptions = await self.spreadsheets.list_active_subscriptions(connection_id, spreadsheet_id)
        for subscription in subscriptions:
            await self.remove_subscription(subscription)
        return len(subscriptions)

    async def renew_expiring(
        self, window: timedelta = timedelta(hours=WEBHOOK_RENEWAL_WINDOW_HOURS)
    ) -> WebhookMaintenanceResult:
        """Replace channels that expire within `window`; one failure never stops the others."""
        now = utcnow()
        result = WebhookMaintenanceResult()
        for subscription in await self.spreadsheets.list_subscriptions_expiring(before=now + window, after=now):
            try:
                await self.remove_subscription(subscription)
                await self.setup_subscription(subscription.connection_id, subscription.spreadsheet_id)
                result.succeeded.append(subscription.subscription_id)
            except Exception as e:
                logger.error(f"Failed to renew push channel {subscription.subscription_id}: {e}")
                result.failed.append(subscription.subscription_id)
        return result

    async def cleanup_expired(self) -> WebhookMaintenanceResult:
        result = WebhookMaintenanceResult()
        for subscription in await self.spreadsheets.list_subscriptions_expiring(before=utcnow()):
            try:
                await self.remove_subscription(subscription)
                result.succeeded.append(subscription.subscription_id)
            except Exception as e:
                logger.error(f"Failed to clean up push channel {subscription.subscription_id}: {e}")
                result.failed.append(subscription.subscription_id)
        return result
