"""Spreadsheet push-notification handling."""

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, ValidationError

from connector_api.core.logger import setup_logger
from connector_api.db.base import utcnow
from connector_api.db.models import SyncOperationType
from connector_worker.models.sheet_sync import SyncResult
from connector_worker.repositories.spreadsheet_repository import SpreadsheetRepository
from connector_worker.repositories.sync_operation_repository import SyncOperationRepository
from connector_worker.services.sync_orchestrator import SyncOrchestrator

logger = setup_logger(__name__)

# Only content changes trigger a sync; "sync" is the channel handshake
SYNC_TRIGGER_STATES = ("update",)


class SheetNotification(BaseModel):
    """Change notification sent by the spreadsheet provider.

    Carries no row data; it only tells us which spreadsheet changed.
    """

    kind: Optional[str] = None
    id: Optional[str] = None
    resource_id: str = Field(alias="resourceId")
    resource_uri: Optional[str] = Field(default=None, alias="resourceUri")
    resource_state: str = Field(alias="resourceState")
    event_type: Optional[str] = Field(default=None, alias="eventType")
    event_time: Optional[str] = Field(default=None, alias="eventTime")
    token: Optional[str] = None
    expiration: Optional[str] = None

    class Config:
        populate_by_name = True
        extra = "allow"


class WebhookProcessor:
    """Turns spreadsheet change notifications into webhook-triggered syncs.

    Business Rules:
    - Unknown or inactive subscriptions are ignored
    - Expired subscriptions are deactivated and ignored
    - Only "update" notifications start a sync
    """

    def __init__(
        self,
        spreadsheets: SpreadsheetRepository,
        operations: SyncOperationRepository,
        orchestrator: SyncOrchestrator,
    ):
        self.spreadsheets = spreadsheets
        self.operations = operations
        self.orchestrator = orchestrator

    async def handle_notification(self, payload: Dict[str, Any]) -> Optional[SyncResult]:
        """Process one notification.

        Returns the sync result when a sync ran, None when the notification was
        ignored or processing failed. Never raises.
        """
        try:
            try:
                notification = SheetNotification.model_validate(payload)
            except ValidationError as e:
                logger.warning(f"Ignoring malformed sheet notification: {e}")
                return None

            logger.info(
                f"Received sheet notification: resource={notification.resource_id}, "
                f"state={notification.resource_state}"
            )

            subscription = await self.spreadsheets.find_subscription(notification.resource_id, notification.id)
            if subscription is None:
                logger.warning(f"No active subscription for resource {notification.resource_id}")
                return None

            if notification.resource_state not in SYNC_TRIGGER_STATES:
                logger.info(f"Ignoring '{notification.resource_state}' notification for {subscription.spreadsheet_id}")
                return None

            if subscription.expiration is not None and subscription.expiration <= utcnow():
                logger.info(f"Subscription {subscription.subscription_id} has expired")
                await self.spreadsheets.deactivate_subscription(subscription.subscription_id)
                return None

            operation = await self.operations.create(
                subscription.connection_id,
                subscription.spreadsheet_id,
                SyncOperationType.WEBHOOK,
            )
            result = await self.orchestrator.sync_orders_from_sheet(
                subscription.connection_id,
                subscription.spreadsheet_id,
                operation.id,
            )
            logger.info(
                f"Webhook sync {operation.id} finished: {result.orders_created} created, "
                f"{result.orders_skipped} skipped"
            )
            return result

        except Exception as e:
            logger.error(f"Error processing sheet notification: {e}", exc_info=True)
            return None
