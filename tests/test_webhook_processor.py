"""Tests for spreadsheet change notifications."""

from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from connector_api.db.base import utcnow
from connector_api.db.models import SyncOperationType
from connector_worker.services.webhook_processor import SheetNotification, WebhookProcessor

PAYLOAD = {
    "kind": "api#channel",
    "id": "channel-1",
    "resourceId": "resource-1",
    "resourceUri": "https://www.googleapis.com/drive/v3/files/sheet-1",
    "resourceState": "update",
    "eventType": "change",
}


def subscription(expiration=None):
    return SimpleNamespace(
        connection_id="conn-1",
        spreadsheet_id="sheet-1",
        subscription_id="channel-1",
        expiration=expiration,
    )


def build_processor(found=None):
    spreadsheets = SimpleNamespace(
        find_subscription=AsyncMock(return_value=found),
        deactivate_subscription=AsyncMock(),
    )
    operations = SimpleNamespace(create=AsyncMock(return_value=SimpleNamespace(id="op-1")))
    orchestrator = SimpleNamespace(
        sync_orders_from_sheet=AsyncMock(return_value=SimpleNamespace(orders_created=2, orders_skipped=1))
    )
    return WebhookProcessor(spreadsheets, operations, orchestrator)


class TestSheetNotification:

    def test_aliases_and_extra_fields(self):
        notification = SheetNotification.model_validate({**PAYLOAD, "channelType": "web_hook"})

        assert notification.resource_id == "resource-1"
        assert notification.resource_state == "update"
        assert notification.event_type == "change"

    def test_field_names_also_accepted(self):
        notification = SheetNotification(resource_id="resource-1", resource_state="sync")
        assert notification.resource_id == "resource-1"


class TestWebhookProcessor:

    @pytest.mark.asyncio
    async def test_update_starts_webhook_sync(self):
        processor = build_processor(subscription(expiration=utcnow() + timedelta(days=1)))

        result = await processor.handle_notification(PAYLOAD)

        assert result.orders_created == 2
        processor.spreadsheets.find_subscription.assert_awaited_once_with("resource-1", "channel-1")
        processor.operations.create.assert_awaited_once_with("conn-1", "sheet-1", SyncOperationType.WEBHOOK)
        processor.orchestrator.sync_orders_from_sheet.assert_awaited_once_with("conn-1", "sheet-1", "op-1")

    @pytest.mark.asyncio
    async def test_unknown_subscription_is_ignored(self):
        processor = build_processor(None)

        assert await processor.handle_notification(PAYLOAD) is None
        processor.operations.create.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_handshake_is_ignored(self):
        processor = build_processor(subscription())

        assert await processor.handle_notification({**PAYLOAD, "resourceState": "sync"}) is None
        processor.orchestrator.sync_orders_from_sheet.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_expired_subscription_is_deactivated(self):
        processor = build_processor(subscription(expiration=utcnow() - timedelta(minutes=1)))

        assert await processor.handle_notification(PAYLOAD) is None
        processor.spreadsheets.deactivate_subscription.assert_awaited_once_with("channel-1")
        processor.operations.create.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_malformed_payload_is_ignored(self):
        processor = build_processor(subscription())

        assert await processor.handle_notification({"kind": "api#channel"}) is None
        processor.spreadsheets.find_subscription.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_sync_failure_is_contained(self):
        processor = build_processor(subscription())
        processor.orchestrator.sync_orders_from_sheet.side_effect = RuntimeError("sheet unreadable")

        assert await processor.handle_notification(PAYLOAD) is None
