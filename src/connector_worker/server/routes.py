"""Worker API routes: manual sync, sync status and sheet notifications."""

import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, HTTPException, Request, Response
from pydantic import BaseModel

from connector_api.config.constants import DEFAULT_BATCH_SIZE, DEFAULT_MAX_CONCURRENCY
from connector_api.core.exceptions import SyncConfigurationError
from connector_api.core.logger import setup_logger
from connector_api.db.models import PlatformType, SyncOperation, SyncOperationType
from connector_api.db.platform_data import read_platform_data
from connector_api.repositories.connection_repository import ConnectionRepository
from connector_worker.models.sheet_sync import OrderSyncConfig, SyncOptions
from connector_worker.repositories.spreadsheet_repository import SpreadsheetRepository
from connector_worker.repositories.sync_operation_repository import SyncOperationRepository
from connector_worker.services.sync_orchestrator import SyncOrchestrator
from connector_worker.services.sync_scheduler import SyncScheduler
from connector_worker.services.webhook_manager import SheetWebhookManager
from connector_worker.services.webhook_processor import WebhookProcessor

logger = setup_logger(__name__)
router = APIRouter()

# Global instances (initialized in app.py on startup)
sync_orchestrator: SyncOrchestrator = None
sync_operations: SyncOperationRepository = None
spreadsheets: SpreadsheetRepository = None
connections: ConnectionRepository = None
webhook_processor: WebhookProcessor = None
sync_scheduler: SyncScheduler = None
webhook_manager: SheetWebhookManager = None

# Cancellation events of manual syncs running in this process
running_syncs: Dict[str, asyncio.Event] = {}

# Push notifications may arrive as headers only (empty body)
NOTIFICATION_HEADERS = {
    "x-goog-channel-id": "id",
    "x-goog-resource-id": "resourceId",
    "x-goog-resource-uri": "resourceUri",
    "x-goog-resource-state": "resourceState",
    "x-goog-channel-token": "token",
    "x-goog-channel-expiration": "expiration",
}


def set_sync_services(
    orchestrator: SyncOrchestrator,
    operations: SyncOperationRepository,
    spreadsheet_repository: SpreadsheetRepository,
    connection_repository: Optional[ConnectionRepository] = None,
):
    """Set the global sync service instances.

    Called by app.py during startup event.
    """
    global sync_orchestrator, sync_operations, spreadsheets, connections
    sync_orchestrator = orchestrator
    sync_operations = operations
    spreadsheets = spreadsheet_repository
    connections = connection_repository


def set_webhook_processor(processor: WebhookProcessor):
    """Set the global webhook processor instance."""
    global webhook_processor
    webhook_processor = processor


def set_sync_scheduler(scheduler: Optional[SyncScheduler]):
    """Set the global polling scheduler instance."""
    global sync_scheduler
    sync_scheduler = scheduler


def set_webhook_manager(manager: Optional[SheetWebhookManager]):
    """Set the global push channel manager (None when push notifications are off)."""
    global webhook_manager
    webhook_manager = manager


class SyncRequest(BaseModel):
    start_row: Optional[int] = None
    end_row: Optional[int] = None
    force_resync: bool = False
    batch_size: int = DEFAULT_BATCH_SIZE
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY


class SpreadsheetLinkRequest(BaseModel):
    spreadsheet_name: Optional[str] = None
    order_sync_config: OrderSyncConfig = OrderSyncConfig()


class SyncOperationView(BaseModel):
    id: str
    connection_id: str
    spreadsheet_id: str
    operation_type: str
    status: str
    orders_processed: int
    orders_created: int
    orders_skipped: int
    error_count: int
    error_details: List[Dict[str, Any]]
    started_at: datetime
    completed_at: Optional[datetime] = None

    @classmethod
    def from_operation(cls, operation: SyncOperation) -> "SyncOperationView":
        return cls(
            id=operation.id,
            connection_id=operation.connection_id,
            spreadsheet_id=operation.spreadsheet_id,
            operation_type=operation.operation_type.value,
            status=operation.status.value,
            orders_processed=operation.orders_processed,
            orders_created=operation.orders_created,
            orders_skipped=operation.orders_skipped,
            error_count=operation.error_count,
            error_details=operation.error_details or [],
            started_at=operation.started_at,
            completed_at=operation.completed_at,
        )


def _require_services():
    if not sync_orchestrator:
        logger.error("Sync services not initialized")
        raise HTTPException(status_code=503, detail="Sync services not initialized")


async def _run_manual_sync(connection_id: str, spreadsheet_id: str, operation_id: str, options: SyncOptions):
    try:
        await sync_orchestrator.sync_orders_from_sheet(connection_id, spreadsheet_id, operation_id, options)
    except Exception as e:
        # Already recorded on the operation by the orchestrator
        logger.error(f"Manual sync {operation_id} failed: {e}")
    finally:
        running_syncs.pop(operation_id, None)


@router.get("/health")
async def health_check() -> dict:
    """Health check endpoint."""
    if not sync_orchestrator:
        return {
            "status": "unhealthy",
            "service": "sheet-sync-worker",
            "error": "Sync services not initialized",
        }

    return {
        "status": "healthy",
        "service": "sheet-sync-worker",
        "running_syncs": len(running_syncs),
        "polling_scheduler": "running" if sync_scheduler and sync_scheduler.is_running else "stopped",
    }


@router.put("/spreadsheets/{connection_id}/{spreadsheet_id}")
async def link_spreadsheet(connection_id: str, spreadsheet_id: str, request: SpreadsheetLinkRequest) -> dict:
    """Enable (or reconfigure) order sync for a spreadsheet of a Google Sheets connection."""
    _require_services()
    connection = await connections.get_or_raise(connection_id)
    if connection.platform_type != PlatformType.GOOGLE_SHEETS:
        raise SyncConfigurationError(f"Connection {connection_id} is not a Google Sheets connection")

    link = await spreadsheets.link_spreadsheet(
        connection_id,
        spreadsheet_id,
        spreadsheet_name=request.spreadsheet_name,
        order_sync_config=request.order_sync_config.model_dump(mode="json"),
    )

    known = list(read_platform_data(connection).connected_spreadsheets)
    if spreadsheet_id not in known:
        await connections.update_platform_data(connection_id, connected_spreadsheets=known + [spreadsheet_id])

    subscription_id = await _sync_push_channel(connection_id, spreadsheet_id, request.order_sync_config.auto_sync)

    logger.info(f"Spreadsheet {spreadsheet_id} linked for order sync on connection {connection_id}")
    return {
        "id": link.id,
        "connection_id": connection_id,
        "spreadsheet_id": spreadsheet_id,
        "is_order_sync": link.is_order_sync,
        "webhook_subscription_id": subscription_id,
    }


async def _sync_push_channel(connection_id: str, spreadsheet_id: str, auto_sync: bool) -> Optional[str]:
    """Open a push channel for auto-sync spreadsheets, stop channels otherwise."""
    if webhook_manager is None:
        return None
    if not auto_sync:
        removed = await webhook_manager.remove_subscriptions(connection_id, spreadsheet_id)
        if removed:
            logger.info(f"Stopped {removed} push channel(s) for {spreadsheet_id}")
        return None
    try:
        subscription = await webhook_manager.ensure_subscription(connection_id, spreadsheet_id)
        return subscription.subscription_id
    except Exception as e:
        # Polling still covers the spreadsheet
        logger.warning(f"Could not open push channel for {spreadsheet_id}: {e}")
        return None


@router.post("/sync/{connection_id}/{spreadsheet_id}", status_code=202)
async def start_sync(
    connection_id: str,
    spreadsheet_id: str,
    background_tasks: BackgroundTasks,
    request: Optional[SyncRequest] = None,
) -> dict:
    """Start a manual sync; returns immediately with the SyncOperation id."""
    _require_services()
    request = request or SyncRequest()

    link = await spreadsheets.get_order_sync_link(connection_id, spreadsheet_id)
    if link is None:
        raise SyncConfigurationError(
            f"Spreadsheet {spreadsheet_id} is not configured for order sync on connection {connection_id}"
        )

    operation = await sync_operations.create(connection_id, spreadsheet_id, SyncOperationType.MANUAL)
    cancel_event = asyncio.Event()
    running_syncs[operation.id] = cancel_event
    options = SyncOptions(
        start_row=request.start_row,
        end_row=request.end_row,
        force_resync=request.force_resync,
        batch_size=request.batch_size,
        max_concurrency=request.max_concurrency,
        cancel_event=cancel_event,
    )
    background_tasks.add_task(_run_manual_sync, connection_id, spreadsheet_id, operation.id, options)

    logger.info(f"Queued manual sync {operation.id} for spreadsheet {spreadsheet_id}")
    return {"sync_operation_id": operation.id, "status": operation.status.value}


@router.get("/sync/operations/{operation_id}", response_model=SyncOperationView)
async def get_sync_operation(operation_id: str) -> SyncOperationView:
    _require_services()
    operation = await sync_operations.get(operation_id)
    if operation is None:
        raise HTTPException(status_code=404, detail=f"Sync operation {operation_id} not found")
    return SyncOperationView.from_operation(operation)


@router.post("/sync/operations/{operation_id}/cancel")
async def cancel_sync_operation(operation_id: str) -> dict:
    """Ask a running manual sync to stop after its current batch."""
    cancel_event = running_syncs.get(operation_id)
    if cancel_event is None:
        raise HTTPException(status_code=404, detail=f"No running sync {operation_id} in this worker")
    cancel_event.set()
    return {"sync_operation_id": operation_id, "cancel_requested": True}


@router.get("/sync/spreadsheets/{spreadsheet_id}/operations", response_model=List[SyncOperationView])
async def list_sync_operations(spreadsheet_id: str, limit: int = 20) -> List[SyncOperationView]:
    _require_services()
    operations = await sync_operations.list_recent(spreadsheet_id, limit=limit)
    return [SyncOperationView.from_operation(op) for op in operations]


@router.post("/webhook/sheets")
async def receive_sheet_notification(request: Request, background_tasks: BackgroundTasks) -> Response:
    """Acknowledge a sheet change notification and process it in the background."""
    if not webhook_processor:
        logger.error("Webhook processor not initialized")
        return Response(status_code=503, content="Processor not initialized")

    payload: Dict[str, Any] = {}
    body = await request.body()
    if body:
        try:
            payload = await request.json()
        except ValueError:
            logger.warning("Sheet notification body is not JSON, using headers")
    if not isinstance(payload, dict) or not payload.get("resourceId"):
        payload = {
            field: request.headers[header]
            for header, field in NOTIFICATION_HEADERS.items()
            if header in request.headers
        }

    background_tasks.add_task(webhook_processor.handle_notification, payload)
    return Response(status_code=200)
