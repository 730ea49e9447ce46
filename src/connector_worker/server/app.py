"""Sheet sync worker FastAPI application."""

from fastapi import FastAPI

from connector_api.config.settings import settings
from connector_api.core.logger import setup_logger
from connector_api.core.monitoring import init_monitoring
from connector_api.server.errors import register_error_handlers
from connector_api.services.bootstrap import build_connection_services
from connector_worker.integrations.sheets_client import SheetsClient
from connector_worker.repositories.order_repository import SqlOrderLookup
from connector_worker.repositories.spreadsheet_repository import SpreadsheetRepository
from connector_worker.repositories.sync_operation_repository import SyncOperationRepository
from connector_worker.server import routes
from connector_worker.services.duplicate_detector import DuplicateDetector
from connector_worker.services.order_materializer import OrderMaterializer
from connector_worker.services.order_validator import OrderValidator
from connector_worker.services.sheet_reader import SheetReader
from connector_worker.services.sync_orchestrator import SyncOrchestrator
from connector_worker.services.sync_scheduler import SyncScheduler
from connector_worker.services.webhook_manager import SheetWebhookManager
from connector_worker.services.webhook_processor import WebhookProcessor

logger = setup_logger(__name__)


def create_app() -> FastAPI:
    """Create and configure FastAPI application.

    Returns:
        Configured FastAPI app instance
    """
    app = FastAPI(
        title="Sheet Order Sync Worker",
        description="Imports spreadsheet rows as orders",
        version="1.0.0",
    )

    init_monitoring(settings.glitchtip_dsn, settings.environment)

    @app.on_event("startup")
    async def startup():
        """Initialize repositories, sync services and the polling scheduler."""
        try:
            logger.info("=" * 60)
            logger.info("Starting Sheet Order Sync Worker...")
            logger.info("=" * 60)

            services = await build_connection_services(settings)
            app.state.services = services
            session_factory = services.session_factory

            sheets_client = SheetsClient()
            app.state.sheets_client = sheets_client
            operations = SyncOperationRepository(session_factory)
            spreadsheets = SpreadsheetRepository(session_factory)

            orchestrator = SyncOrchestrator(
                token_provider=services.connection_manager,
                sheet_reader=SheetReader(sheets_client),
                validator=OrderValidator(),
                detector=DuplicateDetector(SqlOrderLookup(session_factory)),
                materializer=OrderMaterializer(session_factory),
                operations=operations,
                spreadsheets=spreadsheets,
                connections=services.repository,
                sheets_client=sheets_client,
            )
            logger.info("✓ Sync orchestrator initialized")

            routes.set_sync_services(orchestrator, operations, spreadsheets, services.repository)
            routes.set_webhook_processor(WebhookProcessor(spreadsheets, operations, orchestrator))
            logger.info("✓ Webhook processor initialized")

            webhook_manager = None
            if settings.sheets_webhook_url:
                webhook_manager = SheetWebhookManager(
                    sheets_client, spreadsheets, services.connection_manager, settings.sheets_webhook_url
                )
                logger.info("✓ Push channel manager initialized")
            else:
                logger.info("SHEETS_WEBHOOK_URL not set, push notifications disabled")
            routes.set_webhook_manager(webhook_manager)

            scheduler = SyncScheduler(
                orchestrator,
                spreadsheets,
                operations,
                services.redis,
                interval_minutes=settings.polling_sync_interval_minutes,
                polling_enabled=settings.polling_sync_enabled,
                webhook_manager=webhook_manager,
            )
            scheduler.start()
            app.state.sync_scheduler = scheduler
            routes.set_sync_scheduler(scheduler)

            logger.info("Sheet Order Sync Worker started successfully!")
        except Exception as e:
            logger.error(f"Failed to start worker: {e}", exc_info=True)
            raise

    @app.on_event("shutdown")
    async def shutdown():
        """Signal running syncs to stop, stop the scheduler and release resources."""
        logger.info("Shutting down Sheet Order Sync Worker...")
        try:
            for cancel_event in routes.running_syncs.values():
                cancel_event.set()
            if getattr(app.state, "sync_scheduler", None):
                app.state.sync_scheduler.stop()
            if getattr(app.state, "sheets_client", None):
                await app.state.sheets_client.close()
            if getattr(app.state, "services", None):
                await app.state.services.close()
            logger.info("Shutdown completed")
        except Exception as e:
            logger.error(f"Error during shutdown: {e}", exc_info=True)

    app.include_router(routes.router)
    register_error_handlers(app)

    return app


# Create app instance
app = create_app()
