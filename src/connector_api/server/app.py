"""FastAPI application for platform connections."""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from connector_api.config.settings import settings
from connector_api.core.logger import setup_logger
from connector_api.core.monitoring import init_monitoring
from connector_api.server import routes
from connector_api.server.errors import register_error_handlers
from connector_api.services.bootstrap import build_connection_services
from connector_api.services.token_refresh_scheduler import TokenRefreshScheduler

logger = setup_logger(__name__)


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""
    app = FastAPI(
        title="Platform Connector API",
        version="1.0.0",
        description="OAuth2 connections to external platforms with managed token refresh",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    init_monitoring(settings.glitchtip_dsn, settings.environment)

    app.include_router(routes.router)
    register_error_handlers(app)

    @app.on_event("startup")
    async def startup():
        """Initialize database, Redis, connection manager and token scheduler."""
        try:
            logger.info("=" * 60)
            logger.info("Starting Platform Connector API...")
            logger.info("=" * 60)

            services = await build_connection_services(settings)
            app.state.services = services
            routes.set_connection_manager(services.connection_manager)

            scheduler = TokenRefreshScheduler(
                services.connection_manager,
                services.repository,
                interval_minutes=settings.token_refresh_interval_minutes,
            )
            scheduler.start()
            app.state.token_scheduler = scheduler
            routes.set_token_refresh_scheduler(scheduler)

            logger.info("Platform Connector API started successfully!")
        except Exception as e:
            logger.error(f"Failed to start connector API: {e}", exc_info=True)
            raise

    @app.on_event("shutdown")
    async def shutdown():
        """Stop the scheduler and release resources."""
        logger.info("Starting graceful shutdown...")
        try:
            if getattr(app.state, "token_scheduler", None):
                app.state.token_scheduler.stop()
            if getattr(app.state, "services", None):
                await app.state.services.close()
            logger.info("Graceful shutdown completed successfully")
        except Exception as e:
            logger.error(f"Error during shutdown: {e}", exc_info=True)

    return app


# Create app instance
app = create_app()
