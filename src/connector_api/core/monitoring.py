"""
GlitchTip Error Monitoring Utilities

Helper functions for error tracking and context management.
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

from connector_api.core.logger import setup_logger

logger = setup_logger(__name__)


def init_monitoring(dsn: Optional[str], environment: str) -> bool:
    """Initialize GlitchTip (Sentry protocol) if a DSN is configured."""
    if not dsn:
        return False

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                LoggingIntegration(
                    level=None,  # Capture all log levels as breadcrumbs
                    event_level=logging.ERROR  # Send ERROR logs as events
                ),
            ],
            traces_sample_rate=0.1,
            profiles_sample_rate=0.0,
            send_default_pii=False,
        )
        logger.info("GlitchTip error monitoring initialized")
        return True
    except Exception as e:
        logger.error(f"Failed to initialize GlitchTip: {e}")
        return False


def set_sync_context(
    connection_id: str,
    spreadsheet_id: Optional[str] = None,
    sync_operation_id: Optional[str] = None,
    **extra_tags
) -> None:
    """
    Set sync-specific context for error tracking.

    Args:
        connection_id: Platform connection ID
        spreadsheet_id: Spreadsheet being synced
        sync_operation_id: Current SyncOperation ID
        **extra_tags: Additional tags to add
    """
    try:
        sentry_sdk.set_tag("sync.connection_id", connection_id)
        if spreadsheet_id:
            sentry_sdk.set_tag("sync.spreadsheet_id", spreadsheet_id)
        if sync_operation_id:
            sentry_sdk.set_tag("sync.operation_id", sync_operation_id)

        for key, value in extra_tags.items():
            sentry_sdk.set_tag(key, value)

        context_data = {
            "connection_id": connection_id,
            "spreadsheet_id": spreadsheet_id,
            "sync_operation_id": sync_operation_id,
        }
        context_data.update(extra_tags)
        sentry_sdk.set_context("sync", context_data)

    except Exception as e:
        logger.warning(f"Failed to set sync context: {e}")


@contextmanager
def sync_scope(
    connection_id: str,
    spreadsheet_id: Optional[str] = None,
    sync_operation_id: Optional[str] = None,
    **extra_tags
) -> Iterator[None]:
    """Run one sync in its own isolation scope so concurrent syncs keep their own tags."""
    with sentry_sdk.isolation_scope():
        set_sync_context(connection_id, spreadsheet_id, sync_operation_id, **extra_tags)
        yield


def capture_exception(
    error: Exception,
    context: Optional[Dict[str, Any]] = None,
    level: str = "error"
) -> None:
    """
    Capture an exception and send to GlitchTip.

    Args:
        error: The exception to capture
        context: Additional context data
        level: Error level (error, warning, info)
    """
    try:
        with sentry_sdk.new_scope() as scope:
            if context:
                scope.set_context("custom", context)
            scope.level = level
            sentry_sdk.capture_exception(error)

    except Exception as e:
        logger.warning(f"Failed to capture exception in GlitchTip: {e}")
