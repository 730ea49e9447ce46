"""
Proactive token refresh using APScheduler.

Refreshes ACTIVE connections shortly before their access token expires so
that sync runs rarely have to refresh inline.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from connector_api.config.constants import (
    PROACTIVE_REFRESH_WINDOW_MINUTES,
    TOKEN_EXPIRING_SOON_HOURS,
)
from connector_api.core.logger import setup_logger
from connector_api.repositories.connection_repository import ConnectionRepository
from connector_api.services.connection_manager import ConnectionManager

logger = setup_logger(__name__)


@dataclass
class RefreshRunResult:
    """Outcome of one proactive refresh pass."""
    candidates: int = 0
    refreshed: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)


class TokenRefreshScheduler:
    """Periodically refreshes tokens that are about to expire."""

    def __init__(
        self,
        connection_manager: ConnectionManager,
        repository: ConnectionRepository,
        interval_minutes: int = 5,
    ):
        self.connection_manager = connection_manager
        self.repository = repository
        self.interval_minutes = interval_minutes
        self.scheduler = AsyncIOScheduler()
        self._started = False

    def start(self):
        """Start scheduler with the refresh job."""
        if self._started:
            logger.warning("Token refresh scheduler already started")
            return

        self.scheduler.add_job(
            self._run_refresh_job,
            IntervalTrigger(minutes=self.interval_minutes),
            id="token_refresh",
            name="Proactive Token Refresh",
            replace_existing=True,
            max_instances=1,
        )
        self.scheduler.start()
        self._started = True
        logger.info(f"Token refresh scheduler started (every {self.interval_minutes} minute(s))")

    def stop(self):
        """Gracefully stop scheduler."""
        if not self._started:
            return

        self.scheduler.shutdown(wait=False)
        self._started = False
        logger.info("Token refresh scheduler stopped")

    async def _run_refresh_job(self):
        """Wrapper for the scheduled job with error handling."""
        try:
            result = await self.refresh_expiring_tokens()
            if result.candidates:
                logger.info(
                    f"Proactive refresh: {len(result.refreshed)}/{result.candidates} refreshed, "
                    f"{len(result.failed)} failed"
                )
        except Exception as e:
            logger.error(f"Proactive token refresh failed: {e}", exc_info=True)

    async def refresh_expiring_tokens(self) -> RefreshRunResult:
        """Refresh every candidate concurrently; one failure never stops the others."""
        candidates = await self.repository.list_refresh_candidates(
            timedelta(minutes=PROACTIVE_REFRESH_WINDOW_MINUTES)
        )
        result = RefreshRunResult(candidates=len(candidates))
        if not candidates:
            return result

        outcomes = await asyncio.gather(
            *(self.connection_manager.refresh_shared(c.id) for c in candidates),
            return_exceptions=True,
        )
        for connection, outcome in zip(candidates, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning(f"Proactive refresh failed for {connection.id}: {outcome}")
                result.failed[connection.id] = str(outcome)
            else:
                result.refreshed.append(connection.id)
        return result

    async def get_token_health(self, organization_id: Optional[str] = None) -> Dict[str, int]:
        return await self.repository.token_health(
            organization_id,
            expiring_soon=timedelta(hours=TOKEN_EXPIRING_SOON_HOURS),
            refresh_window=timedelta(minutes=PROACTIVE_REFRESH_WINDOW_MINUTES),
        )

    @property
    def is_running(self) -> bool:
        """Check if scheduler is running."""
        return self._started and self.scheduler.running
