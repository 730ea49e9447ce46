"""
Background sync jobs using APScheduler.

- polling: runs a `polling` sync for each auto-sync spreadsheet whose
  connection is ACTIVE; a redis lock per spreadsheet keeps runs from overlapping
- stale operations: fails PENDING / PROCESSING operations nobody will finish
- pruning: deletes old finished operations
- push channels: renews channels about to expire and cleans up expired ones
"""

from dataclasses import dataclass, field
from datetime import timedelta
from functools import partial
from typing import Awaitable, Callable, List, Optional

import redis.asyncio as aioredis
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from redis.exceptions import LockError

from connector_api.config.constants import (
    STALE_SYNC_CHECK_INTERVAL_MINUTES,
    STALE_SYNC_OPERATION_MINUTES,
    SYNC_LOCK_KEY_PREFIX,
    SYNC_LOCK_TIMEOUT_SECONDS,
    SYNC_OPERATION_KEEP_MINIMUM,
    SYNC_OPERATION_RETENTION_DAYS,
    WEBHOOK_CLEANUP_INTERVAL_HOURS,
    WEBHOOK_RENEWAL_INTERVAL_MINUTES,
)
from connector_api.core.logger import setup_logger
from connector_api.db.models import SpreadsheetConnection, SyncOperationType
from connector_worker.models.sheet_sync import OrderSyncConfig, SyncOptions
from connector_worker.repositories.spreadsheet_repository import SpreadsheetRepository
from connector_worker.repositories.sync_operation_repository import SyncOperationRepository
from connector_worker.services.sync_orchestrator import SyncOrchestrator
from connector_worker.services.webhook_manager import SheetWebhookManager

logger = setup_logger(__name__)


@dataclass
class PollingRunResult:
    """Outcome of one polling pass."""
    synced: List[str] = field(default_factory=list)
    locked: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


class SyncScheduler:
    """Periodic polling of linked spreadsheets plus sync housekeeping."""

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        spreadsheets: SpreadsheetRepository,
        operations: SyncOperationRepository,
        redis_client: aioredis.Redis,
        interval_minutes: int = 15,
        lock_timeout: int = SYNC_LOCK_TIMEOUT_SECONDS,
        polling_enabled: bool = True,
        webhook_manager: Optional[SheetWebhookManager] = None,
        stale_after: timedelta = timedelta(minutes=STALE_SYNC_OPERATION_MINUTES),
    ):
        self.orchestrator = orchestrator
        self.spreadsheets = spreadsheets
        self.operations = operations
        self.redis = redis_client
        self.interval_minutes = interval_minutes
        self.lock_timeout = lock_timeout
        self.polling_enabled = polling_enabled
        self.webhook_manager = webhook_manager
        self.stale_after = stale_after
        self.scheduler = AsyncIOScheduler()
        self._started = False

    def start(self):
        """Start scheduler with the polling and housekeeping jobs."""
        if self._started:
            logger.warning("Sync scheduler already started")
            return

        if self.polling_enabled:
            self._add_job(self._run_polling_job, IntervalTrigger(minutes=self.interval_minutes),
                          "polling_sync", "Spreadsheet Polling Sync")
        else:
            logger.info("Polling sync disabled")

        self._add_job(
            partial(self._run_maintenance_job, "Stale sync check", self.fail_stale_operations),
            IntervalTrigger(minutes=STALE_SYNC_CHECK_INTERVAL_MINUTES),
            "stale_sync_check", "Stale Sync Operation Check",
        )
        self._add_job(
            partial(self._run_maintenance_job, "Sync operation pruning", self.prune_operations),
            IntervalTrigger(days=1),
            "sync_operation_pruning", "Sync Operation Pruning",
        )
        if self.webhook_manager is not None:
            self._add_job(
                partial(self._run_maintenance_job, "Push channel renewal", self.webhook_manager.renew_expiring),
                IntervalTrigger(minutes=WEBHOOK_RENEWAL_INTERVAL_MINUTES),
                "webhook_renewal", "Push Channel Renewal",
            )
            self._add_job(
                partial(self._run_maintenance_job, "Push channel cleanup", self.webhook_manager.cleanup_expired),
                IntervalTrigger(hours=WEBHOOK_CLEANUP_INTERVAL_HOURS),
                "webhook_cleanup", "Push Channel Cleanup",
            )

        self.scheduler.start()
        self._started = True
        logger.info(f"Sync scheduler started with {len(self.scheduler.get_jobs())} job(s)")

    def _add_job(self, func, trigger, job_id: str, name: str):
        self.scheduler.add_job(func, trigger, id=job_id, name=name, replace_existing=True, max_instances=1)

    def stop(self):
        """Gracefully stop scheduler."""
        if not self._started:
            return

        self.scheduler.shutdown(wait=False)
        self._started = False
        logger.info("Sync scheduler stopped")

    async def _run_polling_job(self):
        """Wrapper for the scheduled job with error handling."""
        try:
            result = await self.poll_spreadsheets()
            logger.info(
                f"Polling sync: {len(result.synced)} synced, {len(result.locked)} already running, "
                f"{len(result.failed)} failed"
            )
        except Exception as e:
            logger.error(f"Polling sync failed: {e}", exc_info=True)

    async def _run_maintenance_job(self, name: str, job: Callable[[], Awaitable]):
        try:
            result = await job()
            logger.info(f"{name} finished: {result}")
        except Exception as e:
            logger.error(f"{name} failed: {e}", exc_info=True)

    async def fail_stale_operations(self) -> List[str]:
        return await self.operations.fail_stale(self.stale_after)

    async def prune_operations(self) -> int:
        return await self.operations.prune_finished(
            timedelta(days=SYNC_OPERATION_RETENTION_DAYS), SYNC_OPERATION_KEEP_MINIMUM
        )

    async def poll_spreadsheets(self) -> PollingRunResult:
        """Sync every auto-sync spreadsheet once, sequentially."""
        result = PollingRunResult()
        for link in await self.spreadsheets.list_order_sync_links():
            config = OrderSyncConfig.model_validate(link.order_sync_config or {})
            if not config.auto_sync:
                continue

            # Lock value is a per-run token; release only deletes our own token
            lock = self.redis.lock(
                f"{SYNC_LOCK_KEY_PREFIX}{link.spreadsheet_id}", timeout=self.lock_timeout, blocking=False
            )
            if not await lock.acquire():
                logger.info(f"Sync already in progress for {link.spreadsheet_id}, skipping")
                result.locked.append(link.spreadsheet_id)
                continue

            try:
                await self._sync_link(link, config)
                result.synced.append(link.spreadsheet_id)
            except Exception as e:
                logger.error(f"Polling sync failed for {link.spreadsheet_id}: {e}")
                result.failed.append(link.spreadsheet_id)
            finally:
                await self._release_lock(lock, link.spreadsheet_id)
        return result

    async def _sync_link(self, link: SpreadsheetConnection, config: OrderSyncConfig):
        operation = await self.operations.create(link.connection_id, link.spreadsheet_id, SyncOperationType.POLLING)
        # Resume after the last row seen by a previous run, retrying rows that errored
        start_row: Optional[int] = None
        if link.last_sync_row:
            start_row = max(config.data_start_row, link.last_sync_row + 1)
        await self.orchestrator.sync_orders_from_sheet(
            link.connection_id,
            link.spreadsheet_id,
            operation.id,
            SyncOptions(start_row=start_row, retry_rows=list(link.failed_rows or [])),
        )

    async def _release_lock(self, lock, spreadsheet_id: str):
        try:
            await lock.release()
        except LockError:
            logger.warning(f"Sync lock for {spreadsheet_id} expired before the run finished")

    @property
    def is_running(self) -> bool:
        """Check if scheduler is running."""
        return self._started and self.scheduler.running
