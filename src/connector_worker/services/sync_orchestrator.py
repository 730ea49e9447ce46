"""
Batch Sync Orchestrator.

Reads order rows from a linked spreadsheet and turns them into orders:
- rows are processed in sequential batches, concurrently within a batch
  (bounded by max_concurrency)
- a failing row is recorded as a SyncError and never aborts the run
- progress is written to the SyncOperation after every batch
- successfully imported rows are highlighted in the sheet afterwards
"""

import asyncio
import time
from typing import List, Optional

from connector_api.config.constants import (
    HIGHLIGHT_COLOR,
    HIGHLIGHT_MAX_COLUMNS,
    INTER_BATCH_DELAY_SECONDS,
    SYSTEM_REFERENCE_PREFIX,
)
from connector_api.core.exceptions import SheetRateLimitError, SyncConfigurationError
from connector_api.core.logger import setup_logger
from connector_api.core.monitoring import capture_exception, sync_scope
from connector_api.db.base import utcnow
from connector_api.repositories.connection_repository import ConnectionRepository
from connector_worker.integrations.sheets_client import SheetsClient
from connector_worker.models.sheet_sync import (
    OrderSyncConfig,
    ResolutionAction,
    RowOutcome,
    RowResult,
    SheetOrder,
    SyncError,
    SyncErrorCategory,
    SyncOptions,
    SyncResult,
)
from connector_worker.repositories.spreadsheet_repository import SpreadsheetRepository
from connector_worker.repositories.sync_operation_repository import SyncOperationRepository
from connector_worker.services.duplicate_detector import DuplicateDetector, resolve_duplicate
from connector_worker.services.order_materializer import MaterializationContext, OrderMaterializer
from connector_worker.services.order_validator import OrderValidator
from connector_worker.services.sheet_reader import SheetReader

logger = setup_logger(__name__)

SUGGESTED_FIXES = (
    ("phone", "Check phone number format (should be valid Morocco number)"),
    ("product", "Verify product name and SKU are correct"),
    ("price", "Ensure price is a valid number"),
    ("date", "Check date format (should be YYYY-MM-DD or similar)"),
)


def categorize_error(error: Exception) -> SyncErrorCategory:
    """Map a row-processing exception to a SyncError category by its message."""
    if isinstance(error, SheetRateLimitError):
        return SyncErrorCategory.RATE_LIMIT

    message = str(error).lower()
    if "validation" in message or "invalid" in message:
        return SyncErrorCategory.VALIDATION
    if "duplicate" in message:
        return SyncErrorCategory.DUPLICATE
    if "product" in message and "not found" in message:
        return SyncErrorCategory.PRODUCT_NOT_FOUND
    if "customer" in message:
        return SyncErrorCategory.CUSTOMER_CREATION
    if "rate limit" in message or "quota" in message:
        return SyncErrorCategory.RATE_LIMIT
    return SyncErrorCategory.SYSTEM


def suggest_fix(message: str) -> Optional[str]:
    message = message.lower()
    for keyword, fix in SUGGESTED_FIXES:
        if keyword in message:
            return fix
    return None


class SyncOrchestrator:
    """Runs one spreadsheet-to-orders sync for a SyncOperation.

    Collaborators are injected; the orchestrator never constructs its peers.
    `token_provider` is anything with `async get_access_token(connection_id)`,
    normally the ConnectionManager.
    """

    def __init__(
        self,
        token_provider,
        sheet_reader: SheetReader,
        validator: OrderValidator,
        detector: DuplicateDetector,
        materializer: OrderMaterializer,
        operations: SyncOperationRepository,
        spreadsheets: SpreadsheetRepository,
        connections: ConnectionRepository,
        sheets_client: SheetsClient,
        inter_batch_delay: float = INTER_BATCH_DELAY_SECONDS,
    ):
        self.token_provider = token_provider
        self.sheet_reader = sheet_reader
        self.validator = validator
        self.detector = detector
        self.materializer = materializer
        self.operations = operations
        self.spreadsheets = spreadsheets
        self.connections = connections
        self.sheets_client = sheets_client
        self.inter_batch_delay = inter_batch_delay

    async def sync_orders_from_sheet(
        self,
        connection_id: str,
        spreadsheet_id: str,
        sync_operation_id: str,
        options: Optional[SyncOptions] = None,
    ) -> SyncResult:
        """
        Sync order rows from a spreadsheet.

        Row-level problems end up in the result's errors. Anything that stops
        the whole run (connection gone, sheet unreadable) marks the operation
        FAILED and is re-raised.
        """
        options = options or SyncOptions()
        with sync_scope(connection_id, spreadsheet_id=spreadsheet_id, sync_operation_id=sync_operation_id):
            return await self._run_sync(connection_id, spreadsheet_id, sync_operation_id, options)

    async def _run_sync(
        self,
        connection_id: str,
        spreadsheet_id: str,
        sync_operation_id: str,
        options: SyncOptions,
    ) -> SyncResult:
        started_at = utcnow()
        start_time = time.monotonic()
        log_extra = {
            "connection_id": connection_id,
            "spreadsheet_id": spreadsheet_id,
            "sync_operation_id": sync_operation_id,
        }

        try:
            await self.operations.mark_processing(sync_operation_id)

            connection = await self.connections.get_or_raise(connection_id)
            link = await self.spreadsheets.get_order_sync_link(connection_id, spreadsheet_id)
            if link is None:
                raise SyncConfigurationError(
                    f"Spreadsheet {spreadsheet_id} is not configured for order sync on connection {connection_id}"
                )
            config = OrderSyncConfig.model_validate(link.order_sync_config or {})

            access_token = await self.token_provider.get_access_token(connection_id)
            rows = await self._read_rows(access_token, spreadsheet_id, config, options)
            # Retried rows that are blank now have nothing left to retry
            vanished_rows = sorted(set(options.retry_rows) - {r.row_number for r in rows})

            if not rows:
                logger.info("No order rows to sync", extra=log_extra)
                if vanished_rows:
                    await self.spreadsheets.update_sync_stats(link.id, None, 0, processed_rows=vanished_rows)
                result = self._build_result([], [], started_at, start_time)
                await self.operations.complete(sync_operation_id, result)
                return result

            context = MaterializationContext(
                sync_operation_id=sync_operation_id,
                connection_id=connection_id,
                spreadsheet_id=spreadsheet_id,
            )
            batch_size = max(options.batch_size, 1)
            batches = [rows[i:i + batch_size] for i in range(0, len(rows), batch_size)]
            semaphore = asyncio.Semaphore(max(options.max_concurrency, 1))
            logger.info(f"Syncing {len(rows)} rows in {len(batches)} batches", extra=log_extra)

            row_results: List[RowResult] = []
            errors: List[SyncError] = []
            cancelled = False

            for index, batch in enumerate(batches):
                if options.cancel_event is not None and options.cancel_event.is_set():
                    cancelled = True
                    errors.append(SyncError(
                        row_number=0,
                        category=SyncErrorCategory.SYSTEM,
                        message=f"Sync cancelled after {len(row_results)} of {len(rows)} rows",
                    ))
                    logger.warning(f"Sync cancelled before batch {index + 1}/{len(batches)}", extra=log_extra)
                    break

                batch_results = await self._process_batch(
                    batch, connection.organization_id, config, context, options.force_resync, semaphore
                )
                row_results.extend(batch_results)
                errors.extend(r.error for r in batch_results if r.error is not None)

                created = sum(1 for r in row_results if r.outcome == RowOutcome.CREATED)
                await self.operations.update_progress(
                    sync_operation_id,
                    processed=len(row_results),
                    created=created,
                    skipped=len(row_results) - created,
                    errors=errors,
                )
                logger.info(
                    f"Batch {index + 1}/{len(batches)} done: {len(row_results)} rows processed, {created} created",
                    extra=log_extra,
                )

                if index < len(batches) - 1:
                    await asyncio.sleep(self.inter_batch_delay)

            created_rows = [r.row_number for r in row_results if r.outcome == RowOutcome.CREATED]
            await self._highlight_rows(access_token, spreadsheet_id, config.sheet_name, created_rows)

            result = self._build_result(row_results, errors, started_at, start_time, cancelled)
            await self.spreadsheets.update_sync_stats(
                link.id,
                result.last_row,
                result.orders_created,
                processed_rows=[r.row_number for r in row_results] + vanished_rows,
                failed_rows=[r.row_number for r in row_results if r.error is not None],
            )
            await self.connections.record_sync(connection_id)
            await self.operations.complete(sync_operation_id, result)
            return result

        except Exception as e:
            logger.error(f"Sync operation {sync_operation_id} failed: {e}", exc_info=True, extra=log_extra)
            await self._fail_operation(sync_operation_id, str(e))
            capture_exception(e, context=log_extra)
            raise

    async def _read_rows(
        self,
        access_token: str,
        spreadsheet_id: str,
        config: OrderSyncConfig,
        options: SyncOptions,
    ) -> List[SheetOrder]:
        """Rows in [start_row, end_row], plus earlier rows listed in retry_rows."""
        retry_rows = set(options.retry_rows)
        if not retry_rows or options.start_row is None:
            return await self.sheet_reader.read_orders(
                access_token, spreadsheet_id, config, options.start_row, options.end_row
            )

        rows = await self.sheet_reader.read_orders(
            access_token, spreadsheet_id, config, min(min(retry_rows), options.start_row), options.end_row
        )
        return [r for r in rows if r.row_number >= options.start_row or r.row_number in retry_rows]

    async def _process_batch(
        self,
        batch: List[SheetOrder],
        organization_id: str,
        config: OrderSyncConfig,
        context: MaterializationContext,
        force_resync: bool,
        semaphore: asyncio.Semaphore,
    ) -> List[RowResult]:
        async def _bounded(order: SheetOrder) -> RowResult:
            async with semaphore:
                return await self.process_sheet_order(order, organization_id, config, context, force_resync)

        return list(await asyncio.gather(*(_bounded(order) for order in batch)))

    async def process_sheet_order(
        self,
        order: SheetOrder,
        organization_id: str,
        config: OrderSyncConfig,
        context: MaterializationContext,
        force_resync: bool = False,
    ) -> RowResult:
        """Process one row: reference check, validation, duplicate detection, creation.

        Never raises; failures come back as a FAILED RowResult with a SyncError.
        """
        if order.order_id and order.order_id.startswith(SYSTEM_REFERENCE_PREFIX) and not force_resync:
            return RowResult(
                row_number=order.row_number,
                outcome=RowOutcome.SKIPPED,
                reason=f"Row already synced as {order.order_id}",
            )

        try:
            validation = self.validator.validate(order, config.validation_rules)
            if not validation.is_valid:
                first = validation.errors[0]
                message = f"Validation failed: {validation.summary()}"
                logger.warning(f"Row {order.row_number} failed validation: {validation.summary()}")
                return RowResult(
                    row_number=order.row_number,
                    outcome=RowOutcome.SKIPPED,
                    error=SyncError(
                        row_number=order.row_number,
                        category=SyncErrorCategory.VALIDATION,
                        message=message,
                        order_data=order.to_dict(),
                        suggested_fix=first.suggested_fix or suggest_fix(first.field),
                    ),
                )
            if validation.warnings:
                logger.warning(
                    f"Row {order.row_number} validation warnings: "
                    + "; ".join(f"{w.field}: {w.message}" for w in validation.warnings)
                )

            detection = await self.detector.detect(order, organization_id)
            resolution = resolve_duplicate(order, detection, config.duplicate_handling)
            if resolution.action == ResolutionAction.SKIP:
                logger.info(f"Skipping row {order.row_number}: {resolution.reason}")
                return RowResult(row_number=order.row_number, outcome=RowOutcome.SKIPPED, reason=resolution.reason)

            created = await self.materializer.materialize(order, organization_id, context, resolution, detection)
            return RowResult(
                row_number=order.row_number,
                outcome=RowOutcome.CREATED,
                order_id=created.id,
                order_number=created.order_number,
                reason=resolution.reason,
            )

        except Exception as e:
            logger.error(f"Failed to process row {order.row_number}: {e}")
            return RowResult(
                row_number=order.row_number,
                outcome=RowOutcome.FAILED,
                error=SyncError(
                    row_number=order.row_number,
                    category=categorize_error(e),
                    message=str(e),
                    order_data=order.to_dict(),
                    suggested_fix=suggest_fix(str(e)),
                ),
            )

    async def _highlight_rows(self, access_token: str, spreadsheet_id: str, sheet_name: str, rows: List[int]):
        """Colour imported rows; failures are logged only since the orders are already committed."""
        if not rows:
            return
        try:
            sheet_id = await self.sheets_client.get_sheet_id(access_token, spreadsheet_id, sheet_name)
            requests = [
                {
                    "repeatCell": {
                        "range": {
                            "sheetId": sheet_id,
                            "startRowIndex": row - 1,
                            "endRowIndex": row,
                            "startColumnIndex": 0,
                            "endColumnIndex": HIGHLIGHT_MAX_COLUMNS,
                        },
                        "cell": {"userEnteredFormat": {"backgroundColor": HIGHLIGHT_COLOR}},
                        "fields": "userEnteredFormat.backgroundColor",
                    }
                }
                for row in sorted(rows)
            ]
            await self.sheets_client.batch_update(access_token, spreadsheet_id, requests)
            logger.info(f"Highlighted {len(rows)} imported rows in {spreadsheet_id}")
        except Exception as e:
            logger.warning(f"Failed to highlight imported rows in {spreadsheet_id}: {e}")

    async def _fail_operation(self, sync_operation_id: str, message: str):
        try:
            await self.operations.fail(sync_operation_id, message)
        except Exception as e:
            logger.error(f"Could not mark sync operation {sync_operation_id} as failed: {e}")

    def _build_result(
        self,
        row_results: List[RowResult],
        errors: List[SyncError],
        started_at,
        start_time: float,
        cancelled: bool = False,
    ) -> SyncResult:
        created = sum(1 for r in row_results if r.outcome == RowOutcome.CREATED)
        return SyncResult(
            # Partial success (at least one order created) is reported as success
            success=not errors or created > 0,
            orders_processed=len(row_results),
            orders_created=created,
            orders_skipped=len(row_results) - created,
            errors=errors,
            duration=time.monotonic() - start_time,
            started_at=started_at,
            completed_at=utcnow(),
            cancelled=cancelled,
            last_row=max((r.row_number for r in row_results), default=None),
        )
