"""Persistence for SyncOperation progress records."""

from datetime import timedelta
from typing import List, Optional

from sqlalchemy import delete, func, select

from connector_api.core.exceptions import SyncOperationStateError
from connector_api.core.logger import setup_logger
from connector_api.db.base import utcnow
from connector_api.db.models import SyncOperation, SyncOperationType, SyncStatus
from connector_worker.models.sheet_sync import SyncError, SyncErrorCategory, SyncResult

logger = setup_logger(__name__)


class SyncOperationRepository:
    """Data access layer for SyncOperation.

    Once an operation is COMPLETED or FAILED it is never modified again;
    mutating calls raise SyncOperationStateError instead.
    """

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def create(
        self,
        connection_id: str,
        spreadsheet_id: str,
        operation_type: SyncOperationType = SyncOperationType.MANUAL,
    ) -> SyncOperation:
        operation = SyncOperation(
            connection_id=connection_id,
            spreadsheet_id=spreadsheet_id,
            operation_type=operation_type,
            status=SyncStatus.PENDING,
            error_details=[],
        )
        async with self.session_factory() as session:
            session.add(operation)
            await session.commit()
            await session.refresh(operation)
        logger.info(
            f"Created {operation_type.value} sync operation {operation.id}",
            extra={"sync_operation_id": operation.id, "connection_id": connection_id, "spreadsheet_id": spreadsheet_id},
        )
        return operation

    async def get(self, operation_id: str) -> Optional[SyncOperation]:
        async with self.session_factory() as session:
            return await session.get(SyncOperation, operation_id)

    async def list_recent(self, spreadsheet_id: str, limit: int = 20) -> List[SyncOperation]:
        query = (
            select(SyncOperation)
            .where(SyncOperation.spreadsheet_id == spreadsheet_id)
            .order_by(SyncOperation.started_at.desc())
            .limit(limit)
        )
        async with self.session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def mark_processing(self, operation_id: str) -> None:
        async with self.session_factory() as session:
            operation = await self._load_mutable(session, operation_id)
            operation.status = SyncStatus.PROCESSING
            await session.commit()

    async def update_progress(
        self,
        operation_id: str,
        processed: int,
        created: int,
        skipped: int,
        errors: Optional[List[SyncError]] = None,
    ) -> None:
        """Write running counters (and errors so far) after each batch."""
        async with self.session_factory() as session:
            operation = await self._load_mutable(session, operation_id)
            operation.orders_processed = processed
            operation.orders_created = created
            operation.orders_skipped = skipped
            if errors is not None:
                operation.error_count = len(errors)
                operation.error_details = [e.to_dict() for e in errors]
            await session.commit()

    async def complete(self, operation_id: str, result: SyncResult) -> None:
        async with self.session_factory() as session:
            operation = await self._load_mutable(session, operation_id)
            operation.status = SyncStatus.COMPLETED
            operation.orders_processed = result.orders_processed
            operation.orders_created = result.orders_created
            operation.orders_skipped = result.orders_skipped
            operation.error_count = len(result.errors)
            operation.error_details = [e.to_dict() for e in result.errors]
            operation.completed_at = result.completed_at
            await session.commit()

        logger.info(
            f"Sync operation {operation_id} completed: {result.orders_created} created, "
            f"{result.orders_skipped} skipped, {len(result.errors)} errors",
            extra={"sync_operation_id": operation_id},
        )

    async def fail(self, operation_id: str, message: str) -> None:
        """Mark FAILED with a system error at row 0, keeping counters and errors already written."""
        failure = SyncError(row_number=0, category=SyncErrorCategory.SYSTEM, message=message)
        async with self.session_factory() as session:
            operation = await self._load_mutable(session, operation_id)
            operation.status = SyncStatus.FAILED
            operation.error_details = list(operation.error_details or []) + [failure.to_dict()]
            operation.error_count = len(operation.error_details)
            operation.completed_at = utcnow()
            await session.commit()

        logger.error(f"Sync operation {operation_id} failed: {message}", extra={"sync_operation_id": operation_id})

    async def _load_mutable(self, session, operation_id: str) -> SyncOperation:
        operation = await session.get(SyncOperation, operation_id)
        if operation is None:
            raise SyncOperationStateError(f"Sync operation {operation_id} not found")
        if SyncStatus(operation.status).is_terminal:
            raise SyncOperationStateError(
                f"Sync operation {operation_id} is already {SyncStatus(operation.status).value}"
            )
        return operation

    async def fail_stale(self, older_than: timedelta) -> List[str]:
        """Mark PENDING / PROCESSING operations started before the cutoff as FAILED.

        Their worker was restarted or their task crashed, so nothing will
        finish them. Returns the ids that were failed.
        """
        cutoff = utcnow() - older_than
        minutes = int(older_than.total_seconds() // 60)
        message = f"Sync operation did not finish within {minutes} minutes and was abandoned"
        failure = SyncError(row_number=0, category=SyncErrorCategory.SYSTEM, message=message)

        query = select(SyncOperation).where(
            SyncOperation.status.in_([SyncStatus.PENDING, SyncStatus.PROCESSING]),
            SyncOperation.started_at < cutoff,
        )
        async with self.session_factory() as session:
            result = await session.execute(query)
            stale = list(result.scalars().all())
            for operation in stale:
                operation.status = SyncStatus.FAILED
                operation.error_details = list(operation.error_details or []) + [failure.to_dict()]
                operation.error_count = len(operation.error_details)
                operation.completed_at = utcnow()
            await session.commit()

        for operation in stale:
            logger.warning(f"Sync operation {operation.id} abandoned, marked failed", extra={"sync_operation_id": operation.id})
        return [operation.id for operation in stale]

    async def prune_finished(self, older_than: timedelta, keep_minimum: int) -> int:
        """Delete COMPLETED / FAILED operations older than the cutoff, unless there are at most `keep_minimum`."""
        cutoff = utcnow() - older_than
        finished = (
            SyncOperation.status.in_([SyncStatus.COMPLETED, SyncStatus.FAILED]),
            SyncOperation.started_at < cutoff,
        )
        async with self.session_factory() as session:
            count = await session.scalar(select(func.count()).select_from(SyncOperation).where(*finished))
            if count <= keep_minimum:
                return 0
            await session.execute(delete(SyncOperation).where(*finished))
            await session.commit()

        logger.info(f"Pruned {count} finished sync operations")
        return count
