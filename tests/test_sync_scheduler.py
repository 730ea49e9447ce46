"""Tests for polling sync, its per-spreadsheet lock and the housekeeping jobs."""

from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from connector_api.db.models import SyncOperationType
from connector_worker.services.sync_scheduler import SyncScheduler

LOCK_KEY = "sheet_sync:lock:sheet-1"


def link(spreadsheet_id, config=None, last_sync_row=0, failed_rows=None):
    return SimpleNamespace(
        connection_id="conn-1",
        spreadsheet_id=spreadsheet_id,
        order_sync_config=config,
        last_sync_row=last_sync_row,
        failed_rows=failed_rows or [],
    )


def build_scheduler(links, fake_redis, sync=None, **kwargs):
    orchestrator = SimpleNamespace(sync_orders_from_sheet=AsyncMock(side_effect=sync))
    spreadsheets = SimpleNamespace(list_order_sync_links=AsyncMock(return_value=links))
    operations = SimpleNamespace(
        create=AsyncMock(return_value=SimpleNamespace(id="op-1")),
        fail_stale=AsyncMock(return_value=["op-stuck"]),
        prune_finished=AsyncMock(return_value=0),
    )
    return SyncScheduler(orchestrator, spreadsheets, operations, fake_redis, **kwargs)


class TestPolling:

    @pytest.mark.asyncio
    async def test_polls_auto_sync_links(self, fake_redis):
        scheduler = build_scheduler(
            [link("sheet-1"), link("sheet-2", {"auto_sync": False})],
            fake_redis,
        )

        result = await scheduler.poll_spreadsheets()

        assert result.synced == ["sheet-1"]
        scheduler.operations.create.assert_awaited_once_with("conn-1", "sheet-1", SyncOperationType.POLLING)
        options = scheduler.orchestrator.sync_orders_from_sheet.await_args.args[3]
        assert options.start_row is None
        assert options.retry_rows == []
        assert fake_redis.store == {}

    @pytest.mark.asyncio
    async def test_locked_spreadsheet_is_skipped(self, fake_redis):
        await fake_redis.set(LOCK_KEY, "other-worker")
        scheduler = build_scheduler([link("sheet-1")], fake_redis)

        result = await scheduler.poll_spreadsheets()

        assert result.locked == ["sheet-1"]
        scheduler.orchestrator.sync_orders_from_sheet.assert_not_awaited()
        assert fake_redis.store[LOCK_KEY] == "other-worker"

    @pytest.mark.asyncio
    async def test_lock_held_during_sync_with_timeout(self, fake_redis):
        seen = {}

        async def sync(*args):
            seen["locked"] = LOCK_KEY in fake_redis.store
            seen["ttl"] = fake_redis.ttl.get(LOCK_KEY)

        scheduler = build_scheduler([link("sheet-1")], fake_redis, sync=sync)

        await scheduler.poll_spreadsheets()

        assert seen == {"locked": True, "ttl": 600}
        assert LOCK_KEY not in fake_redis.store

    @pytest.mark.asyncio
    async def test_lock_taken_over_after_expiry_is_not_released(self, fake_redis):
        async def sync(*args):
            # Our lock expired mid-run and another worker acquired it
            fake_redis.store[LOCK_KEY] = "other-worker"

        scheduler = build_scheduler([link("sheet-1")], fake_redis, sync=sync)

        result = await scheduler.poll_spreadsheets()

        assert result.synced == ["sheet-1"]
        assert fake_redis.store[LOCK_KEY] == "other-worker"

    @pytest.mark.asyncio
    async def test_failure_releases_lock_and_continues(self, fake_redis):
        async def sync(connection_id, spreadsheet_id, operation_id, options):
            if spreadsheet_id == "sheet-1":
                raise RuntimeError("token expired")

        scheduler = build_scheduler([link("sheet-1"), link("sheet-2")], fake_redis, sync=sync)

        result = await scheduler.poll_spreadsheets()

        assert result.failed == ["sheet-1"]
        assert result.synced == ["sheet-2"]
        assert fake_redis.store == {}

    @pytest.mark.asyncio
    async def test_resumes_after_last_synced_row(self, fake_redis):
        scheduler = build_scheduler([link("sheet-1", last_sync_row=40)], fake_redis)

        await scheduler.poll_spreadsheets()

        options = scheduler.orchestrator.sync_orders_from_sheet.await_args.args[3]
        assert options.start_row == 41

    @pytest.mark.asyncio
    async def test_failed_rows_are_retried(self, fake_redis):
        scheduler = build_scheduler([link("sheet-1", last_sync_row=40, failed_rows=[7, 12])], fake_redis)

        await scheduler.poll_spreadsheets()

        options = scheduler.orchestrator.sync_orders_from_sheet.await_args.args[3]
        assert options.start_row == 41
        assert options.retry_rows == [7, 12]

    @pytest.mark.asyncio
    async def test_job_wrapper_logs_instead_of_raising(self, fake_redis):
        scheduler = build_scheduler([], fake_redis)
        scheduler.spreadsheets.list_order_sync_links.side_effect = RuntimeError("db down")

        await scheduler._run_polling_job()


class TestHousekeeping:

    @pytest.mark.asyncio
    async def test_fail_stale_operations_uses_threshold(self, fake_redis):
        scheduler = build_scheduler([], fake_redis)

        failed = await scheduler.fail_stale_operations()

        assert failed == ["op-stuck"]
        scheduler.operations.fail_stale.assert_awaited_once_with(timedelta(minutes=30))

    @pytest.mark.asyncio
    async def test_prune_keeps_minimum(self, fake_redis):
        scheduler = build_scheduler([], fake_redis)

        await scheduler.prune_operations()

        scheduler.operations.prune_finished.assert_awaited_once_with(timedelta(days=30), 100)

    @pytest.mark.asyncio
    async def test_maintenance_wrapper_logs_instead_of_raising(self, fake_redis):
        scheduler = build_scheduler([], fake_redis)
        scheduler.operations.fail_stale.side_effect = RuntimeError("db down")

        await scheduler._run_maintenance_job("Stale sync check", scheduler.fail_stale_operations)

    @pytest.mark.asyncio
    async def test_registers_jobs(self, fake_redis):
        scheduler = build_scheduler([], fake_redis)

        scheduler.start()
        try:
            job_ids = {job.id for job in scheduler.scheduler.get_jobs()}
            assert job_ids == {"polling_sync", "stale_sync_check", "sync_operation_pruning"}
            assert scheduler.is_running
        finally:
            scheduler.stop()

    @pytest.mark.asyncio
    async def test_push_channel_jobs_need_a_manager(self, fake_redis):
        manager = SimpleNamespace(renew_expiring=AsyncMock(), cleanup_expired=AsyncMock())
        scheduler = build_scheduler([], fake_redis, polling_enabled=False, webhook_manager=manager)

        scheduler.start()
        try:
            job_ids = {job.id for job in scheduler.scheduler.get_jobs()}
            assert job_ids == {"stale_sync_check", "sync_operation_pruning", "webhook_renewal", "webhook_cleanup"}
        finally:
            scheduler.stop()
