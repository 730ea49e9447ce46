"""Tests for Sheets API retry and error mapping."""

import json
from datetime import datetime
from unittest.mock import MagicMock, patch

import gspread
import httpx
import pytest

from connector_api.core.exceptions import SheetAccessError, SheetRateLimitError
from connector_worker.integrations.sheets_client import SheetsClient, is_rate_limited, is_retryable


def api_error(status: int, message: str) -> gspread.exceptions.APIError:
    response = MagicMock()
    response.status_code = status
    response.json.return_value = {"error": {"code": status, "message": message, "status": "ERROR"}}
    return gspread.exceptions.APIError(response)


def spreadsheet_returning(*outcomes):
    """A fake gspread spreadsheet whose values_get yields each outcome in turn."""
    spreadsheet = MagicMock()
    spreadsheet.values_get.side_effect = list(outcomes)
    return spreadsheet


class TestErrorClassification:

    def test_rate_limit(self):
        assert is_rate_limited(api_error(429, "Too many requests"))
        assert is_rate_limited(api_error(403, "Quota exceeded for quota metric"))
        assert not is_rate_limited(api_error(403, "The caller does not have permission"))

    def test_retryable(self):
        assert is_retryable(api_error(503, "Backend error"))
        assert is_retryable(api_error(429, "Too many requests"))
        assert not is_retryable(api_error(404, "Not found"))


class TestSheetsClient:

    @pytest.mark.asyncio
    async def test_rate_limited_call_is_retried(self):
        client = SheetsClient(base_delay=0)
        spreadsheet = spreadsheet_returning(api_error(429, "Too many requests"), {"values": [["a", "b"]]})

        with patch.object(SheetsClient, "_open", return_value=spreadsheet):
            values = await client.get_values("token", "sheet-1", "Orders!A2:Z3")

        assert values == [["a", "b"]]
        assert spreadsheet.values_get.call_count == 2

    @pytest.mark.asyncio
    async def test_persistent_rate_limit_raises(self):
        client = SheetsClient(base_delay=0)
        spreadsheet = spreadsheet_returning(*[api_error(429, "Too many requests")] * 3)

        with patch.object(SheetsClient, "_open", return_value=spreadsheet):
            with pytest.raises(SheetRateLimitError):
                await client.get_values("token", "sheet-1", "Orders!A:A")

        assert spreadsheet.values_get.call_count == 3

    @pytest.mark.asyncio
    async def test_permission_denied_is_not_retried(self):
        client = SheetsClient(base_delay=0)
        spreadsheet = spreadsheet_returning(api_error(403, "The caller does not have permission"))

        with patch.object(SheetsClient, "_open", return_value=spreadsheet):
            with pytest.raises(SheetAccessError):
                await client.get_values("token", "sheet-1", "Orders!A:A")

        assert spreadsheet.values_get.call_count == 1

    @pytest.mark.asyncio
    async def test_other_errors_propagate(self):
        client = SheetsClient(base_delay=0)
        spreadsheet = spreadsheet_returning(api_error(404, "Requested entity was not found"))

        with patch.object(SheetsClient, "_open", return_value=spreadsheet):
            with pytest.raises(gspread.exceptions.APIError):
                await client.get_values("token", "sheet-1", "Orders!A:A")

    @pytest.mark.asyncio
    async def test_missing_values_key_means_empty(self):
        spreadsheet = spreadsheet_returning({"range": "Orders!A2:Z2"})

        with patch.object(SheetsClient, "_open", return_value=spreadsheet):
            assert await SheetsClient(base_delay=0).get_values("token", "sheet-1", "Orders!A2:Z2") == []

    @pytest.mark.asyncio
    async def test_sheet_id_and_batch_update(self):
        spreadsheet = MagicMock()
        spreadsheet.worksheet.return_value.id = 1234
        spreadsheet.batch_update.return_value = {"replies": [{}]}
        client = SheetsClient(base_delay=0)

        with patch.object(SheetsClient, "_open", return_value=spreadsheet):
            assert await client.get_sheet_id("token", "sheet-1", "Orders") == 1234
            await client.batch_update("token", "sheet-1", [{"repeatCell": {}}])

        spreadsheet.worksheet.assert_called_once_with("Orders")
        spreadsheet.batch_update.assert_called_once_with({"requests": [{"repeatCell": {}}]})


class TestPushChannels:

    @staticmethod
    def client_with(handler) -> SheetsClient:
        return SheetsClient(http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))

    @pytest.mark.asyncio
    async def test_watch_file_opens_channel(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"id": "channel-1", "resourceId": "res-1", "expiration": "1704931200000"})

        client = self.client_with(handler)
        channel = await client.watch_file(
            "access-token", "sheet-1", "channel-1", "https://hooks.example.com/webhook/sheets",
            expiration=datetime(2024, 1, 11),
        )

        assert channel["resourceId"] == "res-1"
        assert seen["url"] == "https://www.googleapis.com/drive/v3/files/sheet-1/watch"
        assert seen["auth"] == "Bearer access-token"
        assert seen["body"] == {
            "id": "channel-1",
            "type": "web_hook",
            "address": "https://hooks.example.com/webhook/sheets",
            "expiration": 1704931200000,
        }
        await client.close()

    @pytest.mark.asyncio
    async def test_stop_channel(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(204)

        client = self.client_with(handler)
        await client.stop_channel("access-token", "channel-1", "res-1")

        assert seen["url"] == "https://www.googleapis.com/drive/v3/channels/stop"
        assert seen["body"] == {"id": "channel-1", "resourceId": "res-1"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status, error", [(403, SheetAccessError), (429, SheetRateLimitError)])
    async def test_drive_errors_are_mapped(self, status, error):
        client = self.client_with(lambda request: httpx.Response(status, json={"error": {"code": status}}))

        with pytest.raises(error):
            await client.watch_file("access-token", "sheet-1", "channel-1", "https://hooks.example.com/webhook/sheets")
