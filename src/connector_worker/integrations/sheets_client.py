"""Google Sheets access with a connection's OAuth2 access token."""

import asyncio
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import gspread
import httpx
from google.oauth2.credentials import Credentials as OAuth2Credentials

from connector_api.config.constants import (
    DRIVE_API_TIMEOUT,
    DRIVE_API_URL,
    SHEET_API_BASE_DELAY_SECONDS,
    SHEET_API_MAX_ATTEMPTS,
)
from connector_api.core.exceptions import SheetAccessError, SheetRateLimitError
from connector_api.core.logger import setup_logger

logger = setup_logger(__name__)


def _status_of(error: gspread.exceptions.APIError) -> int:
    response = getattr(error, "response", None)
    return getattr(response, "status_code", 0) or 0


def is_rate_limited(error: gspread.exceptions.APIError) -> bool:
    message = str(error).lower()
    return _status_of(error) == 429 or "quota" in message or "rate limit" in message


def is_retryable(error: gspread.exceptions.APIError) -> bool:
    return is_rate_limited(error) or _status_of(error) >= 500


class SheetsClient:
    """Reads and writes spreadsheet ranges through gspread.

    gspread is blocking, so every call runs in a worker thread. API errors
    with 429 / 5xx are retried with exponential backoff. Drive push-notification
    channels go through httpx.
    """

    def __init__(
        self,
        max_attempts: int = SHEET_API_MAX_ATTEMPTS,
        base_delay: float = SHEET_API_BASE_DELAY_SECONDS,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.http = http_client or httpx.AsyncClient(timeout=DRIVE_API_TIMEOUT)

    def _open(self, access_token: str, spreadsheet_id: str) -> gspread.Spreadsheet:
        credentials = OAuth2Credentials(token=access_token)
        client = gspread.authorize(credentials)
        return client.open_by_key(spreadsheet_id)

    async def get_values(self, access_token: str, spreadsheet_id: str, range_name: str) -> List[List[Any]]:
        """Formatted cell values for an A1 range (rows may be ragged)."""

        def _call():
            spreadsheet = self._open(access_token, spreadsheet_id)
            response = spreadsheet.values_get(range_name, params={"valueRenderOption": "FORMATTED_VALUE"})
            return response.get("values", [])

        return await self._with_retry(_call, f"read {range_name}")

    async def get_sheet_id(self, access_token: str, spreadsheet_id: str, sheet_name: str) -> int:
        """Numeric sheetId used by batchUpdate requests."""

        def _call():
            spreadsheet = self._open(access_token, spreadsheet_id)
            return spreadsheet.worksheet(sheet_name).id

        return await self._with_retry(_call, f"resolve sheet {sheet_name}")

    async def batch_update(self, access_token: str, spreadsheet_id: str, requests: List[Dict[str, Any]]) -> Dict[str, Any]:
        def _call():
            spreadsheet = self._open(access_token, spreadsheet_id)
            return spreadsheet.batch_update({"requests": requests})

        return await self._with_retry(_call, f"batch update ({len(requests)} requests)")

    async def watch_file(
        self,
        access_token: str,
        file_id: str,
        channel_id: str,
        address: str,
        expiration: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Open a Drive push-notification channel for a spreadsheet file.

        Returns the channel resource (`id`, `resourceId`, `expiration` in ms).
        """
        body: Dict[str, Any] = {"id": channel_id, "type": "web_hook", "address": address}
        if expiration is not None:
            body["expiration"] = int(expiration.replace(tzinfo=timezone.utc).timestamp() * 1000)

        response = await self._drive_post(access_token, f"/files/{file_id}/watch", body, f"watch {file_id}")
        return response.json()

    async def stop_channel(self, access_token: str, channel_id: str, resource_id: str) -> None:
        await self._drive_post(
            access_token,
            "/channels/stop",
            {"id": channel_id, "resourceId": resource_id},
            f"stop channel {channel_id}",
        )

    async def close(self):
        await self.http.aclose()

    async def _drive_post(self, access_token: str, path: str, body: Dict[str, Any], description: str) -> httpx.Response:
        response = await self.http.post(
            f"{DRIVE_API_URL}{path}",
            json=body,
            headers={"Authorization": f"Bearer {access_token}"},
        )
        if response.is_success:
            return response

        logger.error(f"Drive API {description} failed with {response.status_code}: {response.text[:200]}")
        if response.status_code == 429:
            raise SheetRateLimitError("Google Drive API quota exceeded. Please try again later.")
        if response.status_code == 403:
            raise SheetAccessError("Permission denied. Please check spreadsheet access.")
        response.raise_for_status()
        return response

    async def _with_retry(self, call: Callable[[], Any], description: str) -> Any:
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await asyncio.to_thread(call)
            except gspread.exceptions.APIError as e:
                status = _status_of(e)
                if is_retryable(e) and attempt < self.max_attempts:
                    delay = self.base_delay * (2 ** (attempt - 1))
                    logger.warning(
                        f"Sheets API {description} failed with {status} "
                        f"(attempt {attempt}/{self.max_attempts}), retrying in {delay}s"
                    )
                    await asyncio.sleep(delay)
                    continue

                logger.error(f"Sheets API {description} failed with {status}: {e}")
                if is_rate_limited(e):
                    raise SheetRateLimitError(
                        "Google Sheets API quota exceeded. Please try again later."
                    ) from e
                if status == 403:
                    raise SheetAccessError("Permission denied. Please check spreadsheet access.") from e
                raise
