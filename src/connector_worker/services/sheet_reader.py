"""Sheet Reader Adapter: column-mapped parsing of spreadsheet rows into SheetOrder."""

import re
from datetime import date
from typing import Any, List, Optional

from connector_api.config.constants import EMPTY_SHEET_LAST_ROW, LAST_ROW_FALLBACK
from connector_api.core.logger import setup_logger
from connector_worker.integrations.sheets_client import SheetsClient
from connector_worker.models.sheet_sync import ColumnMapping, OrderSyncConfig, SheetOrder

logger = setup_logger(__name__)

# Rows are always read at least up to column Z
MIN_LAST_COLUMN_INDEX = 25

_PRICE_STRIP = re.compile(r"[^\d.\-]")
_LEADING_INT = re.compile(r"\s*([+-]?\d+)")


def column_letter_to_index(letter: str) -> int:
    """Convert a column letter to a zero-based index (A -> 0, Z -> 25, AA -> 26)."""
    letter = (letter or "").strip().upper()
    if not letter or not letter.isalpha() or not letter.isascii():
        raise ValueError(f"Invalid column letter: {letter!r}")

    index = 0
    for char in letter:
        index = index * 26 + (ord(char) - ord("A") + 1)
    return index - 1


def column_index_to_letter(index: int) -> str:
    """Convert a zero-based column index to its letter (0 -> A, 26 -> AA)."""
    if index < 0:
        raise ValueError(f"Invalid column index: {index}")

    result = ""
    index += 1
    while index > 0:
        index -= 1
        result = chr(index % 26 + ord("A")) + result
        index //= 26
    return result


def parse_price(text: str) -> float:
    """Permissive price parsing ("1 200,00 MAD" style noise is stripped); 0 on failure."""
    cleaned = _PRICE_STRIP.sub("", text or "")
    try:
        return float(cleaned)
    except ValueError:
        return 0.0


def parse_quantity(text: str) -> int:
    """Leading integer of the cell; blank, unparseable or zero gives 1."""
    match = _LEADING_INT.match(text or "")
    if not match:
        return 1
    return int(match.group(1)) or 1


class SheetReader:
    """Turns a block of sheet rows into SheetOrder values using a ColumnMapping."""

    def __init__(self, sheets_client: SheetsClient):
        self.sheets_client = sheets_client

    async def read_orders(
        self,
        access_token: str,
        spreadsheet_id: str,
        config: OrderSyncConfig,
        start_row: Optional[int] = None,
        end_row: Optional[int] = None,
    ) -> List[SheetOrder]:
        """
        Read and parse rows [start_row, end_row] (1-based, inclusive).

        Without an end row, the last non-empty cell of column A decides it.
        Blank rows produce nothing; malformed rows are logged and skipped.
        """
        start = max(start_row or config.data_start_row, config.header_row + 1)
        if end_row is None:
            end_row = await self.find_last_row(access_token, spreadsheet_id, config.sheet_name)
        if end_row < start:
            logger.info(f"No data rows in {config.sheet_name} (start={start}, end={end_row})")
            return []

        last_column = column_index_to_letter(self._last_mapped_index(config.column_mapping))
        range_name = f"{config.sheet_name}!A{start}:{last_column}{end_row}"
        logger.info(f"Reading {range_name} from spreadsheet {spreadsheet_id}")

        values = await self.sheets_client.get_values(access_token, spreadsheet_id, range_name)

        orders = []
        for offset, row in enumerate(values):
            row_number = start + offset
            try:
                order = self.parse_row(row, row_number, config.column_mapping)
            except Exception as e:
                logger.warning(f"Skipping malformed row {row_number}: {e}")
                continue
            if order is not None:
                orders.append(order)

        logger.info(f"Parsed {len(orders)} orders from {len(values)} rows")
        return orders

    async def find_last_row(self, access_token: str, spreadsheet_id: str, sheet_name: str) -> int:
        """1-based index of the last non-empty cell in column A."""
        try:
            values = await self.sheets_client.get_values(access_token, spreadsheet_id, f"{sheet_name}!A:A")
        except Exception as e:
            logger.warning(f"Failed to find last row of {sheet_name}, using {LAST_ROW_FALLBACK}: {e}")
            return LAST_ROW_FALLBACK

        for index in range(len(values) - 1, -1, -1):
            row = values[index]
            if row and str(row[0]).strip():
                return index + 1
        return EMPTY_SHEET_LAST_ROW

    def parse_row(self, row: List[Any], row_number: int, mapping: ColumnMapping) -> Optional[SheetOrder]:
        """Build a SheetOrder from one row, or None if the row is blank."""
        if not isinstance(row, list):
            raise ValueError(f"Row {row_number} is not a list of cells")

        def cell(letter: Optional[str]) -> str:
            if not letter:
                return ""
            index = column_letter_to_index(letter)
            if index >= len(row) or row[index] is None:
                return ""
            return str(row[index]).strip()

        def optional(letter: Optional[str]) -> Optional[str]:
            return cell(letter) or None

        customer_name = cell(mapping.customer_name)
        phone = cell(mapping.phone)
        product_name = cell(mapping.product_name)
        if not customer_name and not phone and not product_name:
            return None

        return SheetOrder(
            row_number=row_number,
            order_id=optional(mapping.order_id),
            date=cell(mapping.date) or date.today().isoformat(),
            customer_name=customer_name,
            phone=phone,
            alternate_phone=optional(mapping.alternate_phone),
            email=optional(mapping.email),
            address=cell(mapping.address),
            city=cell(mapping.city),
            postal_code=optional(mapping.postal_code),
            product_name=product_name,
            product_sku=optional(mapping.product_sku),
            product_quantity=parse_quantity(cell(mapping.product_quantity)),
            product_variant=optional(mapping.product_variant),
            price=parse_price(cell(mapping.price)),
            page_url=optional(mapping.page_url),
            notes=optional(mapping.notes),
            status=optional(mapping.status),
            error_message=optional(mapping.error_message),
        )

    def _last_mapped_index(self, mapping: ColumnMapping) -> int:
        indexes = [
            column_letter_to_index(letter)
            for letter in mapping.model_dump().values()
            if letter
        ]
        return max(indexes + [MIN_LAST_COLUMN_INDEX])
