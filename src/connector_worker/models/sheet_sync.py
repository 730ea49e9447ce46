"""Value objects for sheet order sync."""

import asyncio
import enum
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from connector_api.config.constants import DEFAULT_BATCH_SIZE, DEFAULT_MAX_CONCURRENCY


class PhoneFormat(str, enum.Enum):
    MOROCCO = "morocco"
    INTERNATIONAL = "international"
    ANY = "any"


class DuplicateHandling(str, enum.Enum):
    SKIP = "skip"
    FLAG = "flag"
    CREATE = "create"


class ColumnMapping(BaseModel):
    """Column letter for each order field; empty means the sheet has no such column."""

    order_id: Optional[str] = "A"
    date: Optional[str] = "B"
    customer_name: str = "C"
    phone: str = "D"
    address: Optional[str] = "E"
    city: Optional[str] = "F"
    product_name: str = "G"
    product_sku: Optional[str] = "H"
    product_quantity: Optional[str] = "I"
    product_variant: Optional[str] = "J"
    price: Optional[str] = "K"
    page_url: Optional[str] = "L"
    alternate_phone: Optional[str] = None
    email: Optional[str] = None
    postal_code: Optional[str] = None
    notes: Optional[str] = None
    status: Optional[str] = None
    error_message: Optional[str] = None


class ValidationRules(BaseModel):
    require_phone: bool = True
    require_product: bool = True
    require_price: bool = True
    phone_format: PhoneFormat = PhoneFormat.MOROCCO
    price_validation: bool = True


class OrderSyncConfig(BaseModel):
    """Per-spreadsheet sync configuration (stored as JSON on the spreadsheet link)."""

    column_mapping: ColumnMapping = ColumnMapping()
    header_row: int = 1
    data_start_row: int = 2
    sheet_name: str = "Orders"
    auto_sync: bool = True
    duplicate_handling: DuplicateHandling = DuplicateHandling.SKIP
    validation_rules: ValidationRules = ValidationRules()


@dataclass
class SheetOrder:
    """One parsed spreadsheet row. Never persisted directly."""

    row_number: int
    date: str
    customer_name: str
    phone: str
    product_name: str
    price: float = 0.0
    product_quantity: int = 1
    order_id: Optional[str] = None
    alternate_phone: Optional[str] = None
    email: Optional[str] = None
    address: str = ""
    city: str = ""
    postal_code: Optional[str] = None
    product_sku: Optional[str] = None
    product_variant: Optional[str] = None
    page_url: Optional[str] = None
    notes: Optional[str] = None
    status: Optional[str] = None
    error_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class DuplicateType(str, enum.Enum):
    EXACT = "exact"
    SIMILAR = "similar"
    NONE = "none"


class DetectionTier(str, enum.Enum):
    EXACT_WINDOW = "exact_window"
    EXTENDED_WINDOW = "extended_window"
    FUZZY_WINDOW = "fuzzy_window"


@dataclass
class DuplicateDetectionResult:
    is_duplicate: bool
    duplicate_type: DuplicateType = DuplicateType.NONE
    existing_order_id: Optional[str] = None
    existing_order_number: Optional[str] = None
    similarity_score: float = 0.0
    conflicting_fields: List[str] = field(default_factory=list)
    detection_tier: Optional[DetectionTier] = None
    existing_summary: Optional[str] = None  # "name - phone - date" of the matched order

    @classmethod
    def none(cls) -> "DuplicateDetectionResult":
        return cls(is_duplicate=False)


class ResolutionAction(str, enum.Enum):
    CREATE = "create"
    SKIP = "skip"


@dataclass
class DuplicateResolution:
    action: ResolutionAction
    flag: bool = False
    reason: Optional[str] = None
    notes: Optional[str] = None


class SyncErrorCategory(str, enum.Enum):
    VALIDATION = "validation"
    DUPLICATE = "duplicate"
    SYSTEM = "system"
    PRODUCT_NOT_FOUND = "product_not_found"
    CUSTOMER_CREATION = "customer_creation"
    RATE_LIMIT = "rate_limit"


@dataclass
class SyncError:
    """Row-scoped failure recorded on the SyncOperation."""

    row_number: int
    category: SyncErrorCategory
    message: str
    order_data: Optional[Dict[str, Any]] = None
    suggested_fix: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "row_number": self.row_number,
            "category": self.category.value,
            "message": self.message,
            "order_data": self.order_data,
            "suggested_fix": self.suggested_fix,
        }


class RowOutcome(str, enum.Enum):
    CREATED = "created"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class RowResult:
    row_number: int
    outcome: RowOutcome
    order_id: Optional[str] = None
    order_number: Optional[str] = None
    error: Optional[SyncError] = None
    reason: Optional[str] = None


@dataclass
class SyncOptions:
    start_row: Optional[int] = None
    end_row: Optional[int] = None
    force_resync: bool = False
    batch_size: int = DEFAULT_BATCH_SIZE
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    cancel_event: Optional[asyncio.Event] = None
    # Rows before start_row to process again (earlier failures)
    retry_rows: List[int] = field(default_factory=list)


@dataclass
class SyncResult:
    """Result of a sheet sync run."""
    success: bool
    orders_processed: int
    orders_created: int
    orders_skipped: int
    errors: List[SyncError]
    duration: float
    started_at: datetime
    completed_at: datetime
    cancelled: bool = False
    last_row: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "orders_processed": self.orders_processed,
            "orders_created": self.orders_created,
            "orders_skipped": self.orders_skipped,
            "errors": [e.to_dict() for e in self.errors],
            "duration": self.duration,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat(),
            "cancelled": self.cancelled,
            "last_row": self.last_row,
        }
