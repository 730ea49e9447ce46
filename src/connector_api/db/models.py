"""SQLAlchemy models for connections, sync operations and imported orders."""

import enum
import uuid
from datetime import datetime
from typing import List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, utcnow


def _new_id() -> str:
    return str(uuid.uuid4())


def _enum_column(enum_cls):
    # Persist enum values (not member names) as plain strings
    return Enum(
        enum_cls,
        native_enum=False,
        length=32,
        values_callable=lambda members: [m.value for m in members],
    )


class PlatformType(str, enum.Enum):
    GOOGLE_SHEETS = "GOOGLE_SHEETS"
    YOUCAN = "YOUCAN"
    SHOPIFY = "SHOPIFY"


class ConnectionStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    REVOKED = "REVOKED"


class SyncOperationType(str, enum.Enum):
    MANUAL = "manual"
    WEBHOOK = "webhook"
    POLLING = "polling"


class SyncStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SyncStatus.COMPLETED, SyncStatus.FAILED)


class PlatformConnection(Base):
    """
    One linked external account.

    Tokens are stored encrypted; the plaintext never reaches this table.
    """

    __tablename__ = "platform_connections"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    platform_type: Mapped[PlatformType] = mapped_column(_enum_column(PlatformType), nullable=False)
    platform_account_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    status: Mapped[ConnectionStatus] = mapped_column(
        _enum_column(ConnectionStatus), default=ConnectionStatus.ACTIVE, nullable=False, index=True
    )

    # Encrypted tokens
    access_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    refresh_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    token_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    scopes: Mapped[list] = mapped_column(JSON, default=list, nullable=False)

    # Ownership
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    organization_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)

    # Platform-specific metadata (validated through connector_api.db.platform_data)
    platform_data: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)

    # Error tracking
    last_error_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Sync counters
    sync_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_sync_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class SpreadsheetConnection(Base):
    """A spreadsheet reachable through a connection, optionally enabled for order sync."""

    __tablename__ = "spreadsheet_connections"
    __table_args__ = (UniqueConstraint("connection_id", "spreadsheet_id"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    connection_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("platform_connections.id"), index=True, nullable=False
    )
    spreadsheet_id: Mapped[str] = mapped_column(String(128), nullable=False)
    spreadsheet_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    is_order_sync: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    order_sync_config: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    last_sync_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_sync_row: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_orders: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # Rows that errored on their last attempt; polling retries them
    failed_rows: Mapped[list] = mapped_column(JSON, default=list, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class WebhookSubscription(Base):
    """Push-notification channel registered with the sheet provider."""

    __tablename__ = "webhook_subscriptions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    connection_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("platform_connections.id"), nullable=False
    )
    spreadsheet_id: Mapped[str] = mapped_column(String(128), nullable=False)
    subscription_id: Mapped[str] = mapped_column(String(128), nullable=False)
    resource_id: Mapped[str] = mapped_column(String(255), index=True, nullable=False)
    expiration: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class SyncOperation(Base):
    """One execution of a sheet sync. Immutable once completed or failed."""

    __tablename__ = "sync_operations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    connection_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("platform_connections.id"), index=True, nullable=False
    )
    spreadsheet_id: Mapped[str] = mapped_column(String(128), nullable=False)
    operation_type: Mapped[SyncOperationType] = mapped_column(
        _enum_column(SyncOperationType), nullable=False
    )
    status: Mapped[SyncStatus] = mapped_column(
        _enum_column(SyncStatus), default=SyncStatus.PENDING, nullable=False
    )
    orders_processed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    orders_created: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    orders_skipped: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_details: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class Store(Base):
    __tablename__ = "stores"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class Customer(Base):
    __tablename__ = "customers"
    __table_args__ = (UniqueConstraint("organization_id", "phone"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), default="", nullable=False)
    phone: Mapped[str] = mapped_column(String(32), nullable=False)
    alternate_phone: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    city: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    postal_code: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class Product(Base):
    __tablename__ = "products"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    name: Mapped[str] = mapped_column(String(500), nullable=False)
    sku: Mapped[Optional[str]] = mapped_column(String(100), index=True, nullable=True)
    price: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="MAD", nullable=False)
    stock_quantity: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class Order(Base):
    """
    An order materialized from a sheet row.

    Duplicate-flag fields are set when the row resembled an existing order
    closely enough to warrant review but not enough to be skipped.
    """

    __tablename__ = "orders"
    __table_args__ = (UniqueConstraint("organization_id", "order_number"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    store_id: Mapped[str] = mapped_column(String(36), ForeignKey("stores.id"), nullable=False)
    customer_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("customers.id"), index=True, nullable=False
    )
    order_number: Mapped[str] = mapped_column(String(32), index=True, nullable=False)
    status: Mapped[str] = mapped_column(String(32), default="NEW", nullable=False)
    order_date: Mapped[datetime] = mapped_column(DateTime, index=True, nullable=False)

    subtotal: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    shipping: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    total: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="MAD", nullable=False)
    payment_method: Mapped[str] = mapped_column(String(16), default="COD", nullable=False)
    source: Mapped[str] = mapped_column(String(32), nullable=False)

    shipping_address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    shipping_city: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Sheet provenance
    external_reference: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    spreadsheet_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    sheet_row_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Duplicate flagging
    is_flagged_duplicate: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    duplicate_of_order_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    duplicate_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False, index=True)

    customer: Mapped[Customer] = relationship(lazy="selectin")
    items: Mapped[List["OrderItem"]] = relationship(
        back_populates="order", lazy="selectin", cascade="all, delete-orphan"
    )


class OrderItem(Base):
    __tablename__ = "order_items"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    order_id: Mapped[str] = mapped_column(String(36), ForeignKey("orders.id"), index=True, nullable=False)
    product_id: Mapped[str] = mapped_column(String(36), ForeignKey("products.id"), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    unit_price: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    total: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    variant: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    order: Mapped[Order] = relationship(back_populates="items")
    product: Mapped[Product] = relationship(lazy="selectin")


class OrderActivity(Base):
    __tablename__ = "order_activities"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    order_id: Mapped[str] = mapped_column(String(36), ForeignKey("orders.id"), index=True, nullable=False)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    # "metadata" is reserved on declarative classes
    activity_metadata: Mapped[dict] = mapped_column("metadata", JSON, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class OrderSequence(Base):
    """Per-organization, per-day order number counter."""

    __tablename__ = "order_sequences"

    organization_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    sequence_date: Mapped[str] = mapped_column(String(8), primary_key=True)  # YYYYMMDD
    last_value: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
