"""Database module."""

from .base import Base, get_engine, get_session_factory, init_db, utcnow
from .models import (
    ConnectionStatus,
    Customer,
    Order,
    OrderActivity,
    OrderItem,
    OrderSequence,
    PlatformConnection,
    PlatformType,
    Product,
    SpreadsheetConnection,
    Store,
    SyncOperation,
    SyncOperationType,
    SyncStatus,
    WebhookSubscription,
)

__all__ = [
    "Base",
    "get_engine",
    "get_session_factory",
    "init_db",
    "utcnow",
    "ConnectionStatus",
    "Customer",
    "Order",
    "OrderActivity",
    "OrderItem",
    "OrderSequence",
    "PlatformConnection",
    "PlatformType",
    "Product",
    "SpreadsheetConnection",
    "Store",
    "SyncOperation",
    "SyncOperationType",
    "SyncStatus",
    "WebhookSubscription",
]
