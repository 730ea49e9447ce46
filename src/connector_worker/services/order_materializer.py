"""
Order Materializer.

Turns a validated sheet row into Customer, Product, Order, OrderItem and an
audit OrderActivity inside one database transaction.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from connector_api.config.constants import (
    DEFAULT_CURRENCY,
    DEFAULT_PAYMENT_METHOD,
    DEFAULT_PRODUCT_STOCK,
    ORDER_IMPORTED_ACTION,
    ORDER_NUMBER_PREFIX,
    ORDER_SOURCE,
)
from connector_api.core.exceptions import ConnectorError, SyncConfigurationError
from connector_api.core.logger import setup_logger
from connector_api.db.base import utcnow
from connector_api.db.models import (
    Customer,
    Order,
    OrderActivity,
    OrderItem,
    OrderSequence,
    Product,
    Store,
)
from connector_worker.models.sheet_sync import (
    DuplicateDetectionResult,
    DuplicateResolution,
    SheetOrder,
)
from connector_worker.services.duplicate_detector import normalize_phone
from connector_worker.services.order_validator import parse_order_date

logger = setup_logger(__name__)

ORDER_NUMBER_ATTEMPTS = 3


@dataclass
class MaterializationContext:
    """Where a row came from; recorded on the order's audit activity."""

    sync_operation_id: str
    connection_id: str
    spreadsheet_id: str


def format_order_number(day: datetime, sequence: int) -> str:
    return f"{ORDER_NUMBER_PREFIX}{day.strftime('%Y%m%d')}{sequence:04d}"


def split_name(full_name: str):
    """First word is the first name, everything after it the last name."""
    first, _, last = " ".join(full_name.split()).partition(" ")
    return first, last


class OrderMaterializer:
    """Persists sheet rows as orders."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def materialize(
        self,
        order: SheetOrder,
        organization_id: str,
        context: MaterializationContext,
        resolution: Optional[DuplicateResolution] = None,
        detection: Optional[DuplicateDetectionResult] = None,
    ) -> Order:
        """
        Create the order for one row. Either everything is written or nothing is.

        Raises:
            SyncConfigurationError: organization has no active store
            ConnectorError: customer/product creation or numbering failed
        """
        async with self.session_factory() as session:
            async with session.begin():
                store = await self._get_store(session, organization_id)
                customer = await self._upsert_customer(session, organization_id, order)
                product = await self._find_or_create_product(session, organization_id, order)
                order_number = await self._next_order_number(session, organization_id, utcnow())

                quantity = max(order.product_quantity, 1)
                subtotal = order.price * quantity
                flagged = bool(resolution and resolution.flag)

                notes = [n for n in (order.notes, resolution.notes if flagged else None) if n]

                created = Order(
                    organization_id=organization_id,
                    store_id=store.id,
                    customer_id=customer.id,
                    order_number=order_number,
                    status="NEW",
                    order_date=parse_order_date(order.date) or utcnow(),
                    subtotal=subtotal,
                    shipping=0.0,
                    total=subtotal,
                    currency=DEFAULT_CURRENCY,
                    payment_method=DEFAULT_PAYMENT_METHOD,
                    source=ORDER_SOURCE,
                    shipping_address=order.address,
                    shipping_city=order.city,
                    notes="\n\n".join(notes) or None,
                    external_reference=order.order_id,
                    spreadsheet_id=context.spreadsheet_id,
                    sheet_row_number=order.row_number,
                    is_flagged_duplicate=flagged,
                    duplicate_of_order_id=detection.existing_order_id if flagged and detection else None,
                    duplicate_score=detection.similarity_score if flagged and detection else None,
                )
                created.customer = customer
                created.items = [
                    OrderItem(
                        product=product,
                        quantity=quantity,
                        unit_price=order.price,
                        total=subtotal,
                        variant=order.product_variant,
                    )
                ]
                session.add(created)
                await session.flush()

                session.add(OrderActivity(
                    order_id=created.id,
                    action=ORDER_IMPORTED_ACTION,
                    description=f"Order imported from Google Sheets (Row {order.row_number})",
                    activity_metadata={
                        "sync_operation_id": context.sync_operation_id,
                        "connection_id": context.connection_id,
                        "spreadsheet_id": context.spreadsheet_id,
                        "row_number": order.row_number,
                    },
                ))

        logger.info(
            f"Created order {created.order_number} from row {order.row_number}",
            extra={"sync_operation_id": context.sync_operation_id, "spreadsheet_id": context.spreadsheet_id},
        )
        return created

    async def _get_store(self, session, organization_id: str) -> Store:
        store = await session.scalar(
            select(Store)
            .where(Store.organization_id == organization_id, Store.is_active.is_(True))
            .order_by(Store.created_at)
            .limit(1)
        )
        if store is None:
            raise SyncConfigurationError(f"Active store not found for organization {organization_id}")
        return store

    async def _upsert_customer(self, session, organization_id: str, order: SheetOrder) -> Customer:
        phone = normalize_phone(order.phone)
        lookup = select(Customer).where(Customer.organization_id == organization_id, Customer.phone == phone)
        customer = await session.scalar(lookup)

        if customer is None:
            first_name, last_name = split_name(order.customer_name)
            customer = Customer(
                organization_id=organization_id,
                first_name=first_name,
                last_name=last_name,
                phone=phone,
                alternate_phone=order.alternate_phone,
                email=order.email,
                address=order.address or None,
                city=order.city or None,
                postal_code=order.postal_code,
            )
            session.add(customer)
            try:
                async with session.begin_nested():
                    await session.flush()
                return customer
            except IntegrityError as e:
                # A concurrent row may have created the same customer
                customer = await session.scalar(lookup)
                if customer is None:
                    raise ConnectorError(f"Failed to create customer for phone {phone}: {e}") from e

        # Existing customer: only fill what is missing
        for attr, value in (
            ("email", order.email),
            ("alternate_phone", order.alternate_phone),
            ("address", order.address),
            ("city", order.city),
            ("postal_code", order.postal_code),
        ):
            if value and not getattr(customer, attr):
                setattr(customer, attr, value)
        return customer

    async def _find_or_create_product(self, session, organization_id: str, order: SheetOrder) -> Product:
        product = None
        sku = (order.product_sku or "").strip()
        if sku:
            product = await session.scalar(
                select(Product).where(Product.organization_id == organization_id, Product.sku == sku).limit(1)
            )
        if product is None:
            product = await session.scalar(
                select(Product)
                .where(
                    Product.organization_id == organization_id,
                    func.lower(Product.name) == order.product_name.strip().lower(),
                )
                .limit(1)
            )
        if product is None:
            product = Product(
                organization_id=organization_id,
                name=order.product_name.strip(),
                sku=sku or None,
                price=order.price,
                currency=DEFAULT_CURRENCY,
                stock_quantity=DEFAULT_PRODUCT_STOCK,
                is_active=True,
            )
            session.add(product)
            await session.flush()
            logger.info(f"Created product '{product.name}' for organization {organization_id}")
        return product

    async def _next_order_number(self, session, organization_id: str, day: datetime) -> str:
        """Atomically take the next per-organization, per-day sequence value."""
        sequence_date = day.strftime("%Y%m%d")
        key = (OrderSequence.organization_id == organization_id, OrderSequence.sequence_date == sequence_date)

        for _ in range(ORDER_NUMBER_ATTEMPTS):
            bumped = await session.execute(
                update(OrderSequence)
                .where(*key)
                .values(last_value=OrderSequence.last_value + 1)
                .execution_options(synchronize_session=False)
            )
            if bumped.rowcount:
                value = await session.scalar(select(OrderSequence.last_value).where(*key))
                return format_order_number(day, value)

            # First order of the day: seed from numbers already issued
            issued = await session.scalar(
                select(func.count(Order.id)).where(
                    Order.organization_id == organization_id,
                    Order.order_number.like(f"{ORDER_NUMBER_PREFIX}{sequence_date}%"),
                )
            )
            value = (issued or 0) + 1
            try:
                async with session.begin_nested():
                    session.add(OrderSequence(
                        organization_id=organization_id,
                        sequence_date=sequence_date,
                        last_value=value,
                    ))
                return format_order_number(day, value)
            except IntegrityError:
                # Another writer seeded the counter first
                continue

        raise ConnectorError(f"Could not allocate an order number for organization {organization_id}")
