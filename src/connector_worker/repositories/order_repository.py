"""SQLAlchemy implementation of the order lookup."""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import func, or_, select

from connector_api.db.models import Customer, Order
from connector_worker.repositories.base import OrderLookup


class SqlOrderLookup(OrderLookup):
    """Order lookups through an async session factory."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def find_by_phone(
        self,
        organization_id: str,
        phone: str,
        date_from: datetime,
        date_to: datetime,
        limit: Optional[int] = None,
    ) -> List[Order]:
        query = (
            select(Order)
            .join(Customer, Order.customer_id == Customer.id)
            .where(
                Order.organization_id == organization_id,
                Customer.phone == phone,
                Order.order_date >= date_from,
                Order.order_date < date_to,
            )
            .order_by(Order.order_date.desc(), Order.created_at.desc())
        )
        if limit:
            query = query.limit(limit)

        async with self.session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def find_fuzzy_candidates(
        self,
        organization_id: str,
        date_from: datetime,
        date_to: datetime,
        first_name: str,
        address_prefix: str,
        limit: int,
    ) -> List[Order]:
        matchers = []
        if first_name:
            matchers.append(func.lower(Customer.first_name).contains(first_name.lower(), autoescape=True))
        if address_prefix:
            matchers.append(func.lower(Order.shipping_address).contains(address_prefix.lower(), autoescape=True))
        if not matchers:
            return []

        query = (
            select(Order)
            .join(Customer, Order.customer_id == Customer.id)
            .where(
                Order.organization_id == organization_id,
                Order.order_date >= date_from,
                Order.order_date < date_to,
                or_(*matchers),
            )
            .order_by(Order.order_date.desc())
            .limit(limit)
        )

        async with self.session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())
