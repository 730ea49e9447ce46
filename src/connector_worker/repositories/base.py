"""Abstract lookup over existing orders (used by duplicate detection)."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from connector_api.db.models import Order


class OrderLookup(ABC):
    """Read-only queries against the order store.

    Returned orders have their customer and items (with products) loaded.
    """

    @abstractmethod
    async def find_by_phone(
        self,
        organization_id: str,
        phone: str,
        date_from: datetime,
        date_to: datetime,
        limit: Optional[int] = None,
    ) -> List[Order]:
        """Orders whose customer has this phone, with order_date in [date_from, date_to).

        Most recent first.
        """
        pass

    @abstractmethod
    async def find_fuzzy_candidates(
        self,
        organization_id: str,
        date_from: datetime,
        date_to: datetime,
        first_name: str,
        address_prefix: str,
        limit: int,
    ) -> List[Order]:
        """Orders in [date_from, date_to) whose customer first name contains
        `first_name` or whose shipping address contains `address_prefix`
        (both case-insensitive).
        """
        pass
