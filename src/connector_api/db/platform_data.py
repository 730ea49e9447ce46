"""Typed views over PlatformConnection.platform_data (one schema per platform)."""

from datetime import datetime
from typing import Dict, List, Optional, Type, Union

from pydantic import BaseModel

from .models import PlatformConnection, PlatformType


class BasePlatformData(BaseModel):
    """Fields every platform shares."""

    last_token_refresh: Optional[datetime] = None
    account_email: Optional[str] = None

    class Config:
        extra = "allow"


class GoogleSheetsPlatformData(BasePlatformData):
    connected_spreadsheets: List[str] = []


class YoucanPlatformData(BasePlatformData):
    store_slug: Optional[str] = None


class ShopifyPlatformData(BasePlatformData):
    shop_domain: Optional[str] = None


PlatformData = Union[GoogleSheetsPlatformData, YoucanPlatformData, ShopifyPlatformData]

PLATFORM_DATA_MODELS: Dict[PlatformType, Type[BasePlatformData]] = {
    PlatformType.GOOGLE_SHEETS: GoogleSheetsPlatformData,
    PlatformType.YOUCAN: YoucanPlatformData,
    PlatformType.SHOPIFY: ShopifyPlatformData,
}


def read_platform_data(connection: PlatformConnection) -> PlatformData:
    """Validate the stored JSON against the connection's platform schema."""
    model = PLATFORM_DATA_MODELS[PlatformType(connection.platform_type)]
    return model.model_validate(connection.platform_data or {})


def write_platform_data(connection: PlatformConnection, data: PlatformData) -> None:
    """Store a validated platform data model back on the connection."""
    expected = PLATFORM_DATA_MODELS[PlatformType(connection.platform_type)]
    if not isinstance(data, expected):
        raise TypeError(
            f"{type(data).__name__} does not belong to platform {connection.platform_type}"
        )
    # Assign a new dict so SQLAlchemy notices the change on the JSON column
    connection.platform_data = data.model_dump(mode="json", exclude_none=True)
