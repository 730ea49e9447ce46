"""OAuth2 platform registry: endpoints, scopes and PKCE support per platform."""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from connector_api.config.settings import Settings
from connector_api.core.exceptions import OAuthConfigurationError
from connector_api.core.logger import setup_logger
from connector_api.db.models import PlatformType

logger = setup_logger(__name__)

GOOGLE_AUTHORIZATION_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_SCOPES = [
    "https://www.googleapis.com/auth/spreadsheets",
    "https://www.googleapis.com/auth/drive.readonly",
]

YOUCAN_AUTHORIZATION_URL = "https://youcan.shop/oauth/authorize"
YOUCAN_TOKEN_URL = "https://youcan.shop/oauth/token"

# Shopify endpoints live on the merchant's own shop domain
SHOPIFY_AUTHORIZATION_URL = "https://{shop}.myshopify.com/admin/oauth/authorize"
SHOPIFY_TOKEN_URL = "https://{shop}.myshopify.com/admin/oauth/access_token"

COMMERCE_SCOPES = [
    "read_orders",
    "write_orders",
    "read_products",
    "write_products",
    "read_customers",
    "write_customers",
]


@dataclass
class OAuthPlatformConfig:
    """OAuth2 client configuration for one platform."""

    platform: PlatformType
    client_id: str
    client_secret: str
    redirect_uri: str
    authorization_url: str
    token_url: str
    scopes: List[str] = field(default_factory=list)
    use_pkce: bool = True

    @property
    def requires_shop(self) -> bool:
        return "{shop}" in self.authorization_url

    def resolve_authorization_url(self, shop: Optional[str] = None) -> str:
        return self._resolve(self.authorization_url, shop)

    def resolve_token_url(self, shop: Optional[str] = None) -> str:
        return self._resolve(self.token_url, shop)

    def _resolve(self, url: str, shop: Optional[str]) -> str:
        if "{shop}" not in url:
            return url
        if not shop:
            raise OAuthConfigurationError(f"{self.platform.value} requires a shop domain")
        return url.format(shop=shop)


class OAuthPlatformRegistry:
    """Holds the configured platforms; incomplete ones are left out."""

    def __init__(self, configs: Optional[Dict[PlatformType, OAuthPlatformConfig]] = None):
        self._configs: Dict[PlatformType, OAuthPlatformConfig] = dict(configs or {})

    @classmethod
    def from_settings(cls, settings: Settings) -> "OAuthPlatformRegistry":
        candidates = [
            (
                PlatformType.GOOGLE_SHEETS,
                settings.google_client_id,
                settings.google_client_secret,
                settings.google_redirect_uri,
                GOOGLE_AUTHORIZATION_URL,
                GOOGLE_TOKEN_URL,
                GOOGLE_SCOPES,
                True,
            ),
            (
                PlatformType.YOUCAN,
                settings.youcan_client_id,
                settings.youcan_client_secret,
                settings.youcan_redirect_uri,
                YOUCAN_AUTHORIZATION_URL,
                YOUCAN_TOKEN_URL,
                COMMERCE_SCOPES,
                True,
            ),
            (
                PlatformType.SHOPIFY,
                settings.shopify_client_id,
                settings.shopify_client_secret,
                settings.shopify_redirect_uri,
                SHOPIFY_AUTHORIZATION_URL,
                SHOPIFY_TOKEN_URL,
                COMMERCE_SCOPES,
                False,  # Shopify does not support PKCE
            ),
        ]

        configs = {}
        for platform, client_id, client_secret, redirect_uri, auth_url, token_url, scopes, use_pkce in candidates:
            if not (client_id and client_secret and redirect_uri):
                logger.warning(f"{platform.value} OAuth2 configuration incomplete, platform disabled")
                continue
            configs[platform] = OAuthPlatformConfig(
                platform=platform,
                client_id=client_id,
                client_secret=client_secret,
                redirect_uri=redirect_uri,
                authorization_url=auth_url,
                token_url=token_url,
                scopes=list(scopes),
                use_pkce=use_pkce,
            )
        return cls(configs)

    def get(self, platform: PlatformType) -> OAuthPlatformConfig:
        config = self._configs.get(platform)
        if config is None:
            raise OAuthConfigurationError(f"OAuth2 is not configured for {platform.value}")
        return config

    def is_configured(self, platform: PlatformType) -> bool:
        return platform in self._configs

    @property
    def platforms(self) -> List[PlatformType]:
        return list(self._configs)
