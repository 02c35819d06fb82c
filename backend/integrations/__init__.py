"""
Commerce platform integration contracts.

The raw platform API client is provided by the deployment and registered
under a provider name:

    from integrations.base import register_client

    @register_client("bsale")
    def build_bsale_client(settings):
        return BsaleClient(timeout=settings.collaborator_timeout_seconds)
"""

from integrations.base import (
    CommercePlatformClient,
    DateRange,
    SaleLine,
    StockItem,
    TenantCredentials,
    get_client,
    parse_sales,
    parse_stock,
    register_client,
)

__all__ = [
    "CommercePlatformClient",
    "DateRange",
    "SaleLine",
    "StockItem",
    "TenantCredentials",
    "get_client",
    "parse_sales",
    "parse_stock",
    "register_client",
]
