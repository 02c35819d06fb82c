"""
Commerce Platform Client — Abstract Base Class

The sync pipeline never talks HTTP itself. It consumes a client that can
list a tenant's current stock and its sales lines for a date range; the
concrete client (Bsale, Shopify, ...) lives outside this package and is
registered under a provider name.

Payloads are validated with pydantic so a malformed response fails the
tenant's sync instead of writing garbage.
"""

from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

logger = structlog.get_logger()


# ── Credentials + request shapes ──────────────────────────────────────────


@dataclass(frozen=True)
class TenantCredentials:
    """What the client needs to act on behalf of one tenant."""

    tenant_id: str
    client_code: str | None
    access_token: str | None


@dataclass(frozen=True)
class DateRange:
    """Half-open [start, end) range of document dates, naive UTC."""

    start: datetime
    end: datetime


# ── Response payloads ─────────────────────────────────────────────────────


class StockItem(BaseModel):
    """Current stock for one variant."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    variant_id: int = Field(alias="variantId")
    sku: str | None = None
    quantity_available: int = Field(alias="quantityAvailable")
    product_name: str | None = Field(default=None, alias="productName")


class SaleLine(BaseModel):
    """One sold line of a sales document."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    variant_id: int = Field(alias="variantId")
    quantity_sold: int = Field(alias="quantitySold")
    document_date: datetime | date = Field(alias="documentDate")
    document_id: str | None = Field(default=None, alias="documentId")


_stock_adapter = TypeAdapter(list[StockItem])
_sales_adapter = TypeAdapter(list[SaleLine])


def parse_stock(payload: Any) -> list[StockItem]:
    """Validate a list_stock response (models or raw dicts)."""
    return _stock_adapter.validate_python(list(payload))


def parse_sales(payload: Any) -> list[SaleLine]:
    """Validate a list_sales_documents response (models or raw dicts)."""
    return _sales_adapter.validate_python(list(payload))


# ── Abstract client ───────────────────────────────────────────────────────


class CommercePlatformClient(ABC):
    """
    Contract the sync orchestrator depends on.

    Implementations are expected to carry their own request timeouts and
    retries; the orchestrator adds an overall timeout per call on top.
    """

    @abstractmethod
    async def list_stock(self, credentials: TenantCredentials) -> list[StockItem | dict[str, Any]]:
        """Return current available stock for every variant of the tenant."""
        ...

    @abstractmethod
    async def list_sales_documents(
        self,
        credentials: TenantCredentials,
        date_range: DateRange,
    ) -> list[SaleLine | dict[str, Any]]:
        """Return every sold line whose document date falls in the range."""
        ...


# ── Client registry ───────────────────────────────────────────────────────

ClientFactory = Callable[[Any], CommercePlatformClient]

_CLIENT_REGISTRY: dict[str, ClientFactory] = {}


def register_client(provider: str):
    """Decorator: register a client factory (or class) for a provider name."""

    def _register(factory: ClientFactory) -> ClientFactory:
        _CLIENT_REGISTRY[provider] = factory
        logger.debug("integrations.client_registered", provider=provider)
        return factory

    return _register


def get_client(provider: str, settings: Any) -> CommercePlatformClient:
    """Factory: build the registered client for the given provider."""
    factory = _CLIENT_REGISTRY.get(provider)
    if factory is None:
        raise ValueError(f"No commerce client registered for provider: {provider}")
    return factory(settings)
