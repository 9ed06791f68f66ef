"""
Pydantic models for the Square sync core.

Three groups:
- Square API payloads (catalog items, inventory counts, OAuth tokens)
- Platform records (the canonical product/inventory shape of this system)
- Integration records persisted through the repository
"""

import json
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


_IDEMPOTENCY_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_DNS, "square-sync")


def idempotency_key(*parts: Any) -> str:
    """
    Stable Square idempotency key: the same parts always give the same key.

    Retrying an identical request therefore replays Square's stored
    result instead of applying the change twice.
    """
    payload = json.dumps(parts, sort_keys=True, separators=(",", ":"), default=str)
    return uuid.uuid5(_IDEMPOTENCY_NAMESPACE, payload).hex


IntegrationMode = Literal["sandbox", "production"]


# ---------------------------------------------------------------------------
# Square payloads
# ---------------------------------------------------------------------------


class SquareMoney(BaseModel):
    """Amount in the currency's minor unit (cents for USD)."""

    amount: int
    currency: str = "USD"


class SquareItemVariationData(BaseModel):
    item_id: str | None = None
    name: str | None = None
    sku: str | None = None
    pricing_type: str = "FIXED_PRICING"
    price_money: SquareMoney | None = None


class SquareItemVariation(BaseModel):
    """One sellable variation (size, color...) of a catalog item."""

    id: str
    type: str = "ITEM_VARIATION"
    version: int | None = None
    item_variation_data: SquareItemVariationData = Field(default_factory=SquareItemVariationData)

    @property
    def sku(self) -> str | None:
        return self.item_variation_data.sku

    @property
    def price_money(self) -> SquareMoney | None:
        return self.item_variation_data.price_money


class SquareItemData(BaseModel):
    name: str
    description: str | None = None
    category_id: str | None = None
    variations: list[SquareItemVariation] = Field(default_factory=list)
    image_ids: list[str] = Field(default_factory=list)


class SquareCatalogItem(BaseModel):
    """Square catalog object of type ITEM."""

    id: str
    type: str = "ITEM"
    version: int | None = None
    updated_at: datetime | None = None
    is_deleted: bool = False
    item_data: SquareItemData

    @property
    def name(self) -> str:
        return self.item_data.name

    @property
    def variations(self) -> list[SquareItemVariation]:
        return self.item_data.variations

    @property
    def first_variation(self) -> SquareItemVariation | None:
        return self.item_data.variations[0] if self.item_data.variations else None


class SquareInventoryCount(BaseModel):
    """Inventory count for one variation at one location."""

    catalog_object_id: str
    catalog_object_type: str = "ITEM_VARIATION"
    state: str = "IN_STOCK"
    location_id: str | None = None
    quantity: str | None = "0"
    calculated_at: datetime | None = None

    @field_validator("quantity", mode="before")
    @classmethod
    def quantity_as_text(cls, v: Any) -> str | None:
        """Square sends decimal strings; keep whatever arrives as text."""
        if v is None:
            return None
        return str(v)


class SquareLocation(BaseModel):
    id: str
    name: str | None = None
    status: str = "ACTIVE"
    merchant_id: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status.upper() == "ACTIVE"


class SquareTokenResponse(BaseModel):
    """Response from POST /oauth2/token."""

    access_token: str
    refresh_token: str | None = None
    token_type: str = "bearer"
    expires_at: datetime | None = None
    merchant_id: str | None = None


# API Response wrappers


class SquareCursorResponse(BaseModel):
    """Square paginates with an opaque cursor; absent on the last page."""

    cursor: str | None = None


class SquareCatalogListResponse(SquareCursorResponse):
    """Response from GET /v2/catalog/list?types=ITEM"""

    objects: list[SquareCatalogItem] = Field(default_factory=list)


class SquareIdMapping(BaseModel):
    client_object_id: str
    object_id: str


class SquareUpsertCatalogResponse(BaseModel):
    """Response from POST /v2/catalog/object"""

    catalog_object: SquareCatalogItem
    id_mappings: list[SquareIdMapping] = Field(default_factory=list)

    def resolve_id(self, client_object_id: str) -> str | None:
        for mapping in self.id_mappings:
            if mapping.client_object_id == client_object_id:
                return mapping.object_id
        return None


class SquareInventoryCountsResponse(SquareCursorResponse):
    """Response from POST /v2/inventory/counts/batch-retrieve"""

    counts: list[SquareInventoryCount] = Field(default_factory=list)


class SquareLocationsResponse(BaseModel):
    """Response from GET /v2/locations"""

    locations: list[SquareLocation] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Platform records
# ---------------------------------------------------------------------------


class InventoryState(str, Enum):
    IN_STOCK = "in_stock"
    OUT_OF_STOCK = "out_of_stock"
    RESERVED = "reserved"
    SOLD = "sold"
    RETURNED = "returned"
    ON_ORDER = "on_order"
    IN_TRANSIT = "in_transit"
    WASTE = "waste"
    UNKNOWN = "unknown"


class PlatformVariant(BaseModel):
    """One SKU of a platform product."""

    sku: str | None = None
    name: str | None = None
    price: Decimal | None = None
    square_variation_id: str | None = None


class PlatformProduct(BaseModel):
    """Canonical product record of the platform."""

    id: str | None = None
    tenant_id: str | None = None
    name: str
    description: str | None = None
    sku: str | None = None
    price: Decimal | None = None
    currency: str = "USD"
    variants: list[PlatformVariant] = Field(default_factory=list)
    category_id: str | None = None
    is_active: bool = True
    is_public: bool = True
    updated_at: datetime | None = None

    def sync_fields(self) -> dict[str, Any]:
        """Fields that both sides own and that are compared during a sync."""
        return {
            "name": self.name,
            "description": self.description,
            "sku": self.sku,
            "price": self.price,
        }


class PlatformInventory(BaseModel):
    """Canonical stock level of one product."""

    product_id: str
    quantity: int = 0
    state: InventoryState = InventoryState.UNKNOWN
    location_id: str | None = None
    updated_at: datetime | None = None
    warnings: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Integration records
# ---------------------------------------------------------------------------


class SyncType(str, Enum):
    CATALOG = "catalog"
    INVENTORY = "inventory"


class SyncDirection(str, Enum):
    TO_SQUARE = "to_square"
    FROM_SQUARE = "from_square"


class SyncLogStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class MappingSyncStatus(str, Enum):
    PENDING = "pending"
    SYNCED = "synced"
    ERROR = "error"


class TenantIntegration(BaseModel):
    """A tenant's authorized Square connection."""

    id: str = Field(default_factory=new_id)
    tenant_id: str
    access_token: str
    refresh_token: str | None = None
    merchant_id: str
    location_id: str | None = None
    token_expires_at: datetime | None = None
    scopes: set[str] = Field(default_factory=set)
    mode: IntegrationMode = "sandbox"
    enabled: bool = True
    needs_reauthorization: bool = False
    last_sync_at: datetime | None = None
    last_error: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def seconds_until_expiry(self, now: datetime | None = None) -> float | None:
        """Seconds left on the access token, None when Square gave no expiry."""
        if self.token_expires_at is None:
            return None
        expires_at = self.token_expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return (expires_at - (now or utcnow())).total_seconds()


class ProductMapping(BaseModel):
    """Link between a platform product and a Square catalog item/variation."""

    id: str = Field(default_factory=new_id)
    tenant_id: str
    integration_id: str
    platform_product_id: str
    square_catalog_object_id: str
    square_item_variation_id: str | None = None
    sync_status: MappingSyncStatus = MappingSyncStatus.PENDING
    last_synced_at: datetime | None = None
    sync_error: str | None = None
    conflict_resolution: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class SyncLogEntry(BaseModel):
    """Immutable record of one sync run."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    tenant_id: str
    integration_id: str
    sync_type: SyncType
    direction: SyncDirection
    operation: str
    status: SyncLogStatus
    items_affected: int = 0
    duration_ms: int = 0
    error_message: str | None = None
    error_code: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
