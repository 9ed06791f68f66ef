"""
Inventory transformation and per-count inventory sync.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation

import structlog

from square_sync.client import SquareClient
from square_sync.models import (
    InventoryState,
    PlatformInventory,
    ProductMapping,
    SquareInventoryCount,
    TenantIntegration,
    idempotency_key,
    utcnow,
)
from square_sync.repository import IntegrationRepository, PlatformStore

logger = structlog.get_logger(__name__)


class InventorySyncError(Exception):
    """Raised when a product cannot be exported (no mapping, no location, no record)."""
    pass


SQUARE_STATE_MAP: dict[str, InventoryState] = {
    "IN_STOCK": InventoryState.IN_STOCK,
    "SOLD": InventoryState.SOLD,
    "SOLD_ONLINE": InventoryState.SOLD,
    "RESERVED_FOR_SALE": InventoryState.RESERVED,
    "RETURNED_BY_CUSTOMER": InventoryState.RETURNED,
    "ORDERED_FROM_VENDOR": InventoryState.ON_ORDER,
    "RECEIVED_FROM_VENDOR": InventoryState.IN_STOCK,
    "IN_TRANSIT": InventoryState.IN_TRANSIT,
    "IN_TRANSIT_TO": InventoryState.IN_TRANSIT,
    "WASTE": InventoryState.WASTE,
}

# Physical counts only make sense for stock-holding states
PLATFORM_STATE_MAP: dict[InventoryState, str] = {
    InventoryState.WASTE: "WASTE",
}


def parse_quantity(raw: str | None) -> tuple[int, str | None]:
    """
    Parse Square's decimal quantity string, truncating toward zero.

    Returns (quantity, warning). Unparseable input gives (0, warning).
    """
    if raw is None:
        return 0, "Missing quantity, defaulting to 0"
    try:
        return int(Decimal(raw.strip())), None
    except (InvalidOperation, ValueError, OverflowError):
        return 0, f"Invalid quantity {raw!r}, defaulting to 0"


def transform_square_to_platform(count: SquareInventoryCount, product_id: str) -> PlatformInventory:
    """Convert a Square inventory count. Never raises on bad quantities or states."""
    quantity, warning = parse_quantity(count.quantity)
    warnings = [warning] if warning else []

    state = SQUARE_STATE_MAP.get((count.state or "").upper(), InventoryState.UNKNOWN)
    if state is InventoryState.UNKNOWN:
        warnings.append(f"Unrecognized inventory state {count.state!r}")
    elif state is InventoryState.IN_STOCK and quantity <= 0:
        state = InventoryState.OUT_OF_STOCK

    if warnings:
        logger.warning(
            "Inventory count normalized",
            catalog_object_id=count.catalog_object_id,
            warnings=warnings,
        )

    return PlatformInventory(
        product_id=product_id,
        quantity=quantity,
        state=state,
        location_id=count.location_id,
        updated_at=count.calculated_at,
        warnings=warnings,
    )


def transform_platform_to_square(
    inventory: PlatformInventory,
    catalog_object_id: str,
    location_id: str,
    occurred_at: datetime | None = None,
) -> dict:
    """Build a PHYSICAL_COUNT change for /v2/inventory/changes/batch-create."""
    return {
        "type": "PHYSICAL_COUNT",
        "physical_count": {
            "catalog_object_id": catalog_object_id,
            "state": PLATFORM_STATE_MAP.get(inventory.state, "IN_STOCK"),
            "location_id": location_id,
            "quantity": str(inventory.quantity),
            "occurred_at": (occurred_at or utcnow()).isoformat(),
        },
    }


@dataclass(frozen=True)
class InventoryDiscrepancy:
    product_id: str
    catalog_object_id: str
    location_id: str | None
    square_quantity: int
    platform_quantity: int | None


def _square_object_id(mapping: ProductMapping) -> str:
    return mapping.square_item_variation_id or mapping.square_catalog_object_id


class InventorySync:
    """Moves inventory counts between Square and the platform for one tenant."""

    def __init__(
        self,
        tenant_id: str,
        integration: TenantIntegration,
        repository: IntegrationRepository,
        store: PlatformStore,
        client: SquareClient,
    ):
        self.tenant_id = tenant_id
        self.integration = integration
        self.repository = repository
        self.store = store
        self.client = client
        self._log = logger.bind(tenant_id=tenant_id, integration_id=integration.id)

    def mapped_catalog_object_ids(self) -> list[str]:
        """Square variation ids of every mapped product, the ids inventory is tracked by."""
        mappings = self.repository.list_product_mappings(self.tenant_id, integration_id=self.integration.id)
        return [_square_object_id(m) for m in mappings]

    def import_count(self, count: SquareInventoryCount) -> PlatformInventory | None:
        """Store a Square count on the mapped product. None when the object is not mapped."""
        mapping = self.repository.get_product_mapping_by_square_id(self.tenant_id, count.catalog_object_id)
        if mapping is None:
            self._log.debug("Skipping unmapped inventory count", catalog_object_id=count.catalog_object_id)
            return None

        inventory = transform_square_to_platform(count, mapping.platform_product_id)
        return self.store.save_inventory(self.tenant_id, inventory)

    def export_inventory(self, product_id: str) -> list[SquareInventoryCount]:
        """Send the platform's stock level for one product to Square as a physical count."""
        mapping = self.repository.get_product_mapping_by_platform_id(self.tenant_id, product_id)
        if mapping is None:
            raise InventorySyncError(f"Product {product_id} is not mapped to a Square item")

        inventory = self.store.get_inventory(self.tenant_id, product_id)
        if inventory is None:
            raise InventorySyncError(f"No inventory record for product {product_id}")

        location_id = inventory.location_id or self.integration.location_id
        if not location_id:
            raise InventorySyncError("No Square location configured for this integration")

        if inventory.updated_at is None:
            # occurred_at must not change between attempts of the same count
            inventory.updated_at = utcnow()
            self.store.save_inventory(self.tenant_id, inventory)

        change = transform_platform_to_square(
            inventory, _square_object_id(mapping), location_id, occurred_at=inventory.updated_at
        )
        counts = self.client.batch_change_inventory(
            [change], idempotency_key=idempotency_key(self.tenant_id, "inventory", change)
        )
        self._log.debug("Exported inventory", product_id=product_id, quantity=inventory.quantity)
        return counts

    def get_discrepancies(self, counts: list[SquareInventoryCount]) -> list[InventoryDiscrepancy]:
        """Mapped products whose platform quantity differs from Square's count."""
        discrepancies = []
        for count in counts:
            mapping = self.repository.get_product_mapping_by_square_id(self.tenant_id, count.catalog_object_id)
            if mapping is None:
                continue

            square_quantity, _ = parse_quantity(count.quantity)
            inventory = self.store.get_inventory(self.tenant_id, mapping.platform_product_id)
            platform_quantity = inventory.quantity if inventory else None

            if platform_quantity != square_quantity:
                discrepancies.append(InventoryDiscrepancy(
                    product_id=mapping.platform_product_id,
                    catalog_object_id=count.catalog_object_id,
                    location_id=count.location_id,
                    square_quantity=square_quantity,
                    platform_quantity=platform_quantity,
                ))
        return discrepancies
