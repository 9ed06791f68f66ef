"""
Catalog transformation and per-item catalog sync.

Square prices are integers in the currency's minor unit; platform prices
are Decimals with two places. Each Square variation becomes one platform
variant so multi-SKU items are never collapsed.
"""

from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal

import structlog

from square_sync.client import SquareAPIError, SquareClient
from square_sync.conflict_resolver import ConflictResolver, detect_conflicts
from square_sync.models import (
    MappingSyncStatus,
    PlatformProduct,
    PlatformVariant,
    ProductMapping,
    SquareCatalogItem,
    SquareItemData,
    SquareItemVariation,
    SquareItemVariationData,
    SquareMoney,
    TenantIntegration,
    idempotency_key,
    new_id,
    utcnow,
)
from square_sync.repository import IntegrationRepository, PlatformStore

logger = structlog.get_logger(__name__)

CENTS = Decimal("0.01")


def money_to_decimal(money: SquareMoney | None) -> Decimal | None:
    """Minor units to a two-place Decimal, truncating anything finer."""
    if money is None:
        return None
    return (Decimal(money.amount) / 100).quantize(CENTS, rounding=ROUND_DOWN)


def decimal_to_minor_units(price: Decimal) -> int:
    return int((price * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def transform_square_to_platform(item: SquareCatalogItem, tenant_id: str | None = None) -> PlatformProduct:
    """
    Convert a Square ITEM into a platform product.

    sku, price and currency come from the first variation. An item with no
    variations gets no sku and no price.
    """
    first = item.first_variation
    price_money = first.price_money if first else None

    variants = [
        PlatformVariant(
            sku=variation.sku,
            name=variation.item_variation_data.name,
            price=money_to_decimal(variation.price_money),
            square_variation_id=variation.id,
        )
        for variation in item.variations
    ]

    return PlatformProduct(
        tenant_id=tenant_id,
        name=item.item_data.name,
        description=item.item_data.description,
        sku=first.sku if first else None,
        price=money_to_decimal(price_money),
        currency=price_money.currency if price_money else "USD",
        variants=variants,
        category_id=item.item_data.category_id,
        updated_at=item.updated_at,
    )


def _money(price: Decimal | None, currency: str) -> SquareMoney | None:
    if price is None:
        return None
    return SquareMoney(amount=decimal_to_minor_units(price), currency=currency)


def transform_platform_to_square(
    product: PlatformProduct,
    mapping: ProductMapping | None = None,
) -> SquareCatalogItem:
    """
    Convert a platform product into a Square ITEM ready for upsert.

    Objects Square has not seen yet get '#'-prefixed temporary ids, which
    Square replaces and reports back in id_mappings.
    """
    temp_key = product.id or new_id()
    item_id = mapping.square_catalog_object_id if mapping else f"#{temp_key}"

    variations: list[SquareItemVariation] = []
    if product.variants:
        for index, variant in enumerate(product.variants):
            variation_id = variant.square_variation_id or f"#{temp_key}-variation-{index}"
            price = variant.price if variant.price is not None else product.price
            variations.append(SquareItemVariation(
                id=variation_id,
                item_variation_data=SquareItemVariationData(
                    item_id=item_id,
                    name=variant.name or product.name,
                    sku=variant.sku,
                    price_money=_money(price, product.currency),
                ),
            ))
    else:
        variation_id = None
        if mapping and mapping.square_item_variation_id:
            variation_id = mapping.square_item_variation_id
        variations.append(SquareItemVariation(
            id=variation_id or f"#{temp_key}-variation-0",
            item_variation_data=SquareItemVariationData(
                item_id=item_id,
                name="Regular",
                sku=product.sku,
                price_money=_money(product.price, product.currency),
            ),
        ))

    return SquareCatalogItem(
        id=item_id,
        item_data=SquareItemData(
            name=product.name,
            description=product.description,
            category_id=product.category_id,
            variations=variations,
        ),
    )


def _merge_variants(existing: list[PlatformVariant], incoming: list[PlatformVariant]) -> list[PlatformVariant]:
    """Square owns variant identity and SKUs; platform keeps its prices."""
    prices = {v.square_variation_id: v.price for v in existing if v.square_variation_id}
    merged = []
    for variant in incoming:
        if variant.square_variation_id in prices and prices[variant.square_variation_id] is not None:
            variant = variant.model_copy(update={"price": prices[variant.square_variation_id]})
        merged.append(variant)
    return merged


class CatalogSync:
    """
    Moves catalog items between Square and the platform for one tenant.

    Both operations handle exactly one item so they can be driven by the
    batch processor.
    """

    def __init__(
        self,
        tenant_id: str,
        integration: TenantIntegration,
        repository: IntegrationRepository,
        store: PlatformStore,
        client: SquareClient,
        resolver: ConflictResolver | None = None,
    ):
        self.tenant_id = tenant_id
        self.integration = integration
        self.repository = repository
        self.store = store
        self.client = client
        self.resolver = resolver or ConflictResolver()
        self._log = logger.bind(tenant_id=tenant_id, integration_id=integration.id)

    def get_mapping(self, platform_product_id: str) -> ProductMapping | None:
        return self.repository.get_product_mapping_by_platform_id(self.tenant_id, platform_product_id)

    def import_item(self, item: SquareCatalogItem) -> ProductMapping:
        """
        Create or update the platform product for a Square item.

        Unmapped items become new products. Mapped items are merged field
        by field using the conflict resolver.
        """
        incoming = transform_square_to_platform(item, tenant_id=self.tenant_id)
        first = item.first_variation
        mapping = self.repository.get_product_mapping_by_square_id(self.tenant_id, item.id)
        existing = None
        if mapping is not None:
            existing = self.store.get_product(self.tenant_id, mapping.platform_product_id)

        if existing is None:
            if mapping is not None:
                incoming.id = mapping.platform_product_id
            product = self.store.save_product(incoming)
            resolution_summary = None
        else:
            resolutions = self.resolver.resolve_all(
                detect_conflicts(incoming.sync_fields(), existing.sync_fields())
            )
            merged = self.resolver.apply_resolutions(existing.model_dump(), resolutions)
            merged["variants"] = _merge_variants(existing.variants, incoming.variants)
            product = self.store.save_product(PlatformProduct.model_validate(merged))
            resolution_summary = self.resolver.describe(resolutions)
            if resolutions:
                self._log.info(
                    "Resolved catalog conflicts",
                    square_id=item.id,
                    product_id=product.id,
                    **self.resolver.summarize(resolutions),
                )

        now = utcnow()
        if mapping is None:
            mapping = self.repository.create_product_mapping(ProductMapping(
                tenant_id=self.tenant_id,
                integration_id=self.integration.id,
                platform_product_id=product.id,
                square_catalog_object_id=item.id,
                square_item_variation_id=first.id if first else None,
                sync_status=MappingSyncStatus.SYNCED,
                last_synced_at=now,
            ))
        else:
            mapping.square_item_variation_id = first.id if first else mapping.square_item_variation_id
            mapping.sync_status = MappingSyncStatus.SYNCED
            mapping.last_synced_at = now
            mapping.sync_error = None
            mapping.conflict_resolution = resolution_summary
            mapping = self.repository.update_product_mapping(mapping)

        self._log.debug("Imported catalog item", square_id=item.id, product_id=product.id)
        return mapping

    def export_product(self, product: PlatformProduct) -> ProductMapping:
        """Upsert a platform product into the Square catalog and record the mapping."""
        if product.id is None:
            product = self.store.save_product(product)

        mapping = self.get_mapping(product.id)
        catalog_object = transform_platform_to_square(product, mapping)

        key = idempotency_key(self.tenant_id, "catalog", catalog_object.model_dump(mode="json", exclude_none=True))
        try:
            response = self.client.upsert_catalog_object(catalog_object, idempotency_key=key)
        except SquareAPIError as e:
            if mapping is not None:
                mapping.sync_status = MappingSyncStatus.ERROR
                mapping.sync_error = str(e)
                self.repository.update_product_mapping(mapping)
            raise

        saved = response.catalog_object
        variation_ids = []
        for variation in catalog_object.variations:
            if variation.id.startswith("#"):
                variation_ids.append(response.resolve_id(variation.id))
            else:
                variation_ids.append(variation.id)
        if any(v is None for v in variation_ids):
            variation_ids = [v.id for v in saved.variations]

        if product.variants:
            for variant, variation_id in zip(product.variants, variation_ids):
                variant.square_variation_id = variation_id
            self.store.save_product(product)

        first_variation_id = variation_ids[0] if variation_ids else None
        now = utcnow()
        if mapping is None:
            mapping = self.repository.create_product_mapping(ProductMapping(
                tenant_id=self.tenant_id,
                integration_id=self.integration.id,
                platform_product_id=product.id,
                square_catalog_object_id=saved.id,
                square_item_variation_id=first_variation_id,
                sync_status=MappingSyncStatus.SYNCED,
                last_synced_at=now,
            ))
        else:
            mapping.square_catalog_object_id = saved.id
            mapping.square_item_variation_id = first_variation_id
            mapping.sync_status = MappingSyncStatus.SYNCED
            mapping.last_synced_at = now
            mapping.sync_error = None
            mapping = self.repository.update_product_mapping(mapping)

        self._log.debug("Exported product", product_id=product.id, square_id=saved.id)
        return mapping
