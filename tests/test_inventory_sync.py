"""
Tests for inventory transformation and inventory sync.
"""

import httpx
import pytest

from square_sync.client import SquareValidationError
from square_sync.inventory_sync import (
    InventorySync,
    InventorySyncError,
    parse_quantity,
    transform_platform_to_square,
    transform_square_to_platform,
)
from square_sync.models import InventoryState, PlatformInventory, ProductMapping, SquareInventoryCount


@pytest.fixture
def inventory_sync(integration, repository, store, square_client):
    return InventorySync("tenant-1", integration, repository, store, square_client)


@pytest.fixture
def mapped_product(integration, repository):
    return repository.create_product_mapping(ProductMapping(
        tenant_id="tenant-1",
        integration_id=integration.id,
        platform_product_id="prod-1",
        square_catalog_object_id="ITEM_COFFEE",
        square_item_variation_id="VAR_COFFEE_12OZ",
    ))


class TestSquareToPlatform:
    def test_in_stock_count(self, sample_inventory_count_data):
        """Scenario: inventory transformation."""
        count = SquareInventoryCount.model_validate(sample_inventory_count_data)
        inventory = transform_square_to_platform(count, "prod-1")

        assert inventory.product_id == "prod-1"
        assert inventory.quantity == 42
        assert inventory.state == InventoryState.IN_STOCK
        assert inventory.location_id == "LOC_MAIN"
        assert inventory.warnings == []

    def test_invalid_quantity_becomes_zero_with_warning(self, sample_inventory_count_data):
        """Scenario: inventory quantity parse failure."""
        sample_inventory_count_data["quantity"] = "invalid"
        inventory = transform_square_to_platform(SquareInventoryCount.model_validate(sample_inventory_count_data), "p")

        assert inventory.quantity == 0
        assert len(inventory.warnings) == 1
        assert inventory.state == InventoryState.OUT_OF_STOCK

    def test_unknown_state(self, sample_inventory_count_data):
        sample_inventory_count_data["state"] = "TELEPORTED"
        inventory = transform_square_to_platform(SquareInventoryCount.model_validate(sample_inventory_count_data), "p")

        assert inventory.state == InventoryState.UNKNOWN
        assert inventory.quantity == 42

    @pytest.mark.parametrize("state,expected", [
        ("SOLD", InventoryState.SOLD),
        ("RESERVED_FOR_SALE", InventoryState.RESERVED),
        ("RETURNED_BY_CUSTOMER", InventoryState.RETURNED),
        ("IN_TRANSIT_TO", InventoryState.IN_TRANSIT),
        ("WASTE", InventoryState.WASTE),
    ])
    def test_state_mapping(self, sample_inventory_count_data, state, expected):
        sample_inventory_count_data["state"] = state
        inventory = transform_square_to_platform(SquareInventoryCount.model_validate(sample_inventory_count_data), "p")
        assert inventory.state == expected

    @pytest.mark.parametrize("raw,expected", [
        ("42", 42),
        ("3.75", 3),
        ("-2.5", -2),
        (" 7 ", 7),
        ("", 0),
        ("NaN", 0),
        (None, 0),
    ])
    def test_parse_quantity(self, raw, expected):
        assert parse_quantity(raw)[0] == expected

    def test_numeric_quantity_from_api_is_kept(self, sample_inventory_count_data):
        sample_inventory_count_data["quantity"] = 5
        count = SquareInventoryCount.model_validate(sample_inventory_count_data)
        assert transform_square_to_platform(count, "p").quantity == 5


class TestPlatformToSquare:
    def test_physical_count_change(self):
        inventory = PlatformInventory(product_id="prod-1", quantity=12, state=InventoryState.IN_STOCK)
        change = transform_platform_to_square(inventory, "VAR_COFFEE_12OZ", "LOC_MAIN")

        assert change["type"] == "PHYSICAL_COUNT"
        physical = change["physical_count"]
        assert physical["catalog_object_id"] == "VAR_COFFEE_12OZ"
        assert physical["location_id"] == "LOC_MAIN"
        assert physical["quantity"] == "12"
        assert physical["state"] == "IN_STOCK"
        assert physical["occurred_at"]


class TestInventorySync:
    def test_import_count_for_mapped_product(self, inventory_sync, store, mapped_product, sample_inventory_count_data):
        count = SquareInventoryCount.model_validate(sample_inventory_count_data)
        inventory = inventory_sync.import_count(count)

        assert inventory.quantity == 42
        assert store.get_inventory("tenant-1", "prod-1").quantity == 42

    def test_import_count_unmapped_is_skipped(self, inventory_sync, store, sample_inventory_count_data):
        count = SquareInventoryCount.model_validate(sample_inventory_count_data)

        assert inventory_sync.import_count(count) is None
        assert store.get_inventory("tenant-1", "prod-1") is None

    def test_export_inventory(self, inventory_sync, store, square_api, mapped_product):
        square_api.on("POST", "/v2/inventory/changes/batch-create", {"counts": []})
        store.save_inventory("tenant-1", PlatformInventory(product_id="prod-1", quantity=9))

        inventory_sync.export_inventory("prod-1")

        body = square_api.json_body()
        assert body["idempotency_key"]
        change = body["changes"][0]["physical_count"]
        assert change["catalog_object_id"] == "VAR_COFFEE_12OZ"
        assert change["location_id"] == "LOC_MAIN"
        assert change["quantity"] == "9"

    def test_export_unmapped_product_fails(self, inventory_sync):
        with pytest.raises(InventorySyncError):
            inventory_sync.export_inventory("unknown")

    def test_export_without_inventory_record_fails(self, inventory_sync, mapped_product):
        with pytest.raises(InventorySyncError):
            inventory_sync.export_inventory("prod-1")

    def test_mapped_catalog_object_ids(self, inventory_sync, mapped_product):
        assert inventory_sync.mapped_catalog_object_ids() == ["VAR_COFFEE_12OZ"]

    def test_get_discrepancies(self, inventory_sync, store, mapped_product, sample_inventory_count_data):
        count = SquareInventoryCount.model_validate(sample_inventory_count_data)
        unmapped = count.model_copy(update={"catalog_object_id": "VAR_OTHER"})

        discrepancies = inventory_sync.get_discrepancies([count, unmapped])
        assert len(discrepancies) == 1
        assert discrepancies[0].platform_quantity is None
        assert discrepancies[0].square_quantity == 42

        store.save_inventory("tenant-1", PlatformInventory(product_id="prod-1", quantity=42))
        assert inventory_sync.get_discrepancies([count]) == []

    def test_export_surfaces_api_errors(self, inventory_sync, store, square_api, mapped_product):
        square_api.on("POST", "/v2/inventory/changes/batch-create", lambda r: httpx.Response(
            400, json={"errors": [{"code": "INVALID_VALUE", "detail": "bad location"}]}
        ))
        store.save_inventory("tenant-1", PlatformInventory(product_id="prod-1", quantity=1))

        with pytest.raises(SquareValidationError, match="bad location"):
            inventory_sync.export_inventory("prod-1")

    def test_retried_change_reuses_idempotency_key(self, inventory_sync, store, square_api, mapped_product):
        responses = iter([
            httpx.Response(503, json={"errors": [{"code": "SERVICE_UNAVAILABLE"}]}),
            httpx.Response(200, json={"counts": []}),
        ])
        square_api.on("POST", "/v2/inventory/changes/batch-create", lambda r: next(responses))
        store.save_inventory("tenant-1", PlatformInventory(product_id="prod-1", quantity=3))

        inventory_sync.export_inventory("prod-1")

        first, second = square_api.json_body(0), square_api.json_body(1)
        assert first["idempotency_key"] == second["idempotency_key"]
        assert first["changes"] == second["changes"]

    def test_export_stamps_count_time(self, inventory_sync, store, square_api, mapped_product):
        square_api.on("POST", "/v2/inventory/changes/batch-create", {"counts": []})
        store.save_inventory("tenant-1", PlatformInventory(product_id="prod-1", quantity=3))

        inventory_sync.export_inventory("prod-1")
        first_key = square_api.json_body()["idempotency_key"]
        inventory_sync.export_inventory("prod-1")

        stamped = store.get_inventory("tenant-1", "prod-1").updated_at
        assert stamped is not None
        assert square_api.json_body()["changes"][0]["physical_count"]["occurred_at"] == stamped.isoformat()
        assert square_api.json_body()["idempotency_key"] == first_key
