"""
Tests for the integration repository and platform store implementations.
"""

from decimal import Decimal

import pytest
from pydantic import ValidationError

from square_sync.models import (
    PlatformInventory,
    PlatformProduct,
    ProductMapping,
    SyncDirection,
    SyncLogEntry,
    SyncLogStatus,
    SyncType,
    TenantIntegration,
)
from square_sync.repository import (
    DuplicateIntegrationError,
    DuplicateMappingError,
    InMemoryIntegrationRepository,
    IntegrationNotFoundError,
    JsonFileIntegrationRepository,
    JsonFilePlatformStore,
)


def make_integration(tenant_id="tenant-1", mode="sandbox"):
    return TenantIntegration(tenant_id=tenant_id, access_token="EAAA", merchant_id="M1", mode=mode)


def make_mapping(integration_id, product_id="prod-1", square_id="ITEM_1"):
    return ProductMapping(
        tenant_id="tenant-1",
        integration_id=integration_id,
        platform_product_id=product_id,
        square_catalog_object_id=square_id,
        square_item_variation_id=f"{square_id}_VAR",
    )


def make_log(operation="import_catalog", sync_type=SyncType.CATALOG):
    return SyncLogEntry(
        tenant_id="tenant-1",
        integration_id="int-1",
        sync_type=sync_type,
        direction=SyncDirection.FROM_SQUARE,
        operation=operation,
        status=SyncLogStatus.SUCCESS,
    )


class TestIntegrations:
    def test_one_integration_per_tenant_and_mode(self):
        repo = InMemoryIntegrationRepository()
        repo.create_integration(make_integration())

        with pytest.raises(DuplicateIntegrationError):
            repo.create_integration(make_integration())

        repo.create_integration(make_integration(mode="production"))
        assert repo.get_integration_by_tenant_id("tenant-1", mode="production").mode == "production"

    def test_returned_records_are_copies(self):
        repo = InMemoryIntegrationRepository()
        created = repo.create_integration(make_integration())

        fetched = repo.get_integration(created.id)
        fetched.access_token = "changed"

        assert repo.get_integration(created.id).access_token == "EAAA"

    def test_update_unknown_integration(self):
        with pytest.raises(IntegrationNotFoundError):
            InMemoryIntegrationRepository().update_integration(make_integration())

    def test_delete_orphans_mappings(self):
        repo = InMemoryIntegrationRepository()
        integration = repo.create_integration(make_integration())
        repo.create_product_mapping(make_mapping(integration.id))

        assert repo.delete_integration(integration.id) is True
        assert repo.get_integration(integration.id) is None
        assert len(repo.list_product_mappings("tenant-1")) == 1
        assert repo.delete_integration(integration.id) is False


class TestProductMappings:
    def test_lookup_by_object_or_variation_id(self):
        repo = InMemoryIntegrationRepository()
        mapping = repo.create_product_mapping(make_mapping("int-1"))

        assert repo.get_product_mapping_by_square_id("tenant-1", "ITEM_1").id == mapping.id
        assert repo.get_product_mapping_by_square_id("tenant-1", "ITEM_1_VAR").id == mapping.id
        assert repo.get_product_mapping_by_square_id("tenant-2", "ITEM_1") is None
        assert repo.get_product_mapping_by_platform_id("tenant-1", "prod-1").id == mapping.id

    def test_unique_per_platform_product(self):
        repo = InMemoryIntegrationRepository()
        repo.create_product_mapping(make_mapping("int-1"))

        with pytest.raises(DuplicateMappingError):
            repo.create_product_mapping(make_mapping("int-1", square_id="ITEM_2"))

    def test_list_filters_by_integration(self):
        repo = InMemoryIntegrationRepository()
        repo.create_product_mapping(make_mapping("int-1", "prod-1", "ITEM_1"))
        repo.create_product_mapping(make_mapping("int-2", "prod-2", "ITEM_2"))

        assert [m.platform_product_id for m in repo.list_product_mappings("tenant-1", "int-2")] == ["prod-2"]


class TestSyncLogs:
    def test_newest_first_and_filtered(self):
        repo = InMemoryIntegrationRepository()
        repo.create_sync_log(make_log("first"))
        repo.create_sync_log(make_log("inventory", SyncType.INVENTORY))
        repo.create_sync_log(make_log("second"))

        assert [e.operation for e in repo.get_sync_logs("tenant-1", SyncType.CATALOG)] == ["second", "first"]
        assert repo.get_last_sync_log("tenant-1").operation == "second"
        assert repo.get_last_sync_log("tenant-1", SyncType.INVENTORY).operation == "inventory"
        assert repo.get_last_sync_log("tenant-2") is None

    def test_entries_are_immutable(self):
        entry = make_log()
        with pytest.raises(ValidationError):
            entry.status = SyncLogStatus.FAILED


class TestJsonFilePersistence:
    def test_integration_repository_survives_reload(self, tmp_path):
        path = tmp_path / "integrations.json"
        repo = JsonFileIntegrationRepository(path)
        integration = repo.create_integration(make_integration())
        repo.create_product_mapping(make_mapping(integration.id))
        repo.create_sync_log(make_log())

        reloaded = JsonFileIntegrationRepository(path)

        assert reloaded.get_integration(integration.id).merchant_id == "M1"
        assert reloaded.get_product_mapping_by_square_id("tenant-1", "ITEM_1") is not None
        assert reloaded.get_last_sync_log("tenant-1").operation == "import_catalog"
        assert not path.with_suffix(".json.tmp").exists()

    def test_platform_store_survives_reload(self, tmp_path):
        path = tmp_path / "platform.json"
        store = JsonFilePlatformStore(path)
        product = store.save_product(PlatformProduct(tenant_id="tenant-1", name="Tea", price=Decimal("4.50")))
        store.save_inventory("tenant-1", PlatformInventory(product_id=product.id, quantity=7))

        reloaded = JsonFilePlatformStore(path)

        assert reloaded.get_product("tenant-1", product.id).price == Decimal("4.50")
        assert reloaded.get_inventory("tenant-1", product.id).quantity == 7
        assert reloaded.list_products("tenant-2") == []


class TestJsonFileWriteFailures:
    @pytest.fixture
    def failing_writes(self, monkeypatch):
        def fail(path, data):
            raise OSError("No space left on device")

        def enable():
            monkeypatch.setattr("square_sync.repository._atomic_write", fail)

        return enable

    def test_failed_integration_write_rolls_back(self, tmp_path, failing_writes):
        repo = JsonFileIntegrationRepository(tmp_path / "integrations.json")
        integration = repo.create_integration(make_integration())
        failing_writes()

        integration.access_token = "EAAA-unsaved"
        with pytest.raises(OSError):
            repo.update_integration(integration)
        with pytest.raises(OSError):
            repo.create_product_mapping(make_mapping(integration.id))

        assert repo.get_integration(integration.id).access_token == "EAAA"
        assert repo.list_product_mappings("tenant-1") == []

    def test_failed_first_write_leaves_repository_empty(self, tmp_path, failing_writes):
        repo = JsonFileIntegrationRepository(tmp_path / "integrations.json")
        failing_writes()

        with pytest.raises(OSError):
            repo.create_integration(make_integration())

        assert repo.get_integration_by_tenant_id("tenant-1") is None

    def test_failed_store_write_rolls_back(self, tmp_path, failing_writes):
        store = JsonFilePlatformStore(tmp_path / "platform.json")
        product = store.save_product(PlatformProduct(tenant_id="tenant-1", name="Tea", price=Decimal("4.50")))
        failing_writes()

        product.name = "Green Tea"
        with pytest.raises(OSError):
            store.save_product(product)
        with pytest.raises(OSError):
            store.save_inventory("tenant-1", PlatformInventory(product_id=product.id, quantity=7))

        assert store.get_product("tenant-1", product.id).name == "Tea"
        assert store.get_inventory("tenant-1", product.id) is None
