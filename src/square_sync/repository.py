"""
Persistence interfaces for integrations, product mappings, sync logs and
the platform's own product/inventory records.

The sync core only talks to the abstract classes. Two implementations of
each are provided: in-memory (tests, embedding) and a JSON file that is
rewritten atomically after every change.
"""

import json
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import structlog

from square_sync.models import (
    PlatformInventory,
    PlatformProduct,
    ProductMapping,
    SyncLogEntry,
    SyncType,
    TenantIntegration,
    new_id,
    utcnow,
)

logger = structlog.get_logger(__name__)


class IntegrationNotFoundError(Exception):
    """Raised when an integration does not exist."""
    pass


class DuplicateIntegrationError(Exception):
    """Raised when a tenant already has an integration in that mode."""
    pass


class DuplicateMappingError(Exception):
    """Raised when a platform product is already mapped for the tenant."""
    pass


# ---------------------------------------------------------------------------
# Interfaces
# ---------------------------------------------------------------------------


class IntegrationRepository(ABC):
    """Storage for tenant integrations, product mappings and sync logs."""

    @abstractmethod
    def get_integration_by_tenant_id(
        self,
        tenant_id: str,
        mode: str | None = None,
    ) -> TenantIntegration | None:
        ...

    @abstractmethod
    def get_integration(self, integration_id: str) -> TenantIntegration | None:
        ...

    @abstractmethod
    def create_integration(self, integration: TenantIntegration) -> TenantIntegration:
        ...

    @abstractmethod
    def update_integration(self, integration: TenantIntegration) -> TenantIntegration:
        ...

    @abstractmethod
    def delete_integration(self, integration_id: str) -> bool:
        """Delete an integration. Its product mappings are left in place."""
        ...

    @abstractmethod
    def get_product_mapping_by_square_id(self, tenant_id: str, square_id: str) -> ProductMapping | None:
        """Look up by Square catalog object id or item variation id."""
        ...

    @abstractmethod
    def get_product_mapping_by_platform_id(
        self,
        tenant_id: str,
        platform_product_id: str,
    ) -> ProductMapping | None:
        ...

    @abstractmethod
    def create_product_mapping(self, mapping: ProductMapping) -> ProductMapping:
        ...

    @abstractmethod
    def update_product_mapping(self, mapping: ProductMapping) -> ProductMapping:
        ...

    @abstractmethod
    def list_product_mappings(
        self,
        tenant_id: str,
        integration_id: str | None = None,
    ) -> list[ProductMapping]:
        ...

    @abstractmethod
    def create_sync_log(self, entry: SyncLogEntry) -> SyncLogEntry:
        ...

    @abstractmethod
    def get_sync_logs(
        self,
        tenant_id: str,
        sync_type: SyncType | None = None,
        limit: int = 50,
    ) -> list[SyncLogEntry]:
        """Newest first."""
        ...

    def get_last_sync_log(
        self,
        tenant_id: str,
        sync_type: SyncType | None = None,
    ) -> SyncLogEntry | None:
        logs = self.get_sync_logs(tenant_id, sync_type=sync_type, limit=1)
        return logs[0] if logs else None


class PlatformStore(ABC):
    """The platform's canonical product and inventory records."""

    @abstractmethod
    def list_products(self, tenant_id: str) -> list[PlatformProduct]:
        ...

    @abstractmethod
    def get_product(self, tenant_id: str, product_id: str) -> PlatformProduct | None:
        ...

    @abstractmethod
    def save_product(self, product: PlatformProduct) -> PlatformProduct:
        """Insert or replace. Assigns an id to new products."""
        ...

    @abstractmethod
    def get_inventory(self, tenant_id: str, product_id: str) -> PlatformInventory | None:
        ...

    @abstractmethod
    def save_inventory(self, tenant_id: str, inventory: PlatformInventory) -> PlatformInventory:
        ...


# ---------------------------------------------------------------------------
# In-memory implementations
# ---------------------------------------------------------------------------


class InMemoryIntegrationRepository(IntegrationRepository):
    """
    Thread-safe dict-backed repository.

    Records are copied on the way in and out so callers never share state
    with the store.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._integrations: dict[str, TenantIntegration] = {}
        self._mappings: dict[str, ProductMapping] = {}
        self._logs: list[SyncLogEntry] = []

    def _changed(self) -> None:
        """Hook called after every mutation, under the lock."""
        pass

    # Integrations

    def get_integration_by_tenant_id(
        self,
        tenant_id: str,
        mode: str | None = None,
    ) -> TenantIntegration | None:
        with self._lock:
            matches = [
                i for i in self._integrations.values()
                if i.tenant_id == tenant_id and (mode is None or i.mode == mode)
            ]
            if not matches:
                return None
            latest = max(matches, key=lambda i: i.updated_at)
            return latest.model_copy(deep=True)

    def get_integration(self, integration_id: str) -> TenantIntegration | None:
        with self._lock:
            integration = self._integrations.get(integration_id)
            return integration.model_copy(deep=True) if integration else None

    def create_integration(self, integration: TenantIntegration) -> TenantIntegration:
        with self._lock:
            for existing in self._integrations.values():
                if existing.tenant_id == integration.tenant_id and existing.mode == integration.mode:
                    raise DuplicateIntegrationError(
                        f"Tenant {integration.tenant_id} already has a {integration.mode} integration"
                    )
            self._integrations[integration.id] = integration.model_copy(deep=True)
            self._changed()
        logger.info("Integration created", tenant_id=integration.tenant_id, integration_id=integration.id)
        return integration

    def update_integration(self, integration: TenantIntegration) -> TenantIntegration:
        with self._lock:
            if integration.id not in self._integrations:
                raise IntegrationNotFoundError(f"Integration {integration.id} not found")
            integration.updated_at = utcnow()
            self._integrations[integration.id] = integration.model_copy(deep=True)
            self._changed()
        return integration

    def delete_integration(self, integration_id: str) -> bool:
        with self._lock:
            removed = self._integrations.pop(integration_id, None)
            if removed is not None:
                self._changed()
        if removed is not None:
            logger.info("Integration deleted", tenant_id=removed.tenant_id, integration_id=integration_id)
        return removed is not None

    # Product mappings

    def get_product_mapping_by_square_id(self, tenant_id: str, square_id: str) -> ProductMapping | None:
        with self._lock:
            for mapping in self._mappings.values():
                if mapping.tenant_id != tenant_id:
                    continue
                if square_id in (mapping.square_catalog_object_id, mapping.square_item_variation_id):
                    return mapping.model_copy(deep=True)
        return None

    def get_product_mapping_by_platform_id(
        self,
        tenant_id: str,
        platform_product_id: str,
    ) -> ProductMapping | None:
        with self._lock:
            for mapping in self._mappings.values():
                if mapping.tenant_id == tenant_id and mapping.platform_product_id == platform_product_id:
                    return mapping.model_copy(deep=True)
        return None

    def create_product_mapping(self, mapping: ProductMapping) -> ProductMapping:
        with self._lock:
            if self.get_product_mapping_by_platform_id(mapping.tenant_id, mapping.platform_product_id):
                raise DuplicateMappingError(
                    f"Product {mapping.platform_product_id} is already mapped for tenant {mapping.tenant_id}"
                )
            self._mappings[mapping.id] = mapping.model_copy(deep=True)
            self._changed()
        return mapping

    def update_product_mapping(self, mapping: ProductMapping) -> ProductMapping:
        with self._lock:
            if mapping.id not in self._mappings:
                raise KeyError(f"Product mapping {mapping.id} not found")
            mapping.updated_at = utcnow()
            self._mappings[mapping.id] = mapping.model_copy(deep=True)
            self._changed()
        return mapping

    def list_product_mappings(
        self,
        tenant_id: str,
        integration_id: str | None = None,
    ) -> list[ProductMapping]:
        with self._lock:
            return [
                m.model_copy(deep=True) for m in self._mappings.values()
                if m.tenant_id == tenant_id and (integration_id is None or m.integration_id == integration_id)
            ]

    # Sync logs

    def create_sync_log(self, entry: SyncLogEntry) -> SyncLogEntry:
        with self._lock:
            self._logs.append(entry)
            self._changed()
        return entry

    def get_sync_logs(
        self,
        tenant_id: str,
        sync_type: SyncType | None = None,
        limit: int = 50,
    ) -> list[SyncLogEntry]:
        with self._lock:
            logs = [
                e for e in reversed(self._logs)
                if e.tenant_id == tenant_id and (sync_type is None or e.sync_type == sync_type)
            ]
        return logs[:limit]


class InMemoryPlatformStore(PlatformStore):
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._products: dict[tuple[str | None, str], PlatformProduct] = {}
        self._inventory: dict[tuple[str, str], PlatformInventory] = {}

    def _changed(self) -> None:
        pass

    def list_products(self, tenant_id: str) -> list[PlatformProduct]:
        with self._lock:
            return [
                p.model_copy(deep=True) for (tenant, _), p in self._products.items()
                if tenant == tenant_id
            ]

    def get_product(self, tenant_id: str, product_id: str) -> PlatformProduct | None:
        with self._lock:
            product = self._products.get((tenant_id, product_id))
            return product.model_copy(deep=True) if product else None

    def save_product(self, product: PlatformProduct) -> PlatformProduct:
        if product.id is None:
            product.id = new_id()
        product.updated_at = utcnow()
        with self._lock:
            self._products[(product.tenant_id, product.id)] = product.model_copy(deep=True)
            self._changed()
        return product

    def get_inventory(self, tenant_id: str, product_id: str) -> PlatformInventory | None:
        with self._lock:
            inventory = self._inventory.get((tenant_id, product_id))
            return inventory.model_copy(deep=True) if inventory else None

    def save_inventory(self, tenant_id: str, inventory: PlatformInventory) -> PlatformInventory:
        with self._lock:
            self._inventory[(tenant_id, inventory.product_id)] = inventory.model_copy(deep=True)
            self._changed()
        return inventory


# ---------------------------------------------------------------------------
# JSON file implementations
# ---------------------------------------------------------------------------


def _atomic_write(path: Path, data: dict[str, Any]) -> None:
    """Write to a temp file then rename over the target."""
    temp_file = path.with_suffix(path.suffix + ".tmp")
    with open(temp_file, "w") as f:
        json.dump(data, f, indent=2)
    temp_file.replace(path)


def _read_json(path: Path, log: Any) -> dict[str, Any]:
    if not path.exists():
        log.info("No existing data file, starting fresh")
        return {}
    with open(path, "r") as f:
        return json.load(f)


class JsonFileIntegrationRepository(InMemoryIntegrationRepository):
    """
    In-memory repository mirrored to a JSON file.

    A change that cannot be written is rolled back to the file's contents,
    so memory never runs ahead of disk.

    Usage:
        repo = JsonFileIntegrationRepository("~/.square-sync/integrations.json")
    """

    def __init__(self, path: str | Path):
        super().__init__()
        self.path = Path(path).expanduser()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._log = logger.bind(data_file=str(self.path))

        self._load()
        if self.path.exists():
            self._log.info(
                "Loaded integration data",
                integrations=len(self._integrations),
                mappings=len(self._mappings),
                sync_logs=len(self._logs),
            )

    def _load(self) -> None:
        data = _read_json(self.path, self._log)
        self._integrations = {}
        for raw in data.get("integrations", []):
            integration = TenantIntegration.model_validate(raw)
            self._integrations[integration.id] = integration
        self._mappings = {}
        for raw in data.get("product_mappings", []):
            mapping = ProductMapping.model_validate(raw)
            self._mappings[mapping.id] = mapping
        self._logs = [SyncLogEntry.model_validate(raw) for raw in data.get("sync_logs", [])]

    def _changed(self) -> None:
        try:
            _atomic_write(self.path, {
                "integrations": [i.model_dump(mode="json") for i in self._integrations.values()],
                "product_mappings": [m.model_dump(mode="json") for m in self._mappings.values()],
                "sync_logs": [e.model_dump(mode="json") for e in self._logs],
            })
        except OSError as e:
            self._log.error("Failed to save integration data, discarding change", error=str(e))
            self._load()
            raise


class JsonFilePlatformStore(InMemoryPlatformStore):
    """In-memory platform store mirrored to a JSON file, rolled back like the repository."""

    def __init__(self, path: str | Path):
        super().__init__()
        self.path = Path(path).expanduser()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._log = logger.bind(data_file=str(self.path))
        self._load()

    def _load(self) -> None:
        data = _read_json(self.path, self._log)
        self._products = {}
        for raw in data.get("products", []):
            product = PlatformProduct.model_validate(raw)
            self._products[(product.tenant_id, product.id)] = product
        self._inventory = {}
        for raw in data.get("inventory", []):
            tenant_id = raw.pop("tenant_id")
            inventory = PlatformInventory.model_validate(raw)
            self._inventory[(tenant_id, inventory.product_id)] = inventory

    def _changed(self) -> None:
        inventory = []
        for (tenant_id, _), record in self._inventory.items():
            inventory.append({"tenant_id": tenant_id, **record.model_dump(mode="json")})
        try:
            _atomic_write(self.path, {
                "products": [p.model_dump(mode="json") for p in self._products.values()],
                "inventory": inventory,
            })
        except OSError as e:
            self._log.error("Failed to save platform data, discarding change", error=str(e))
            self._load()
            raise
