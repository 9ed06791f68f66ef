"""
Square Sync - catalog and inventory synchronization with Square POS

Keeps a multi-tenant commerce platform's products and stock levels
consistent with each tenant's Square account.

Features:
- Per-tenant OAuth connections with automatic token refresh
- Catalog and inventory sync in both directions
- Field-level conflict resolution from a fixed policy table
- Sliding-window rate limiting shared per integration
- Batch processing with per-item retry and partial-failure accounting

Quick Start:
    pip install square-sync
    square-sync authorize-url --tenant t1
    square-sync connect --tenant t1 --code CODE
    square-sync sync --tenant t1 --type catalog
"""

from square_sync.batch_processor import BatchCancelledError, BatchItemError, BatchProcessor, BatchResult
from square_sync.cache import BoundedTTLCache
from square_sync.catalog_sync import CatalogSync
from square_sync.client import (
    SquareAPIError,
    SquareAuthError,
    SquareClient,
    SquareNotFoundError,
    SquareRateLimitError,
    SquareServerError,
    SquareValidationError,
)
from square_sync.config import ConfigurationError, SquareSettings
from square_sync.conflict_resolver import MISSING, Conflict, ConflictResolver, Resolution, detect_conflicts
from square_sync.inventory_sync import InventorySync
from square_sync.models import (
    InventoryState,
    PlatformInventory,
    PlatformProduct,
    PlatformVariant,
    ProductMapping,
    SquareCatalogItem,
    SquareInventoryCount,
    SyncDirection,
    SyncLogEntry,
    SyncLogStatus,
    SyncType,
    TenantIntegration,
)
from square_sync.oauth import (
    InvalidOAuthStateError,
    OAuthExchangeError,
    ReauthorizationRequiredError,
    SquareOAuthService,
)
from square_sync.rate_limiter import RateLimitWaitTimeout, SlidingWindowRateLimiter
from square_sync.repository import (
    DuplicateIntegrationError,
    InMemoryIntegrationRepository,
    InMemoryPlatformStore,
    IntegrationNotFoundError,
    IntegrationRepository,
    JsonFileIntegrationRepository,
    JsonFilePlatformStore,
    PlatformStore,
)
from square_sync.sync_service import (
    IntegrationStatus,
    SquareSyncService,
    SyncAlreadyRunningError,
    SyncRunState,
    SyncRunSummary,
)

__version__ = "1.0.0"
__all__ = [
    # Orchestration
    "SquareSyncService",
    "SyncRunSummary",
    "SyncRunState",
    "IntegrationStatus",
    "SyncAlreadyRunningError",

    # Sync components
    "CatalogSync",
    "InventorySync",
    "ConflictResolver",
    "Conflict",
    "Resolution",
    "MISSING",
    "detect_conflicts",
    "BatchProcessor",
    "BatchResult",
    "BatchItemError",
    "BatchCancelledError",
    "SlidingWindowRateLimiter",
    "RateLimitWaitTimeout",

    # OAuth
    "SquareOAuthService",
    "InvalidOAuthStateError",
    "OAuthExchangeError",
    "ReauthorizationRequiredError",

    # API client
    "SquareClient",
    "SquareAPIError",
    "SquareAuthError",
    "SquareNotFoundError",
    "SquareRateLimitError",
    "SquareServerError",
    "SquareValidationError",

    # Configuration
    "SquareSettings",
    "ConfigurationError",

    # Persistence
    "IntegrationRepository",
    "PlatformStore",
    "InMemoryIntegrationRepository",
    "InMemoryPlatformStore",
    "JsonFileIntegrationRepository",
    "JsonFilePlatformStore",
    "IntegrationNotFoundError",
    "DuplicateIntegrationError",

    # Models
    "TenantIntegration",
    "ProductMapping",
    "SyncLogEntry",
    "SyncType",
    "SyncDirection",
    "SyncLogStatus",
    "PlatformProduct",
    "PlatformVariant",
    "PlatformInventory",
    "InventoryState",
    "SquareCatalogItem",
    "SquareInventoryCount",

    # Utilities
    "BoundedTTLCache",
]
