"""
Sync orchestration.

Runs one catalog or inventory sync for one tenant at a time: checks the
connection, lists the entities to move, drives them through the batch
processor under the integration's rate limiter, and records exactly one
sync log entry per run.
"""

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Iterator, Sequence

import structlog

from square_sync.batch_processor import BatchProcessor, BatchProgress, BatchResult
from square_sync.catalog_sync import CatalogSync
from square_sync.client import ClientFactory, SquareAuthError, SquareClient, client_factory_for
from square_sync.config import ConfigurationError, SquareSettings
from square_sync.conflict_resolver import ConflictResolver
from square_sync.inventory_sync import InventorySync
from square_sync.models import (
    PlatformProduct,
    SquareCatalogItem,
    SquareInventoryCount,
    SyncDirection,
    SyncLogEntry,
    SyncLogStatus,
    SyncType,
    TenantIntegration,
    utcnow,
)
from square_sync.oauth import ReauthorizationRequiredError, SquareOAuthService
from square_sync.rate_limiter import SlidingWindowRateLimiter
from square_sync.repository import IntegrationNotFoundError, IntegrationRepository, PlatformStore

logger = structlog.get_logger(__name__)

MAX_REPORTED_ERRORS = 20


class SyncAlreadyRunningError(Exception):
    """A sync of the same type is already running for the tenant."""
    pass


class SyncRunState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    PARTIAL_FAILURE = "partial_failure"
    FAILED = "failed"


LOG_STATUS = {
    SyncRunState.SUCCEEDED: SyncLogStatus.SUCCESS,
    SyncRunState.PARTIAL_FAILURE: SyncLogStatus.PARTIAL,
    SyncRunState.FAILED: SyncLogStatus.FAILED,
}


class SyncStage(str, Enum):
    FETCHING = "fetching"
    SYNCING = "syncing"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass
class SyncProgress:
    """Progress of a running sync, as passed to a progress callback."""
    tenant_id: str
    sync_type: SyncType
    direction: SyncDirection
    stage: SyncStage
    total: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    current_item: str | None = None


ProgressCallback = Callable[[SyncProgress], None]


@dataclass
class SyncRunSummary:
    """What a caller gets back from trigger_sync."""
    tenant_id: str
    sync_type: SyncType
    direction: SyncDirection
    status: SyncRunState
    items_affected: int = 0
    items_failed: int = 0
    duration_ms: int = 0
    errors: list[str] = field(default_factory=list)
    error_code: str | None = None
    sync_log_id: str | None = None
    dry_run: bool = False


@dataclass
class IntegrationStatus:
    connected: bool
    needs_reauthorization: bool = False
    merchant_id: str | None = None
    location_id: str | None = None
    mode: str | None = None
    last_sync_at: datetime | None = None
    last_error: str | None = None
    last_sync: SyncLogEntry | None = None


def _operation_name(sync_type: SyncType, direction: SyncDirection, dry_run: bool = False) -> str:
    verb = "import" if direction is SyncDirection.FROM_SQUARE else "export"
    prefix = "dry_run_" if dry_run else ""
    return f"{prefix}{verb}_{sync_type.value}"


def _describe_item(item: Any) -> str:
    if isinstance(item, SquareCatalogItem):
        return f"item {item.id}"
    if isinstance(item, PlatformProduct):
        return f"product {item.id}"
    if isinstance(item, SquareInventoryCount):
        return f"inventory {item.catalog_object_id}"
    return str(item)


def _is_authorization_failure(error: BaseException) -> bool:
    """Errors after which no further item of the run can succeed."""
    return isinstance(error, (ReauthorizationRequiredError, SquareAuthError))


def _no_op(item: Any) -> Any:
    return item


class _RunFailure(Exception):
    """Run-level failure carrying the code written to the sync log."""

    def __init__(self, message: str, error_code: str):
        super().__init__(message)
        self.error_code = error_code


class SquareSyncService:
    """
    Entry point for connecting tenants and running syncs.

    At most one sync per (tenant, sync type) runs at a time. Each
    integration gets its own rate limiter, shared by every client and
    batch of that integration.

    Example:
        service = SquareSyncService(settings, repository, store)
        summary = service.trigger_sync("tenant-1", SyncType.CATALOG, SyncDirection.FROM_SQUARE)
        print(summary.status, summary.items_affected)
    """

    def __init__(
        self,
        settings: SquareSettings,
        repository: IntegrationRepository,
        store: PlatformStore,
        oauth: SquareOAuthService | None = None,
        client_factory: ClientFactory | None = None,
        conflict_resolver: ConflictResolver | None = None,
    ):
        self.settings = settings
        self.repository = repository
        self.store = store
        self.client_factory = client_factory or client_factory_for(settings)
        self.oauth = oauth or SquareOAuthService(settings, repository, client_factory=self.client_factory)
        self.conflict_resolver = conflict_resolver or ConflictResolver()

        self._lock = threading.Lock()
        self._running: dict[tuple[str, SyncType], threading.Event] = {}
        self._states: dict[tuple[str, SyncType], SyncRunState] = {}
        self._limiters: dict[str, SlidingWindowRateLimiter] = {}

    # -------------------------------------------------------------------------
    # Connection lifecycle
    # -------------------------------------------------------------------------

    def connect(self, tenant_id: str, authorization_code: str) -> TenantIntegration:
        return self.oauth.exchange_code(tenant_id, authorization_code)

    def disconnect(self, tenant_id: str) -> bool:
        integration = self.repository.get_integration_by_tenant_id(tenant_id, mode=self.settings.environment)
        disconnected = self.oauth.revoke(tenant_id)
        if integration is not None:
            with self._lock:
                self._limiters.pop(integration.id, None)
        return disconnected

    def get_status(self, tenant_id: str) -> IntegrationStatus:
        integration = self.repository.get_integration_by_tenant_id(tenant_id, mode=self.settings.environment)
        if integration is None:
            return IntegrationStatus(connected=False)
        return IntegrationStatus(
            connected=integration.enabled and not integration.needs_reauthorization,
            needs_reauthorization=integration.needs_reauthorization,
            merchant_id=integration.merchant_id,
            location_id=integration.location_id,
            mode=integration.mode,
            last_sync_at=integration.last_sync_at,
            last_error=integration.last_error,
            last_sync=self.repository.get_last_sync_log(tenant_id),
        )

    # -------------------------------------------------------------------------
    # Run control
    # -------------------------------------------------------------------------

    def get_rate_limiter(self, integration_id: str) -> SlidingWindowRateLimiter:
        with self._lock:
            limiter = self._limiters.get(integration_id)
            if limiter is None:
                limiter = SlidingWindowRateLimiter(
                    requests_per_second=self.settings.requests_per_second,
                    requests_per_minute=self.settings.requests_per_minute,
                )
                self._limiters[integration_id] = limiter
            return limiter

    def get_run_state(self, tenant_id: str, sync_type: SyncType) -> SyncRunState:
        with self._lock:
            return self._states.get((tenant_id, sync_type), SyncRunState.IDLE)

    def cancel_sync(self, tenant_id: str, sync_type: SyncType) -> bool:
        """Ask a running sync to stop before its next item. False if none is running."""
        with self._lock:
            event = self._running.get((tenant_id, sync_type))
        if event is None:
            return False
        event.set()
        logger.info("Sync cancellation requested", tenant_id=tenant_id, sync_type=sync_type.value)
        return True

    def _require_integration(self, tenant_id: str) -> TenantIntegration:
        integration = self.repository.get_integration_by_tenant_id(tenant_id, mode=self.settings.environment)
        if integration is None:
            raise IntegrationNotFoundError(f"No Square integration for tenant {tenant_id}")
        return integration

    @contextmanager
    def _single_flight(
        self,
        tenant_id: str,
        sync_type: SyncType,
        cancel_event: threading.Event | None,
    ) -> Iterator[tuple[threading.Event, list[SyncRunState]]]:
        """
        Hold the (tenant, sync type) guard for the duration of the block.

        The block appends each run's final state to the yielded list; the
        last one becomes the run state once the guard is released.
        """
        key = (tenant_id, sync_type)
        with self._lock:
            if key in self._running:
                raise SyncAlreadyRunningError(
                    f"A {sync_type.value} sync is already running for tenant {tenant_id}"
                )
            event = cancel_event or threading.Event()
            self._running[key] = event
            self._states[key] = SyncRunState.RUNNING

        final_states: list[SyncRunState] = []
        try:
            yield event, final_states
        finally:
            with self._lock:
                self._running.pop(key, None)
                self._states[key] = final_states[-1] if final_states else SyncRunState.FAILED

    def trigger_sync(
        self,
        tenant_id: str,
        sync_type: SyncType,
        direction: SyncDirection,
        cancel_event: threading.Event | None = None,
        dry_run: bool = False,
        progress_callback: ProgressCallback | None = None,
    ) -> SyncRunSummary:
        """
        Run one sync to completion.

        Run-level failures are reported in the summary with status FAILED.
        A dry run fetches and counts the items without writing to Square or
        the platform; it still records its sync log entry.

        Raises:
            IntegrationNotFoundError: Tenant is not connected
            SyncAlreadyRunningError: Same tenant and type already running
        """
        sync_type = SyncType(sync_type)
        direction = SyncDirection(direction)
        integration = self._require_integration(tenant_id)

        with self._single_flight(tenant_id, sync_type, cancel_event) as (event, final_states):
            summary = self._run(integration, sync_type, direction, event, dry_run, progress_callback)
            final_states.append(summary.status)
        return summary

    def sync_bidirectional(
        self,
        tenant_id: str,
        sync_type: SyncType,
        cancel_event: threading.Event | None = None,
        dry_run: bool = False,
        progress_callback: ProgressCallback | None = None,
    ) -> list[SyncRunSummary]:
        """
        Import from Square, then export to Square, under one guard.

        Each direction is its own run with its own sync log entry. The
        export is skipped when the import failed or was cancelled.
        """
        sync_type = SyncType(sync_type)
        integration = self._require_integration(tenant_id)

        summaries = []
        with self._single_flight(tenant_id, sync_type, cancel_event) as (event, final_states):
            for direction in (SyncDirection.FROM_SQUARE, SyncDirection.TO_SQUARE):
                if summaries:
                    previous = summaries[-1]
                    if previous.status is SyncRunState.FAILED or previous.error_code == "cancelled":
                        logger.info(
                            "Skipping export after unsuccessful import",
                            tenant_id=tenant_id,
                            sync_type=sync_type.value,
                            error_code=previous.error_code,
                        )
                        break
                    # The import may have refreshed tokens or changed mappings
                    integration = self._require_integration(tenant_id)

                summary = self._run(integration, sync_type, direction, event, dry_run, progress_callback)
                summaries.append(summary)
                final_states.append(summary.status)
        return summaries

    # -------------------------------------------------------------------------
    # Run body
    # -------------------------------------------------------------------------

    def _plan(
        self,
        integration: TenantIntegration,
        sync_type: SyncType,
        direction: SyncDirection,
        client: SquareClient,
    ) -> tuple[Sequence[Any], Callable[[Any], Any]]:
        """Fetch the work items and pick the per-item operation."""
        tenant_id = integration.tenant_id

        if sync_type is SyncType.CATALOG:
            catalog = CatalogSync(
                tenant_id, integration, self.repository, self.store, client, self.conflict_resolver
            )
            if direction is SyncDirection.FROM_SQUARE:
                return list(client.iter_catalog_items()), catalog.import_item
            return self.store.list_products(tenant_id), catalog.export_product

        inventory = InventorySync(tenant_id, integration, self.repository, self.store, client)
        if direction is SyncDirection.FROM_SQUARE:
            object_ids = inventory.mapped_catalog_object_ids()
            if not object_ids:
                return [], inventory.import_count
            location_ids = [integration.location_id] if integration.location_id else None
            counts = list(client.iter_inventory_counts(object_ids, location_ids=location_ids))
            return counts, inventory.import_count

        product_ids = [
            m.platform_product_id
            for m in self.repository.list_product_mappings(tenant_id, integration_id=integration.id)
            if self.store.get_inventory(tenant_id, m.platform_product_id) is not None
        ]
        return product_ids, inventory.export_inventory

    def _run(
        self,
        integration: TenantIntegration,
        sync_type: SyncType,
        direction: SyncDirection,
        cancel_event: threading.Event,
        dry_run: bool = False,
        progress_callback: ProgressCallback | None = None,
    ) -> SyncRunSummary:
        tenant_id = integration.tenant_id
        log = logger.bind(
            tenant_id=tenant_id,
            integration_id=integration.id,
            sync_type=sync_type.value,
            direction=direction.value,
            dry_run=dry_run,
        )
        start = time.monotonic()
        deadline = start + self.settings.sync_timeout
        summary = SyncRunSummary(
            tenant_id=tenant_id,
            sync_type=sync_type,
            direction=direction,
            status=SyncRunState.FAILED,
            dry_run=dry_run,
        )

        def report(stage: SyncStage, progress: BatchProgress | None = None) -> None:
            if progress_callback is None:
                return
            update = SyncProgress(tenant_id=tenant_id, sync_type=sync_type, direction=direction, stage=stage)
            if progress is not None:
                update.total = progress.total
                update.processed = progress.processed
                update.succeeded = progress.succeeded
                update.failed = progress.failed
                if progress.current_item is not None:
                    update.current_item = _describe_item(progress.current_item)
            try:
                progress_callback(update)
            except Exception:
                log.warning("Progress callback failed", stage=stage.value, exc_info=True)

        log.info("Sync started")
        report(SyncStage.FETCHING)
        result: BatchResult | None = None
        try:
            if not integration.enabled:
                raise _RunFailure("Integration is disabled", "disabled")

            # Fail before any remote call when the connection is unusable
            self.oauth.get_valid_access_token(tenant_id)

            limiter = self.get_rate_limiter(integration.id)
            client = self.client_factory(
                token_provider=lambda: self.oauth.get_valid_access_token(tenant_id),
                token_refresher=lambda rejected: self.oauth.force_refresh(tenant_id, rejected),
                rate_limiter=limiter,
            )
            with client:
                items, operation = self._plan(integration, sync_type, direction, client)
                if time.monotonic() >= deadline:
                    raise _RunFailure("Sync timed out while fetching items", "timeout")

                processor = BatchProcessor(
                    rate_limiter=limiter,
                    concurrency=self.settings.batch_concurrency,
                    max_attempts=self.settings.max_retries,
                    backoff_initial=self.settings.retry_backoff,
                    is_fatal=_is_authorization_failure,
                )
                result = processor.process(
                    items,
                    _no_op if dry_run else operation,
                    cancel_event=cancel_event,
                    deadline=deadline,
                    progress_callback=lambda progress: report(SyncStage.SYNCING, progress),
                )

        except _RunFailure as e:
            summary.errors = [str(e)]
            summary.error_code = e.error_code
        except ReauthorizationRequiredError as e:
            summary.errors = [str(e)]
            summary.error_code = "reauthorization_required"
        except SquareAuthError as e:
            self.oauth.mark_reauthorization_required(tenant_id, str(e))
            summary.errors = [str(e)]
            summary.error_code = "reauthorization_required"
        except ConfigurationError as e:
            summary.errors = [str(e)]
            summary.error_code = "configuration_error"
        except Exception as e:
            log.exception("Sync failed")
            summary.errors = [str(e) or type(e).__name__]
            summary.error_code = "sync_failed"

        if result is not None:
            summary.items_affected = result.total_succeeded
            summary.items_failed = result.total_failed
            summary.errors = [
                f"{_describe_item(error.item)}: {error.message}" for error in result.errors
            ][:MAX_REPORTED_ERRORS]

            if result.aborted_by is not None:
                # Square kept rejecting a freshly refreshed token, or the refresh was refused
                if isinstance(result.aborted_by, SquareAuthError):
                    self.oauth.mark_reauthorization_required(tenant_id, str(result.aborted_by))
                summary.status = SyncRunState.FAILED
                summary.error_code = "reauthorization_required"
                summary.errors.insert(0, str(result.aborted_by))
                del summary.errors[MAX_REPORTED_ERRORS:]
            elif result.timed_out:
                summary.status = SyncRunState.FAILED
                summary.error_code = "timeout"
            elif result.cancelled:
                summary.status = SyncRunState.PARTIAL_FAILURE
                summary.error_code = "cancelled"
            elif result.total_failed:
                summary.status = SyncRunState.PARTIAL_FAILURE
                summary.error_code = "item_failures"
            else:
                summary.status = SyncRunState.SUCCEEDED

        summary.duration_ms = round((time.monotonic() - start) * 1000)
        self._record(integration, sync_type, direction, summary)

        if summary.status is SyncRunState.FAILED:
            report(SyncStage.ERROR)
        else:
            report(SyncStage.COMPLETE, BatchProgress(
                total=result.total_processed,
                processed=result.total_processed,
                succeeded=result.total_succeeded,
                failed=result.total_failed,
            ))

        log_method = log.info if summary.status is SyncRunState.SUCCEEDED else log.warning
        log_method(
            "Sync finished",
            status=summary.status.value,
            items_affected=summary.items_affected,
            items_failed=summary.items_failed,
            duration_ms=summary.duration_ms,
            error_code=summary.error_code,
        )
        return summary

    def _record(
        self,
        integration: TenantIntegration,
        sync_type: SyncType,
        direction: SyncDirection,
        summary: SyncRunSummary,
    ) -> None:
        """Write the run's single log entry and update the integration."""
        error_message = "; ".join(summary.errors) if summary.errors else None
        entry = self.repository.create_sync_log(SyncLogEntry(
            tenant_id=integration.tenant_id,
            integration_id=integration.id,
            sync_type=sync_type,
            direction=direction,
            operation=_operation_name(sync_type, direction, summary.dry_run),
            status=LOG_STATUS[summary.status],
            items_affected=summary.items_affected,
            duration_ms=summary.duration_ms,
            error_message=error_message,
            error_code=summary.error_code,
        ))
        summary.sync_log_id = entry.id

        if summary.dry_run:
            return

        # Reload: the token refresh path may have updated the record meanwhile
        current = self.repository.get_integration(integration.id)
        if current is None:
            return
        if summary.status is not SyncRunState.FAILED:
            current.last_sync_at = utcnow()
        current.last_error = error_message
        self.repository.update_integration(current)
