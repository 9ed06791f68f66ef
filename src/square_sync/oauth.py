"""
OAuth connection management for Square.

Covers the whole lifecycle of a tenant's connection: the authorization
URL, the callback (state check and code exchange), access-token refresh
ahead of expiry, and revocation on disconnect.
"""

import secrets
import threading
from dataclasses import dataclass
from datetime import timezone
from urllib.parse import urlencode

import httpx
import structlog

from square_sync.cache import BoundedTTLCache
from square_sync.client import (
    ClientFactory,
    SquareAPIError,
    SquareAuthError,
    SquareValidationError,
    client_factory_for,
)
from square_sync.config import SquareSettings
from square_sync.models import SquareLocation, TenantIntegration
from square_sync.repository import IntegrationNotFoundError, IntegrationRepository

logger = structlog.get_logger(__name__)

SQUARE_SCOPES = (
    "ITEMS_READ",
    "ITEMS_WRITE",
    "INVENTORY_READ",
    "INVENTORY_WRITE",
    "MERCHANT_PROFILE_READ",
)

STATE_DELIMITER = ":"
STATE_TTL_SECONDS = 600.0


class InvalidOAuthStateError(Exception):
    """Malformed, unknown or expired OAuth state parameter."""
    pass


class OAuthExchangeError(Exception):
    """Square rejected the authorization code or returned an unusable token."""
    pass


class ReauthorizationRequiredError(Exception):
    """The tenant must go through the authorization flow again."""
    pass


@dataclass(frozen=True)
class OAuthState:
    state: str
    tenant_id: str


def parse_state(combined: str) -> OAuthState:
    """Split 'state:tenant_id'. Both parts must be non-empty."""
    state, delimiter, tenant_id = (combined or "").partition(STATE_DELIMITER)
    if not delimiter or not state or not tenant_id:
        raise InvalidOAuthStateError("Invalid OAuth state parameter")
    return OAuthState(state=state, tenant_id=tenant_id)


def select_main_location(locations: list[SquareLocation]) -> SquareLocation | None:
    """First active location, else the first one listed."""
    for location in locations:
        if location.is_active:
            return location
    return locations[0] if locations else None


class SquareOAuthService:
    """
    Per-tenant Square OAuth connections.

    Example:
        oauth = SquareOAuthService(settings, repository)
        url = oauth.generate_authorization_url(oauth.new_state(tenant_id), tenant_id)
        # ... merchant approves, Square redirects back with code and state ...
        integration = oauth.complete_authorization(state, code)
    """

    def __init__(
        self,
        settings: SquareSettings,
        repository: IntegrationRepository,
        client_factory: ClientFactory | None = None,
        state_cache: BoundedTTLCache[str, str] | None = None,
    ):
        self.settings = settings
        self.repository = repository
        self.client_factory = client_factory or client_factory_for(settings)
        self.state_cache = state_cache or BoundedTTLCache(max_size=10_000, ttl_seconds=STATE_TTL_SECONDS)
        self._locks_guard = threading.Lock()
        self._refresh_locks: dict[str, threading.Lock] = {}
        self._log = logger.bind(environment=settings.environment)

    # -------------------------------------------------------------------------
    # Authorization
    # -------------------------------------------------------------------------

    def new_state(self, tenant_id: str) -> str:
        """Issue an anti-CSRF token for tenant_id, valid for ten minutes."""
        state = secrets.token_urlsafe(24)
        self.state_cache.set(state, tenant_id)
        return state

    def verify_state(self, state: str, tenant_id: str) -> bool:
        """One-shot check that state was issued here for tenant_id."""
        return self.state_cache.pop(state) == tenant_id

    def generate_authorization_url(self, state: str, tenant_id: str) -> str:
        self.settings.require_oauth_credentials()
        if not state or STATE_DELIMITER in state:
            raise InvalidOAuthStateError("State token must be non-empty and must not contain ':'")
        if not tenant_id:
            raise InvalidOAuthStateError("Tenant id is required")

        query = urlencode({
            "client_id": self.settings.application_id,
            "scope": " ".join(SQUARE_SCOPES),
            "session": "false",
            "state": f"{state}{STATE_DELIMITER}{tenant_id}",
            "redirect_uri": self.settings.redirect_uri,
        })
        return f"{self.settings.base_url}/oauth2/authorize?{query}"

    def parse_state(self, combined: str) -> OAuthState:
        return parse_state(combined)

    def complete_authorization(self, combined_state: str, code: str) -> TenantIntegration:
        """Handle the OAuth callback: check state, then exchange the code."""
        parsed = parse_state(combined_state)
        if not self.verify_state(parsed.state, parsed.tenant_id):
            raise InvalidOAuthStateError("Unknown or expired OAuth state")
        return self.exchange_code(parsed.tenant_id, code)

    def exchange_code(self, tenant_id: str, code: str) -> TenantIntegration:
        """
        Exchange an authorization code and persist the tenant's integration.

        Reconnecting a tenant updates its existing integration in place.
        """
        self.settings.require_oauth_credentials()
        log = self._log.bind(tenant_id=tenant_id)

        try:
            with self.client_factory() as client:
                token = client.obtain_token({
                    "client_id": self.settings.application_id,
                    "client_secret": self.settings.application_secret,
                    "code": code,
                    "grant_type": "authorization_code",
                    "redirect_uri": self.settings.redirect_uri,
                })
        except (SquareAPIError, httpx.HTTPError) as e:
            log.warning("OAuth code exchange failed", error=str(e))
            raise OAuthExchangeError(f"Token exchange failed: {e}") from e

        if not token.merchant_id:
            raise OAuthExchangeError("Token response did not include a merchant id")

        try:
            with self.client_factory(access_token=token.access_token) as client:
                location = select_main_location(client.list_locations())
        except (SquareAPIError, httpx.HTTPError) as e:
            log.warning("Failed to list merchant locations", error=str(e))
            raise OAuthExchangeError(f"Could not read merchant locations: {e}") from e

        integration = self.repository.get_integration_by_tenant_id(tenant_id, mode=self.settings.environment)
        if integration is None:
            integration = TenantIntegration(
                tenant_id=tenant_id,
                access_token=token.access_token,
                merchant_id=token.merchant_id,
                mode=self.settings.environment,
            )
            creating = True
        else:
            creating = False

        integration.access_token = token.access_token
        integration.refresh_token = token.refresh_token
        integration.token_expires_at = token.expires_at
        integration.merchant_id = token.merchant_id
        integration.location_id = location.id if location else None
        integration.scopes = set(SQUARE_SCOPES)
        integration.enabled = True
        integration.needs_reauthorization = False
        integration.last_error = None

        if creating:
            integration = self.repository.create_integration(integration)
        else:
            integration = self.repository.update_integration(integration)

        log.info(
            "Square connected",
            integration_id=integration.id,
            merchant_id=integration.merchant_id,
            location_id=integration.location_id,
        )
        return integration

    # -------------------------------------------------------------------------
    # Tokens
    # -------------------------------------------------------------------------

    def get_integration(self, tenant_id: str) -> TenantIntegration:
        integration = self.repository.get_integration_by_tenant_id(tenant_id, mode=self.settings.environment)
        if integration is None:
            raise IntegrationNotFoundError(f"No Square integration for tenant {tenant_id}")
        return integration

    def _needs_refresh(self, integration: TenantIntegration) -> bool:
        remaining = integration.seconds_until_expiry()
        return remaining is not None and remaining < self.settings.token_refresh_threshold

    def _lock_for(self, tenant_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._refresh_locks.get(tenant_id)
            if lock is None:
                lock = self._refresh_locks[tenant_id] = threading.Lock()
            return lock

    @staticmethod
    def _ensure_authorized(integration: TenantIntegration) -> None:
        if integration.needs_reauthorization:
            raise ReauthorizationRequiredError(
                f"Square connection for tenant {integration.tenant_id} needs to be reauthorized"
            )

    def get_valid_access_token(self, tenant_id: str) -> str:
        """
        Return an access token with more than the refresh threshold left.

        Raises:
            IntegrationNotFoundError: Tenant is not connected
            ReauthorizationRequiredError: Refresh was refused or was already known to fail
        """
        integration = self.get_integration(tenant_id)
        self._ensure_authorized(integration)
        if not self._needs_refresh(integration):
            return integration.access_token

        with self._lock_for(tenant_id):
            # Another thread may have refreshed while we waited
            integration = self.get_integration(tenant_id)
            self._ensure_authorized(integration)
            if self._needs_refresh(integration):
                integration = self.refresh(integration)
        return integration.access_token

    def force_refresh(self, tenant_id: str, rejected_token: str) -> str:
        """
        Replace a token Square rejected before its expiry.

        When another thread already replaced rejected_token, the stored
        token is returned without a second refresh.
        """
        with self._lock_for(tenant_id):
            integration = self.get_integration(tenant_id)
            self._ensure_authorized(integration)
            if integration.access_token != rejected_token:
                return integration.access_token
            self._log.info("Access token rejected by Square, refreshing", tenant_id=tenant_id)
            return self.refresh(integration).access_token

    def _mark_reauthorization(self, integration: TenantIntegration, error: str) -> None:
        integration.needs_reauthorization = True
        integration.last_error = error
        self.repository.update_integration(integration)
        self._log.warning(
            "Square connection needs reauthorization",
            tenant_id=integration.tenant_id,
            integration_id=integration.id,
            error=error,
        )

    def mark_reauthorization_required(self, tenant_id: str, error: str) -> None:
        """Flag the tenant's connection after Square keeps rejecting a fresh token."""
        integration = self.repository.get_integration_by_tenant_id(tenant_id, mode=self.settings.environment)
        if integration is not None and not integration.needs_reauthorization:
            self._mark_reauthorization(integration, error)

    def refresh(self, integration: TenantIntegration) -> TenantIntegration:
        """
        Refresh the access token.

        Square refusing the refresh token marks the integration for
        reauthorization. Transient failures (5xx, 429, network) propagate
        unchanged and leave the integration as it was.
        """
        if not integration.refresh_token:
            self._mark_reauthorization(integration, "No refresh token available")
            raise ReauthorizationRequiredError("No refresh token available")

        self.settings.require_oauth_credentials()
        try:
            with self.client_factory() as client:
                token = client.obtain_token({
                    "client_id": self.settings.application_id,
                    "client_secret": self.settings.application_secret,
                    "grant_type": "refresh_token",
                    "refresh_token": integration.refresh_token,
                })
        except (SquareAuthError, SquareValidationError) as e:
            self._mark_reauthorization(integration, f"Token refresh failed: {e}")
            raise ReauthorizationRequiredError(f"Token refresh failed: {e}") from e

        integration.access_token = token.access_token
        if token.refresh_token:
            integration.refresh_token = token.refresh_token
        integration.token_expires_at = token.expires_at
        integration.last_error = None
        integration = self.repository.update_integration(integration)

        expires_at = integration.token_expires_at
        self._log.info(
            "Refreshed Square access token",
            tenant_id=integration.tenant_id,
            expires_at=expires_at.astimezone(timezone.utc).isoformat() if expires_at else None,
        )
        return integration

    def revoke(self, tenant_id: str) -> bool:
        """
        Disconnect a tenant: revoke the token at Square, then delete the integration.

        The remote revoke is best-effort. Product mappings are kept.
        Returns False when the tenant had no integration.
        """
        integration = self.repository.get_integration_by_tenant_id(tenant_id, mode=self.settings.environment)
        if integration is None:
            return False

        try:
            with self.client_factory() as client:
                client.revoke_token(
                    self.settings.application_id,
                    self.settings.application_secret,
                    integration.access_token,
                )
        except (SquareAPIError, httpx.HTTPError) as e:
            self._log.warning("Remote token revoke failed", tenant_id=tenant_id, error=str(e))

        self.repository.delete_integration(integration.id)
        self._log.info("Square disconnected", tenant_id=tenant_id, integration_id=integration.id)
        return True
