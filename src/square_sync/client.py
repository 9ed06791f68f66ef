"""
Square API Client

Synchronous HTTP client with:
- Client-side rate limiting (shared sliding window per integration)
- Retry with exponential backoff for transient errors (429, 5xx, network)
- Connection pooling and per-call timeouts
- Request/response logging
- Cursor pagination helpers with deduplication
"""

import logging
import threading
import time
from typing import Any, Callable, Iterable, Iterator

import httpx
import structlog
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from square_sync.config import SQUARE_SANDBOX_URL, SquareSettings
from square_sync.models import (
    SquareCatalogItem,
    SquareCatalogListResponse,
    SquareInventoryCount,
    SquareInventoryCountsResponse,
    SquareLocation,
    SquareLocationsResponse,
    SquareTokenResponse,
    SquareUpsertCatalogResponse,
)
from square_sync.rate_limiter import SlidingWindowRateLimiter

logger = structlog.get_logger(__name__)

DEFAULT_API_VERSION = "2024-01-18"

# Square caps batch-retrieve at 1000 ids; smaller chunks keep responses small
INVENTORY_ID_CHUNK = 100


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class SquareAPIError(Exception):
    """Base exception for Square API errors."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_body: str | None = None,
        error_code: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body
        self.error_code = error_code

    def __str__(self) -> str:
        base = super().__str__()
        if self.status_code:
            return f"{base} (HTTP {self.status_code})"
        return base


class SquareRateLimitError(SquareAPIError):
    """Raised when Square's rate limit is exceeded (429)."""

    def __init__(self, message: str, retry_after: float | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class SquareAuthError(SquareAPIError):
    """Raised when the access token is invalid, expired or revoked (401/403)."""
    pass


class SquareServerError(SquareAPIError):
    """Raised on server errors (5xx) - these are retryable."""
    pass


class SquareNotFoundError(SquareAPIError):
    """Raised when resource not found (404)."""
    pass


class SquareValidationError(SquareAPIError):
    """Raised when Square rejects the request payload (other 4xx)."""
    pass


# ---------------------------------------------------------------------------
# Retry Configuration
# ---------------------------------------------------------------------------

def is_retryable_error(exception: BaseException) -> bool:
    """Determine if an exception should trigger a retry."""
    if isinstance(exception, SquareRateLimitError):
        return True
    if isinstance(exception, SquareServerError):
        return True
    if isinstance(exception, httpx.TransportError):
        return True
    if isinstance(exception, httpx.TimeoutException):
        return True
    return False


def _square_error(response: httpx.Response) -> tuple[str | None, str]:
    """Pull (code, detail) out of Square's {"errors": [...]} body."""
    try:
        errors = response.json().get("errors") or []
    except ValueError:
        return None, response.text[:200]
    if not errors:
        return None, response.text[:200]
    first = errors[0]
    return first.get("code"), first.get("detail") or first.get("code") or "unknown error"


def _retry_after(response: httpx.Response) -> float | None:
    """Seconds from a numeric Retry-After header, None when absent or unparseable."""
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


class wait_retry_after(wait_base):
    """Honour Square's Retry-After on 429s, otherwise fall back to another wait."""

    def __init__(self, fallback: wait_base, max_wait: float = 30.0):
        self.fallback = fallback
        self.max_wait = max_wait

    def __call__(self, retry_state) -> float:
        exception = retry_state.outcome.exception() if retry_state.outcome else None
        retry_after = getattr(exception, "retry_after", None)
        if retry_after is not None:
            return min(retry_after, self.max_wait)
        return self.fallback(retry_state)


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class SquareClient:
    """
    Square REST API client for one merchant connection.

    Every request passes through the rate limiter handed in by the caller,
    so all clients of one integration share the same window.

    Example:
        client = SquareClient(
            access_token="EAAA...",
            rate_limiter=SlidingWindowRateLimiter(10, 500),
        )

        with client:
            for item in client.iter_catalog_items():
                print(item.name)
    """

    def __init__(
        self,
        base_url: str = SQUARE_SANDBOX_URL,
        access_token: str | None = None,
        token_provider: Callable[[], str] | None = None,
        token_refresher: Callable[[str], str] | None = None,
        rate_limiter: SlidingWindowRateLimiter | None = None,
        api_version: str = DEFAULT_API_VERSION,
        timeout: float = 30.0,
        max_retries: int = 3,
        retry_backoff: float = 2.0,
        transport: httpx.BaseTransport | None = None,
    ):
        """
        Initialize the client.

        Args:
            base_url: connect.squareup.com or the sandbox host
            access_token: Static bearer token
            token_provider: Called before each request for a fresh token (wins over access_token)
            token_refresher: Called with a token Square rejected (401/403); returns a
                replacement, and the request is retried once with it
            rate_limiter: Shared limiter for this integration (None = no client-side limit)
            api_version: Square-Version header
            timeout: Per-request timeout in seconds
            max_retries: Max attempts for transient errors
            retry_backoff: Multiplier for exponential backoff between attempts
            transport: Custom httpx transport (tests)
        """
        self.base_url = base_url.rstrip("/")
        self.access_token = access_token
        self.token_provider = token_provider
        self.token_refresher = token_refresher
        self.api_version = api_version
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff

        self.rate_limiter = rate_limiter
        self._transport = transport
        self._client: httpx.Client | None = None

        # Request counters for observability, shared by batch threads
        self._stats_lock = threading.Lock()
        self._request_count = 0
        self._error_count = 0

        self._log = logger.bind(base_url=self.base_url)

    def _build_http_client(self) -> httpx.Client:
        return httpx.Client(
            timeout=self.timeout,
            limits=httpx.Limits(max_keepalive_connections=5, max_connections=10),
            headers={
                "Square-Version": self.api_version,
                "User-Agent": "square-sync/1.0",
            },
            transport=self._transport,
        )

    def __enter__(self) -> "SquareClient":
        if self._client is None:
            self._client = self._build_http_client()
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def close(self) -> None:
        if self._client:
            self._client.close()
            self._client = None

    @property
    def client(self) -> httpx.Client:
        """Get HTTP client, creating if needed."""
        if self._client is None:
            self._client = self._build_http_client()
        return self._client

    def _current_token(self) -> str:
        token = self.token_provider() if self.token_provider else self.access_token
        if not token:
            raise SquareAuthError("No access token available")
        return token

    def _make_request(
        self,
        method: str,
        endpoint: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        authenticated: bool = True,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """
        Make a rate-limited, retrying request to the Square API.

        A bearer token Square rejects is handed to token_refresher once and
        the request repeated with the replacement.
        """
        log = self._log.bind(endpoint=endpoint, method=method)

        @retry(
            retry=retry_if_exception(is_retryable_error),
            stop=stop_after_attempt(self.max_retries),
            wait=wait_retry_after(wait_exponential(multiplier=self.retry_backoff, max=30)),
            before_sleep=before_sleep_log(log, logging.INFO),
            reraise=True,
        )
        def _do_request(token: str | None) -> dict[str, Any]:
            if self.rate_limiter is not None:
                self.rate_limiter.acquire()

            request_headers = dict(headers or {})
            if token is not None:
                request_headers["Authorization"] = f"Bearer {token}"

            with self._stats_lock:
                self._request_count += 1
                request_id = self._request_count

            log.debug("API request", request_id=request_id)

            start_time = time.monotonic()
            response = self.client.request(
                method,
                f"{self.base_url}{endpoint}",
                params=params,
                json=json,
                headers=request_headers,
            )
            elapsed = time.monotonic() - start_time

            log.debug(
                "API response",
                request_id=request_id,
                status_code=response.status_code,
                elapsed_ms=round(elapsed * 1000),
            )

            if response.status_code < 400:
                try:
                    return response.json() if response.content else {}
                except ValueError as e:
                    raise SquareAPIError(f"Invalid JSON response: {e}")

            with self._stats_lock:
                self._error_count += 1
            code, detail = _square_error(response)

            if response.status_code == 429:
                raise SquareRateLimitError(
                    "Rate limit exceeded - will retry",
                    retry_after=_retry_after(response),
                    status_code=429,
                    response_body=response.text[:500],
                    error_code=code,
                )

            if response.status_code in (401, 403):
                raise SquareAuthError(
                    f"Authorization failed: {detail}",
                    status_code=response.status_code,
                    error_code=code,
                )

            if response.status_code == 404:
                raise SquareNotFoundError(
                    f"Resource not found: {endpoint}",
                    status_code=404,
                    error_code=code,
                )

            if response.status_code >= 500:
                raise SquareServerError(
                    f"Server error {response.status_code} - will retry",
                    status_code=response.status_code,
                    response_body=response.text[:500],
                    error_code=code,
                )

            raise SquareValidationError(
                f"API error: {detail}",
                status_code=response.status_code,
                response_body=response.text[:500],
                error_code=code,
            )

        token = self._current_token() if authenticated else None
        try:
            return _do_request(token)
        except SquareAuthError:
            if token is None or self.token_refresher is None:
                raise
            log.info("Access token rejected, refreshing")
            return _do_request(self.token_refresher(token))

    # -------------------------------------------------------------------------
    # Catalog
    # -------------------------------------------------------------------------

    def list_catalog_items(self, cursor: str | None = None) -> SquareCatalogListResponse:
        """Get one page of ITEM catalog objects."""
        params: dict[str, Any] = {"types": "ITEM"}
        if cursor:
            params["cursor"] = cursor

        data = self._make_request("GET", "/v2/catalog/list", params=params)
        return SquareCatalogListResponse.model_validate(data)

    def iter_catalog_items(
        self,
        seen_ids: set[str] | None = None,
        include_deleted: bool = False,
    ) -> Iterator[SquareCatalogItem]:
        """
        Iterate through all catalog items with cursor pagination and deduplication.
        """
        seen = seen_ids if seen_ids is not None else set()
        cursor: str | None = None
        page = 1

        while True:
            response = self.list_catalog_items(cursor=cursor)

            for item in response.objects:
                if item.id in seen:
                    continue
                seen.add(item.id)

                if item.is_deleted and not include_deleted:
                    continue

                yield item

            self._log.info("Fetched catalog page", page=page, count=len(response.objects))

            if not response.cursor:
                break

            cursor = response.cursor
            page += 1

    def upsert_catalog_object(
        self,
        catalog_object: SquareCatalogItem,
        idempotency_key: str,
    ) -> SquareUpsertCatalogResponse:
        """Create or update one catalog item (with its variations)."""
        payload = {
            "idempotency_key": idempotency_key,
            "object": catalog_object.model_dump(mode="json", exclude_none=True),
        }
        data = self._make_request("POST", "/v2/catalog/object", json=payload)
        return SquareUpsertCatalogResponse.model_validate(data)

    # -------------------------------------------------------------------------
    # Inventory
    # -------------------------------------------------------------------------

    def retrieve_inventory_counts(
        self,
        catalog_object_ids: list[str] | None = None,
        location_ids: list[str] | None = None,
        cursor: str | None = None,
    ) -> SquareInventoryCountsResponse:
        """Get one page of inventory counts."""
        payload: dict[str, Any] = {}
        if catalog_object_ids:
            payload["catalog_object_ids"] = catalog_object_ids
        if location_ids:
            payload["location_ids"] = location_ids
        if cursor:
            payload["cursor"] = cursor

        data = self._make_request("POST", "/v2/inventory/counts/batch-retrieve", json=payload)
        return SquareInventoryCountsResponse.model_validate(data)

    def iter_inventory_counts(
        self,
        catalog_object_ids: Iterable[str] | None = None,
        location_ids: list[str] | None = None,
    ) -> Iterator[SquareInventoryCount]:
        """Iterate through inventory counts, chunking the id filter."""
        ids = list(catalog_object_ids) if catalog_object_ids is not None else None
        chunks: list[list[str] | None]
        if ids is None:
            chunks = [None]
        else:
            chunks = [ids[i:i + INVENTORY_ID_CHUNK] for i in range(0, len(ids), INVENTORY_ID_CHUNK)]

        for chunk in chunks:
            cursor: str | None = None
            while True:
                response = self.retrieve_inventory_counts(
                    catalog_object_ids=chunk,
                    location_ids=location_ids,
                    cursor=cursor,
                )
                yield from response.counts

                if not response.cursor:
                    break
                cursor = response.cursor

    def batch_change_inventory(
        self,
        changes: list[dict[str, Any]],
        idempotency_key: str,
    ) -> list[SquareInventoryCount]:
        """Apply inventory changes (physical counts / adjustments)."""
        payload = {
            "idempotency_key": idempotency_key,
            "changes": changes,
            "ignore_unchanged_counts": True,
        }
        data = self._make_request("POST", "/v2/inventory/changes/batch-create", json=payload)
        return SquareInventoryCountsResponse.model_validate(data).counts

    # -------------------------------------------------------------------------
    # Locations / merchant
    # -------------------------------------------------------------------------

    def list_locations(self) -> list[SquareLocation]:
        data = self._make_request("GET", "/v2/locations")
        return SquareLocationsResponse.model_validate(data).locations

    # -------------------------------------------------------------------------
    # OAuth endpoints (application credentials, no bearer token)
    # -------------------------------------------------------------------------

    def obtain_token(self, payload: dict[str, Any]) -> SquareTokenResponse:
        """POST /oauth2/token for both authorization_code and refresh_token grants."""
        data = self._make_request("POST", "/oauth2/token", json=payload, authenticated=False)
        return SquareTokenResponse.model_validate(data)

    def revoke_token(self, application_id: str, application_secret: str, access_token: str) -> bool:
        data = self._make_request(
            "POST",
            "/oauth2/revoke",
            json={"client_id": application_id, "access_token": access_token},
            authenticated=False,
            headers={"Authorization": f"Client {application_secret}"},
        )
        return bool(data.get("success", False))

    # -------------------------------------------------------------------------
    # Observability
    # -------------------------------------------------------------------------

    def get_stats(self) -> dict[str, Any]:
        """Get client statistics for monitoring."""
        with self._stats_lock:
            requests, errors = self._request_count, self._error_count
        stats: dict[str, Any] = {
            "base_url": self.base_url,
            "request_count": requests,
            "error_count": errors,
            "error_rate": round(errors / max(1, requests), 4),
        }
        if self.rate_limiter is not None:
            stats["rate_limiter"] = self.rate_limiter.get_stats()
        return stats

    def health_check(self) -> dict[str, Any]:
        """Verify API connectivity and credentials."""
        try:
            data = self._make_request("GET", "/v2/merchants/me")
            merchant = data.get("merchant", {})
            return {
                "status": "healthy",
                "merchant_id": merchant.get("id", "unknown"),
                "business_name": merchant.get("business_name"),
            }
        except SquareAuthError:
            return {"status": "auth_error", "message": "Invalid or expired access token"}
        except (SquareAPIError, httpx.HTTPError) as e:
            return {"status": "error", "message": str(e)}


ClientFactory = Callable[..., SquareClient]


def client_factory_for(
    settings: SquareSettings,
    transport: httpx.BaseTransport | None = None,
) -> ClientFactory:
    """
    Build a factory producing clients configured from settings.

    The factory takes the per-connection arguments (access_token,
    token_provider, token_refresher, rate_limiter) as keywords.
    """
    def factory(**kwargs: Any) -> SquareClient:
        return SquareClient(
            base_url=settings.base_url,
            api_version=settings.api_version,
            timeout=settings.request_timeout,
            max_retries=settings.max_retries,
            retry_backoff=settings.retry_backoff,
            transport=transport,
            **kwargs,
        )

    return factory
