"""
Pytest configuration and fixtures for Square sync tests.
"""

import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import httpx
import pytest

from square_sync.client import SquareClient, client_factory_for
from square_sync.config import SquareSettings
from square_sync.models import PlatformProduct, TenantIntegration
from square_sync.repository import InMemoryIntegrationRepository, InMemoryPlatformStore


class FakeClock:
    """Monotonic clock that only moves when told to (or when slept on)."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class SquareAPIStub:
    """
    Routes httpx requests to canned Square responses.

    Handlers are keyed by (method, path) and receive the request; every
    request is recorded for assertions.
    """

    def __init__(self):
        self.handlers: dict[tuple[str, str], object] = {}
        self.requests: list[httpx.Request] = []

    def on(self, method: str, path: str, handler) -> None:
        self.handlers[(method, path)] = handler

    def json_body(self, index: int = -1) -> dict:
        return json.loads(self.requests[index].content)

    def calls_to(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.handlers.get((request.method, request.url.path))
        if handler is None:
            return httpx.Response(404, json={"errors": [{"code": "NOT_FOUND", "detail": "no stub"}]})
        if callable(handler):
            return handler(request)
        return httpx.Response(200, json=handler)


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def square_api():
    return SquareAPIStub()


@pytest.fixture
def settings():
    return SquareSettings(
        application_id="sq0idp-test-app",
        application_secret="sq0csp-test-secret",
        redirect_uri="https://platform.example.com/square/callback",
        max_retries=2,
        retry_backoff=0.0,
        batch_concurrency=1,
    )


@pytest.fixture
def client_factory(settings, square_api):
    return client_factory_for(settings, transport=httpx.MockTransport(square_api))


@pytest.fixture
def square_client(square_api):
    client = SquareClient(
        access_token="EAAA-test-token",
        transport=httpx.MockTransport(square_api),
        max_retries=3,
        retry_backoff=0,
    )
    yield client
    client.close()


@pytest.fixture
def repository():
    return InMemoryIntegrationRepository()


@pytest.fixture
def store():
    return InMemoryPlatformStore()


@pytest.fixture
def integration(repository):
    """A connected sandbox integration with a token valid for a day."""
    return repository.create_integration(TenantIntegration(
        tenant_id="tenant-1",
        access_token="EAAA-test-token",
        refresh_token="EQAA-refresh-token",
        merchant_id="MERCHANT_1",
        location_id="LOC_MAIN",
        token_expires_at=datetime.now(timezone.utc) + timedelta(days=1),
        scopes={"ITEMS_READ", "ITEMS_WRITE", "INVENTORY_READ", "INVENTORY_WRITE"},
    ))


@pytest.fixture
def sample_catalog_item_data():
    """Sample ITEM catalog object from the Square API."""
    return {
        "type": "ITEM",
        "id": "ITEM_COFFEE",
        "version": 1700000000000,
        "updated_at": "2024-01-15T10:30:00Z",
        "is_deleted": False,
        "item_data": {
            "name": "House Blend Coffee",
            "description": "Medium roast, 12oz bag",
            "category_id": "CAT_BEANS",
            "variations": [
                {
                    "type": "ITEM_VARIATION",
                    "id": "VAR_COFFEE_12OZ",
                    "version": 1700000000000,
                    "item_variation_data": {
                        "item_id": "ITEM_COFFEE",
                        "name": "12oz",
                        "sku": "COF-12",
                        "pricing_type": "FIXED_PRICING",
                        "price_money": {"amount": 1999, "currency": "USD"},
                    },
                },
                {
                    "type": "ITEM_VARIATION",
                    "id": "VAR_COFFEE_2LB",
                    "version": 1700000000000,
                    "item_variation_data": {
                        "item_id": "ITEM_COFFEE",
                        "name": "2lb",
                        "sku": "COF-32",
                        "pricing_type": "FIXED_PRICING",
                        "price_money": {"amount": 4550, "currency": "USD"},
                    },
                },
            ],
        },
    }


@pytest.fixture
def sample_inventory_count_data():
    """Sample inventory count from the Square API."""
    return {
        "catalog_object_id": "VAR_COFFEE_12OZ",
        "catalog_object_type": "ITEM_VARIATION",
        "state": "IN_STOCK",
        "location_id": "LOC_MAIN",
        "quantity": "42",
        "calculated_at": "2024-01-16T08:00:00Z",
    }


@pytest.fixture
def sample_token_data():
    """Sample /oauth2/token response."""
    return {
        "access_token": "EAAA-new-access-token",
        "token_type": "bearer",
        "expires_at": "2030-01-01T00:00:00Z",
        "merchant_id": "MERCHANT_1",
        "refresh_token": "EQAA-new-refresh-token",
    }


@pytest.fixture
def sample_locations_data():
    return {
        "locations": [
            {"id": "LOC_CLOSED", "name": "Old Shop", "status": "INACTIVE", "merchant_id": "MERCHANT_1"},
            {"id": "LOC_MAIN", "name": "Main Street", "status": "ACTIVE", "merchant_id": "MERCHANT_1"},
        ]
    }


@pytest.fixture
def sample_product():
    return PlatformProduct(
        id="prod-1",
        tenant_id="tenant-1",
        name="House Blend Coffee",
        description="Medium roast",
        sku="COF-12",
        price=Decimal("19.99"),
    )
