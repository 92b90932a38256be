"""
Test Configuration — Fixtures for async DB, fake capabilities, and a clock.

Every test gets a fresh SQLite file in tmp_path; the repositories open one
short session per operation, so each needs its own connection rather than
a shared in-memory one.
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.ext.asyncio import create_async_engine

from core.config import Settings
from core.errors import DeliveryError, RecipientResolutionError, ShopifyAPIError
from db.session import Base
from integrations.base import AlertDelivery, CatalogEntry, InventoryReading, InventorySource, OwnerEmailResolver
from inventory.models import ItemKey
from workers.runtime import build_runtime

SHOP = "snowdevil.myshopify.com"
OTHER_SHOP = "quiet-goods.myshopify.com"

# Monday 2024-01-15, 12:00 UTC
START = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, value: datetime) -> datetime:
        self.now = value
        return self.now


class FakeInventorySource(InventorySource):
    """Platform stand-in: quantities and catalogs are set directly by tests."""

    def __init__(self, clock: Clock):
        self.clock = clock
        self.quantities: dict[ItemKey, int] = {}
        self.catalogs: dict[str, list[CatalogEntry]] = {}
        self.failing_keys: set[ItemKey] = set()
        self.catalog_error: Exception | None = None
        self.fetches: list[ItemKey] = []

    def stock(self, key: ItemKey, quantity: int) -> None:
        self.quantities[key] = quantity
        entries = self.catalogs.setdefault(key.shop, [])
        if not any(e.product_ref == key.product_ref and e.variant_ref == key.variant_ref for e in entries):
            entries.append(CatalogEntry(product_ref=key.product_ref, variant_ref=key.variant_ref))

    async def fetch_inventory(self, key: ItemKey) -> InventoryReading:
        self.fetches.append(key)
        if key in self.failing_keys:
            raise ShopifyAPIError(f"Shopify returned HTTP 502 for {key.shop}")
        return InventoryReading(quantity=self.quantities[key], observed_at=self.clock())

    async def fetch_tracked_catalog(self, shop: str) -> list[CatalogEntry]:
        if self.catalog_error is not None:
            raise self.catalog_error
        return list(self.catalogs.get(shop, []))


class FakeOwnerEmails(OwnerEmailResolver):
    def __init__(self):
        self.emails: dict[str, str] = {SHOP: "owner@snowdevil.com"}
        self.calls: list[str] = []

    async def resolve_owner_email(self, shop: str) -> str:
        self.calls.append(shop)
        if shop not in self.emails:
            raise RecipientResolutionError(f"Shopify returned no owner email for {shop}")
        return self.emails[shop]


class FakeDelivery(AlertDelivery):
    def __init__(self):
        self.sent: list[tuple[str, object]] = []
        self.fail = False

    async def deliver(self, recipient, payload) -> None:
        if self.fail:
            raise DeliveryError("SendGrid returned HTTP 503")
        self.sent.append((recipient, payload))


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def source(clock):
    return FakeInventorySource(clock)


@pytest.fixture
def owner_emails():
    return FakeOwnerEmails()


@pytest.fixture
def delivery():
    return FakeDelivery()


@pytest.fixture
def test_settings(database_url):
    return Settings(
        app_env="test",
        database_url=database_url,
        capability_timeout_seconds=2.0,
        store_write_attempts=3,
    )


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'stockpulse.db'}"


@pytest.fixture
async def test_engine(database_url):
    """Create a fresh file-backed database with all tables."""
    engine = create_async_engine(database_url, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def runtime(test_engine, test_settings, source, owner_emails, delivery, clock):
    return build_runtime(
        test_settings,
        engine=test_engine,
        source=source,
        owner_emails=owner_emails,
        delivery=delivery,
        clock=clock,
    )


@pytest.fixture
def store(runtime):
    return runtime.store


@pytest.fixture
def settings_service(runtime):
    return runtime.settings_service


@pytest.fixture
def audit_log(runtime):
    return runtime.audit_log


@pytest.fixture
def dispatcher(runtime):
    return runtime.dispatcher


@pytest.fixture
def reconciler(runtime):
    return runtime.reconciler


@pytest.fixture
def runner(runtime):
    return runtime.runner


@pytest.fixture
def directory(runtime):
    return runtime.directory
