"""
Platform & Delivery Capabilities — Abstract Base Classes

The alerting engine never talks to Shopify or SendGrid directly; it consumes
these interfaces so reconciliation and dispatch stay source-agnostic and
tests can plug in fakes.

    InventorySource      FetchInventory / FetchTrackedCatalog
    OwnerEmailResolver   ResolveShopOwnerEmail
    AlertDelivery        Deliver(recipient, payload)
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from alerts.payloads import AlertPayload
    from inventory.models import ItemKey, TrackedItem


class SyncStatus(str, Enum):
    """Result status of a reconciliation pass."""

    SUCCESS = "success"
    PARTIAL = "partial"  # Some keys applied, some failed
    FAILED = "failed"
    NO_DATA = "no_data"


# ── Result containers ──────────────────────────────────────────────────────


@dataclass(frozen=True)
class InventoryReading:
    quantity: int
    observed_at: datetime


@dataclass(frozen=True)
class CatalogEntry:
    product_ref: str
    variant_ref: str | None
    product_title: str = ""
    variant_title: str | None = None


@dataclass
class SyncResult:
    """Standardized return from every reconciliation entry point."""

    status: SyncStatus
    records_processed: int = 0
    records_failed: int = 0
    records_ignored: int = 0
    errors: list[str] = field(default_factory=list)
    crossings: list[TrackedItem] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: datetime | None = None

    def complete(self) -> "SyncResult":
        if self.status is not SyncStatus.FAILED:
            if self.records_failed and self.records_processed:
                self.status = SyncStatus.PARTIAL
            elif self.records_failed:
                self.status = SyncStatus.FAILED
            elif not self.records_processed and not self.records_ignored:
                self.status = SyncStatus.NO_DATA
        self.completed_at = datetime.now(timezone.utc)
        return self


# ── Capabilities ───────────────────────────────────────────────────────────


class InventorySource(ABC):
    @abstractmethod
    async def fetch_inventory(self, key: ItemKey) -> InventoryReading:
        """Current quantity for one product/variant (default variant when variant_ref is None)."""
        ...

    @abstractmethod
    async def fetch_tracked_catalog(self, shop: str) -> list[CatalogEntry]:
        """Every product/variant the platform still knows about for the shop."""
        ...


class OwnerEmailResolver(ABC):
    @abstractmethod
    async def resolve_owner_email(self, shop: str) -> str: ...


class AlertDelivery(ABC):
    @abstractmethod
    async def deliver(self, recipient: str, payload: AlertPayload) -> None:
        """Send one alert. Raises DeliveryError (or any exception) on failure."""
        ...
