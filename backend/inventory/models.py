"""
Domain records for the alerting engine.

These are plain dataclasses; persistence lives in db.repository and all
mutation of TrackedItem goes through inventory.store.InventoryStateStore.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, time
from enum import Enum

DEFAULT_VARIANT_TITLE = "Default Title"


# ── Enums ──────────────────────────────────────────────────────────────────


class Cadence(str, Enum):
    """How often a shop wants to hear about low stock."""

    INSTANT = "instant"
    DAILY = "daily"
    WEEKLY = "weekly"

    @property
    def audit_type(self) -> str:
        return "instant" if self is Cadence.INSTANT else f"{self.value}_batch"


class Weekday(str, Enum):
    MONDAY = "monday"
    TUESDAY = "tuesday"
    WEDNESDAY = "wednesday"
    THURSDAY = "thursday"
    FRIDAY = "friday"
    SATURDAY = "saturday"
    SUNDAY = "sunday"

    @property
    def index(self) -> int:
        """Monday == 0, matching datetime.weekday()."""
        return list(Weekday).index(self)


class FactKind(str, Enum):
    """Inbound fact shapes produced by the webhook receiver."""

    INVENTORY_ABSOLUTE = "inventory_absolute"  # inventory_levels/update, keyed by inventory item
    ORDER_DECREMENT = "order_decrement"  # orders/create line item
    PRODUCT_ABSOLUTE = "product_absolute"  # products/update variant quantity


# ── Tracked items ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ItemKey:
    shop: str
    product_ref: str
    variant_ref: str | None = None

    def __str__(self) -> str:
        return f"{self.shop}/{self.product_ref}/{self.variant_ref or 'default'}"


@dataclass(frozen=True)
class TrackedItem:
    """One shop product/variant with an owner-defined threshold."""

    key: ItemKey
    product_title: str
    threshold_quantity: int
    variant_title: str | None = None
    alerts_enabled: bool = True
    current_inventory: int = 0
    last_checked_at: datetime | None = None
    last_alert_sent_at: datetime | None = None
    last_observed_at: datetime | None = None
    version: int = 0

    def __post_init__(self) -> None:
        if self.threshold_quantity < 0:
            raise ValueError(f"threshold_quantity must be >= 0, got {self.threshold_quantity}")

    @property
    def shop(self) -> str:
        return self.key.shop

    @property
    def display_name(self) -> str:
        if self.variant_title and self.variant_title != DEFAULT_VARIANT_TITLE:
            return f"{self.product_title} - {self.variant_title}"
        return self.product_title

    def is_below_threshold(self) -> bool:
        return self.current_inventory < self.threshold_quantity

    def should_alert(self) -> bool:
        return self.alerts_enabled and self.is_below_threshold()


@dataclass(frozen=True)
class InventoryFact:
    """
    An absolute inventory observation for one key.

    observed_at is when the source saw the quantity (ordering);
    received_at is when we learned about it (last_checked_at).
    """

    key: ItemKey
    quantity: int
    received_at: datetime
    observed_at: datetime | None = None
    source: str = "unknown"


@dataclass(frozen=True)
class IngressEvent:
    """Normalized webhook event, one per variant / line item."""

    shop: str
    kind: FactKind
    received_at: datetime
    product_ref: str | None = None
    variant_ref: str | None = None
    inventory_item_ref: str | None = None
    quantity: int | None = None
    decrement: int | None = None
    observed_at: datetime | None = None


# ── Alert settings ─────────────────────────────────────────────────────────

DEFAULT_CADENCE = Cadence.DAILY
DEFAULT_DAILY_TIME = time(9, 0)
DEFAULT_WEEKLY_DAY = Weekday.MONDAY


@dataclass(frozen=True)
class AlertSettings:
    shop: str
    alert_email: str | None = None
    cadence: Cadence = DEFAULT_CADENCE
    notifications_enabled: bool = True
    daily_time: time = DEFAULT_DAILY_TIME
    weekly_day: Weekday = DEFAULT_WEEKLY_DAY
    timezone: str = "UTC"
    last_daily_sent_at: datetime | None = None
    last_weekly_sent_at: datetime | None = None

    def last_sent_for(self, cadence: Cadence) -> datetime | None:
        if cadence is Cadence.DAILY:
            return self.last_daily_sent_at
        if cadence is Cadence.WEEKLY:
            return self.last_weekly_sent_at
        return None


# ── Audit ──────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class AuditEntry:
    """Immutable record of one notification attempt for one item."""

    shop: str
    product_ref: str
    variant_ref: str | None
    product_title: str
    variant_title: str | None
    current_quantity: int
    threshold_quantity: int
    recipient: str | None
    alert_type: str
    delivered: bool
    created_at: datetime
    error_category: str | None = None
    error_detail: str | None = None
    details: dict = field(default_factory=dict)

    @classmethod
    def for_item(
        cls,
        item: TrackedItem,
        *,
        recipient: str | None,
        cadence: Cadence,
        delivered: bool,
        at: datetime,
        error: tuple[str, str] | None = None,
        details: dict | None = None,
    ) -> "AuditEntry":
        return cls(
            shop=item.shop,
            product_ref=item.key.product_ref,
            variant_ref=item.key.variant_ref,
            product_title=item.product_title,
            variant_title=item.variant_title,
            current_quantity=item.current_inventory,
            threshold_quantity=item.threshold_quantity,
            recipient=recipient,
            alert_type=cadence.audit_type,
            delivered=delivered,
            created_at=at,
            error_category=error[0] if error else None,
            error_detail=error[1] if error else None,
            details=dict(details or {}),
        )

    @property
    def status_message(self) -> str:
        if self.delivered:
            return "Email sent successfully"
        return f"Email failed: {self.error_detail or 'Unknown error'}"
