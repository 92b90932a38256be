"""Alert payloads handed to the delivery capability."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from inventory.models import Cadence, TrackedItem

SUBJECTS = {
    Cadence.INSTANT: "Low Stock Alert",
    Cadence.DAILY: "Daily Low Stock Report",
    Cadence.WEEKLY: "Weekly Low Stock Report",
}
TEST_SUBJECT = "StockPulse Test Email"


@dataclass(frozen=True)
class AlertLine:
    product_ref: str
    variant_ref: str | None
    product_title: str
    variant_title: str | None
    display_name: str
    current_quantity: int
    threshold_quantity: int

    @classmethod
    def from_item(cls, item: TrackedItem) -> "AlertLine":
        return cls(
            product_ref=item.key.product_ref,
            variant_ref=item.key.variant_ref,
            product_title=item.product_title,
            variant_title=item.variant_title,
            display_name=item.display_name,
            current_quantity=item.current_inventory,
            threshold_quantity=item.threshold_quantity,
        )


@dataclass(frozen=True)
class AlertPayload:
    shop: str
    cadence: Cadence
    lines: tuple[AlertLine, ...]
    generated_at: datetime
    is_test: bool = False

    @property
    def is_batch(self) -> bool:
        return self.cadence is not Cadence.INSTANT

    @property
    def subject(self) -> str:
        if self.is_test:
            return TEST_SUBJECT
        if self.cadence is Cadence.INSTANT and len(self.lines) == 1:
            return f"{SUBJECTS[self.cadence]}: {self.lines[0].display_name}"
        return SUBJECTS[self.cadence]

    def as_dict(self) -> dict:
        """Compact form stored with audit entries."""
        return {
            "alert_type": self.cadence.audit_type,
            "shop_domain": self.shop,
            "total_count": len(self.lines),
            "generated_at": self.generated_at.isoformat(),
        }


def build_payload(shop: str, cadence: Cadence, items: list[TrackedItem], at: datetime) -> AlertPayload:
    return AlertPayload(
        shop=shop,
        cadence=cadence,
        lines=tuple(AlertLine.from_item(item) for item in items),
        generated_at=at,
    )


def build_test_payload(shop: str, cadence: Cadence, at: datetime) -> AlertPayload:
    """Delivery check sent from the settings page; carries no items."""
    return AlertPayload(shop=shop, cadence=cadence, lines=(), generated_at=at, is_test=True)
