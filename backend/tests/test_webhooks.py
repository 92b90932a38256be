"""
Tests for Shopify webhook normalization.

Covers:
  - One IngressEvent per order line item / product variant
  - Malformed payloads raise WebhookPayloadError
  - Unsupported topics are rejected
"""

from datetime import datetime, timezone

import pytest

from core.errors import WebhookPayloadError
from integrations.webhooks import normalize_webhook, parse_timestamp
from inventory.models import FactKind

SHOP = "snowdevil.myshopify.com"
RECEIVED = datetime(2024, 1, 15, 19, 24, tzinfo=timezone.utc)


class TestOrderCreate:
    def test_line_items_become_decrements(self):
        events = normalize_webhook(
            "orders/create",
            SHOP,
            {
                "id": 820982911946154508,
                "created_at": "2024-01-15T14:23:45-05:00",
                "line_items": [
                    {"variant_id": 808950810, "product_id": 632910392, "quantity": 2},
                    {"variant_id": 49148385, "product_id": 632910392, "quantity": 1},
                ],
            },
            RECEIVED,
        )
        assert [e.kind for e in events] == [FactKind.ORDER_DECREMENT, FactKind.ORDER_DECREMENT]
        assert [(e.variant_ref, e.decrement) for e in events] == [("808950810", 2), ("49148385", 1)]
        assert events[0].observed_at == datetime(2024, 1, 15, 19, 23, 45, tzinfo=timezone.utc)
        assert events[0].received_at == RECEIVED

    def test_custom_line_items_are_skipped(self):
        events = normalize_webhook(
            "orders/create",
            SHOP,
            {"id": 1, "line_items": [{"variant_id": None, "quantity": 1}, {"variant_id": 5, "quantity": 0}]},
        )
        assert events == []

    def test_missing_line_items(self):
        with pytest.raises(WebhookPayloadError, match="line_items"):
            normalize_webhook("orders/create", SHOP, {"id": 1})

    def test_non_integer_quantity(self):
        with pytest.raises(WebhookPayloadError, match="quantity"):
            normalize_webhook("orders/create", SHOP, {"line_items": [{"variant_id": 5, "quantity": "two"}]})


class TestProductUpdate:
    def test_variants_become_absolute_facts(self):
        events = normalize_webhook(
            "products/update",
            SHOP,
            {
                "id": 632910392,
                "updated_at": "2024-01-15T14:23:45Z",
                "variants": [
                    {"id": 808950810, "inventory_quantity": 3},
                    {"id": 49148385, "inventory_quantity": None},
                ],
            },
            RECEIVED,
        )
        assert len(events) == 1
        event = events[0]
        assert event.kind is FactKind.PRODUCT_ABSOLUTE
        assert (event.product_ref, event.variant_ref, event.quantity) == ("632910392", "808950810", 3)

    def test_missing_product_id(self):
        with pytest.raises(WebhookPayloadError):
            normalize_webhook("products/update", SHOP, {"variants": []})


class TestInventoryLevelUpdate:
    def test_inventory_item_event(self):
        events = normalize_webhook(
            "inventory_levels/update",
            SHOP,
            {"inventory_item_id": 271878346596884015, "location_id": 24826418, "available": 6},
            RECEIVED,
        )
        assert len(events) == 1
        assert events[0].kind is FactKind.INVENTORY_ABSOLUTE
        assert events[0].inventory_item_ref == "271878346596884015"
        assert events[0].variant_ref is None

    def test_missing_available(self):
        with pytest.raises(WebhookPayloadError, match="available"):
            normalize_webhook("inventory_levels/update", SHOP, {"inventory_item_id": 1})


def test_unsupported_topic():
    with pytest.raises(WebhookPayloadError, match="Unsupported"):
        normalize_webhook("customers/create", SHOP, {})


def test_missing_shop():
    with pytest.raises(WebhookPayloadError):
        normalize_webhook("orders/create", "", {"line_items": []})


def test_parse_timestamp_handles_garbage():
    assert parse_timestamp("not-a-date") is None
    assert parse_timestamp(None) is None
