"""
Shopify Webhook Normalization

Turns raw webhook bodies into IngressEvents for the reconciliation adapter.
The HTTP receiver (HMAC verification, routing) lives outside this service;
it hands us (topic, shop_domain, payload).

    inventory_levels/update → INVENTORY_ABSOLUTE (inventory item id only)
    orders/create           → ORDER_DECREMENT per line item
    products/update         → PRODUCT_ABSOLUTE per variant
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import structlog

from core.errors import WebhookPayloadError
from inventory.models import FactKind, IngressEvent

logger = structlog.get_logger()

INVENTORY_LEVEL_SCHEMA = {"required_fields": ["inventory_item_id", "available"]}
ORDER_SCHEMA = {"required_fields": ["line_items"]}
PRODUCT_SCHEMA = {"required_fields": ["id"]}


def validate_payload(payload: dict[str, Any], schema: dict) -> list[str]:
    """Validate a payload against its schema, returning list of errors."""
    errors = []
    for field in schema["required_fields"]:
        if payload.get(field) is None:
            errors.append(f"Missing required field: {field}")
    return errors


def parse_timestamp(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _ref(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def _int(value: Any, field: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise WebhookPayloadError(f"Field {field} is not an integer: {value!r}") from exc


def normalize_inventory_level_update(shop: str, payload: dict[str, Any], received_at: datetime) -> list[IngressEvent]:
    """
    Input:
        {"inventory_item_id": 271878346596884015, "location_id": 24826418,
         "available": 6, "updated_at": "2024-01-15T14:23:45-05:00"}
    """
    errors = validate_payload(payload, INVENTORY_LEVEL_SCHEMA)
    if errors:
        raise WebhookPayloadError("; ".join(errors))
    return [
        IngressEvent(
            shop=shop,
            kind=FactKind.INVENTORY_ABSOLUTE,
            received_at=received_at,
            inventory_item_ref=_ref(payload["inventory_item_id"]),
            quantity=_int(payload["available"], "available"),
            observed_at=parse_timestamp(payload.get("updated_at")),
        )
    ]


def normalize_order_create(shop: str, payload: dict[str, Any], received_at: datetime) -> list[IngressEvent]:
    """
    Input:
        {"id": 820982911946154508, "created_at": "2024-01-15T14:23:45-05:00",
         "line_items": [{"variant_id": 808950810, "product_id": 632910392, "quantity": 2}]}

    Line items without a variant or with a non-positive quantity carry no
    inventory change and are skipped.
    """
    errors = validate_payload(payload, ORDER_SCHEMA)
    if errors:
        raise WebhookPayloadError("; ".join(errors))

    observed_at = parse_timestamp(payload.get("created_at"))
    events = []
    for line_item in payload["line_items"]:
        variant_ref = _ref(line_item.get("variant_id"))
        quantity = _int(line_item.get("quantity", 0), "quantity")
        if variant_ref is None or quantity <= 0:
            logger.debug("webhook.order.line_item_skipped", shop=shop, order_id=payload.get("id"))
            continue
        events.append(
            IngressEvent(
                shop=shop,
                kind=FactKind.ORDER_DECREMENT,
                received_at=received_at,
                product_ref=_ref(line_item.get("product_id")),
                variant_ref=variant_ref,
                decrement=quantity,
                observed_at=observed_at,
            )
        )
    return events


def normalize_product_update(shop: str, payload: dict[str, Any], received_at: datetime) -> list[IngressEvent]:
    """
    Input:
        {"id": 632910392, "updated_at": "2024-01-15T14:23:45-05:00",
         "variants": [{"id": 808950810, "inventory_quantity": 3}]}
    """
    errors = validate_payload(payload, PRODUCT_SCHEMA)
    if errors:
        raise WebhookPayloadError("; ".join(errors))

    product_ref = _ref(payload["id"])
    observed_at = parse_timestamp(payload.get("updated_at"))
    events = []
    for variant in payload.get("variants") or []:
        variant_ref = _ref(variant.get("id"))
        if variant_ref is None or variant.get("inventory_quantity") is None:
            continue
        events.append(
            IngressEvent(
                shop=shop,
                kind=FactKind.PRODUCT_ABSOLUTE,
                received_at=received_at,
                product_ref=product_ref,
                variant_ref=variant_ref,
                quantity=_int(variant["inventory_quantity"], "inventory_quantity"),
                observed_at=observed_at,
            )
        )
    return events


WEBHOOK_NORMALIZERS = {
    "inventory_levels/update": normalize_inventory_level_update,
    "orders/create": normalize_order_create,
    "products/update": normalize_product_update,
}


def normalize_webhook(
    topic: str,
    shop: str,
    payload: dict[str, Any],
    received_at: datetime | None = None,
) -> list[IngressEvent]:
    """Dispatch on the X-Shopify-Topic header value."""
    if not shop:
        raise WebhookPayloadError("Missing shop domain")
    normalizer = WEBHOOK_NORMALIZERS.get(topic)
    if normalizer is None:
        raise WebhookPayloadError(f"Unsupported webhook topic: {topic}")
    return normalizer(shop, payload, received_at or datetime.now(timezone.utc))
