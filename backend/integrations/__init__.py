"""
Integration adapters package.

Capabilities the alerting engine consumes, plus their concrete adapters:
  - Shopify Admin GraphQL  (inventory, catalog, owner email)
  - Shopify webhooks       (payload normalization into IngressEvents)

Usage:
    from integrations.shopify import ShopifyGateway

    gateway = ShopifyGateway(directory)
    reading = await gateway.fetch_inventory(ItemKey("shop.myshopify.com", "632910392", "808950810"))
"""

from integrations.base import (
    AlertDelivery,
    CatalogEntry,
    InventoryReading,
    InventorySource,
    OwnerEmailResolver,
    SyncResult,
    SyncStatus,
)
from integrations.shopify import ShopifyClient, ShopifyGateway
from integrations.webhooks import normalize_webhook

__all__ = [
    "AlertDelivery",
    "CatalogEntry",
    "InventoryReading",
    "InventorySource",
    "OwnerEmailResolver",
    "SyncResult",
    "SyncStatus",
    "ShopifyClient",
    "ShopifyGateway",
    "normalize_webhook",
]
