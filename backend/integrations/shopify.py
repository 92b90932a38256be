"""
Shopify Admin API Integration

GraphQL client for the three platform capabilities the engine consumes:
variant inventory, the shop's catalog (which keys can still be polled) and
the shop owner's email. Offline access tokens come from shop_connections.

No retries here: a failed fetch is a failed key for this cycle and the
next tick is the retry.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone

import httpx
import structlog

from core.config import get_settings
from core.errors import CapabilityTimeoutError, DataInconsistencyError, RecipientResolutionError, ShopifyAPIError
from integrations.base import CatalogEntry, InventoryReading, InventorySource, OwnerEmailResolver
from inventory.models import ItemKey

logger = structlog.get_logger()

VARIANT_INVENTORY_QUERY = """
query variantInventory($id: ID!) {
  productVariant(id: $id) {
    id
    inventoryQuantity
  }
}
"""

PRODUCT_INVENTORY_QUERY = """
query productInventory($id: ID!) {
  product(id: $id) {
    id
    variants(first: 1) {
      nodes {
        id
        inventoryQuantity
      }
    }
  }
}
"""

CATALOG_QUERY = """
query catalog($first: Int!, $after: String) {
  products(first: $first, after: $after) {
    pageInfo {
      hasNextPage
      endCursor
    }
    nodes {
      id
      title
      variants(first: 100) {
        nodes {
          id
          title
        }
      }
    }
  }
}
"""

SHOP_EMAIL_QUERY = """
{
  shop {
    email
    contactEmail
  }
}
"""


def to_gid(resource: str, ref: str) -> str:
    if ref.startswith("gid://"):
        return ref
    return f"gid://shopify/{resource}/{ref}"


def from_gid(gid: str | None) -> str | None:
    if not gid:
        return None
    return gid.rsplit("/", 1)[-1]


class ShopifyClient:
    """Client for one shop's Admin GraphQL API."""

    def __init__(
        self,
        shop_domain: str,
        access_token: str,
        *,
        api_version: str | None = None,
        timeout: float = 20.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.shop_domain = shop_domain
        self.api_version = api_version or get_settings().shopify_api_version
        self.timeout = timeout
        self.transport = transport
        self.headers = {
            "X-Shopify-Access-Token": access_token,
            "Content-Type": "application/json",
        }

    @property
    def graphql_url(self) -> str:
        return f"https://{self.shop_domain}/admin/api/{self.api_version}/graphql.json"

    async def query(self, query: str, variables: dict | None = None) -> dict:
        """Run a GraphQL query and return its `data` object."""
        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=self.timeout) as client:
                response = await client.post(
                    self.graphql_url,
                    headers=self.headers,
                    json={"query": query, "variables": variables or {}},
                )
                response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise CapabilityTimeoutError(f"Shopify request timed out for {self.shop_domain}") from exc
        except httpx.HTTPStatusError as exc:
            raise ShopifyAPIError(
                f"Shopify returned HTTP {exc.response.status_code} for {self.shop_domain}"
            ) from exc
        except httpx.HTTPError as exc:
            raise ShopifyAPIError(f"Shopify transport error for {self.shop_domain}: {exc.__class__.__name__}") from exc

        body = response.json()
        if body.get("errors"):
            logger.error("shopify.graphql_errors", shop=self.shop_domain, errors=body["errors"])
            raise ShopifyAPIError(f"Shopify GraphQL errors for {self.shop_domain}")
        return body.get("data") or {}

    async def get_inventory_level(self, product_ref: str, variant_ref: str | None = None) -> int | None:
        """Inventory for a variant, or for the product's first variant when none is given."""
        if variant_ref:
            data = await self.query(VARIANT_INVENTORY_QUERY, {"id": to_gid("ProductVariant", variant_ref)})
            variant = data.get("productVariant")
            return variant.get("inventoryQuantity") if variant else None

        data = await self.query(PRODUCT_INVENTORY_QUERY, {"id": to_gid("Product", product_ref)})
        product = data.get("product")
        if not product:
            return None
        nodes = product.get("variants", {}).get("nodes", [])
        return nodes[0].get("inventoryQuantity") if nodes else None

    async def get_catalog(self, page_size: int = 50) -> list[CatalogEntry]:
        entries: list[CatalogEntry] = []
        cursor: str | None = None
        while True:
            data = await self.query(CATALOG_QUERY, {"first": page_size, "after": cursor})
            products = data.get("products") or {}
            for product in products.get("nodes", []):
                product_ref = from_gid(product.get("id"))
                variants = product.get("variants", {}).get("nodes", [])
                for variant in variants:
                    entries.append(
                        CatalogEntry(
                            product_ref=product_ref,
                            variant_ref=from_gid(variant.get("id")),
                            product_title=product.get("title", ""),
                            variant_title=variant.get("title"),
                        )
                    )
                if not variants:
                    entries.append(
                        CatalogEntry(product_ref=product_ref, variant_ref=None, product_title=product.get("title", ""))
                    )
            page_info = products.get("pageInfo") or {}
            if not page_info.get("hasNextPage"):
                return entries
            cursor = page_info.get("endCursor")

    async def get_shop_email(self) -> str | None:
        data = await self.query(SHOP_EMAIL_QUERY)
        shop = data.get("shop") or {}
        return shop.get("contactEmail") or shop.get("email")


class ShopifyGateway(InventorySource, OwnerEmailResolver):
    """Shop-aware capability adapter: looks up the shop's token, then calls ShopifyClient."""

    def __init__(
        self,
        directory,
        *,
        api_version: str | None = None,
        timeout: float | None = None,
        page_size: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        settings = get_settings()
        self.directory = directory
        self.api_version = api_version or settings.shopify_api_version
        self.timeout = timeout or settings.capability_timeout_seconds
        self.page_size = page_size or settings.shopify_catalog_page_size
        self.transport = transport
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def client_for(self, shop: str) -> ShopifyClient:
        token = await self.directory.access_token(shop)
        return ShopifyClient(
            shop,
            token,
            api_version=self.api_version,
            timeout=self.timeout,
            transport=self.transport,
        )

    async def fetch_inventory(self, key: ItemKey) -> InventoryReading:
        client = await self.client_for(key.shop)
        quantity = await client.get_inventory_level(key.product_ref, key.variant_ref)
        if quantity is None:
            raise DataInconsistencyError(f"{key} no longer exists on Shopify")
        return InventoryReading(quantity=int(quantity), observed_at=self.clock())

    async def fetch_tracked_catalog(self, shop: str) -> list[CatalogEntry]:
        client = await self.client_for(shop)
        return await client.get_catalog(page_size=self.page_size)

    async def resolve_owner_email(self, shop: str) -> str:
        client = await self.client_for(shop)
        email = await client.get_shop_email()
        if not email:
            raise RecipientResolutionError(f"Shopify returned no owner email for {shop}")
        return email
