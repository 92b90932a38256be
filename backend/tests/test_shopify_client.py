"""
Tests for the Shopify GraphQL client and gateway.

Uses httpx.MockTransport; no network access.
"""

import json

import httpx
import pytest

from core.errors import CapabilityTimeoutError, DataInconsistencyError, RecipientResolutionError, ShopifyAPIError
from integrations.shopify import ShopifyClient, ShopifyGateway, from_gid, to_gid
from inventory.models import ItemKey

SHOP = "snowdevil.myshopify.com"
TOKEN = "shpat_0123456789abcdef"


def _graphql(handler):
    """Route a GraphQL request body to handler(query, variables) -> data."""

    def _respond(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        return httpx.Response(200, json={"data": handler(body["query"], body["variables"])})

    return httpx.MockTransport(_respond)


def test_gid_round_trip():
    assert to_gid("ProductVariant", "808950810") == "gid://shopify/ProductVariant/808950810"
    assert to_gid("Product", "gid://shopify/Product/1") == "gid://shopify/Product/1"
    assert from_gid("gid://shopify/Product/632910392") == "632910392"
    assert from_gid(None) is None


class TestClient:
    @pytest.mark.asyncio
    async def test_variant_inventory(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["token"] = request.headers["X-Shopify-Access-Token"]
            seen["variables"] = json.loads(request.content)["variables"]
            return httpx.Response(200, json={"data": {"productVariant": {"id": "x", "inventoryQuantity": 7}}})

        client = ShopifyClient(SHOP, TOKEN, api_version="2024-10", transport=httpx.MockTransport(handler))

        assert await client.get_inventory_level("632910392", "808950810") == 7
        assert seen["url"] == f"https://{SHOP}/admin/api/2024-10/graphql.json"
        assert seen["token"] == TOKEN
        assert seen["variables"] == {"id": "gid://shopify/ProductVariant/808950810"}

    @pytest.mark.asyncio
    async def test_default_variant_uses_first_product_variant(self):
        transport = _graphql(
            lambda query, variables: {"product": {"id": variables["id"], "variants": {"nodes": [{"id": "v", "inventoryQuantity": 3}]}}}
        )
        client = ShopifyClient(SHOP, TOKEN, transport=transport)
        assert await client.get_inventory_level("632910392") == 3

    @pytest.mark.asyncio
    async def test_catalog_is_paginated(self):
        pages = {
            None: {
                "pageInfo": {"hasNextPage": True, "endCursor": "c1"},
                "nodes": [
                    {
                        "id": "gid://shopify/Product/1",
                        "title": "Board",
                        "variants": {"nodes": [{"id": "gid://shopify/ProductVariant/11", "title": "Large"}]},
                    }
                ],
            },
            "c1": {
                "pageInfo": {"hasNextPage": False, "endCursor": None},
                "nodes": [{"id": "gid://shopify/Product/2", "title": "Wax", "variants": {"nodes": []}}],
            },
        }
        client = ShopifyClient(SHOP, TOKEN, transport=_graphql(lambda query, variables: {"products": pages[variables["after"]]}))

        catalog = await client.get_catalog(page_size=1)

        assert [(e.product_ref, e.variant_ref, e.product_title) for e in catalog] == [("1", "11", "Board"), ("2", None, "Wax")]

    @pytest.mark.asyncio
    async def test_http_error(self):
        client = ShopifyClient(SHOP, TOKEN, transport=httpx.MockTransport(lambda request: httpx.Response(502)))
        with pytest.raises(ShopifyAPIError, match="HTTP 502"):
            await client.get_shop_email()

    @pytest.mark.asyncio
    async def test_graphql_errors(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"errors": [{"message": "Throttled"}]}))
        client = ShopifyClient(SHOP, TOKEN, transport=transport)
        with pytest.raises(ShopifyAPIError, match="GraphQL"):
            await client.get_shop_email()

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        client = ShopifyClient(SHOP, TOKEN, transport=httpx.MockTransport(handler))
        with pytest.raises(CapabilityTimeoutError):
            await client.get_shop_email()


class TestGateway:
    @pytest.mark.asyncio
    async def test_uses_stored_token(self, directory, clock):
        await directory.connect(SHOP, TOKEN)
        tokens = []

        def handler(request):
            tokens.append(request.headers["X-Shopify-Access-Token"])
            return httpx.Response(200, json={"data": {"productVariant": {"id": "x", "inventoryQuantity": 4}}})

        gateway = ShopifyGateway(directory, transport=httpx.MockTransport(handler), clock=clock)
        reading = await gateway.fetch_inventory(ItemKey(SHOP, "632910392", "808950810"))

        assert reading.quantity == 4
        assert reading.observed_at == clock()
        assert tokens == [TOKEN]

    @pytest.mark.asyncio
    async def test_deleted_variant(self, directory):
        await directory.connect(SHOP, TOKEN)
        gateway = ShopifyGateway(directory, transport=_graphql(lambda query, variables: {"productVariant": None}))
        with pytest.raises(DataInconsistencyError):
            await gateway.fetch_inventory(ItemKey(SHOP, "632910392", "808950810"))

    @pytest.mark.asyncio
    async def test_owner_email_prefers_contact_email(self, directory):
        await directory.connect(SHOP, TOKEN)
        gateway = ShopifyGateway(
            directory,
            transport=_graphql(lambda query, variables: {"shop": {"email": "owner@snowdevil.com", "contactEmail": "hello@snowdevil.com"}}),
        )
        assert await gateway.resolve_owner_email(SHOP) == "hello@snowdevil.com"

    @pytest.mark.asyncio
    async def test_owner_email_missing(self, directory):
        await directory.connect(SHOP, TOKEN)
        gateway = ShopifyGateway(directory, transport=_graphql(lambda query, variables: {"shop": {"email": None}}))
        with pytest.raises(RecipientResolutionError):
            await gateway.resolve_owner_email(SHOP)

    @pytest.mark.asyncio
    async def test_disconnected_shop(self, directory):
        await directory.connect(SHOP, TOKEN)
        await directory.disconnect(SHOP)
        gateway = ShopifyGateway(directory, transport=_graphql(lambda query, variables: {}))
        with pytest.raises(ShopifyAPIError, match="No connected session"):
            await gateway.fetch_tracked_catalog(SHOP)
        assert await directory.list_active_shops() == []
