"""
Tests for the Reconciliation Source Adapter.

Covers:
  - Poll sweep: catalog filter, per-key failure containment, crossings
  - Push path: order decrements, product updates, inventory-item fallback
  - Capability timeouts
  - Operator tracking seeded from the platform
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from core.errors import ShopifyAPIError
from integrations.base import SyncStatus
from inventory.models import FactKind, IngressEvent, ItemKey

SHOP = "snowdevil.myshopify.com"
LARGE = ItemKey(SHOP, "632910392", "808950810")
SMALL = ItemKey(SHOP, "632910392", "49148385")
GONE = ItemKey(SHOP, "111111111", "222222222")


async def _track(store, key, quantity=10, threshold=5):
    await store.track(key, product_title="Snowboard", variant_title=key.variant_ref, threshold_quantity=threshold, current_inventory=quantity)


def _event(kind, clock, **kwargs):
    return IngressEvent(shop=SHOP, kind=kind, received_at=clock(), **kwargs)


# ── Poll sweep ────────────────────────────────────────────────────────


class TestPollSweep:
    @pytest.mark.asyncio
    async def test_sweep_applies_platform_quantities(self, reconciler, store, source):
        await _track(store, LARGE, quantity=10)
        await _track(store, SMALL, quantity=10)
        source.stock(LARGE, 3)
        source.stock(SMALL, 7)

        result = await reconciler.poll_sweep(SHOP)

        assert result.status is SyncStatus.SUCCESS
        assert result.records_processed == 2
        assert [item.key for item in result.crossings] == [LARGE]
        assert (await store.get(SMALL)).current_inventory == 7

    @pytest.mark.asyncio
    async def test_sweep_skips_items_missing_from_catalog(self, reconciler, store, source):
        await _track(store, LARGE)
        await _track(store, GONE)
        source.stock(LARGE, 8)

        result = await reconciler.poll_sweep(SHOP)

        assert GONE not in source.fetches
        assert result.records_ignored == 1
        assert (await store.get(GONE)).current_inventory == 10

    @pytest.mark.asyncio
    async def test_one_failing_key_does_not_stop_the_sweep(self, reconciler, store, source):
        await _track(store, LARGE)
        await _track(store, SMALL)
        source.stock(LARGE, 1)
        source.stock(SMALL, 1)
        source.failing_keys.add(SMALL)

        result = await reconciler.poll_sweep(SHOP)

        assert result.status is SyncStatus.PARTIAL
        assert result.records_failed == 1
        assert result.records_processed == 1
        assert (await store.get(LARGE)).current_inventory == 1
        assert (await store.get(SMALL)).current_inventory == 10

    @pytest.mark.asyncio
    async def test_catalog_failure_fails_the_sweep(self, reconciler, store, source):
        await _track(store, LARGE)
        source.catalog_error = ShopifyAPIError("Shopify returned HTTP 503")

        result = await reconciler.poll_sweep(SHOP)

        assert result.status is SyncStatus.FAILED
        assert result.errors == ["platform_unavailable"]
        assert source.fetches == []

    @pytest.mark.asyncio
    async def test_sweep_without_tracked_items(self, reconciler):
        result = await reconciler.poll_sweep(SHOP)
        assert result.status is SyncStatus.NO_DATA

    @pytest.mark.asyncio
    async def test_slow_platform_times_out(self, reconciler, store, source, monkeypatch):
        await _track(store, LARGE)
        source.stock(LARGE, 1)

        async def _hang(key):
            await asyncio.sleep(10)

        monkeypatch.setattr(source, "fetch_inventory", _hang)
        reconciler.timeout_seconds = 0.05

        result = await reconciler.poll_sweep(SHOP)

        assert result.records_failed == 1
        assert "timeout" in result.errors[0]


# ── Push path ─────────────────────────────────────────────────────────


class TestHandleEvent:
    @pytest.mark.asyncio
    async def test_order_decrement(self, reconciler, store, clock):
        await _track(store, LARGE, quantity=6)

        result = await reconciler.handle_event(_event(FactKind.ORDER_DECREMENT, clock, variant_ref=LARGE.variant_ref, decrement=2))

        assert result.records_processed == 1
        assert [item.current_inventory for item in result.crossings] == [4]

    @pytest.mark.asyncio
    async def test_order_for_untracked_variant_is_ignored(self, reconciler, clock):
        result = await reconciler.handle_event(_event(FactKind.ORDER_DECREMENT, clock, variant_ref="999", decrement=2))
        assert result.records_ignored == 1
        assert result.crossings == []

    @pytest.mark.asyncio
    async def test_product_update_newest_wins(self, reconciler, store, clock):
        await _track(store, LARGE)
        newer = clock() + timedelta(minutes=2)
        await reconciler.handle_event(
            _event(FactKind.PRODUCT_ABSOLUTE, clock, product_ref=LARGE.product_ref, variant_ref=LARGE.variant_ref, quantity=9, observed_at=newer)
        )
        result = await reconciler.handle_event(
            _event(FactKind.PRODUCT_ABSOLUTE, clock, product_ref=LARGE.product_ref, variant_ref=LARGE.variant_ref, quantity=1, observed_at=clock())
        )

        assert result.records_ignored == 1
        assert (await store.get(LARGE)).current_inventory == 9

    @pytest.mark.asyncio
    async def test_inventory_item_event_runs_full_sweep(self, reconciler, store, source, clock):
        await _track(store, LARGE)
        await _track(store, SMALL)
        source.stock(LARGE, 2)
        source.stock(SMALL, 20)

        result = await reconciler.handle_event(
            _event(FactKind.INVENTORY_ABSOLUTE, clock, inventory_item_ref="271878346596884015", quantity=2)
        )

        assert result.metadata["trigger"] == "inventory_item_fallback"
        assert set(source.fetches) == {LARGE, SMALL}
        assert [item.key for item in result.crossings] == [LARGE]

    @pytest.mark.asyncio
    async def test_malformed_decrement_is_dropped(self, reconciler, clock):
        result = await reconciler.handle_event(_event(FactKind.ORDER_DECREMENT, clock, variant_ref=None, decrement=1))
        assert result.status is SyncStatus.FAILED
        assert result.errors == ["invalid_data"]


# ── Operator path ─────────────────────────────────────────────────────


class TestTrack:
    @pytest.mark.asyncio
    async def test_new_item_is_seeded_from_platform(self, reconciler, store, source, clock):
        source.stock(LARGE, 8)

        item = await reconciler.track(LARGE, product_title="Snowboard", threshold_quantity=5)

        assert item.current_inventory == 8
        assert item.last_observed_at == clock()
        source.stock(LARGE, 3)
        result = await reconciler.poll_sweep(SHOP)
        assert [crossed.key for crossed in result.crossings] == [LARGE]

    @pytest.mark.asyncio
    async def test_seed_failure_falls_back_to_zero(self, reconciler, source):
        source.stock(LARGE, 8)
        source.failing_keys.add(LARGE)

        item = await reconciler.track(LARGE, product_title="Snowboard", threshold_quantity=5)

        assert item.current_inventory == 0
        assert item.last_observed_at is None

    @pytest.mark.asyncio
    async def test_threshold_change_keeps_quantity(self, reconciler, store, source):
        await _track(store, LARGE, quantity=12)
        source.stock(LARGE, 1)

        item = await reconciler.track(LARGE, product_title="Snowboard", threshold_quantity=10)

        assert item.threshold_quantity == 10
        assert item.current_inventory == 12
        assert source.fetches == []


def test_sync_result_timestamps_are_utc():
    from integrations.base import SyncResult

    result = SyncResult(status=SyncStatus.SUCCESS, records_processed=1).complete()
    assert result.completed_at.tzinfo is timezone.utc
    assert result.started_at <= result.completed_at <= datetime.now(timezone.utc)
