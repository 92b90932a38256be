"""
Reconciliation Source Adapter

Routes inbound facts to the right store operation:

    INVENTORY_ABSOLUTE  → full poll sweep for the shop. The webhook only
                          names an inventory item and the item → variant
                          mapping is not stored locally, so we re-read
                          every tracked key instead of guessing.
    ORDER_DECREMENT     → InventoryStateStore.apply_delta
    PRODUCT_ABSOLUTE    → InventoryStateStore.apply_fact (newest observed_at wins)
    poll sweep          → fetch catalog, re-fetch each tracked key, apply_fact
    track               → seed a new item from the platform, then store.track

Every result carries the items that crossed below threshold so the caller
can run the instant dispatch path.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import TypeVar

import structlog

from core.errors import CapabilityTimeoutError, DataInconsistencyError, StoreUnavailableError, classify_error
from integrations.base import InventorySource, SyncResult, SyncStatus
from inventory.models import FactKind, IngressEvent, InventoryFact, ItemKey, TrackedItem
from inventory.store import InventoryStateStore

logger = structlog.get_logger()

T = TypeVar("T")


class ReconciliationAdapter:
    def __init__(
        self,
        store: InventoryStateStore,
        source: InventorySource,
        *,
        timeout_seconds: float = 20.0,
        clock: Callable[[], datetime] | None = None,
    ):
        self.store = store
        self.source = source
        self.timeout_seconds = timeout_seconds
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def _bounded(self, call: Awaitable[T], what: str) -> T:
        try:
            return await asyncio.wait_for(call, timeout=self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise CapabilityTimeoutError(f"{what} exceeded {self.timeout_seconds}s") from exc

    # ── Push path ────────────────────────────────────────────────────

    async def handle_event(self, event: IngressEvent) -> SyncResult:
        log = logger.bind(shop=event.shop, kind=event.kind.value)

        if event.kind is FactKind.INVENTORY_ABSOLUTE:
            log.info("reconcile.inventory_item_fallback", inventory_item_ref=event.inventory_item_ref)
            result = await self.poll_sweep(event.shop)
            result.metadata["trigger"] = "inventory_item_fallback"
            return result

        result = SyncResult(status=SyncStatus.SUCCESS, metadata={"trigger": event.kind.value})
        try:
            if event.kind is FactKind.ORDER_DECREMENT:
                await self._apply_order_decrement(event, result)
            elif event.kind is FactKind.PRODUCT_ABSOLUTE:
                await self._apply_product_absolute(event, result)
            else:
                raise DataInconsistencyError(f"Unknown fact kind {event.kind!r}")
        except StoreUnavailableError:
            raise
        except Exception as exc:  # noqa: BLE001
            category, _ = classify_error(exc)
            log.warning("reconcile.fact_dropped", error=str(exc), category=category)
            result.records_failed += 1
            result.errors.append(category)
        return result.complete()

    async def _apply_order_decrement(self, event: IngressEvent, result: SyncResult) -> None:
        if not event.variant_ref or event.decrement is None or event.decrement <= 0:
            raise DataInconsistencyError("Order decrement needs a variant and a positive quantity")

        delta = await self.store.apply_delta(
            event.shop,
            event.variant_ref,
            event.decrement,
            received_at=event.received_at,
            observed_at=event.observed_at,
        )
        if not delta.changed:
            result.records_ignored += 1
            return
        result.records_processed += 1
        if delta.crossed_into_below:
            result.crossings.append(delta.item)

    async def _apply_product_absolute(self, event: IngressEvent, result: SyncResult) -> None:
        if not event.product_ref or event.quantity is None:
            raise DataInconsistencyError("Product update needs a product and an absolute quantity")

        outcome = await self.store.apply_fact(
            InventoryFact(
                key=ItemKey(event.shop, event.product_ref, event.variant_ref),
                quantity=event.quantity,
                received_at=event.received_at,
                observed_at=event.observed_at,
                source="webhook_product",
            )
        )
        if not outcome.changed:
            result.records_ignored += 1
            return
        result.records_processed += 1
        if outcome.crossed_into_below:
            result.crossings.append(outcome.item)

    # ── Pull path ────────────────────────────────────────────────────

    async def poll_sweep(self, shop: str) -> SyncResult:
        """Re-fetch every tracked item that still exists in the shop's catalog."""
        log = logger.bind(shop=shop)
        result = SyncResult(status=SyncStatus.SUCCESS, metadata={"trigger": "poll"})

        tracked = await self.store.list_for_shop(shop)
        if not tracked:
            return result.complete()

        try:
            catalog = await self._bounded(self.source.fetch_tracked_catalog(shop), "catalog fetch")
        except StoreUnavailableError:
            raise
        except Exception as exc:  # noqa: BLE001
            category, _ = classify_error(exc)
            log.error("reconcile.sweep.catalog_failed", error=str(exc), category=category)
            result.status = SyncStatus.FAILED
            result.records_failed = len(tracked)
            result.errors.append(category)
            return result.complete()

        catalog_products = {entry.product_ref for entry in catalog}
        catalog_variants = {(entry.product_ref, entry.variant_ref) for entry in catalog}

        for item in tracked:
            key = item.key
            if key.product_ref not in catalog_products or (
                key.variant_ref and (key.product_ref, key.variant_ref) not in catalog_variants
            ):
                log.info("reconcile.sweep.not_in_catalog", key=str(key))
                result.records_ignored += 1
                continue

            try:
                reading = await self._bounded(self.source.fetch_inventory(key), f"inventory fetch for {key}")
                outcome = await self.store.apply_fact(
                    InventoryFact(
                        key=key,
                        quantity=reading.quantity,
                        received_at=self.clock(),
                        observed_at=reading.observed_at,
                        source="poll",
                    )
                )
            except StoreUnavailableError:
                raise
            except Exception as exc:  # noqa: BLE001
                category, _ = classify_error(exc)
                log.warning("reconcile.sweep.key_failed", key=str(key), error=str(exc), category=category)
                result.records_failed += 1
                result.errors.append(f"{key}: {category}")
                continue

            if outcome.changed:
                result.records_processed += 1
                if outcome.crossed_into_below:
                    result.crossings.append(outcome.item)
            else:
                result.records_ignored += 1

        result.complete()
        log.info(
            "reconcile.sweep.completed",
            status=result.status.value,
            processed=result.records_processed,
            failed=result.records_failed,
            ignored=result.records_ignored,
            crossings=len(result.crossings),
        )
        return result

    # ── Operator path ────────────────────────────────────────────────

    async def track(
        self,
        key: ItemKey,
        *,
        product_title: str,
        threshold_quantity: int,
        variant_title: str | None = None,
        alerts_enabled: bool = True,
    ) -> TrackedItem:
        """
        Assign a threshold. A key seen for the first time starts from the
        platform's current count so its first drop below threshold is a
        crossing; if that fetch fails the item starts at 0 and the next
        poll sweep corrects it.
        """
        quantity, observed_at = 0, None
        if await self.store.get(key) is None:
            try:
                reading = await self._bounded(self.source.fetch_inventory(key), f"inventory fetch for {key}")
                quantity, observed_at = reading.quantity, reading.observed_at
            except StoreUnavailableError:
                raise
            except Exception as exc:  # noqa: BLE001
                category, _ = classify_error(exc)
                logger.warning("reconcile.track.seed_failed", key=str(key), error=str(exc), category=category)

        return await self.store.track(
            key,
            product_title=product_title,
            variant_title=variant_title,
            threshold_quantity=threshold_quantity,
            alerts_enabled=alerts_enabled,
            current_inventory=quantity,
            checked_at=self.clock(),
            observed_at=observed_at,
        )
