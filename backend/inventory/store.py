"""
Inventory State Store — the only writer of TrackedItem records.

Concurrency model:
  - In-process: every write for a key runs under KeyedLocks.hold(key), so
    webhook facts, poll facts, deltas and MarkAlerted for the same key are
    linearized while different keys proceed in parallel.
  - Cross-process (several Celery workers, loop + workers): each write is a
    version compare-and-swap. A lost CAS is retried a bounded number of
    times; on exhaustion ConcurrentWriteError propagates and the caller
    skips the key for this cycle.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any

import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from core.errors import ConcurrentWriteError
from inventory.evaluator import evaluate, is_stale
from inventory.locks import KeyedLocks
from inventory.models import InventoryFact, ItemKey, TrackedItem

logger = structlog.get_logger()


# ── Storage capability ─────────────────────────────────────────────────────


class TrackedItemRepository(ABC):
    """Key-addressed record store for TrackedItem rows."""

    @abstractmethod
    async def get(self, key: ItemKey) -> TrackedItem | None: ...

    @abstractmethod
    async def find_by_variant(self, shop: str, variant_ref: str) -> TrackedItem | None: ...

    @abstractmethod
    async def list_for_shop(self, shop: str, *, alerting_only: bool = False) -> list[TrackedItem]: ...

    @abstractmethod
    async def insert(self, item: TrackedItem) -> TrackedItem:
        """Insert a new row. Raises ConcurrentWriteError if the key already exists."""

    @abstractmethod
    async def compare_and_swap(self, item: TrackedItem, expected_version: int) -> TrackedItem | None:
        """Write item if the stored version still equals expected_version.

        Returns the stored item (version bumped) or None on conflict.
        """

    @abstractmethod
    async def delete(self, key: ItemKey) -> bool: ...


# ── Results ────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class FactResult:
    key: ItemKey
    item: TrackedItem | None
    changed: bool
    crossed_into_below: bool = False
    previous_quantity: int | None = None
    reason: str = "applied"


@dataclass(frozen=True)
class DeltaResult:
    key: ItemKey | None
    item: TrackedItem | None
    old_quantity: int | None
    new_quantity: int | None
    crossed_into_below: bool = False
    reason: str = "applied"

    @property
    def changed(self) -> bool:
        return self.item is not None and self.reason == "applied"


# Mutator: current item -> (new item or None for "no write", outcome)
Mutator = Callable[[TrackedItem], tuple[TrackedItem | None, Any]]


class InventoryStateStore:
    def __init__(
        self,
        repository: TrackedItemRepository,
        *,
        locks: KeyedLocks | None = None,
        write_attempts: int = 3,
    ):
        self.repository = repository
        self.locks = locks or KeyedLocks()
        self.write_attempts = max(1, write_attempts)

    # ── Reads ────────────────────────────────────────────────────────

    async def get(self, key: ItemKey) -> TrackedItem | None:
        return await self.repository.get(key)

    async def list_for_shop(self, shop: str) -> list[TrackedItem]:
        return await self.repository.list_for_shop(shop)

    async def alerting_items(self, shop: str) -> list[TrackedItem]:
        """Items with alerts enabled and inventory below threshold."""
        return await self.repository.list_for_shop(shop, alerting_only=True)

    # ── Reconciliation writes ────────────────────────────────────────

    async def apply_fact(self, fact: InventoryFact) -> FactResult:
        """
        Apply an absolute quantity. Untracked keys are ignored (nothing is
        created) and facts older than the last applied one are rejected.
        """

        def mutate(current: TrackedItem):
            if is_stale(current, fact):
                return None, ("stale", False, current.current_inventory)
            new, crossed = evaluate(current, fact)
            return new, ("applied", crossed, current.current_inventory)

        item, outcome = await self._mutate(fact.key, mutate)
        if outcome is None:
            logger.info("store.fact.untracked", key=str(fact.key), source=fact.source)
            return FactResult(key=fact.key, item=None, changed=False, reason="untracked")

        reason, crossed, previous = outcome
        if reason == "stale":
            logger.info(
                "store.fact.stale",
                key=str(fact.key),
                observed_at=fact.observed_at.isoformat() if fact.observed_at else None,
                last_observed_at=item.last_observed_at.isoformat() if item.last_observed_at else None,
            )
            return FactResult(key=fact.key, item=item, changed=False, previous_quantity=previous, reason="stale")

        return FactResult(
            key=fact.key,
            item=item,
            changed=True,
            crossed_into_below=crossed,
            previous_quantity=previous,
        )

    async def apply_delta(
        self,
        shop: str,
        variant_ref: str,
        decrement: int,
        *,
        received_at: datetime,
        observed_at: datetime | None = None,
    ) -> DeltaResult:
        """
        Subtract an ordered quantity from the stored value, floored at zero.

        Relative to whatever the store holds when the per-key lock is taken,
        so a more recent absolute read is never clobbered by a stale value.
        A value that is already negative (oversold upstream) is left as is.
        """
        if decrement <= 0:
            raise ValueError(f"decrement must be positive, got {decrement}")

        target = await self.repository.find_by_variant(shop, variant_ref)
        if target is None:
            logger.info("store.delta.untracked", shop=shop, variant_ref=variant_ref)
            return DeltaResult(key=None, item=None, old_quantity=None, new_quantity=None, reason="untracked")

        def mutate(current: TrackedItem):
            new_quantity = min(current.current_inventory, max(0, current.current_inventory - decrement))
            fact = InventoryFact(
                key=current.key,
                quantity=new_quantity,
                received_at=received_at,
                observed_at=observed_at,
                source="order",
            )
            new, crossed = evaluate(current, fact)
            return new, (current.current_inventory, new_quantity, crossed)

        item, outcome = await self._mutate(target.key, mutate)
        if outcome is None:
            return DeltaResult(key=target.key, item=None, old_quantity=None, new_quantity=None, reason="untracked")

        old_quantity, new_quantity, crossed = outcome
        logger.info(
            "store.delta.applied",
            key=str(target.key),
            old_quantity=old_quantity,
            new_quantity=new_quantity,
        )
        return DeltaResult(
            key=target.key,
            item=item,
            old_quantity=old_quantity,
            new_quantity=new_quantity,
            crossed_into_below=crossed,
        )

    async def mark_alerted(self, key: ItemKey, sent_at: datetime) -> TrackedItem | None:
        """Record a confirmed delivery. Only the dispatcher calls this."""
        item, outcome = await self._mutate(key, lambda current: (replace(current, last_alert_sent_at=sent_at), True))
        if outcome is None:
            logger.warning("store.mark_alerted.untracked", key=str(key))
            return None
        return item

    # ── Operator writes ──────────────────────────────────────────────

    async def track(
        self,
        key: ItemKey,
        *,
        product_title: str,
        threshold_quantity: int,
        variant_title: str | None = None,
        alerts_enabled: bool = True,
        current_inventory: int = 0,
        checked_at: datetime | None = None,
        observed_at: datetime | None = None,
    ) -> TrackedItem:
        """
        Create the item on first threshold assignment, or update its threshold.

        The starting quantity is the caller's; ReconciliationAdapter.track
        seeds it from the platform. Later calls never touch the quantity.
        """
        async with self.locks.hold(key):
            async for attempt in self._retrying():
                with attempt:
                    existing = await self.repository.get(key)
                    if existing is None:
                        return await self.repository.insert(
                            TrackedItem(
                                key=key,
                                product_title=product_title,
                                variant_title=variant_title,
                                threshold_quantity=threshold_quantity,
                                alerts_enabled=alerts_enabled,
                                current_inventory=current_inventory,
                                last_checked_at=checked_at,
                                last_observed_at=observed_at,
                            )
                        )
                    updated = replace(
                        existing,
                        product_title=product_title,
                        variant_title=variant_title,
                        threshold_quantity=threshold_quantity,
                        alerts_enabled=alerts_enabled,
                    )
                    stored = await self.repository.compare_and_swap(updated, expected_version=existing.version)
                    if stored is None:
                        raise ConcurrentWriteError(f"Concurrent update on {key}")
                    return stored

    async def set_alerts_enabled(self, key: ItemKey, enabled: bool) -> TrackedItem | None:
        item, outcome = await self._mutate(key, lambda current: (replace(current, alerts_enabled=enabled), True))
        return item if outcome is not None else None

    async def untrack(self, key: ItemKey) -> bool:
        async with self.locks.hold(key):
            return await self.repository.delete(key)

    # ── Internals ────────────────────────────────────────────────────

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.write_attempts),
            wait=wait_exponential(multiplier=0.05, max=1),
            retry=retry_if_exception_type(ConcurrentWriteError),
            reraise=True,
        )

    async def _mutate(self, key: ItemKey, mutate: Mutator) -> tuple[TrackedItem | None, Any]:
        """
        Read-modify-CAS one key under its lock.

        Returns (stored_or_current_item, outcome); outcome is None when the
        key is not tracked.
        """
        async with self.locks.hold(key):
            try:
                async for attempt in self._retrying():
                    with attempt:
                        current = await self.repository.get(key)
                        if current is None:
                            return None, None
                        new, outcome = mutate(current)
                        if new is None:
                            return current, outcome
                        stored = await self.repository.compare_and_swap(new, expected_version=current.version)
                        if stored is None:
                            raise ConcurrentWriteError(f"Concurrent update on {key}")
                        return stored, outcome
            except ConcurrentWriteError:
                logger.error("store.write_conflict_exhausted", key=str(key), attempts=self.write_attempts)
                raise
