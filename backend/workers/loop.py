"""
Orchestration Loop — in-process driver for push and pull work.

    push   submit(event) runs reconciliation and the instant path for one
           fact and returns the report to the caller. An inventory-level
           fact needs a full sweep, so it joins the shop's in-flight cycle
           or starts one under the same per-shop guard as a tick.
    pull   every tick_interval seconds, start a cycle for each connected
           shop that is not already running; shops run in parallel,
           bounded by max_concurrent_shops

At most one cycle per shop is in flight; a tick that finds a shop still
running skips it. request_shutdown() stops new ticks and facts, and run()
returns once in-flight work has drained. If the record store is
unreachable the next tick is delayed with exponential back-off.

Run with:  python -m workers.loop
"""

from __future__ import annotations

import asyncio
import signal

import structlog

from core.config import Settings, get_settings
from core.errors import StoreUnavailableError
from db.repository import SqlShopDirectory
from inventory.models import FactKind, IngressEvent
from workers.cycle import CycleReport, ShopCycleRunner

logger = structlog.get_logger()


class OrchestrationLoop:
    def __init__(
        self,
        runner: ShopCycleRunner,
        directory: SqlShopDirectory,
        *,
        tick_interval: float = 120.0,
        max_concurrent_shops: int = 8,
        backoff_initial: float = 5.0,
        backoff_max: float = 300.0,
    ):
        self.runner = runner
        self.directory = directory
        self.tick_interval = tick_interval
        self.backoff_initial = backoff_initial
        self.backoff_max = backoff_max
        self._slots = asyncio.Semaphore(max(1, max_concurrent_shops))
        self._in_flight: dict[str, asyncio.Task] = {}
        self._ingests: set[asyncio.Task] = set()
        self._stopping = asyncio.Event()
        self._store_failures = 0
        self._store_down = False

    @classmethod
    def from_settings(
        cls, runner: ShopCycleRunner, directory: SqlShopDirectory, settings: Settings | None = None
    ) -> "OrchestrationLoop":
        settings = settings or get_settings()
        return cls(
            runner,
            directory,
            tick_interval=settings.tick_interval_seconds,
            max_concurrent_shops=settings.max_concurrent_shops,
            backoff_initial=settings.tick_backoff_initial_seconds,
            backoff_max=settings.tick_backoff_max_seconds,
        )

    @property
    def accepting(self) -> bool:
        return not self._stopping.is_set()

    def in_flight(self) -> set[str]:
        return set(self._in_flight)

    # ── Push path ────────────────────────────────────────────────────

    async def submit(self, event: IngressEvent) -> CycleReport | None:
        if not self.accepting:
            raise RuntimeError("Orchestration loop is shutting down; fact rejected")
        if event.kind is FactKind.INVENTORY_ABSOLUTE:
            return await self._sweep(event.shop)
        task = asyncio.create_task(self.runner.ingest(event), name=f"ingest:{event.shop}")
        self._ingests.add(task)
        task.add_done_callback(self._ingests.discard)
        try:
            return await asyncio.shield(task)
        except StoreUnavailableError:
            self._store_down = True
            raise

    async def _sweep(self, shop: str) -> CycleReport | None:
        task = self._in_flight.get(shop)
        if task is None:
            task = self._start_shop(shop)
        else:
            logger.info("loop.sweep_coalesced", shop=shop)
        return await asyncio.shield(task)

    # ── Pull path ────────────────────────────────────────────────────

    async def tick(self) -> list[asyncio.Task]:
        """Start a cycle for each connected shop without one in flight."""
        if not self.accepting:
            return []
        try:
            shops = await self.directory.list_active_shops()
        except StoreUnavailableError:
            self._store_down = True
            raise

        started = []
        for shop in shops:
            if shop in self._in_flight:
                logger.info("loop.shop_skipped", shop=shop, reason="cycle_in_flight")
                continue
            started.append(self._start_shop(shop))
        logger.info("loop.tick", shops=len(shops), started=len(started), in_flight=len(self._in_flight))
        return started

    def _start_shop(self, shop: str) -> asyncio.Task:
        task = asyncio.create_task(self._run_shop(shop), name=f"shop-cycle:{shop}")
        self._in_flight[shop] = task
        return task

    async def _run_shop(self, shop: str) -> CycleReport | None:
        try:
            async with self._slots:
                return await self.runner.run_shop_cycle(shop)
        except StoreUnavailableError as exc:
            self._store_down = True
            logger.error("loop.shop_store_unavailable", shop=shop, error=str(exc))
        except Exception:  # noqa: BLE001
            logger.error("loop.shop_cycle_failed", shop=shop, exc_info=True)
        finally:
            self._in_flight.pop(shop, None)
        return None

    def next_delay(self) -> float:
        """Seconds until the next tick: the interval, or back-off while the store is down."""
        if self._store_down:
            self._store_failures += 1
        else:
            self._store_failures = 0
        self._store_down = False

        if not self._store_failures:
            return self.tick_interval
        delay = min(self.backoff_max, self.backoff_initial * 2 ** (self._store_failures - 1))
        logger.warning("loop.backoff", failures=self._store_failures, delay_seconds=delay)
        return delay

    # ── Lifecycle ────────────────────────────────────────────────────

    async def run(self) -> None:
        logger.info("loop.started", tick_interval=self.tick_interval)
        while self.accepting:
            try:
                await self.tick()
            except StoreUnavailableError as exc:
                logger.error("loop.tick_store_unavailable", error=str(exc))
            except Exception:  # noqa: BLE001
                logger.error("loop.tick_failed", exc_info=True)

            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.next_delay())
            except asyncio.TimeoutError:
                pass
        await self.drain()
        logger.info("loop.stopped")

    def request_shutdown(self) -> None:
        if self.accepting:
            logger.info("loop.shutdown_requested", in_flight=len(self._in_flight), ingests=len(self._ingests))
        self._stopping.set()

    async def drain(self) -> None:
        """Wait for in-flight shop cycles and fact ingests to finish."""
        pending = [*self._in_flight.values(), *self._ingests]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


async def _serve() -> None:
    from workers.runtime import build_runtime

    settings = get_settings()
    runtime = build_runtime(settings)
    loop = OrchestrationLoop.from_settings(runtime.runner, runtime.directory, settings)

    event_loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        event_loop.add_signal_handler(sig, loop.request_shutdown)
    try:
        await loop.run()
    finally:
        await runtime.dispose()


def main() -> None:
    asyncio.run(_serve())


if __name__ == "__main__":
    main()
