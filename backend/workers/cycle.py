"""
Shop Cycle Runner — one unit of work per shop, shared by every driver.

    ingest(event)        apply one pushed fact → instant path for crossings
                         (apply and alert are also callable separately)
    run_shop_cycle(shop) poll sweep → instant path for crossings → cadence
                         decision → batch path when due

The asyncio OrchestrationLoop and the Celery tasks both call into this
class; neither driver contains alerting logic of its own.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

import structlog

from alerts.cadence import DEFAULT_WINDOW, CadenceDecision, evaluate_cadence
from alerts.dispatcher import AlertDispatcher, DispatchOutcome
from alerts.settings import AlertSettingsService
from core.errors import StoreUnavailableError, classify_error
from integrations.base import SyncResult
from inventory.models import AlertSettings, IngressEvent, TrackedItem
from inventory.reconciliation import ReconciliationAdapter

logger = structlog.get_logger()


@dataclass
class CycleReport:
    shop: str
    sync: SyncResult
    instant: list[DispatchOutcome] = field(default_factory=list)
    cadence: CadenceDecision | None = None
    batch: DispatchOutcome | None = None

    def summary(self) -> dict:
        return {
            "shop": self.shop,
            "sync_status": self.sync.status.value,
            "records_processed": self.sync.records_processed,
            "records_failed": self.sync.records_failed,
            "crossings": len(self.sync.crossings),
            "instant_sent": sum(1 for outcome in self.instant if outcome.delivered),
            "cadence_reason": self.cadence.reason if self.cadence else None,
            "batch_status": self.batch.status.value if self.batch else None,
        }


class ShopCycleRunner:
    def __init__(
        self,
        reconciler: ReconciliationAdapter,
        dispatcher: AlertDispatcher,
        settings_service: AlertSettingsService,
        *,
        cadence_window: timedelta = DEFAULT_WINDOW,
        clock: Callable[[], datetime] | None = None,
    ):
        self.reconciler = reconciler
        self.dispatcher = dispatcher
        self.settings_service = settings_service
        self.cadence_window = cadence_window
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def ingest(self, event: IngressEvent) -> CycleReport:
        """Push path: apply one fact and alert on any crossing it caused."""
        return await self.alert(event.shop, await self.apply(event))

    async def apply(self, event: IngressEvent) -> SyncResult:
        """Commit one fact to the store without alerting."""
        return await self.reconciler.handle_event(event)

    async def alert(self, shop: str, sync: SyncResult) -> CycleReport:
        """Instant path for the crossings of an already-applied fact."""
        report = CycleReport(shop=shop, sync=sync)
        if sync.crossings:
            settings = await self.settings_service.get(shop)
            report.instant = await self._dispatch_crossings(sync.crossings, settings)
        return report

    async def run_shop_cycle(self, shop: str) -> CycleReport:
        """Pull path: full reconciliation, then the cadence pass."""
        log = logger.bind(shop=shop)
        sync = await self.reconciler.poll_sweep(shop)
        report = CycleReport(shop=shop, sync=sync)

        settings = await self.settings_service.get(shop)
        if sync.crossings:
            report.instant = await self._dispatch_crossings(sync.crossings, settings)

        decision = evaluate_cadence(settings, self.clock(), self.cadence_window)
        report.cadence = decision
        if decision.due:
            log.info("cycle.batch_due", cadence=decision.cadence.value)
            report.batch = await self.dispatcher.dispatch_batch(shop, decision.cadence, settings=settings)
        else:
            log.debug("cycle.batch_not_due", cadence=decision.cadence.value, reason=decision.reason)

        log.info("cycle.completed", **report.summary())
        return report

    async def _dispatch_crossings(self, crossings: list[TrackedItem], settings: AlertSettings) -> list[DispatchOutcome]:
        outcomes = []
        for item in crossings:
            try:
                outcomes.append(await self.dispatcher.dispatch_instant(item, crossed_into_below=True, settings=settings))
            except StoreUnavailableError:
                raise
            except Exception as exc:  # noqa: BLE001
                category, _ = classify_error(exc)
                logger.error(
                    "cycle.instant_dispatch_error",
                    shop=item.shop,
                    key=str(item.key),
                    category=category,
                    exc_info=True,
                )
        return outcomes
