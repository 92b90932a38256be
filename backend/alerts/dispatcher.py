"""
Alert Dispatcher — instant and batch notification paths.

Instant path (cadence == instant):
  crossed_into_below AND item.should_alert() AND notifications enabled
  AND last_alert_sent_at older than the dedup window
  → one single-item email, one audit entry, MarkAlerted on success.

Batch path (daily / weekly, triggered by the cadence scheduler):
  every item with should_alert()
  → empty set: vacuous success, bookkeeping advances, nothing audited
  → one summary email; audit entry per item with the delivery outcome
  → success: MarkAlerted per item, then last_{daily,weekly}_sent_at advances
  → failure: nothing else changes, so the cycle stays eligible

Delivery and recipient failures never escape: they are classified, audited
and returned as a FAILED outcome. Only StoreUnavailableError propagates.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TypeVar

import structlog

from alerts.payloads import AlertPayload, build_payload, build_test_payload
from alerts.settings import AlertSettingsService
from core.errors import (
    CapabilityTimeoutError,
    ConcurrentWriteError,
    RecipientResolutionError,
    StoreUnavailableError,
    classify_error,
)
from db.repository import SqlAuditLog
from integrations.base import AlertDelivery, OwnerEmailResolver
from inventory.models import AlertSettings, AuditEntry, Cadence, TrackedItem
from inventory.store import InventoryStateStore

logger = structlog.get_logger()

T = TypeVar("T")

DEFAULT_DEDUP_WINDOW = timedelta(hours=1)


class DispatchStatus(str, Enum):
    SENT = "sent"
    SKIPPED = "skipped"
    FAILED = "failed"
    VACUOUS = "vacuous"


@dataclass(frozen=True)
class DispatchOutcome:
    shop: str
    cadence: Cadence
    status: DispatchStatus
    reason: str | None = None
    recipient: str | None = None
    item_count: int = 0
    error_category: str | None = None

    @property
    def delivered(self) -> bool:
        return self.status is DispatchStatus.SENT


class AlertDispatcher:
    def __init__(
        self,
        store: InventoryStateStore,
        settings_service: AlertSettingsService,
        audit_log: SqlAuditLog,
        delivery: AlertDelivery,
        owner_emails: OwnerEmailResolver,
        *,
        dedup_window: timedelta = DEFAULT_DEDUP_WINDOW,
        timeout_seconds: float = 20.0,
        clock: Callable[[], datetime] | None = None,
    ):
        self.store = store
        self.settings_service = settings_service
        self.audit_log = audit_log
        self.delivery = delivery
        self.owner_emails = owner_emails
        self.dedup_window = dedup_window
        self.timeout_seconds = timeout_seconds
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def _bounded(self, call: Awaitable[T], what: str) -> T:
        try:
            return await asyncio.wait_for(call, timeout=self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise CapabilityTimeoutError(f"{what} exceeded {self.timeout_seconds}s") from exc

    # ── Recipient ────────────────────────────────────────────────────

    async def resolve_recipient(self, settings: AlertSettings) -> str:
        """Configured override, otherwise the shop owner's email."""
        if settings.alert_email:
            return settings.alert_email
        try:
            email = await self._bounded(self.owner_emails.resolve_owner_email(settings.shop), "owner email lookup")
        except (RecipientResolutionError, StoreUnavailableError):
            raise
        except Exception as exc:  # noqa: BLE001
            raise RecipientResolutionError(f"Owner email lookup failed for {settings.shop}") from exc
        if not email:
            raise RecipientResolutionError(f"No owner email for {settings.shop}")
        return email

    async def _send(self, settings: AlertSettings, payload: AlertPayload) -> str:
        recipient = await self.resolve_recipient(settings)
        await self._bounded(self.delivery.deliver(recipient, payload), "alert delivery")
        return recipient

    async def send_test(self, shop: str) -> DispatchOutcome:
        """Send a test email to the resolved recipient. Nothing is audited or marked."""
        settings = await self.settings_service.get(shop)
        payload = build_test_payload(shop, settings.cadence, self.clock())
        recipient = settings.alert_email
        try:
            recipient = await self._send(settings, payload)
        except StoreUnavailableError:
            raise
        except Exception as exc:  # noqa: BLE001
            category, message = classify_error(exc)
            logger.warning("dispatch.test.failed", shop=shop, category=category, error=str(exc))
            return DispatchOutcome(
                shop=shop,
                cadence=settings.cadence,
                status=DispatchStatus.FAILED,
                reason=message,
                recipient=recipient,
                error_category=category,
            )
        logger.info("dispatch.test.sent", shop=shop, recipient=recipient)
        return DispatchOutcome(
            shop=shop,
            cadence=settings.cadence,
            status=DispatchStatus.SENT,
            reason="test",
            recipient=recipient,
        )

    # ── Instant path ─────────────────────────────────────────────────

    async def dispatch_instant(
        self,
        item: TrackedItem,
        *,
        crossed_into_below: bool,
        settings: AlertSettings | None = None,
    ) -> DispatchOutcome:
        shop = item.shop
        log = logger.bind(shop=shop, key=str(item.key))

        def skipped(reason: str) -> DispatchOutcome:
            log.debug("dispatch.instant.skipped", reason=reason)
            return DispatchOutcome(shop=shop, cadence=Cadence.INSTANT, status=DispatchStatus.SKIPPED, reason=reason)

        if not crossed_into_below:
            return skipped("no_crossing")
        if not item.should_alert():
            return skipped("alerts_disabled" if not item.alerts_enabled else "not_below_threshold")

        settings = settings or await self.settings_service.get(shop)
        if settings.cadence is not Cadence.INSTANT:
            return skipped("batch_cadence")
        if not settings.notifications_enabled:
            return skipped("notifications_disabled")

        # The caller's snapshot may predate a concurrent MarkAlerted.
        current = await self.store.get(item.key)
        if current is None:
            return skipped("untracked")
        now = self.clock()
        if current.last_alert_sent_at is not None and now - current.last_alert_sent_at < self.dedup_window:
            log.info(
                "dispatch.instant.deduplicated",
                last_alert_sent_at=current.last_alert_sent_at.isoformat(),
            )
            return skipped("deduplicated")

        payload = build_payload(shop, Cadence.INSTANT, [current], now)
        recipient = settings.alert_email
        try:
            recipient = await self._send(settings, payload)
        except StoreUnavailableError:
            raise
        except Exception as exc:  # noqa: BLE001
            category, message = classify_error(exc)
            log.warning("dispatch.instant.failed", category=category, error=str(exc))
            await self.audit_log.append(
                [
                    AuditEntry.for_item(
                        current,
                        recipient=recipient,
                        cadence=Cadence.INSTANT,
                        delivered=False,
                        at=now,
                        error=(category, message),
                        details=payload.as_dict(),
                    )
                ]
            )
            return DispatchOutcome(
                shop=shop,
                cadence=Cadence.INSTANT,
                status=DispatchStatus.FAILED,
                reason=message,
                recipient=recipient,
                item_count=1,
                error_category=category,
            )

        await self.audit_log.append(
            [
                AuditEntry.for_item(
                    current,
                    recipient=recipient,
                    cadence=Cadence.INSTANT,
                    delivered=True,
                    at=now,
                    details=payload.as_dict(),
                )
            ]
        )
        await self._mark_alerted([current], now)
        log.info("dispatch.instant.sent", recipient=recipient, quantity=current.current_inventory)
        return DispatchOutcome(
            shop=shop,
            cadence=Cadence.INSTANT,
            status=DispatchStatus.SENT,
            recipient=recipient,
            item_count=1,
        )

    # ── Batch path ───────────────────────────────────────────────────

    async def dispatch_batch(
        self,
        shop: str,
        cadence: Cadence,
        *,
        settings: AlertSettings | None = None,
    ) -> DispatchOutcome:
        if cadence is Cadence.INSTANT:
            raise ValueError("Instant alerts are not batched")
        log = logger.bind(shop=shop, cadence=cadence.value)

        items = await self.store.alerting_items(shop)
        now = self.clock()

        if not items:
            await self.settings_service.mark_cycle_complete(shop, cadence, now)
            log.info("dispatch.batch.vacuous")
            return DispatchOutcome(shop=shop, cadence=cadence, status=DispatchStatus.VACUOUS)

        settings = settings or await self.settings_service.get(shop)
        payload = build_payload(shop, cadence, items, now)
        recipient = settings.alert_email
        try:
            recipient = await self._send(settings, payload)
        except StoreUnavailableError:
            raise
        except Exception as exc:  # noqa: BLE001
            category, message = classify_error(exc)
            log.warning("dispatch.batch.failed", category=category, error=str(exc), items=len(items))
            await self.audit_log.append(
                [
                    AuditEntry.for_item(
                        item,
                        recipient=recipient,
                        cadence=cadence,
                        delivered=False,
                        at=now,
                        error=(category, message),
                        details=payload.as_dict(),
                    )
                    for item in items
                ]
            )
            return DispatchOutcome(
                shop=shop,
                cadence=cadence,
                status=DispatchStatus.FAILED,
                reason=message,
                recipient=recipient,
                item_count=len(items),
                error_category=category,
            )

        await self.audit_log.append(
            [
                AuditEntry.for_item(
                    item,
                    recipient=recipient,
                    cadence=cadence,
                    delivered=True,
                    at=now,
                    details=payload.as_dict(),
                )
                for item in items
            ]
        )
        await self._mark_alerted(items, now)
        await self.settings_service.mark_cycle_complete(shop, cadence, now)
        log.info("dispatch.batch.sent", recipient=recipient, items=len(items))
        return DispatchOutcome(
            shop=shop,
            cadence=cadence,
            status=DispatchStatus.SENT,
            recipient=recipient,
            item_count=len(items),
        )

    async def _mark_alerted(self, items: list[TrackedItem], at: datetime) -> None:
        for item in items:
            try:
                await self.store.mark_alerted(item.key, at)
            except ConcurrentWriteError:
                # Delivery already happened; the next dedup check may re-send once.
                logger.warning("dispatch.mark_alerted_skipped", key=str(item.key))
