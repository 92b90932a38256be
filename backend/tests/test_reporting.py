"""
Tests for operator reporting over tracked items and the audit log.
"""

from datetime import timedelta

import pytest

from alerts.reporting import dashboard_stats, recent_activity
from inventory.models import AuditEntry, Cadence, ItemKey

SHOP = "snowdevil.myshopify.com"


async def _seed(store):
    for ref, quantity, enabled in (("1", 2, True), ("2", 50, True), ("3", 0, False)):
        await store.track(
            ItemKey(SHOP, ref),
            product_title=f"Board {ref}",
            threshold_quantity=5,
            alerts_enabled=enabled,
            current_inventory=quantity,
        )


@pytest.mark.asyncio
async def test_dashboard_stats(store, settings_service, audit_log, clock):
    await _seed(store)
    item = await store.get(ItemKey(SHOP, "1"))
    await audit_log.append(
        [
            AuditEntry.for_item(item, recipient="owner@snowdevil.com", cadence=Cadence.DAILY, delivered=True, at=clock() - timedelta(days=1)),
            AuditEntry.for_item(
                item,
                recipient="owner@snowdevil.com",
                cadence=Cadence.DAILY,
                delivered=False,
                at=clock() - timedelta(hours=1),
                error=("delivery_failed", "The email provider could not deliver the alert"),
            ),
            AuditEntry.for_item(item, recipient="owner@snowdevil.com", cadence=Cadence.DAILY, delivered=True, at=clock() - timedelta(days=10)),
        ]
    )

    stats = await dashboard_stats(SHOP, store, settings_service, audit_log, now=clock())

    assert stats["tracked_products"] == 3
    assert stats["alerts_enabled"] == 2
    assert stats["below_threshold"] == 1
    assert stats["alerts_last_7_days"] == 2
    assert stats["last_alert_sent_at"] == (clock() - timedelta(days=1)).isoformat()
    assert stats["alert_frequency"] == "daily"


@pytest.mark.asyncio
async def test_dashboard_stats_for_new_shop(store, settings_service, audit_log, clock):
    stats = await dashboard_stats(SHOP, store, settings_service, audit_log, now=clock())
    assert stats["tracked_products"] == 0
    assert stats["last_alert_sent_at"] is None
    assert stats["notifications_enabled"] is True


@pytest.mark.asyncio
async def test_recent_activity_newest_first_and_capped(store, audit_log, clock):
    await _seed(store)
    item = await store.get(ItemKey(SHOP, "1"))
    await audit_log.append(
        [
            AuditEntry.for_item(item, recipient="owner@snowdevil.com", cadence=Cadence.INSTANT, delivered=True, at=clock() - timedelta(minutes=i))
            for i in range(60)
        ]
    )

    rows = await recent_activity(SHOP, audit_log, limit=500)

    assert len(rows) == 50
    assert rows[0]["created_at"] == clock().isoformat()
    assert rows[0]["status"] == "Email sent successfully"
    assert rows[0]["alert_type"] == "instant"
