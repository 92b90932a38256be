"""Read-only operator views over tracked items and the alert audit log."""

from datetime import datetime, timedelta, timezone

from alerts.settings import AlertSettingsService
from db.repository import SqlAuditLog
from inventory.models import AuditEntry
from inventory.store import InventoryStateStore

MAX_ACTIVITY_LIMIT = 50
STATS_WINDOW = timedelta(days=7)


async def dashboard_stats(
    shop: str,
    store: InventoryStateStore,
    settings_service: AlertSettingsService,
    audit_log: SqlAuditLog,
    *,
    now: datetime | None = None,
) -> dict:
    now = now or datetime.now(timezone.utc)
    items = await store.list_for_shop(shop)
    settings = await settings_service.get(shop)
    last_sent = await audit_log.last_successful_send(shop)

    return {
        "shop_domain": shop,
        "tracked_products": len(items),
        "alerts_enabled": sum(1 for item in items if item.alerts_enabled),
        "below_threshold": sum(1 for item in items if item.should_alert()),
        "alerts_last_7_days": await audit_log.count_since(shop, now - STATS_WINDOW),
        "last_alert_sent_at": last_sent.isoformat() if last_sent else None,
        "notifications_enabled": settings.notifications_enabled,
        "alert_frequency": settings.cadence.value,
    }


async def recent_activity(shop: str, audit_log: SqlAuditLog, limit: int = 10) -> list[dict]:
    limit = max(1, min(limit, MAX_ACTIVITY_LIMIT))
    entries = await audit_log.recent(shop, limit)
    return [_activity_row(entry) for entry in entries]


def _activity_row(entry: AuditEntry) -> dict:
    return {
        "product_title": entry.product_title,
        "variant_title": entry.variant_title,
        "current_quantity": entry.current_quantity,
        "threshold_quantity": entry.threshold_quantity,
        "alert_type": entry.alert_type,
        "recipient": entry.recipient,
        "delivered": entry.delivered,
        "status": entry.status_message,
        "error_category": entry.error_category,
        "created_at": entry.created_at.isoformat(),
    }
