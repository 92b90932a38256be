"""
SQL implementations of the engine's record stores.

One short-lived AsyncSession per operation: the store is shared by
concurrent shop tasks, and an AsyncSession must never be used by two
coroutines at once. Connectivity failures surface as StoreUnavailableError.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime, time, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.errors import ConcurrentWriteError, ShopifyAPIError, StoreUnavailableError
from core.security import decrypt, encrypt
from db.models import AlertAuditLog, AlertSettingsRecord, ShopConnection, TrackedItemRecord
from inventory.models import (
    DEFAULT_CADENCE,
    DEFAULT_DAILY_TIME,
    DEFAULT_WEEKLY_DAY,
    AlertSettings,
    AuditEntry,
    Cadence,
    ItemKey,
    TrackedItem,
    Weekday,
)
from inventory.store import TrackedItemRepository

logger = structlog.get_logger()


def _aware(value: datetime | None) -> datetime | None:
    """SQLite drops tzinfo; everything the engine stores is UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _SqlRepository:
    def __init__(self, sessions: async_sessionmaker[AsyncSession]):
        self.sessions = sessions

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self.sessions() as db:
                yield db
        except (OperationalError, InterfaceError) as exc:
            raise StoreUnavailableError(f"Record store unreachable: {exc.__class__.__name__}") from exc


# ── Tracked items ──────────────────────────────────────────────────────────


def _to_item(row: TrackedItemRecord) -> TrackedItem:
    return TrackedItem(
        key=ItemKey(shop=row.shop_domain, product_ref=row.product_ref, variant_ref=row.variant_ref or None),
        product_title=row.product_title,
        variant_title=row.variant_title,
        threshold_quantity=row.threshold_quantity,
        alerts_enabled=row.alerts_enabled,
        current_inventory=row.current_inventory,
        last_checked_at=_aware(row.last_checked_at),
        last_alert_sent_at=_aware(row.last_alert_sent_at),
        last_observed_at=_aware(row.last_observed_at),
        version=row.version,
    )


def _key_clauses(key: ItemKey) -> tuple:
    return (
        TrackedItemRecord.shop_domain == key.shop,
        TrackedItemRecord.product_ref == key.product_ref,
        TrackedItemRecord.variant_ref == (key.variant_ref or ""),
    )


class SqlTrackedItemRepository(_SqlRepository, TrackedItemRepository):
    async def get(self, key: ItemKey) -> TrackedItem | None:
        async with self._session() as db:
            row = (await db.execute(select(TrackedItemRecord).where(*_key_clauses(key)))).scalar_one_or_none()
            return _to_item(row) if row else None

    async def find_by_variant(self, shop: str, variant_ref: str) -> TrackedItem | None:
        async with self._session() as db:
            row = (
                await db.execute(
                    select(TrackedItemRecord)
                    .where(TrackedItemRecord.shop_domain == shop, TrackedItemRecord.variant_ref == variant_ref)
                    .order_by(TrackedItemRecord.id)
                    .limit(1)
                )
            ).scalar_one_or_none()
            return _to_item(row) if row else None

    async def list_for_shop(self, shop: str, *, alerting_only: bool = False) -> list[TrackedItem]:
        stmt = select(TrackedItemRecord).where(TrackedItemRecord.shop_domain == shop)
        if alerting_only:
            stmt = stmt.where(
                TrackedItemRecord.alerts_enabled.is_(True),
                TrackedItemRecord.current_inventory < TrackedItemRecord.threshold_quantity,
            )
        async with self._session() as db:
            rows = (await db.execute(stmt.order_by(TrackedItemRecord.product_title, TrackedItemRecord.id))).scalars()
            return [_to_item(row) for row in rows.all()]

    async def insert(self, item: TrackedItem) -> TrackedItem:
        record = TrackedItemRecord(
            shop_domain=item.key.shop,
            product_ref=item.key.product_ref,
            variant_ref=item.key.variant_ref or "",
            product_title=item.product_title,
            variant_title=item.variant_title,
            threshold_quantity=item.threshold_quantity,
            alerts_enabled=item.alerts_enabled,
            current_inventory=item.current_inventory,
            last_checked_at=item.last_checked_at,
            last_alert_sent_at=item.last_alert_sent_at,
            last_observed_at=item.last_observed_at,
            version=0,
        )
        async with self._session() as db:
            db.add(record)
            try:
                await db.commit()
            except IntegrityError as exc:
                await db.rollback()
                raise ConcurrentWriteError(f"{item.key} was created concurrently") from exc
        return replace(item, version=0)

    async def compare_and_swap(self, item: TrackedItem, expected_version: int) -> TrackedItem | None:
        stmt = (
            update(TrackedItemRecord)
            .where(*_key_clauses(item.key), TrackedItemRecord.version == expected_version)
            .values(
                product_title=item.product_title,
                variant_title=item.variant_title,
                threshold_quantity=item.threshold_quantity,
                alerts_enabled=item.alerts_enabled,
                current_inventory=item.current_inventory,
                last_checked_at=item.last_checked_at,
                last_alert_sent_at=item.last_alert_sent_at,
                last_observed_at=item.last_observed_at,
                version=expected_version + 1,
                updated_at=_utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        async with self._session() as db:
            result = await db.execute(stmt)
            await db.commit()
        if result.rowcount != 1:
            return None
        return replace(item, version=expected_version + 1)

    async def delete(self, key: ItemKey) -> bool:
        async with self._session() as db:
            row = (await db.execute(select(TrackedItemRecord).where(*_key_clauses(key)))).scalar_one_or_none()
            if row is None:
                return False
            await db.delete(row)
            await db.commit()
            return True


# ── Alert settings ─────────────────────────────────────────────────────────

_PREFERENCE_COLUMNS = {
    "alert_email": "alert_email",
    "cadence": "alert_frequency",
    "notifications_enabled": "notifications_enabled",
    "daily_time": "daily_alert_time",
    "weekly_day": "weekly_alert_day",
    "timezone": "timezone",
}


def _to_settings(row: AlertSettingsRecord, default_timezone: str) -> tuple[AlertSettings, dict]:
    """Map a row to AlertSettings, returning column repairs for invalid values."""
    repairs: dict = {}

    try:
        cadence = Cadence(row.alert_frequency)
    except ValueError:
        cadence = DEFAULT_CADENCE
        repairs["alert_frequency"] = cadence.value

    daily_time = row.daily_alert_time
    if not isinstance(daily_time, time):
        daily_time = DEFAULT_DAILY_TIME
        repairs["daily_alert_time"] = daily_time

    try:
        weekly_day = Weekday((row.weekly_alert_day or "").lower())
    except ValueError:
        weekly_day = DEFAULT_WEEKLY_DAY
        repairs["weekly_alert_day"] = weekly_day.value

    tz_name = row.timezone or default_timezone
    try:
        ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        tz_name = default_timezone
        repairs["timezone"] = None

    settings = AlertSettings(
        shop=row.shop_domain,
        alert_email=row.alert_email or None,
        cadence=cadence,
        notifications_enabled=bool(row.notifications_enabled),
        daily_time=daily_time,
        weekly_day=weekly_day,
        timezone=tz_name,
        last_daily_sent_at=_aware(row.last_daily_alert_sent),
        last_weekly_sent_at=_aware(row.last_weekly_alert_sent),
    )
    return settings, repairs


class SqlAlertSettingsRepository(_SqlRepository):
    def __init__(self, sessions: async_sessionmaker[AsyncSession], *, default_timezone: str = "UTC"):
        super().__init__(sessions)
        self.default_timezone = default_timezone

    async def get_or_create(self, shop: str) -> AlertSettings:
        async with self._session() as db:
            row = await self._load(db, shop)
            if row is None:
                row = AlertSettingsRecord(
                    shop_domain=shop,
                    alert_frequency=DEFAULT_CADENCE.value,
                    notifications_enabled=True,
                    daily_alert_time=DEFAULT_DAILY_TIME,
                    weekly_alert_day=DEFAULT_WEEKLY_DAY.value,
                )
                db.add(row)
                try:
                    await db.commit()
                    logger.info("settings.created", shop=shop)
                except IntegrityError:
                    await db.rollback()
                    row = await self._load(db, shop)

            settings, repairs = _to_settings(row, self.default_timezone)
            if repairs:
                logger.warning("settings.repaired", shop=shop, fields=sorted(repairs))
                await db.execute(
                    update(AlertSettingsRecord)
                    .where(AlertSettingsRecord.shop_domain == shop)
                    .values(**repairs, updated_at=_utcnow())
                )
                await db.commit()
            return settings

    async def update_preferences(self, shop: str, values: dict) -> AlertSettings:
        """Operator-owned fields only; bookkeeping columns are never touched here."""
        await self.get_or_create(shop)
        columns = {}
        for name, value in values.items():
            if name not in _PREFERENCE_COLUMNS:
                raise KeyError(f"Not an operator setting: {name}")
            if isinstance(value, (Cadence, Weekday)):
                value = value.value
            columns[_PREFERENCE_COLUMNS[name]] = value
        if columns:
            async with self._session() as db:
                await db.execute(
                    update(AlertSettingsRecord)
                    .where(AlertSettingsRecord.shop_domain == shop)
                    .values(**columns, updated_at=_utcnow())
                )
                await db.commit()
        return await self.get_or_create(shop)

    async def record_cycle_sent(self, shop: str, cadence: Cadence, at: datetime) -> None:
        if cadence is Cadence.DAILY:
            column = {"last_daily_alert_sent": at}
        elif cadence is Cadence.WEEKLY:
            column = {"last_weekly_alert_sent": at}
        else:
            raise ValueError(f"No cycle bookkeeping for cadence {cadence.value}")
        await self.get_or_create(shop)
        async with self._session() as db:
            await db.execute(
                update(AlertSettingsRecord).where(AlertSettingsRecord.shop_domain == shop).values(**column)
            )
            await db.commit()

    @staticmethod
    async def _load(db: AsyncSession, shop: str) -> AlertSettingsRecord | None:
        return (
            await db.execute(select(AlertSettingsRecord).where(AlertSettingsRecord.shop_domain == shop))
        ).scalar_one_or_none()


# ── Audit log ──────────────────────────────────────────────────────────────


def _to_entry(row: AlertAuditLog) -> AuditEntry:
    return AuditEntry(
        shop=row.shop_domain,
        product_ref=row.product_ref,
        variant_ref=row.variant_ref or None,
        product_title=row.product_title,
        variant_title=row.variant_title,
        current_quantity=row.current_quantity,
        threshold_quantity=row.threshold_quantity,
        recipient=row.alert_email,
        alert_type=row.alert_type,
        delivered=row.email_sent_successfully,
        created_at=_aware(row.created_at),
        error_category=row.error_category,
        error_detail=row.error_message,
        details=row.details or {},
    )


class SqlAuditLog(_SqlRepository):
    """Write-once log. There is deliberately no update or delete."""

    async def append(self, entries: list[AuditEntry]) -> int:
        if not entries:
            return 0
        async with self._session() as db:
            db.add_all(
                [
                    AlertAuditLog(
                        shop_domain=entry.shop,
                        product_ref=entry.product_ref,
                        variant_ref=entry.variant_ref or "",
                        product_title=entry.product_title,
                        variant_title=entry.variant_title,
                        current_quantity=entry.current_quantity,
                        threshold_quantity=entry.threshold_quantity,
                        alert_email=entry.recipient,
                        alert_type=entry.alert_type,
                        email_sent_successfully=entry.delivered,
                        error_category=entry.error_category,
                        error_message=entry.error_detail,
                        details=entry.details,
                        created_at=entry.created_at,
                    )
                    for entry in entries
                ]
            )
            await db.commit()
        return len(entries)

    async def recent(self, shop: str, limit: int = 10) -> list[AuditEntry]:
        async with self._session() as db:
            rows = (
                await db.execute(
                    select(AlertAuditLog)
                    .where(AlertAuditLog.shop_domain == shop)
                    .order_by(AlertAuditLog.created_at.desc(), AlertAuditLog.id.desc())
                    .limit(limit)
                )
            ).scalars()
            return [_to_entry(row) for row in rows.all()]

    async def count_since(self, shop: str, since: datetime) -> int:
        async with self._session() as db:
            result = await db.execute(
                select(func.count(AlertAuditLog.id)).where(
                    AlertAuditLog.shop_domain == shop,
                    AlertAuditLog.created_at >= since,
                )
            )
            return int(result.scalar_one())

    async def last_successful_send(self, shop: str) -> datetime | None:
        async with self._session() as db:
            result = await db.execute(
                select(func.max(AlertAuditLog.created_at)).where(
                    AlertAuditLog.shop_domain == shop,
                    AlertAuditLog.email_sent_successfully.is_(True),
                )
            )
            return _aware(result.scalar_one_or_none())


# ── Shop directory ─────────────────────────────────────────────────────────


class SqlShopDirectory(_SqlRepository):
    async def list_active_shops(self) -> list[str]:
        async with self._session() as db:
            result = await db.execute(
                select(ShopConnection.shop_domain)
                .where(ShopConnection.status == "connected")
                .order_by(ShopConnection.installed_at, ShopConnection.shop_domain)
            )
            return [row.shop_domain for row in result.all()]

    async def access_token(self, shop: str) -> str:
        async with self._session() as db:
            row = await db.get(ShopConnection, shop)
        if row is None or row.status != "connected":
            raise ShopifyAPIError(f"No connected session for shop {shop}")
        return decrypt(row.access_token_encrypted)

    async def connect(self, shop: str, access_token: str) -> None:
        """Store (or rotate) a shop's offline token. Called by the install flow."""
        async with self._session() as db:
            row = await db.get(ShopConnection, shop)
            if row is None:
                db.add(ShopConnection(shop_domain=shop, access_token_encrypted=encrypt(access_token)))
            else:
                row.access_token_encrypted = encrypt(access_token)
                row.status = "connected"
            await db.commit()

    async def disconnect(self, shop: str) -> None:
        async with self._session() as db:
            await db.execute(
                update(ShopConnection).where(ShopConnection.shop_domain == shop).values(status="uninstalled")
            )
            await db.commit()
