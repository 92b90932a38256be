"""
Alert Settings Service — operator preferences and cycle bookkeeping.

Operators edit email/cadence/time/day/timezone through update(); only the
dispatcher calls mark_cycle_complete(). Bookkeeping writes are serialized
per shop and touch a single column, so they never clobber a concurrent
preference edit.
"""

import re
from datetime import datetime, time
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog
from pydantic import BaseModel, field_validator

from db.repository import SqlAlertSettingsRepository
from inventory.locks import KeyedLocks
from inventory.models import AlertSettings, Cadence, Weekday

logger = structlog.get_logger()

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


# ─── Schemas ────────────────────────────────────────────────────────────────


class AlertSettingsUpdate(BaseModel):
    """Partial update; unset fields are left alone."""

    alert_email: str | None = None
    cadence: Cadence | None = None
    notifications_enabled: bool | None = None
    daily_time: time | None = None
    weekly_day: Weekday | None = None
    timezone: str | None = None

    @field_validator("alert_email")
    @classmethod
    def validate_email(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        if value and not EMAIL_PATTERN.match(value):
            raise ValueError("alert_email is not a valid email address")
        return value or None

    @field_validator("weekly_day", mode="before")
    @classmethod
    def normalize_weekday(cls, value):
        return value.lower() if isinstance(value, str) else value

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, value: str | None) -> str | None:
        if value is None:
            return None
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone: {value}") from exc
        return value


# ─── Service ────────────────────────────────────────────────────────────────


class AlertSettingsService:
    def __init__(self, repository: SqlAlertSettingsRepository, *, locks: KeyedLocks | None = None):
        self.repository = repository
        self.locks = locks or KeyedLocks()

    async def get(self, shop: str) -> AlertSettings:
        return await self.repository.get_or_create(shop)

    async def update(self, shop: str, changes: AlertSettingsUpdate) -> AlertSettings:
        # alert_email=None clears the override; the owner email is used again.
        values = changes.model_dump(exclude_unset=True)
        async with self.locks.hold(shop):
            settings = await self.repository.update_preferences(shop, values)
        logger.info("settings.updated", shop=shop, fields=sorted(values))
        return settings

    async def mark_cycle_complete(self, shop: str, cadence: Cadence, at: datetime) -> None:
        """Advance last_daily_sent_at / last_weekly_sent_at after a successful or vacuous batch."""
        async with self.locks.hold(shop):
            await self.repository.record_cycle_sent(shop, cadence, at)
        logger.info("settings.cycle_complete", shop=shop, cadence=cadence.value, at=at.isoformat())
