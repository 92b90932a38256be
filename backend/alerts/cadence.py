"""
Cadence Scheduler: is `now` an eligible moment for a shop's batch cycle?

Pure functions over AlertSettings; all calendar math happens in the shop's
local timezone.

    daily   cadence == daily, enabled, |now - daily_time today| <= window,
            and last_daily_sent_at is not on today's local date
    weekly  cadence == weekly, enabled, today is weekly_day,
            |now - daily_time today| <= window, and last_weekly_sent_at is
            not in the current ISO week

A cycle is consumed only when bookkeeping advances (successful or vacuous
send). A failed attempt stays eligible on later ticks inside the same
window; once the window closes the cycle is skipped, never queued.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from inventory.models import AlertSettings, Cadence

DEFAULT_WINDOW = timedelta(minutes=5)


@dataclass(frozen=True)
class CadenceDecision:
    cadence: Cadence
    due: bool
    reason: str


def local_now(settings: AlertSettings, now: datetime) -> datetime:
    return now.astimezone(ZoneInfo(settings.timezone))


def within_window(settings: AlertSettings, now: datetime, window: timedelta = DEFAULT_WINDOW) -> bool:
    local = local_now(settings, now)
    target = local.replace(
        hour=settings.daily_time.hour,
        minute=settings.daily_time.minute,
        second=settings.daily_time.second,
        microsecond=0,
    )
    # Same-tzinfo subtraction is wall-clock; elapsed time needs UTC.
    return abs(local.astimezone(timezone.utc) - target.astimezone(timezone.utc)) <= window


def sent_today(settings: AlertSettings, now: datetime) -> bool:
    last = settings.last_daily_sent_at
    if last is None:
        return False
    tz = ZoneInfo(settings.timezone)
    return last.astimezone(tz).date() == now.astimezone(tz).date()


def sent_this_week(settings: AlertSettings, now: datetime) -> bool:
    last = settings.last_weekly_sent_at
    if last is None:
        return False
    tz = ZoneInfo(settings.timezone)
    last_year, last_week, _ = last.astimezone(tz).isocalendar()
    now_year, now_week, _ = now.astimezone(tz).isocalendar()
    return (last_year, last_week) == (now_year, now_week)


def evaluate_cadence(
    settings: AlertSettings,
    now: datetime,
    window: timedelta = DEFAULT_WINDOW,
) -> CadenceDecision:
    cadence = settings.cadence
    if cadence is Cadence.INSTANT:
        return CadenceDecision(cadence, False, "not_batch_cadence")
    if not settings.notifications_enabled:
        return CadenceDecision(cadence, False, "notifications_disabled")

    if cadence is Cadence.WEEKLY and local_now(settings, now).weekday() != settings.weekly_day.index:
        return CadenceDecision(cadence, False, "wrong_day")
    if not within_window(settings, now, window):
        return CadenceDecision(cadence, False, "outside_window")

    already_sent = sent_today(settings, now) if cadence is Cadence.DAILY else sent_this_week(settings, now)
    if already_sent:
        return CadenceDecision(cadence, False, "already_sent")
    return CadenceDecision(cadence, True, "due")


def is_daily_due(settings: AlertSettings, now: datetime, window: timedelta = DEFAULT_WINDOW) -> bool:
    return settings.cadence is Cadence.DAILY and evaluate_cadence(settings, now, window).due


def is_weekly_due(settings: AlertSettings, now: datetime, window: timedelta = DEFAULT_WINDOW) -> bool:
    return settings.cadence is Cadence.WEEKLY and evaluate_cadence(settings, now, window).due
