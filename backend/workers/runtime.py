"""Wires the engine's components against one database engine."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from alerts.dispatcher import AlertDispatcher
from alerts.email import SendGridDelivery
from alerts.settings import AlertSettingsService
from core.config import Settings, get_settings
from db.repository import SqlAlertSettingsRepository, SqlAuditLog, SqlShopDirectory, SqlTrackedItemRepository
from db.session import build_engine, build_session_factory
from integrations.base import AlertDelivery, InventorySource, OwnerEmailResolver
from integrations.shopify import ShopifyGateway
from inventory.reconciliation import ReconciliationAdapter
from inventory.store import InventoryStateStore
from workers.cycle import ShopCycleRunner


@dataclass
class Runtime:
    engine: AsyncEngine
    sessions: async_sessionmaker[AsyncSession]
    store: InventoryStateStore
    settings_service: AlertSettingsService
    audit_log: SqlAuditLog
    directory: SqlShopDirectory
    reconciler: ReconciliationAdapter
    dispatcher: AlertDispatcher
    runner: ShopCycleRunner

    async def dispose(self) -> None:
        await self.engine.dispose()


def build_runtime(
    settings: Settings | None = None,
    *,
    engine: AsyncEngine | None = None,
    source: InventorySource | None = None,
    owner_emails: OwnerEmailResolver | None = None,
    delivery: AlertDelivery | None = None,
    clock: Callable[[], datetime] | None = None,
) -> Runtime:
    """
    Build every component from configuration.

    Capabilities default to the Shopify gateway and SendGrid; tests pass
    fakes instead.
    """
    settings = settings or get_settings()
    engine = engine or build_engine(settings.database_url)
    sessions = build_session_factory(engine)

    directory = SqlShopDirectory(sessions)
    store = InventoryStateStore(SqlTrackedItemRepository(sessions), write_attempts=settings.store_write_attempts)
    settings_service = AlertSettingsService(
        SqlAlertSettingsRepository(sessions, default_timezone=settings.default_shop_timezone)
    )
    audit_log = SqlAuditLog(sessions)

    if source is None or owner_emails is None:
        gateway = ShopifyGateway(
            directory,
            api_version=settings.shopify_api_version,
            timeout=settings.capability_timeout_seconds,
            page_size=settings.shopify_catalog_page_size,
            clock=clock,
        )
        source = source or gateway
        owner_emails = owner_emails or gateway

    reconciler = ReconciliationAdapter(
        store,
        source,
        timeout_seconds=settings.capability_timeout_seconds,
        clock=clock,
    )
    dispatcher = AlertDispatcher(
        store,
        settings_service,
        audit_log,
        delivery or SendGridDelivery(),
        owner_emails,
        dedup_window=timedelta(minutes=settings.instant_dedup_minutes),
        timeout_seconds=settings.capability_timeout_seconds,
        clock=clock,
    )
    runner = ShopCycleRunner(
        reconciler,
        dispatcher,
        settings_service,
        cadence_window=timedelta(minutes=settings.cadence_window_minutes),
        clock=clock,
    )
    return Runtime(
        engine=engine,
        sessions=sessions,
        store=store,
        settings_service=settings_service,
        audit_log=audit_log,
        directory=directory,
        reconciler=reconciler,
        dispatcher=dispatcher,
        runner=runner,
    )
