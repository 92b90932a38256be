"""Shop-aware scheduler helpers for Celery beat fan-out."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import structlog

from workers.celery_app import celery_app

logger = structlog.get_logger()


async def _connected_shops(database_url: str) -> list[str]:
    from db.repository import SqlShopDirectory
    from db.session import build_engine, build_session_factory

    engine = build_engine(database_url, echo=False)
    try:
        return await SqlShopDirectory(build_session_factory(engine)).list_active_shops()
    finally:
        await engine.dispose()


@celery_app.task(
    name="workers.scheduler.dispatch_active_shops",
    bind=True,
    max_retries=2,
    default_retry_delay=60,
    acks_late=True,
)
def dispatch_active_shops(self, task_name: str, task_kwargs: dict | None = None):
    """
    Send one `task_name` message per connected shop, with `shop_domain` added
    to `task_kwargs`. Only tasks under the workers package may be targeted.
    """
    from core.config import get_settings

    if not task_name.startswith("workers."):
        return {"status": "failed", "reason": "invalid_task_name", "task_name": task_name}

    try:
        shops = asyncio.run(_connected_shops(get_settings().database_url))
    except Exception as exc:  # noqa: BLE001
        logger.error("scheduler.dispatch_failed", task_name=task_name, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)

    for shop in shops:
        celery_app.send_task(task_name, kwargs={**(task_kwargs or {}), "shop_domain": shop})

    summary = {
        "status": "success",
        "task_name": task_name,
        "shop_count": len(shops),
        "dispatched_count": len(shops),
        "triggered_at": datetime.now(timezone.utc).isoformat(),
        "run_id": self.request.id or "manual",
    }
    logger.info("scheduler.dispatch_complete", **summary)
    return summary
