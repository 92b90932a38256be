"""
Shop Sync Workers — Celery entry points for the alerting engine.

Workers:
  1. run_shop_cycle: poll reconciliation → instant alerts → daily/weekly batch
     (fanned out every 2 minutes by workers.scheduler.dispatch_active_shops)
  2. ingest_webhook: normalize one Shopify webhook and apply its facts;
     inventory-level webhooks enqueue run_shop_cycle instead of sweeping inline

Only one run_shop_cycle per shop executes at a time across all workers: the
task takes a non-blocking Redis lock and returns "skipped" when another
worker (or the previous tick) still holds it.
"""

import asyncio
from datetime import datetime, timezone

import redis
import structlog
from redis.exceptions import LockError

from workers.celery_app import celery_app

logger = structlog.get_logger()

SHOP_LOCK_PREFIX = "stockpulse:shop-cycle:"


def redis_client(url: str) -> redis.Redis:
    return redis.Redis.from_url(url)


@celery_app.task(
    name="workers.sync.run_shop_cycle",
    bind=True,
    max_retries=3,
    default_retry_delay=60,
)
def run_shop_cycle(self, shop_domain: str):
    """
    Run one reconciliation + cadence cycle for a shop.

    Flow:
      1. Take the shop lock (skip if held)
      2. Poll sweep: re-fetch every tracked item still in the catalog
      3. Instant alerts for items that crossed below threshold
      4. Daily/weekly batch if the shop's send window is open
    """
    from core.config import get_settings
    from core.errors import StoreUnavailableError

    settings = get_settings()
    run_id = self.request.id or "manual"
    logger.info("sync.shop_cycle.started", shop=shop_domain, run_id=run_id)

    lock = redis_client(settings.redis_url).lock(
        f"{SHOP_LOCK_PREFIX}{shop_domain}",
        timeout=settings.shop_lock_ttl_seconds,
        blocking=False,
    )
    if not lock.acquire():
        logger.info("sync.shop_cycle.skipped", shop=shop_domain, reason="cycle_in_flight")
        return {"status": "skipped", "reason": "cycle_in_flight", "shop_domain": shop_domain}

    async def _cycle():
        from workers.runtime import build_runtime

        runtime = build_runtime(settings)
        try:
            report = await runtime.runner.run_shop_cycle(shop_domain)
            return {"status": "success", **report.summary()}
        finally:
            await runtime.dispose()

    try:
        return asyncio.run(_cycle())
    except StoreUnavailableError as exc:
        logger.error("sync.shop_cycle.store_unavailable", shop=shop_domain, error=str(exc))
        raise self.retry(exc=exc)
    except Exception as exc:
        logger.error("sync.shop_cycle.failed", shop=shop_domain, error=str(exc))
        raise
    finally:
        try:
            lock.release()
        except LockError:
            logger.warning("sync.shop_cycle.lock_expired", shop=shop_domain)


@celery_app.task(
    name="workers.sync.ingest_webhook",
    bind=True,
    max_retries=3,
    default_retry_delay=30,
)
def ingest_webhook(
    self,
    topic: str,
    shop_domain: str,
    payload: dict,
    received_at: str | None = None,
    applied_events: int = 0,
):
    """
    Apply one verified Shopify webhook.

    Malformed payloads are dropped (not retried); an unreachable record
    store is retried so the fact is not lost. A retry resumes after the
    facts already committed, so a multi-line order is never decremented
    twice. Inventory-level webhooks carry no usable quantity: they enqueue
    run_shop_cycle, which sweeps under the shop lock.
    """
    from core.config import get_settings
    from core.errors import StoreUnavailableError, WebhookPayloadError
    from integrations.webhooks import normalize_webhook
    from inventory.models import FactKind

    settings = get_settings()
    received = datetime.fromisoformat(received_at) if received_at else datetime.now(timezone.utc)

    try:
        events = normalize_webhook(topic, shop_domain, payload, received)
    except WebhookPayloadError as exc:
        logger.warning("sync.webhook.dropped", shop=shop_domain, topic=topic, error=str(exc))
        return {"status": "dropped", "topic": topic, "shop_domain": shop_domain, "reason": str(exc)}

    facts = [event for event in events if event.kind is not FactKind.INVENTORY_ABSOLUTE]
    sweep = len(facts) < len(events)
    progress = {"applied": applied_events}

    async def _ingest():
        from workers.runtime import build_runtime

        runtime = build_runtime(settings)
        try:
            processed = crossings = sent = 0
            for event in facts[applied_events:]:
                sync = await runtime.runner.apply(event)
                progress["applied"] += 1
                report = await runtime.runner.alert(shop_domain, sync)
                processed += sync.records_processed
                crossings += len(sync.crossings)
                sent += sum(1 for outcome in report.instant if outcome.delivered)
            return {
                "status": "success",
                "topic": topic,
                "shop_domain": shop_domain,
                "events": len(events),
                "records_processed": processed,
                "crossings": crossings,
                "alerts_sent": sent,
            }
        finally:
            await runtime.dispose()

    try:
        result = asyncio.run(_ingest())
    except StoreUnavailableError as exc:
        logger.error(
            "sync.webhook.store_unavailable",
            shop=shop_domain,
            topic=topic,
            applied=progress["applied"],
            error=str(exc),
        )
        raise self.retry(
            exc=exc,
            kwargs={
                "topic": topic,
                "shop_domain": shop_domain,
                "payload": payload,
                "received_at": received.isoformat(),
                "applied_events": progress["applied"],
            },
        )

    if sweep:
        run_shop_cycle.apply_async(kwargs={"shop_domain": shop_domain})
        logger.info("sync.webhook.sweep_enqueued", shop=shop_domain, topic=topic)
    result["sweep_enqueued"] = sweep

    logger.info("sync.webhook.completed", **result)
    return result
