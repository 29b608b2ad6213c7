from __future__ import annotations

import asyncio
import logging
import random

from opentelemetry import trace

from reaper.core.config import Settings, get_settings
from reaper.core.telemetry import (
    configure_reaper_logging,
    setup_reaper_telemetry,
    shutdown_reaper_telemetry,
)
from reaper.jobs.expiration import ExpirationReconciler, ReconcileConfig
from reaper.services.blob_store import get_blob_store
from reaper.services.notifier import BrevoNotifier
from reaper.services.record_store import get_record_store

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def build_notifier(settings: Settings) -> BrevoNotifier | None:
    if not settings.brevo_api_key:
        logger.warning("REAPER_BREVO_API_KEY not configured; expiration notices will be skipped")
        return None
    return BrevoNotifier(
        api_key=settings.brevo_api_key,
        api_url=settings.brevo_api_url,
        email_from=settings.email_from,
        email_reply_to=settings.email_reply_to,
        site_dns=settings.site_dns,
        timeout_seconds=settings.notifier_timeout_seconds,
    )


async def run_once(reconciler: ExpirationReconciler) -> bool:
    """Run one reconciliation cycle. Never raises; returns False when the cycle failed."""
    with tracer.start_as_current_span("reaper.reconcile_cycle"):
        try:
            await reconciler.store.ensure_expiration_notified_column()
            await reconciler.run()
        except Exception:
            logger.exception("reconcile cycle failed")
            return False
    return True


async def run_worker() -> None:
    settings = get_settings()
    configure_reaper_logging()
    telemetry_runtime = setup_reaper_telemetry(settings)
    store = get_record_store()
    notifier = build_notifier(settings)
    reconciler = ExpirationReconciler(
        store=store,
        blobs=get_blob_store(),
        notifier=notifier,
        config=ReconcileConfig.from_settings(settings),
    )

    backoff = settings.failure_backoff_seconds
    try:
        while True:
            logger.info("reconcile cycle started")
            succeeded = await run_once(reconciler)
            if settings.run_once:
                return
            if succeeded:
                backoff = settings.failure_backoff_seconds
                await asyncio.sleep(settings.reconcile_interval_seconds)
                continue

            jitter = random.uniform(0.0, 0.5)
            sleep_for = min(backoff * (2.0 + jitter), settings.max_backoff_seconds)
            logger.info("next reconcile attempt in %.1fs", sleep_for)
            await asyncio.sleep(sleep_for)
            backoff = sleep_for
    finally:
        if notifier is not None:
            await notifier.close()
        await store.close()
        get_record_store.cache_clear()
        shutdown_reaper_telemetry(telemetry_runtime)


if __name__ == "__main__":
    asyncio.run(run_worker())
