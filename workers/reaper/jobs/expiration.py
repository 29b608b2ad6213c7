from __future__ import annotations

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from opentelemetry import trace

from reaper.core.config import Settings
from reaper.jobs.assets import find_image_urls, resolve_asset_keys
from reaper.services.blob_store import BlobStoreError, R2BlobStore
from reaper.services.notifier import BrevoNotifier, ExpirationNotice, NotificationError
from reaper.services.record_store import (
    INTENTION_KEY_COLUMN,
    INTENTIONS_TABLE,
    PostgresRecordStore,
    RecordStoreError,
    coerce_datetime,
    decode_form_data,
    is_safe_identifier,
)
from reaper.services.retry import send_with_retry

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

PREMIUM_PLAN = "premium"
STATUS_EXPIRED = "expired"
ONE_DAY = timedelta(days=1)


@dataclass(frozen=True, slots=True)
class ReconcileConfig:
    process_limit: int = 200
    worker_concurrency: int = 5
    email_max_retries: int = 3
    email_backoff_base_seconds: float = 0.5
    days_standard_ttl: int = 30
    days_premium_ttl: int = 60

    @classmethod
    def from_settings(cls, settings: Settings) -> "ReconcileConfig":
        return cls(
            process_limit=max(1, settings.process_limit),
            worker_concurrency=max(1, settings.worker_concurrency),
            email_max_retries=max(1, settings.email_max_retries),
            email_backoff_base_seconds=max(0.0, settings.email_backoff_base_seconds),
            days_standard_ttl=max(0, settings.days_standard_ttl),
            days_premium_ttl=max(0, settings.days_premium_ttl),
        )

    def retention_days(self, plan: str) -> int:
        return self.days_premium_ttl if plan == PREMIUM_PLAN else self.days_standard_ttl

    def delete_cutoff(self, plan: str, now: datetime) -> datetime:
        # elapsed_days(now, t) > ttl holds exactly when t <= now - (ttl + 1) days.
        return now - timedelta(days=self.retention_days(plan) + 1)


@dataclass(frozen=True, slots=True)
class Intention:
    intention_id: str
    email: str
    plan: str
    template_id: str
    expires_at: datetime
    expiration_notified_at: datetime | None
    qr_code: str | None


def elapsed_days(now: datetime, expires_at: datetime) -> int:
    return (now - expires_at) // ONE_DAY


def parse_intention(row: dict[str, Any]) -> Intention | None:
    """Build an Intention from a store row, or None if the row must be skipped."""
    intention_id = row.get("intention_id") or row.get("id")
    template_id = row.get("template_id")
    if not intention_id or not template_id:
        logger.warning("invalid intention row (missing intention_id or template_id): %s", row)
        return None

    template_id = str(template_id)
    if not is_safe_identifier(template_id):
        logger.warning("unsafe template_id=%r; skipping intention_id=%s", template_id, intention_id)
        return None

    expires_at = coerce_datetime(row.get("expires_in"))
    if expires_at is None:
        logger.warning("invalid expires_in=%r; skipping intention_id=%s", row.get("expires_in"), intention_id)
        return None

    return Intention(
        intention_id=str(intention_id),
        email=str(row.get("email") or ""),
        plan=str(row.get("plan") or "").lower(),
        template_id=template_id,
        expires_at=expires_at,
        expiration_notified_at=coerce_datetime(row.get("expiration_notified_at")),
        qr_code=row.get("qr_code") or None,
    )


class ExpirationReconciler:
    def __init__(
        self,
        *,
        store: PostgresRecordStore,
        blobs: R2BlobStore,
        notifier: BrevoNotifier | None,
        config: ReconcileConfig | None = None,
    ) -> None:
        self.store = store
        self.blobs = blobs
        self.notifier = notifier
        self.config = config or ReconcileConfig()

    async def run(self, now: datetime | None = None) -> dict[str, int]:
        current = now or datetime.now(timezone.utc)
        rows = await self.store.fetch_due_intentions(
            now=current,
            limit=self.config.process_limit,
            standard_delete_before=self.config.delete_cutoff("standard", current),
            premium_delete_before=self.config.delete_cutoff(PREMIUM_PLAN, current),
            include_notice_owed=self.notifier is not None,
        )
        if not rows:
            logger.info("no expired intentions found")
            return {}

        logger.info("found expired intentions count=%s limit=%s", len(rows), self.config.process_limit)
        outcomes = await self._drain(rows, current)
        tally = dict(Counter(outcomes))
        logger.info("reconcile cycle finished outcomes=%s", tally)
        return tally

    async def _drain(self, rows: list[dict[str, Any]], now: datetime) -> list[str]:
        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        for row in rows:
            queue.put_nowait(row)
        outcomes: list[str] = []

        async def worker() -> None:
            while True:
                try:
                    row = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                try:
                    outcomes.append(await self.process_intention(row, now))
                except Exception:
                    logger.exception("unexpected error processing intention row id=%s", row.get("intention_id"))
                    outcomes.append("error")

        worker_count = min(self.config.worker_concurrency, len(rows))
        await asyncio.gather(*(worker() for _ in range(worker_count)))
        return outcomes

    async def process_intention(self, row: dict[str, Any], now: datetime) -> str:
        intention = parse_intention(row)
        if intention is None:
            return "invalid"

        with tracer.start_as_current_span("reaper.process_intention") as span:
            span.set_attribute("intention.id", intention.intention_id)
            span.set_attribute("intention.plan", intention.plan or "standard")
            outcome = await self._reconcile(intention, now)
            span.set_attribute("intention.outcome", outcome)
            return outcome

    async def _reconcile(self, intention: Intention, now: datetime) -> str:
        intention_id = intention.intention_id

        try:
            await self._mark_expired(intention)
        except RecordStoreError:
            logger.exception("failed to mark intention_id=%s as expired", intention_id)
            return "status_update_failed"

        try:
            form_data_raw = await self.store.fetch_form_data(intention.template_id, intention_id)
        except RecordStoreError:
            logger.exception("failed to read %s form_data for intention_id=%s", intention.template_id, intention_id)
            return "form_data_failed"

        if intention.expiration_notified_at is None:
            await self._notify(intention)

        days = elapsed_days(now, intention.expires_at)
        threshold = self.config.retention_days(intention.plan)
        if days <= threshold:
            logger.info(
                "intention_id=%s plan=%s below ttl (expired %s days ago, ttl=%s)",
                intention_id,
                intention.plan or "standard",
                days,
                threshold,
            )
            return "retained"

        keys = resolve_asset_keys(self._extract_urls(intention_id, form_data_raw), intention.qr_code)
        results = await asyncio.gather(*(self._delete_asset(intention_id, key) for key in keys))
        if not all(results):
            logger.warning("intention_id=%s not deleted: failed to remove some assets from the bucket", intention_id)
            return "deletion_partial"

        try:
            await self.store.delete_row(INTENTIONS_TABLE, INTENTION_KEY_COLUMN, intention_id)
        except RecordStoreError:
            logger.exception("failed to delete intention_id=%s", intention_id)
            return "delete_failed"
        logger.info("intention_id=%s deleted with %s assets", intention_id, len(keys))
        return "deleted"

    async def _mark_expired(self, intention: Intention) -> None:
        fields = {"status": STATUS_EXPIRED}
        await self.store.update_row(INTENTIONS_TABLE, INTENTION_KEY_COLUMN, intention.intention_id, fields)
        await self.store.update_row(intention.template_id, INTENTION_KEY_COLUMN, intention.intention_id, fields)

    async def _notify(self, intention: Intention) -> bool:
        if self.notifier is None:
            logger.warning("notifier not configured; skipping notice for intention_id=%s", intention.intention_id)
            return False

        notice = ExpirationNotice(
            to=intention.email,
            intention_id=intention.intention_id,
            template_id=intention.template_id,
            plan=intention.plan,
            expires_at=intention.expires_at,
        )
        try:
            await send_with_retry(
                self.notifier.send,
                notice,
                max_attempts=self.config.email_max_retries,
                base_delay_seconds=self.config.email_backoff_base_seconds,
            )
        except NotificationError:
            logger.exception("failed to notify %s for intention_id=%s", intention.email, intention.intention_id)
            return False

        try:
            await self.store.update_row(
                INTENTIONS_TABLE,
                INTENTION_KEY_COLUMN,
                intention.intention_id,
                {"expiration_notified_at": datetime.now(timezone.utc)},
            )
        except RecordStoreError:
            # The notice went out; it will be sent again next cycle.
            logger.exception(
                "notice sent but expiration_notified_at not saved for intention_id=%s", intention.intention_id
            )
            return False
        logger.info("expiration notice sent for intention_id=%s", intention.intention_id)
        return True

    @staticmethod
    def _extract_urls(intention_id: str, form_data_raw: Any) -> list[str]:
        try:
            document = decode_form_data(form_data_raw)
        except ValueError as exc:
            logger.warning("could not parse form_data for intention_id=%s: %s", intention_id, exc)
            return []
        return find_image_urls(document)

    async def _delete_asset(self, intention_id: str, key: str) -> bool:
        try:
            await self.blobs.delete(key)
        except BlobStoreError:
            logger.exception("failed to delete blob key=%s for intention_id=%s", key, intention_id)
            return False
        logger.info("blob deleted key=%s", key)
        return True
