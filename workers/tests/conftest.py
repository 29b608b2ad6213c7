from __future__ import annotations

import json
from datetime import datetime
from typing import Any

import pytest

from reaper.jobs.expiration import ExpirationReconciler, ReconcileConfig
from reaper.services.blob_store import BlobStoreError
from reaper.services.notifier import ExpirationNotice, NotificationError
from reaper.services.record_store import RecordStoreError, coerce_datetime, require_identifier


class FakeRecordStore:
    """In-memory stand-in for PostgresRecordStore mirroring its query semantics."""

    def __init__(self) -> None:
        self.intentions: dict[str, dict[str, Any]] = {}
        self.side_tables: dict[str, dict[str, dict[str, Any]]] = {}
        self.calls: list[tuple[str, str]] = []
        self.failing: set[tuple[str, str]] = set()

    def add_intention(
        self,
        intention_id: str,
        *,
        expires_in: datetime,
        plan: str = "standard",
        template_id: str = "nossa_historia",
        email: str = "owner@example.com",
        status: str = "approved",
        expiration_notified_at: datetime | None = None,
        qr_code: str | None = None,
        form_data: Any = None,
    ) -> None:
        self.intentions[intention_id] = {
            "intention_id": intention_id,
            "email": email,
            "plan": plan,
            "template_id": template_id,
            "expires_in": expires_in,
            "expiration_notified_at": expiration_notified_at,
            "status": status,
            "qr_code": qr_code,
        }
        if form_data is not None and not isinstance(form_data, str):
            form_data = json.dumps(form_data)
        self.side_tables.setdefault(template_id, {})[intention_id] = {
            "intention_id": intention_id,
            "form_data": form_data,
            "status": status,
        }

    def _record(self, op: str, table: str) -> None:
        self.calls.append((op, table))
        if (op, table) in self.failing:
            raise RecordStoreError(f"{op} on {table} failed")

    async def fetch_due_intentions(
        self,
        *,
        now: datetime,
        limit: int,
        standard_delete_before: datetime,
        premium_delete_before: datetime,
        include_notice_owed: bool = True,
    ) -> list[dict[str, Any]]:
        self._record("select", "intentions")

        def actionable(row: dict[str, Any]) -> bool:
            expires_in = coerce_datetime(row["expires_in"])
            if expires_in is None or expires_in > now:
                return False
            if row["status"] == "approved":
                return True
            if row["status"] != "expired":
                return False
            if include_notice_owed and row["expiration_notified_at"] is None:
                return True
            cutoff = premium_delete_before if (row["plan"] or "").lower() == "premium" else standard_delete_before
            return expires_in <= cutoff

        due = sorted(
            (row for row in self.intentions.values() if actionable(row)),
            key=lambda row: (row["status"] != "approved", coerce_datetime(row["expires_in"])),
        )
        return [dict(row) for row in due[:limit]]

    async def fetch_form_data(self, template_id: str, intention_id: str) -> Any:
        self._record("select", require_identifier(template_id))
        row = self.side_tables.get(template_id, {}).get(intention_id)
        return row["form_data"] if row else None

    async def update_row(self, table: str, key_column: str, key_value: Any, fields: dict[str, Any]) -> int:
        self._record("update", require_identifier(table))
        target = self.intentions if table == "intentions" else self.side_tables.get(table, {})
        row = target.get(key_value)
        if row is None:
            return 0
        row.update(fields)
        return 1

    async def delete_row(self, table: str, key_column: str, key_value: Any) -> int:
        self._record("delete", require_identifier(table))
        row = self.intentions.pop(key_value, None)
        if row is None:
            return 0
        self.side_tables.get(row["template_id"], {}).pop(key_value, None)
        return 1

    async def ensure_expiration_notified_column(self) -> None:
        self._record("probe", "intentions")

    def writes(self) -> list[tuple[str, str]]:
        return [call for call in self.calls if call[0] in {"update", "delete"}]


class FakeBlobStore:
    def __init__(self, keys: set[str] | None = None) -> None:
        self.objects: set[str] = set(keys or ())
        self.failing_keys: set[str] = set()
        self.delete_calls: list[str] = []

    async def delete(self, key: str) -> None:
        self.delete_calls.append(key)
        if key in self.failing_keys:
            raise BlobStoreError(f"delete failed key={key}")
        self.objects.discard(key)


class FakeNotifier:
    def __init__(self) -> None:
        self.sent: list[ExpirationNotice] = []
        self.attempts = 0
        self.errors: list[NotificationError] = []

    async def send(self, notice: ExpirationNotice) -> dict[str, Any]:
        self.attempts += 1
        if self.errors:
            raise self.errors.pop(0)
        self.sent.append(notice)
        return {"messageId": f"<{notice.intention_id}@example.com>"}


@pytest.fixture
def store() -> FakeRecordStore:
    return FakeRecordStore()


@pytest.fixture
def blobs() -> FakeBlobStore:
    return FakeBlobStore()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def reconciler(store: FakeRecordStore, blobs: FakeBlobStore, notifier: FakeNotifier) -> ExpirationReconciler:
    return ExpirationReconciler(
        store=store,
        blobs=blobs,
        notifier=notifier,
        config=ReconcileConfig(email_backoff_base_seconds=0.0),
    )
