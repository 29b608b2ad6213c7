from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from reaper.core.config import get_settings

logger = logging.getLogger(__name__)

IDENTIFIER_RE = re.compile(r"^[a-z0-9_]+$")
INTENTIONS_TABLE = "intentions"
INTENTION_KEY_COLUMN = "intention_id"


class RecordStoreError(Exception):
    """Base record store error."""


class RecordStoreUnavailableError(RecordStoreError):
    """Raised when the database is unavailable or not configured."""


class InvalidIdentifierError(RecordStoreError):
    """Raised when a table or column name is not a safe SQL identifier."""


def is_safe_identifier(value: Any) -> bool:
    return isinstance(value, str) and IDENTIFIER_RE.fullmatch(value) is not None


def require_identifier(value: Any) -> str:
    if not is_safe_identifier(value):
        raise InvalidIdentifierError(f"unsafe identifier: {value!r}")
    return value


class PostgresRecordStore:
    def __init__(self, database_url: str | None, min_pool_size: int, max_pool_size: int) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def fetch_due_intentions(
        self,
        *,
        now: datetime,
        limit: int,
        standard_delete_before: datetime,
        premium_delete_before: datetime,
        include_notice_owed: bool = True,
    ) -> list[dict[str, Any]]:
        """Return approved rows past due plus expired rows that still need work.

        An expired row is still actionable while its notice is owed or once it
        crossed its plan's retention cutoff. Anything else would only fill the
        batch with rows the pipeline leaves untouched. Approved rows come first
        so expired rows being retried never crowd newly due ones out of the
        batch. Pass ``include_notice_owed=False`` when no notice can be sent.
        """
        pool = await self._get_pool()
        try:
            rows = await pool.fetch(
                """
                select
                  intention_id,
                  email,
                  plan,
                  template_id,
                  expires_in,
                  expiration_notified_at,
                  qr_code
                from intentions
                where expires_in is not null
                  and expires_in <= $1
                  and (
                    status = 'approved'
                    or (
                      status = 'expired'
                      and (
                        ($5 and expiration_notified_at is null)
                        or (lower(coalesce(plan, '')) = 'premium' and expires_in <= $3)
                        or (lower(coalesce(plan, '')) <> 'premium' and expires_in <= $4)
                      )
                    )
                  )
                order by (status = 'approved') desc, expires_in asc
                limit $2
                """,
                now,
                max(1, limit),
                premium_delete_before,
                standard_delete_before,
                include_notice_owed,
            )
        except (asyncpg.PostgresError, OSError) as exc:
            raise RecordStoreError(f"due intentions query failed: {exc}") from exc
        return [self._intention_row_to_dict(row) for row in rows]

    async def select_row(
        self,
        table: str,
        columns: list[str],
        *,
        key_column: str,
        key_value: Any,
    ) -> dict[str, Any] | None:
        select_list = ", ".join(require_identifier(column) for column in columns)
        sql = (
            f"select {select_list} from {require_identifier(table)} "
            f"where {require_identifier(key_column)} = $1 limit 1"
        )
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(sql, key_value)
        except (asyncpg.PostgresError, OSError) as exc:
            raise RecordStoreError(f"select from {table} failed: {exc}") from exc
        return dict(row) if row is not None else None

    async def fetch_form_data(self, template_id: str, intention_id: str) -> Any:
        row = await self.select_row(
            template_id,
            ["form_data"],
            key_column=INTENTION_KEY_COLUMN,
            key_value=intention_id,
        )
        if row is None:
            return None
        return row.get("form_data")

    async def update_row(self, table: str, key_column: str, key_value: Any, fields: dict[str, Any]) -> int:
        if not fields:
            return 0
        assignments = ", ".join(
            f"{require_identifier(column)} = ${index}" for index, column in enumerate(fields, start=2)
        )
        sql = f"update {require_identifier(table)} set {assignments} where {require_identifier(key_column)} = $1"
        pool = await self._get_pool()
        try:
            status = await pool.execute(sql, key_value, *fields.values())
        except (asyncpg.PostgresError, OSError) as exc:
            raise RecordStoreError(f"update of {table} failed: {exc}") from exc
        return self._affected_rows(status)

    async def delete_row(self, table: str, key_column: str, key_value: Any) -> int:
        sql = f"delete from {require_identifier(table)} where {require_identifier(key_column)} = $1"
        pool = await self._get_pool()
        try:
            status = await pool.execute(sql, key_value)
        except (asyncpg.PostgresError, OSError) as exc:
            raise RecordStoreError(f"delete from {table} failed: {exc}") from exc
        return self._affected_rows(status)

    async def ensure_expiration_notified_column(self) -> None:
        pool = await self._get_pool()
        try:
            await pool.fetch("select expiration_notified_at from intentions limit 1")
            return
        except pg_exc.UndefinedColumnError:
            logger.info("adding column expiration_notified_at to intentions")

        try:
            await pool.execute("alter table intentions add column expiration_notified_at timestamptz")
        except pg_exc.DuplicateColumnError as exc:
            logger.warning("could not add expiration_notified_at (likely already exists): %s", exc)

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RecordStoreUnavailableError("REAPER_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RecordStoreUnavailableError("database unavailable") from exc

    @staticmethod
    def _affected_rows(status: str) -> int:
        # asyncpg returns the command tag, e.g. "UPDATE 1" or "DELETE 0".
        try:
            return int(status.rsplit(" ", maxsplit=1)[-1])
        except (AttributeError, ValueError):
            return 0

    @staticmethod
    def _intention_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        return {
            "intention_id": row["intention_id"],
            "email": row["email"],
            "plan": row["plan"],
            "template_id": row["template_id"],
            "expires_in": row["expires_in"],
            "expiration_notified_at": row["expiration_notified_at"],
            "qr_code": row["qr_code"],
        }


def coerce_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        candidate = value.strip()
        if not candidate:
            return None
        try:
            dt = datetime.fromisoformat(candidate.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def decode_form_data(value: Any) -> Any:
    """Decode a side-table form_data value.

    asyncpg returns json/jsonb columns as text unless a codec is registered, so
    both text and already-decoded values are accepted. Raises ValueError on
    malformed JSON.
    """
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8")
    if isinstance(value, str):
        return json.loads(value)
    return value


@lru_cache
def get_record_store() -> PostgresRecordStore:
    settings = get_settings()
    return PostgresRecordStore(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
