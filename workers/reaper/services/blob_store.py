from __future__ import annotations

import asyncio
import logging
from functools import lru_cache
from typing import Any

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from reaper.core.config import get_settings

logger = logging.getLogger(__name__)

MISSING_KEY_ERROR_CODES = {"NoSuchKey", "404", "NotFound"}


class BlobStoreError(Exception):
    """Raised when an object could not be removed from the bucket."""


class R2BlobStore:
    """Delete-by-key access to the R2 bucket holding uploaded assets."""

    def __init__(self, client: Any, bucket_name: str) -> None:
        self._client = client
        self.bucket_name = bucket_name

    async def delete(self, key: str) -> None:
        # boto3 is blocking; keep the event loop free for sibling workers.
        await asyncio.to_thread(self._delete_sync, key)

    def _delete_sync(self, key: str) -> None:
        try:
            self._client.delete_object(Bucket=self.bucket_name, Key=key)
        except ClientError as exc:
            code = str(exc.response.get("Error", {}).get("Code", ""))
            if code in MISSING_KEY_ERROR_CODES:
                logger.info("blob already absent key=%s", key)
                return
            raise BlobStoreError(f"delete failed key={key} code={code}") from exc
        except BotoCoreError as exc:
            raise BlobStoreError(f"delete failed key={key}: {exc}") from exc


def build_r2_client(
    *,
    account_id: str | None,
    access_key_id: str,
    secret_access_key: str,
    endpoint_url: str | None = None,
) -> Any:
    if not endpoint_url:
        if not account_id:
            raise BlobStoreError("R2 endpoint requires REAPER_R2_ACCOUNT_ID or REAPER_R2_ENDPOINT_URL")
        endpoint_url = f"https://{account_id}.r2.cloudflarestorage.com"
    return boto3.client(
        "s3",
        endpoint_url=endpoint_url,
        aws_access_key_id=access_key_id,
        aws_secret_access_key=secret_access_key,
        config=Config(signature_version="s3v4", retries={"max_attempts": 3, "mode": "standard"}),
        region_name="auto",
    )


@lru_cache
def get_blob_store() -> R2BlobStore:
    settings = get_settings()
    if not (settings.r2_access_key_id and settings.r2_secret_access_key and settings.r2_bucket_name):
        raise BlobStoreError("R2 credentials and REAPER_R2_BUCKET_NAME are required")
    client = build_r2_client(
        account_id=settings.r2_account_id,
        access_key_id=settings.r2_access_key_id,
        secret_access_key=settings.r2_secret_access_key,
        endpoint_url=settings.r2_endpoint_url,
    )
    return R2BlobStore(client, settings.r2_bucket_name)
