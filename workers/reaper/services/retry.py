from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from reaper.services.notifier import ExpirationNotice, NotificationError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def send_with_retry(
    send: Callable[[ExpirationNotice], Awaitable[T]],
    notice: ExpirationNotice,
    *,
    max_attempts: int = 3,
    base_delay_seconds: float = 0.5,
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
) -> T:
    """Deliver a notice, retrying rate-limit and server errors with linear backoff.

    The wait before attempt ``n + 1`` is ``base_delay_seconds * n``. Terminal
    errors propagate on first sight; running out of attempts re-raises the last
    retryable error.
    """
    attempts = max(1, max_attempts)
    for attempt in range(1, attempts + 1):
        try:
            return await send(notice)
        except NotificationError as exc:
            if not exc.retryable or attempt == attempts:
                raise
            delay = base_delay_seconds * attempt
            logger.warning(
                "retrying notice to=%s intention_id=%s in %.2fs (attempt %d/%d, status=%s)",
                notice.to,
                notice.intention_id,
                delay,
                attempt,
                attempts,
                exc.status_code,
            )
            await sleep(delay)
    raise RuntimeError("retry loop exited without result")  # pragma: no cover
