"""
Retry policy for bulk imports.

Errors without a status (transport failures, storage/database hiccups),
5xx responses and 429 are retried with exponential backoff; any other
status gives up immediately.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

import backoff
import httpx

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_ATTEMPTS = 4
BACKOFF_FACTOR_SECONDS = 0.5


def error_status(exc: BaseException) -> Optional[int]:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code
    status = getattr(exc, "status", None)
    return status if isinstance(status, int) else None


def is_retriable(exc: BaseException) -> bool:
    status = error_status(exc)
    return status is None or status >= 500 or status == 429


def _log_backoff(details: dict) -> None:
    logger.warning(
        "Attempt %d failed (%s), retrying in %.1fs",
        details["tries"],
        details.get("exception"),
        details["wait"],
    )


async def run_with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    attempts: int = MAX_ATTEMPTS,
    factor: float = BACKOFF_FACTOR_SECONDS,
    on_backoff: Optional[Callable[[dict], Any]] = None,
) -> T:
    """
    Await ``fn()`` up to ``attempts`` times, sleeping factor * 2**n between tries.

    The last error is re-raised once attempts run out or the error is not
    retriable.
    """
    handlers = [_log_backoff]
    if on_backoff is not None:
        handlers.append(on_backoff)

    @backoff.on_exception(
        backoff.expo,
        Exception,
        max_tries=attempts,
        giveup=lambda exc: not is_retriable(exc),
        on_backoff=handlers,
        jitter=None,
        logger=None,
        factor=factor,
    )
    async def attempt() -> T:
        return await fn()

    return await attempt()
