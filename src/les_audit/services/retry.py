"""Bounded retry for persistence calls."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_RETRIES = 2

# Errors worth another attempt. Integrity and programming errors are not.
TRANSIENT_ERRORS = (OperationalError, asyncio.TimeoutError)


class TransientStoreError(Exception):
    """Raised when the store keeps failing after all retries."""

    def __init__(self, operation: str, attempts: int, last_error: BaseException):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"{operation} failed after {attempts} attempt(s): {type(last_error).__name__}"
        )


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, TRANSIENT_ERRORS):
        return True
    return isinstance(exc, DBAPIError) and exc.connection_invalidated


async def run_with_retry(
    session: AsyncSession,
    operation: str,
    func: Callable[[], Awaitable[T]],
    retries: int = MAX_RETRIES,
    timeout_seconds: float | None = 5.0,
    backoff_seconds: float = 0.1,
) -> T:
    """Run func with a timeout, retrying transient failures.

    func must be safe to re-run from scratch: the session is rolled back
    before every retry. At most MAX_RETRIES retries are made.
    """
    retries = max(0, min(retries, MAX_RETRIES))
    attempt = 0
    while True:
        attempt += 1
        try:
            if timeout_seconds is None:
                return await func()
            return await asyncio.wait_for(func(), timeout=timeout_seconds)
        except Exception as exc:
            if not _is_transient(exc):
                raise
            await session.rollback()
            if attempt > retries:
                raise TransientStoreError(operation, attempt, exc) from exc
            delay = backoff_seconds * (2 ** (attempt - 1))
            logger.warning(
                "%s failed (attempt %d of %d, %s); retrying in %.2fs",
                operation,
                attempt,
                retries + 1,
                type(exc).__name__,
                delay,
            )
            await asyncio.sleep(delay)
