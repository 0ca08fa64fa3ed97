"""Run a unit of work with a deadline and bounded retries."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from app.core.config import SETTINGS
from app.core.metrics import STORE_RETRIES
from app.repos.unit_of_work import TransientStoreError, UnitOfWork, UnitOfWorkFactory
from app.services.errors import ConcurrencyConflict

logger = logging.getLogger(__name__)

T = TypeVar("T")

_BACKOFF_SECONDS = 0.05


async def run_in_unit_of_work(
    uow_factory: UnitOfWorkFactory,
    work: Callable[[UnitOfWork], Awaitable[T]],
    *,
    operation: str,
    attempts: int | None = None,
    timeout: float | None = None,
) -> T:
    """Call ``work(uow)`` inside a fresh unit of work until it commits.

    Timeouts and TransientStoreError are retried with linear backoff.
    Domain errors propagate on the first attempt.  Running out of
    attempts raises ConcurrencyConflict.
    """
    attempts = attempts if attempts is not None else SETTINGS.db_retry_attempts
    timeout = timeout if timeout is not None else SETTINGS.db_timeout_seconds

    last_error: Exception | None = None
    for attempt in range(1, attempts + 1):
        try:
            async with asyncio.timeout(timeout):
                async with uow_factory() as uow:
                    return await work(uow)
        except (TimeoutError, TransientStoreError) as exc:
            last_error = exc
            STORE_RETRIES.labels(operation=operation).inc()
            logger.warning(
                "%s attempt %d/%d failed: %s",
                operation,
                attempt,
                attempts,
                exc.__class__.__name__,
            )
            if attempt < attempts:
                await asyncio.sleep(_BACKOFF_SECONDS * attempt)

    raise ConcurrencyConflict(
        f"{operation} did not complete after {attempts} attempts"
    ) from last_error
