"""Background worker process.

RUN:  python -m app.worker

Polls the task queues round-robin and dispatches each task to its
handler.  Handlers only do re-derivable work: refreshing analytics
snapshots, recomputing an enrollment, issuing certificates a crash left
behind.  A failing task is logged and dropped; the reconcile queued at
startup and every RECONCILE_INTERVAL_SECONDS, and the next refresh, pick
the slack up.

The process also serves Prometheus metrics on METRICS_PORT.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Coroutine
from typing import Any
from uuid import UUID

from prometheus_client import start_http_server
from pydantic import BaseModel

from app.core.config import SETTINGS
from app.core.logging import setup_logging, task_id_var
from app.core.metrics import QUEUE_DEPTH
from app.db.engine import lifespan_db
from app.db.redis import lifespan_redis
from app.services.aggregator import progress_aggregator
from app.services.analytics import analytics_rollup
from app.services.certificates import certificate_issuer
from app.services.task_queue import (
    ANALYTICS_REFRESH,
    CERTIFICATE_RECONCILE,
    PROGRESS_RECOMPUTE,
    Task,
    TaskQueue,
    task_queue,
)

TaskHandler = Callable[[dict], Coroutine[Any, Any, None]]

logger = logging.getLogger("worker")


# ---------------------------------------------------------------------------
# Handler registry
# ---------------------------------------------------------------------------

HANDLERS: dict[str, TaskHandler] = {}


def register_handler(queue: str):
    """Decorator: register a coroutine as the handler for a queue."""

    def decorator(func):
        HANDLERS[queue] = func
        return func

    return decorator


# ---------------------------------------------------------------------------
# Payload schemas
# ---------------------------------------------------------------------------


class AnalyticsRefreshIn(BaseModel):
    reason: str = "request"
    course_id: UUID | None = None


class ProgressRecomputeIn(BaseModel):
    user_id: UUID
    course_id: UUID


# ---------------------------------------------------------------------------
# Task handlers
# ---------------------------------------------------------------------------


@register_handler(ANALYTICS_REFRESH)
async def handle_analytics_refresh(payload: dict) -> None:
    """Recompute every stored analytics snapshot."""
    task = AnalyticsRefreshIn.model_validate(payload)
    refreshed = await analytics_rollup.refresh_all()
    logger.info("Refreshed %d snapshots after %s", refreshed, task.reason)


@register_handler(PROGRESS_RECOMPUTE)
async def handle_progress_recompute(payload: dict) -> None:
    """Recompute one enrollment; payload carries user_id and course_id."""
    task = ProgressRecomputeIn.model_validate(payload)
    progress = await progress_aggregator.recompute(task.user_id, task.course_id)
    logger.info(
        "Recomputed enrollment: %d%% %s",
        progress.percentage,
        progress.status,
        extra={"user_id": str(task.user_id), "course_id": str(task.course_id)},
    )


@register_handler(CERTIFICATE_RECONCILE)
async def handle_certificate_reconcile(payload: dict) -> None:
    """Issue certificates for completed enrollments that have none."""
    issued = await certificate_issuer.reconcile_missing()
    logger.info("Certificate reconcile issued %d", len(issued))


# ---------------------------------------------------------------------------
# Main worker loop
# ---------------------------------------------------------------------------


async def process_task(task: Task) -> bool:
    """Run one task's handler.  Returns False when the handler raised."""
    handler = HANDLERS.get(task.queue)
    if handler is None:
        logger.error("No handler for queue [%s]; dropping task %s", task.queue, task.id)
        return False

    token = task_id_var.set(task.id)
    try:
        await handler(task.payload)
        logger.info("Task on [%s] completed", task.queue)
        return True
    except Exception:
        logger.exception("Task on [%s] failed", task.queue)
        return False
    finally:
        task_id_var.reset(token)


async def poll_once(queue: TaskQueue, timeout: int = 1) -> int:
    """One round-robin pass over every registered queue."""
    processed = 0
    for queue_name in HANDLERS:
        QUEUE_DEPTH.labels(queue_name=queue_name).set(
            await queue.queue_length(queue_name)
        )
        task = await queue.dequeue(queue_name, timeout=timeout)
        if task is None:
            continue
        await process_task(task)
        processed += 1
    return processed


async def schedule_reconcile(
    queue: TaskQueue, next_due: float, now: float, *, reason: str = "periodic"
) -> float:
    """Queue a certificate reconcile if one is due; return the next due time."""
    if now < next_due:
        return next_due
    await queue.enqueue(CERTIFICATE_RECONCILE, {"reason": reason})
    return now + SETTINGS.reconcile_interval_seconds


async def run_worker() -> None:
    logger.info("Worker started, listening on queues: %s", list(HANDLERS))
    async with lifespan_db(), lifespan_redis():
        # Catch up on certificates a previous crash may have left behind
        next_reconcile = await schedule_reconcile(
            task_queue, 0.0, time.monotonic(), reason="startup"
        )
        while True:
            next_reconcile = await schedule_reconcile(
                task_queue, next_reconcile, time.monotonic()
            )
            processed = await poll_once(task_queue)
            if processed == 0:
                # In-memory queues return immediately; avoid a busy loop
                await asyncio.sleep(1)


def main() -> None:
    setup_logging(SETTINGS.log_level, json_format=SETTINGS.log_json)
    start_http_server(SETTINGS.metrics_port)
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
