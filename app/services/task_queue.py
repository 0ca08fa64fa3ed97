"""Background task queue on Redis lists.

Producers LPUSH a JSON task onto ``tasks:<queue>``; the worker BRPOPs
from the tail, so each queue is FIFO.  Delivery is at-most-once: a task
the worker crashes on is lost.  Everything queued here is repair or
refresh work that can be re-derived (snapshots, recomputes, missing
certificates), never the authoritative write itself.

Without REDIS_URL an in-memory queue stands in, which is what the tests
and single-process runs use.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from app.db.redis import redis_pool

logger = logging.getLogger(__name__)

ANALYTICS_REFRESH = "analytics_refresh"
PROGRESS_RECOMPUTE = "progress_recompute"
CERTIFICATE_RECONCILE = "certificate_reconcile"


@dataclass(frozen=True, slots=True)
class Task:
    """A unit of background work.

    id:      Unique identifier, stamped on the worker's log lines.
    queue:   Which queue this task belongs to (e.g. "analytics_refresh").
    payload: Data the handler needs (JSON-serializable).
    """

    id: str
    queue: str
    payload: dict


@runtime_checkable
class TaskQueue(Protocol):
    async def enqueue(self, queue: str, payload: dict) -> Task: ...
    async def dequeue(self, queue: str, timeout: int = 0) -> Task | None: ...
    async def queue_length(self, queue: str) -> int: ...


class InMemoryTaskQueue:
    def __init__(self) -> None:
        self._queues: dict[str, list[Task]] = {}

    async def enqueue(self, queue: str, payload: dict) -> Task:
        task = Task(id=str(uuid.uuid4()), queue=queue, payload=payload)
        self._queues.setdefault(queue, []).append(task)
        return task

    async def dequeue(self, queue: str, timeout: int = 0) -> Task | None:
        tasks = self._queues.get(queue, [])
        if tasks:
            return tasks.pop(0)
        return None

    async def queue_length(self, queue: str) -> int:
        return len(self._queues.get(queue, []))


class RedisTaskQueue:
    _PREFIX = "tasks:"

    def __init__(self, redis_client) -> None:
        self._redis = redis_client

    async def enqueue(self, queue: str, payload: dict) -> Task:
        task = Task(id=str(uuid.uuid4()), queue=queue, payload=payload)
        task_json = json.dumps(
            {"id": task.id, "queue": task.queue, "payload": task.payload}
        )
        await self._redis.lpush(f"{self._PREFIX}{queue}", task_json)
        return task

    async def dequeue(self, queue: str, timeout: int = 5) -> Task | None:
        # Blocks up to `timeout` seconds; None when nothing arrived
        result = await self._redis.brpop(f"{self._PREFIX}{queue}", timeout=timeout)
        if result is None:
            return None
        _, task_json = result
        return Task(**json.loads(task_json))

    async def queue_length(self, queue: str) -> int:
        return await self._redis.llen(f"{self._PREFIX}{queue}")


async def enqueue_best_effort(
    queue_client: TaskQueue | None, queue: str, payload: dict
) -> Task | None:
    """Enqueue follow-up work without failing the write that asked for it.

    The write has already committed by the time this runs; losing the
    follow-up only delays a snapshot refresh or a repair.
    """
    if queue_client is None:
        return None
    try:
        return await queue_client.enqueue(queue, payload)
    except Exception:
        logger.exception("Could not enqueue %s task", queue)
        return None


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

if redis_pool is not None:
    task_queue: TaskQueue = RedisTaskQueue(redis_pool)
else:
    task_queue = InMemoryTaskQueue()
