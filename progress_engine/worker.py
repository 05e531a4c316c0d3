"""Background worker process.

RUN:  python -m progress_engine.worker

Same image as the API, different command.  Drains two queues:

  progress_sync     sync batches posted with ?mode=async
  snapshot_refresh  snapshot refreshes the API deferred because the
                    structure provider was down or a concurrent writer
                    won the compare-and-set

A handler failure is logged and the task dropped.  Neither queue holds
anything that cannot be recovered: devices resend unacknowledged
events and the next accepted event refreshes the snapshot anyway.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from typing import Any

from progress_engine.core.config import SETTINGS
from progress_engine.core.errors import ProgressEngineError
from progress_engine.core.logging import setup_logging
from progress_engine.core.metrics import QUEUE_DEPTH
from progress_engine.services.progress_service import (
    batch_from_payload,
    refresh_snapshot,
    sync_batch,
)
from progress_engine.services.task_queue import (
    PROGRESS_SYNC_QUEUE,
    SNAPSHOT_REFRESH_QUEUE,
    Task,
    task_queue,
)

TaskHandler = Callable[[dict], Coroutine[Any, Any, None]]

logger = logging.getLogger("progress_engine.worker")

HANDLERS: dict[str, TaskHandler] = {}


def register_handler(queue: str):
    """Decorator: register a coroutine as the handler for a queue."""

    def decorator(func):
        HANDLERS[queue] = func
        return func

    return decorator


@register_handler(PROGRESS_SYNC_QUEUE)
async def handle_progress_sync(payload: dict) -> None:
    result, _snapshot = await sync_batch(
        payload["learner_id"], payload["course_id"], batch_from_payload(payload)
    )
    logger.info(
        "Queued sync applied learner=%s accepted=%d retry=%d",
        payload["learner_id"],
        len(result.accepted),
        len(result.retryable),
        extra={"course_id": payload["course_id"]},
    )


@register_handler(SNAPSHOT_REFRESH_QUEUE)
async def handle_snapshot_refresh(payload: dict) -> None:
    # refresh_snapshot re-queues itself if the cause is still there.
    await refresh_snapshot(payload["learner_id"], payload["course_id"])


async def process_task(task: Task) -> bool:
    """Run one task through its handler.  Returns False if it failed."""
    handler = HANDLERS[task.queue]
    try:
        await handler(task.payload)
    except (ProgressEngineError, KeyError, TypeError, ValueError):
        logger.exception("Task failed queue=%s", task.queue, extra={"task_id": task.id})
        return False
    logger.info("Task completed queue=%s", task.queue, extra={"task_id": task.id})
    return True


async def run_worker() -> None:
    """Poll all registered queues round-robin and dispatch tasks."""
    queues = list(HANDLERS)
    logger.info("Worker started, listening on queues: %s", queues)

    while True:
        for queue_name in queues:
            QUEUE_DEPTH.labels(queue_name=queue_name).set(
                await task_queue.queue_length(queue_name)
            )
            task = await task_queue.dequeue(queue_name, timeout=1)
            if task is None:
                continue
            await process_task(task)


if __name__ == "__main__":
    setup_logging(SETTINGS.log_level, json_format=SETTINGS.log_json)
    asyncio.run(run_worker())
