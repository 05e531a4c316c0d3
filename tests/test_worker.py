from __future__ import annotations

import asyncio
import json

import pytest

from progress_engine.services.engine import aggregation, ledger, local_courses
from progress_engine.services.progress_service import (
    batch_from_payload,
    batch_to_payload,
    record_event,
)
from progress_engine.services.task_queue import (
    PROGRESS_SYNC_QUEUE,
    SNAPSHOT_REFRESH_QUEUE,
    Task,
    task_queue,
)
from progress_engine.worker import HANDLERS, process_task
from tests.conftest import make_event

pytestmark = pytest.mark.usefixtures("structure")


def test_handlers_registered_for_both_queues() -> None:
    assert set(HANDLERS) == {PROGRESS_SYNC_QUEUE, SNAPSHOT_REFRESH_QUEUE}


def test_batch_payload_survives_json_round_trip() -> None:
    batch = {"phone": [make_event("s2", "SCORE_SUBMITTED", score=77.5)]}
    payload = json.loads(json.dumps(batch_to_payload("learner-1", "course-1", batch)))
    assert batch_from_payload(payload) == batch


def test_deferred_refresh_is_completed_by_worker() -> None:
    async def run():
        local_courses.set_available(True)
        await record_event(make_event("s1", "STARTED", seq=1))
        # Land an entry without refreshing, as if the inline refresh failed.
        await ledger.append(make_event("s1", "COMPLETED", seq=2))
        task = await task_queue.enqueue(
            SNAPSHOT_REFRESH_QUEUE, {"learner_id": "learner-1", "course_id": "course-1"}
        )
        ok = await process_task(task)
        return ok, await aggregation.get_snapshot("learner-1", "course-1")

    ok, snap = asyncio.run(run())
    assert ok
    assert snap.section_state("s1").completed


def test_refresh_requeues_while_structure_is_down() -> None:
    async def run() -> int:
        await record_event(make_event("s1", "STARTED", seq=1))
        local_courses.set_available(False)
        await process_task(
            Task(id="t1", queue=SNAPSHOT_REFRESH_QUEUE,
                 payload={"learner_id": "learner-1", "course_id": "course-1"})
        )
        return await task_queue.queue_length(SNAPSHOT_REFRESH_QUEUE)

    assert asyncio.run(run()) == 1


def test_malformed_task_is_logged_not_raised() -> None:
    task = Task(id="t2", queue=PROGRESS_SYNC_QUEUE, payload={"course_id": "course-1"})
    assert asyncio.run(process_task(task)) is False
