"""Offline / multi-device sync.

  POST /v1/sync/{course_id}              → reconcile now, per-event acks
  POST /v1/sync/{course_id}?mode=async   → queue for the worker, 202

Body:

  {"devices": {"tablet": [{"section_id": "s1", "event_type": "STARTED",
                           "client_timestamp": 1700000000000,
                           "sequence_number": 7}, ...],
               "phone":  [...]}}

Validation happens per event inside the reconciler, so the schema here
is loose on score and sequence_number: a bad record comes
back as a ``conflict`` ack instead of failing the whole request.
"""

from __future__ import annotations

from typing import Annotated, Literal

from fastapi import APIRouter, Depends, Query, Response, status
from pydantic import BaseModel, Field

from progress_engine.api.dependencies import http_error, require_user
from progress_engine.api.progress import SnapshotOut
from progress_engine.core.errors import ProgressEngineError
from progress_engine.models.principal import Principal
from progress_engine.models.progress import EventType, ProgressEvent
from progress_engine.services.progress_service import batch_to_payload, sync_batch
from progress_engine.services.task_queue import PROGRESS_SYNC_QUEUE, task_queue

router = APIRouter(prefix="/v1/sync", tags=["sync"])


class SyncEventIn(BaseModel):
    section_id: str = Field(min_length=1)
    event_type: EventType
    score: float | None = None
    client_timestamp: int
    sequence_number: int


class SyncBatchIn(BaseModel):
    devices: dict[str, list[SyncEventIn]] = Field(min_length=1)


class EventAckOut(BaseModel):
    device_id: str
    sequence_number: int
    status: str
    ledger_sequence: int | None = None
    reason: str | None = None


class SyncOut(BaseModel):
    accepted: int
    duplicates: int
    conflicts: int
    retry: int
    acks: list[EventAckOut]
    snapshot: SnapshotOut | None = None


class SyncQueuedOut(BaseModel):
    task_id: str
    status: str = "queued"


def _to_batch(
    body: SyncBatchIn, learner_id: str, course_id: str
) -> dict[str, list[ProgressEvent]]:
    return {
        device_id: [
            ProgressEvent(
                learner_id=learner_id,
                course_id=course_id,
                section_id=e.section_id,
                event_type=e.event_type,
                client_timestamp=e.client_timestamp,
                device_id=device_id,
                sequence_number=e.sequence_number,
                score=e.score,
            )
            for e in events
        ]
        for device_id, events in body.devices.items()
    }


@router.post(
    "/{course_id}",
    response_model=SyncOut | SyncQueuedOut,
)
async def sync_course(
    course_id: str,
    body: SyncBatchIn,
    response: Response,
    principal: Annotated[Principal, Depends(require_user)],
    mode: Annotated[Literal["sync", "async"], Query()] = "sync",
) -> SyncOut | SyncQueuedOut:
    batch = _to_batch(body, principal.user_id, course_id)

    if mode == "async":
        task = await task_queue.enqueue(
            PROGRESS_SYNC_QUEUE, batch_to_payload(principal.user_id, course_id, batch)
        )
        response.status_code = status.HTTP_202_ACCEPTED
        return SyncQueuedOut(task_id=task.id)

    try:
        result, snapshot = await sync_batch(principal.user_id, course_id, batch)
    except ProgressEngineError as e:
        raise http_error(e) from None

    return SyncOut(
        accepted=len(result.accepted),
        duplicates=len(result.rejected_duplicates),
        conflicts=len(result.conflicts),
        retry=len(result.retryable),
        acks=[
            EventAckOut(
                device_id=a.device_id,
                sequence_number=a.sequence_number,
                status=a.status,
                ledger_sequence=a.ledger_sequence,
                reason=a.reason,
            )
            for a in result.acknowledgements()
        ],
        snapshot=SnapshotOut.of(snapshot) if snapshot is not None else None,
    )
