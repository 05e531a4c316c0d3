"""Learner-facing progress endpoints.

  POST /v1/progress/events                → append one event, refresh snapshot
  GET  /v1/progress/{course_id}/snapshot  → read-through cached snapshot
  GET  /v1/progress/{course_id}/gating    → unlock decisions + resume point
  GET  /v1/progress/{course_id}/ledger    → raw entries after a watermark

The learner is always the token subject; a learner can only read and
write their own progress.  Batches from several devices go through
/v1/sync instead.
"""

from __future__ import annotations

import json
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from pydantic import BaseModel, Field

from progress_engine.api.dependencies import http_error, require_user
from progress_engine.core.errors import ProgressEngineError
from progress_engine.core.metrics import CACHE_OPERATIONS
from progress_engine.models.principal import Principal
from progress_engine.models.progress import (
    EventType,
    LedgerEntry,
    ProgressEvent,
    ProgressSnapshot,
)
from progress_engine.services import mastery_gate
from progress_engine.services.aggregation import empty_snapshot
from progress_engine.services.cache import cache_service
from progress_engine.services.engine import aggregation, course_repo, ledger
from progress_engine.services.ledger import now_ms
from progress_engine.services.progress_service import record_event, snapshot_cache_key

router = APIRouter(prefix="/v1/progress", tags=["progress"])

_SNAPSHOT_CACHE_TTL = 300


class ProgressEventIn(BaseModel):
    course_id: str = Field(min_length=1)
    section_id: str = Field(min_length=1)
    event_type: EventType
    score: float | None = None
    client_timestamp: int | None = None  # epoch ms; defaults to server time
    device_id: str = Field(min_length=1)
    sequence_number: int

    def to_event(self, learner_id: str) -> ProgressEvent:
        return ProgressEvent(
            learner_id=learner_id,
            course_id=self.course_id,
            section_id=self.section_id,
            event_type=self.event_type,
            client_timestamp=(
                self.client_timestamp if self.client_timestamp is not None else now_ms()
            ),
            device_id=self.device_id,
            sequence_number=self.sequence_number,
            score=self.score,
        )


class LedgerEntryOut(BaseModel):
    ledger_sequence: int
    accepted_at: int
    section_id: str
    event_type: str
    score: float | None
    client_timestamp: int
    device_id: str
    sequence_number: int

    @staticmethod
    def of(entry: LedgerEntry) -> LedgerEntryOut:
        e = entry.event
        return LedgerEntryOut(
            ledger_sequence=entry.ledger_sequence,
            accepted_at=entry.accepted_at,
            section_id=e.section_id,
            event_type=e.event_type,
            score=e.score,
            client_timestamp=e.client_timestamp,
            device_id=e.device_id,
            sequence_number=e.sequence_number,
        )


class AppendOut(BaseModel):
    duplicate: bool
    entry: LedgerEntryOut | None


class SectionStateOut(BaseModel):
    section_id: str
    started: bool
    completed: bool
    best_score: float | None
    mastery_achieved: bool


class LessonProgressOut(BaseModel):
    lesson_id: str
    percent_complete: float
    mastery_achieved: bool


class SnapshotOut(BaseModel):
    course_id: str
    structure_version: int
    percent_complete: float
    certificate_eligible: bool
    status: str
    ledger_watermark: int
    last_activity_at: int | None
    lessons: list[LessonProgressOut]
    sections: list[SectionStateOut]

    @staticmethod
    def of(snapshot: ProgressSnapshot) -> SnapshotOut:
        return SnapshotOut(
            course_id=snapshot.course_id,
            structure_version=snapshot.structure_version,
            percent_complete=snapshot.percent_complete,
            certificate_eligible=snapshot.certificate_eligible,
            status=snapshot.status,
            ledger_watermark=snapshot.ledger_watermark,
            last_activity_at=snapshot.last_activity_at,
            lessons=[
                LessonProgressOut(
                    lesson_id=lp.lesson_id,
                    percent_complete=lp.percent_complete,
                    mastery_achieved=lp.mastery_achieved,
                )
                for lp in snapshot.lessons
            ],
            sections=[
                SectionStateOut(
                    section_id=s.section_id,
                    started=s.started,
                    completed=s.completed,
                    best_score=s.best_score,
                    mastery_achieved=s.mastery_achieved,
                )
                for s in snapshot.sections
            ],
        )


class GatingDecisionOut(BaseModel):
    section_id: str
    lesson_id: str
    unlocked: bool
    reason: str


class GatingOut(BaseModel):
    course_id: str
    resume_section_id: str | None
    decisions: list[GatingDecisionOut]


# ---------------------------------------------------------------------------
# POST /v1/progress/events
# ---------------------------------------------------------------------------


@router.post(
    "/events",
    response_model=AppendOut,
    status_code=status.HTTP_202_ACCEPTED,
)
async def ingest_progress_event(
    body: ProgressEventIn,
    response: Response,
    principal: Annotated[Principal, Depends(require_user)],
) -> AppendOut:
    try:
        entry, duplicate = await record_event(body.to_event(principal.user_id))
    except ProgressEngineError as e:
        raise http_error(e) from None

    if duplicate:
        # A resend of an event we already hold: success, nothing new.
        response.status_code = status.HTTP_200_OK
    return AppendOut(
        duplicate=duplicate,
        entry=LedgerEntryOut.of(entry) if entry is not None else None,
    )


# ---------------------------------------------------------------------------
# GET /v1/progress/{course_id}/snapshot (read-through cached)
# ---------------------------------------------------------------------------


@router.get("/{course_id}/snapshot", response_model=SnapshotOut)
async def get_snapshot(
    course_id: str,
    principal: Annotated[Principal, Depends(require_user)],
) -> SnapshotOut:
    cache_key = snapshot_cache_key(principal.user_id, course_id)
    cached = await cache_service.get(cache_key)
    if cached is not None:
        CACHE_OPERATIONS.labels(operation="hit").inc()
        return SnapshotOut(**json.loads(cached))
    CACHE_OPERATIONS.labels(operation="miss").inc()

    snapshot = await aggregation.get_snapshot(principal.user_id, course_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail="no progress recorded for this course")

    out = SnapshotOut.of(snapshot)
    await cache_service.set(cache_key, out.model_dump_json(), _SNAPSHOT_CACHE_TTL)
    return out


# ---------------------------------------------------------------------------
# GET /v1/progress/{course_id}/gating
# ---------------------------------------------------------------------------


@router.get("/{course_id}/gating", response_model=GatingOut)
async def get_gating(
    course_id: str,
    principal: Annotated[Principal, Depends(require_user)],
) -> GatingOut:
    try:
        structure = await course_repo.get(course_id)
    except ProgressEngineError as e:
        raise http_error(e) from None
    if structure is None:
        raise HTTPException(status_code=404, detail="course not found")

    snapshot = await aggregation.get_snapshot(principal.user_id, course_id)
    if snapshot is None or snapshot.structure_version != structure.version:
        # No progress yet (or a new structure version): gate from a blank slate.
        snapshot = empty_snapshot(structure, principal.user_id, course_id)

    decisions = mastery_gate.evaluate_gating(snapshot, structure)
    return GatingOut(
        course_id=course_id,
        resume_section_id=mastery_gate.resume_point(snapshot, structure),
        decisions=[
            GatingDecisionOut(
                section_id=d.section_id,
                lesson_id=d.lesson_id,
                unlocked=d.unlocked,
                reason=d.reason,
            )
            for d in decisions
        ],
    )


# ---------------------------------------------------------------------------
# GET /v1/progress/{course_id}/ledger
# ---------------------------------------------------------------------------


@router.get("/{course_id}/ledger", response_model=list[LedgerEntryOut])
async def get_ledger(
    course_id: str,
    principal: Annotated[Principal, Depends(require_user)],
    after: Annotated[int, Query(ge=0)] = 0,
    limit: Annotated[int, Query(ge=1, le=1000)] = 500,
) -> list[LedgerEntryOut]:
    entries: list[LedgerEntryOut] = []
    async for entry in ledger.read_all(principal.user_id, course_id, after_sequence=after):
        entries.append(LedgerEntryOut.of(entry))
        if len(entries) >= limit:
            break
    return entries
