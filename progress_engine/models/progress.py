from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

EventType = Literal["STARTED", "COMPLETED", "SCORE_SUBMITTED"]
EVENT_TYPES: frozenset[str] = frozenset({"STARTED", "COMPLETED", "SCORE_SUBMITTED"})

SnapshotStatus = Literal["not_started", "in_progress", "completed"]


@dataclass(frozen=True, slots=True)
class ProgressEvent:
    """One thing a learner did on one device.  Immutable once created.

    ``sequence_number`` is monotonic per device; together with
    ``device_id`` it is the idempotency key a retrying client reuses.
    """

    learner_id: str
    course_id: str
    section_id: str
    event_type: str  # STARTED|COMPLETED|SCORE_SUBMITTED
    client_timestamp: int  # epoch ms, device clock
    device_id: str
    sequence_number: int
    score: float | None = None

    @property
    def idempotency_key(self) -> tuple[str, str, str, int]:
        return (self.learner_id, self.course_id, self.device_id, self.sequence_number)


@dataclass(frozen=True, slots=True)
class LedgerEntry:
    """An accepted event plus its server-assigned position in the ledger."""

    ledger_sequence: int
    accepted_at: int  # epoch ms, server clock
    event: ProgressEvent


@dataclass(frozen=True, slots=True)
class SectionState:
    section_id: str
    started: bool = False
    completed: bool = False
    best_score: float | None = None
    mastery_achieved: bool = False

    @property
    def touched(self) -> bool:
        return self.started or self.completed or self.best_score is not None


@dataclass(frozen=True, slots=True)
class LessonProgress:
    lesson_id: str
    percent_complete: float = 0.0
    mastery_achieved: bool = False


@dataclass(frozen=True, slots=True)
class ProgressSnapshot:
    """Read model derived from the ledger for one learner+course.

    Never edited by hand: every field is a deterministic function of
    the course structure and the ledger prefix up to
    ``ledger_watermark``.
    """

    learner_id: str
    course_id: str
    structure_version: int
    sections: tuple[SectionState, ...]
    lessons: tuple[LessonProgress, ...]
    percent_complete: float = 0.0
    certificate_eligible: bool = False
    status: str = "not_started"  # not_started|in_progress|completed
    ledger_watermark: int = 0
    last_activity_at: int | None = None

    def section_state(self, section_id: str) -> SectionState:
        for state in self.sections:
            if state.section_id == section_id:
                return state
        raise KeyError(section_id)

    def lesson_progress(self, lesson_id: str) -> LessonProgress:
        for lesson in self.lessons:
            if lesson.lesson_id == lesson_id:
                return lesson
        raise KeyError(lesson_id)


@dataclass(frozen=True, slots=True)
class VersionedSnapshot:
    """A stored snapshot and its optimistic-concurrency version."""

    snapshot: ProgressSnapshot
    version: int


@dataclass(frozen=True, slots=True)
class GatingDecision:
    section_id: str
    lesson_id: str
    unlocked: bool
    reason: str
