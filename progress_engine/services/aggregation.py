"""Aggregation Engine: fold ledger entries into a ProgressSnapshot.

The fold is a pure function of (structure, ordered entries).  Full
replay and incremental application share the same per-entry step and
the same derivation of aggregates from section state, which is what
makes ``apply_incremental(S, e) == fold(entries + [e])`` hold.

Per-entry step:
  STARTED          → started = True (completed stays as it is)
  COMPLETED        → completed = True
  SCORE_SUBMITTED  → best_score = max(best_score ?? -1, score)

Nothing ever sets completed back to False or lowers best_score, so
every derived flag (mastery, lesson mastery, gating) is monotonic in
the ledger.

Percentages are rounded to 4 decimal places.  Float sums of weights
like 0.1 + 0.2 would otherwise land a hair under 100 and fail a
completion threshold they actually meet.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import replace

from progress_engine.core.errors import StructureUnavailableError
from progress_engine.core.metrics import SNAPSHOT_RECOMPUTES
from progress_engine.models.course import CourseStructure, Lesson
from progress_engine.models.progress import (
    LedgerEntry,
    LessonProgress,
    ProgressSnapshot,
    SectionState,
)
from progress_engine.repos.course_repo import CourseStructureRepo
from progress_engine.repos.snapshot_repo import SnapshotRepo
from progress_engine.services.ledger import ProgressLedger

logger = logging.getLogger(__name__)

_PERCENT_DIGITS = 4


# ---------------------------------------------------------------------------
# Pure functions
# ---------------------------------------------------------------------------


def empty_snapshot(
    structure: CourseStructure, learner_id: str, course_id: str
) -> ProgressSnapshot:
    return fold(structure, learner_id, course_id, ())


def fold(
    structure: CourseStructure,
    learner_id: str,
    course_id: str,
    entries: Iterable[LedgerEntry],
    *,
    completion_threshold: float = 100.0,
) -> ProgressSnapshot:
    """Replay ``entries`` (in ledger_sequence order) from an empty state."""
    states = {
        s.section_id: SectionState(section_id=s.section_id)
        for _, s in structure.iter_sections()
    }
    watermark = 0
    last_activity_at: int | None = None
    for entry in entries:
        _check_owner(entry, learner_id, course_id)
        _apply_entry(states, entry)
        watermark = entry.ledger_sequence
        last_activity_at = entry.accepted_at

    return _derive(
        structure,
        learner_id,
        course_id,
        states,
        ledger_watermark=watermark,
        last_activity_at=last_activity_at,
        completion_threshold=completion_threshold,
    )


def apply_incremental(
    snapshot: ProgressSnapshot,
    entry: LedgerEntry,
    structure: CourseStructure,
    *,
    completion_threshold: float = 100.0,
) -> ProgressSnapshot:
    """Fold one more entry into an existing snapshot.

    An entry at or below the snapshot's watermark is already part of it,
    so the snapshot comes back unchanged.
    """
    _check_owner(entry, snapshot.learner_id, snapshot.course_id)
    if snapshot.structure_version != structure.version:
        raise ValueError(
            f"snapshot was built from structure v{snapshot.structure_version}, "
            f"got v{structure.version}"
        )
    if entry.ledger_sequence <= snapshot.ledger_watermark:
        return snapshot

    states = {s.section_id: s for s in snapshot.sections}
    _apply_entry(states, entry)
    return _derive(
        structure,
        snapshot.learner_id,
        snapshot.course_id,
        states,
        ledger_watermark=entry.ledger_sequence,
        last_activity_at=entry.accepted_at,
        completion_threshold=completion_threshold,
    )


def _check_owner(entry: LedgerEntry, learner_id: str, course_id: str) -> None:
    if entry.event.learner_id != learner_id or entry.event.course_id != course_id:
        raise ValueError(
            f"ledger entry {entry.ledger_sequence} belongs to "
            f"({entry.event.learner_id}, {entry.event.course_id}), "
            f"not ({learner_id}, {course_id})"
        )


def _apply_entry(states: dict[str, SectionState], entry: LedgerEntry) -> None:
    event = entry.event
    state = states.get(event.section_id)
    if state is None:
        # The ledger validates sections on append; this only happens if the
        # structure was swapped underneath an enrollment.
        logger.warning(
            "Skipping entry for unknown section=%s",
            event.section_id,
            extra={"course_id": event.course_id, "ledger_sequence": entry.ledger_sequence},
        )
        return

    if event.event_type == "STARTED":
        state = replace(state, started=True)
    elif event.event_type == "COMPLETED":
        state = replace(state, started=True, completed=True)
    elif event.event_type == "SCORE_SUBMITTED" and event.score is not None:
        best = max(state.best_score if state.best_score is not None else -1.0, event.score)
        state = replace(state, started=True, best_score=best)
    states[event.section_id] = state


def _weighted_percent(pairs: Iterable[tuple[float, float]]) -> float:
    """sum(weight * fraction) / sum(weight), as a percentage."""
    total_weight = 0.0
    weighted = 0.0
    for weight, fraction in pairs:
        total_weight += weight
        weighted += weight * fraction
    if total_weight == 0:
        return 0.0
    return round(100.0 * weighted / total_weight, _PERCENT_DIGITS)


def _lesson_mastered(lesson: Lesson, states: dict[str, SectionState], percent: float) -> bool:
    if lesson.has_mastery_sections:
        return all(
            states[s.section_id].mastery_achieved
            for s in lesson.sections
            if s.requires_mastery
        )
    return percent >= 100.0


def _derive(
    structure: CourseStructure,
    learner_id: str,
    course_id: str,
    states: dict[str, SectionState],
    *,
    ledger_watermark: int,
    last_activity_at: int | None,
    completion_threshold: float,
) -> ProgressSnapshot:
    sections: list[SectionState] = []
    lessons: list[LessonProgress] = []
    lesson_pairs: list[tuple[float, float]] = []
    all_thresholds_met = True

    for lesson in structure.lessons:
        for section in lesson.sections:
            state = states[section.section_id]
            if section.requires_mastery:
                mastered = (
                    state.completed
                    and state.best_score is not None
                    and state.best_score >= section.mastery_threshold
                )
                all_thresholds_met = all_thresholds_met and mastered
            else:
                mastered = state.completed
            state = replace(state, mastery_achieved=mastered)
            states[section.section_id] = state
            sections.append(state)

        percent = _weighted_percent(
            (s.weight, 1.0 if states[s.section_id].completed else 0.0)
            for s in lesson.sections
        )
        lessons.append(
            LessonProgress(
                lesson_id=lesson.lesson_id,
                percent_complete=percent,
                mastery_achieved=_lesson_mastered(lesson, states, percent),
            )
        )
        lesson_pairs.append((lesson.weight, percent / 100.0))

    course_percent = _weighted_percent(lesson_pairs)
    if course_percent >= 100.0:
        status = "completed"
    elif any(s.touched for s in sections):
        status = "in_progress"
    else:
        status = "not_started"

    return ProgressSnapshot(
        learner_id=learner_id,
        course_id=course_id,
        structure_version=structure.version,
        sections=tuple(sections),
        lessons=tuple(lessons),
        percent_complete=course_percent,
        certificate_eligible=course_percent >= completion_threshold and all_thresholds_met,
        status=status,
        ledger_watermark=ledger_watermark,
        last_activity_at=last_activity_at,
    )


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class AggregationEngine:
    """Keeps stored snapshots in step with the ledger.

    If the course structure is unavailable, recompute/refresh raise
    StructureUnavailableError before touching storage, so the previous
    snapshot stays readable (stale but available).
    """

    def __init__(
        self,
        ledger: ProgressLedger,
        courses: CourseStructureRepo,
        snapshots: SnapshotRepo,
        *,
        completion_threshold: float = 100.0,
    ) -> None:
        self._ledger = ledger
        self._courses = courses
        self._snapshots = snapshots
        self._completion_threshold = completion_threshold

    async def get_snapshot(self, learner_id: str, course_id: str) -> ProgressSnapshot | None:
        stored = await self._snapshots.get(learner_id, course_id)
        return stored.snapshot if stored is not None else None

    async def recompute(self, learner_id: str, course_id: str) -> ProgressSnapshot:
        """Full replay of the learner's ledger for this course."""
        structure = await self._structure(course_id)
        stored = await self._snapshots.get(learner_id, course_id)
        entries = [e async for e in self._ledger.read_all(learner_id, course_id)]
        snapshot = fold(
            structure,
            learner_id,
            course_id,
            entries,
            completion_threshold=self._completion_threshold,
        )
        SNAPSHOT_RECOMPUTES.labels(mode="full").inc()
        await self._snapshots.save(snapshot, stored.version if stored is not None else 0)
        logger.info(
            "Snapshot recomputed learner=%s percent=%.1f entries=%d",
            learner_id,
            snapshot.percent_complete,
            len(entries),
            extra={"course_id": course_id, "ledger_sequence": snapshot.ledger_watermark},
        )
        return snapshot

    async def refresh(self, learner_id: str, course_id: str) -> ProgressSnapshot:
        """Fold only the entries newer than the stored snapshot's watermark."""
        structure = await self._structure(course_id)
        stored = await self._snapshots.get(learner_id, course_id)
        if stored is None or stored.snapshot.structure_version != structure.version:
            return await self.recompute(learner_id, course_id)

        snapshot = stored.snapshot
        folded = 0
        async for entry in self._ledger.read_all(
            learner_id, course_id, after_sequence=snapshot.ledger_watermark
        ):
            snapshot = apply_incremental(
                snapshot,
                entry,
                structure,
                completion_threshold=self._completion_threshold,
            )
            folded += 1

        if folded == 0:
            return snapshot

        SNAPSHOT_RECOMPUTES.labels(mode="incremental").inc()
        await self._snapshots.save(snapshot, stored.version)
        return snapshot

    async def _structure(self, course_id: str) -> CourseStructure:
        structure = await self._courses.get(course_id)
        if structure is None:
            # No structure for a course that has ledger entries means the
            # provider lost it; treat like an outage and keep the old snapshot.
            raise StructureUnavailableError(f"no course structure for {course_id!r}")
        return structure
