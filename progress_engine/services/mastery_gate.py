"""Mastery Gate: turn a snapshot into per-section unlock decisions.

Rules, in course order:

  - The first section of the first lesson is always unlocked.
  - The first section of lesson N+1 is unlocked iff lesson N is
    mastered: every section in it with a non-zero mastery threshold is
    mastered, or, for a lesson with no thresholded sections, it is
    100% complete.
  - Any later section is unlocked iff its lesson is unlocked and the
    section before it is completed.

Everything here is a pure function of (snapshot, structure) with no
I/O.  Completion and best score only ever grow, so a section that is
unlocked for one snapshot stays unlocked for every later one.
"""

from __future__ import annotations

from progress_engine.models.course import CourseStructure
from progress_engine.models.progress import GatingDecision, ProgressSnapshot


def evaluate_gating(
    snapshot: ProgressSnapshot, structure: CourseStructure
) -> list[GatingDecision]:
    if snapshot.course_id != structure.course_id:
        raise ValueError(
            f"snapshot is for course {snapshot.course_id!r}, "
            f"structure is {structure.course_id!r}"
        )

    decisions: list[GatingDecision] = []
    previous_lesson_mastered: bool | None = None

    for lesson in structure.lessons:
        if previous_lesson_mastered is None:
            lesson_unlocked = True
            first_reason = "first_section"
        elif previous_lesson_mastered:
            lesson_unlocked = True
            first_reason = "previous_lesson_mastered"
        else:
            lesson_unlocked = False
            first_reason = "previous_lesson_not_mastered"

        previous_completed: bool | None = None
        for section in lesson.sections:
            if previous_completed is None:
                unlocked, reason = lesson_unlocked, first_reason
            elif not lesson_unlocked:
                unlocked, reason = False, "lesson_locked"
            elif previous_completed:
                unlocked, reason = True, "previous_section_completed"
            else:
                unlocked, reason = False, "previous_section_incomplete"

            decisions.append(
                GatingDecision(
                    section_id=section.section_id,
                    lesson_id=lesson.lesson_id,
                    unlocked=unlocked,
                    reason=reason,
                )
            )
            previous_completed = snapshot.section_state(section.section_id).completed

        previous_lesson_mastered = snapshot.lesson_progress(lesson.lesson_id).mastery_achieved

    return decisions


def resume_point(snapshot: ProgressSnapshot, structure: CourseStructure) -> str | None:
    """First unlocked section the learner has not completed yet, if any."""
    for decision in evaluate_gating(snapshot, structure):
        if decision.unlocked and not snapshot.section_state(decision.section_id).completed:
            return decision.section_id
    return None
