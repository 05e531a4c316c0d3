"""Course structure: Course → Lesson → Section.

Produced by the content system and consumed here read-only.  A
structure is keyed by ``course_id`` plus an immutable ``version``;
once a learner has begun a course its structure does not change.
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field

from progress_engine.core.errors import InvalidCourseStructureError


@dataclass(frozen=True, slots=True)
class Section:
    section_id: str
    weight: float = 1.0
    mastery_threshold: float = 0.0  # 0 = completion only

    @property
    def requires_mastery(self) -> bool:
        return self.mastery_threshold > 0


@dataclass(frozen=True, slots=True)
class Lesson:
    lesson_id: str
    sections: tuple[Section, ...]
    weight: float = 1.0

    @property
    def has_mastery_sections(self) -> bool:
        return any(s.requires_mastery for s in self.sections)


@dataclass(frozen=True, slots=True)
class CourseStructure:
    course_id: str
    lessons: tuple[Lesson, ...]
    version: int = 1
    _lesson_by_section: dict[str, Lesson] = field(
        default_factory=dict, init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        index = {s.section_id: lesson for lesson in self.lessons for s in lesson.sections}
        # frozen dataclass: populate the lookup table in place
        self._lesson_by_section.update(index)

    @staticmethod
    def new(course_id: str, lessons: list[Lesson], version: int = 1) -> CourseStructure:
        structure = CourseStructure(
            course_id=course_id, lessons=tuple(lessons), version=version
        )
        structure.validate()
        return structure

    def validate(self) -> None:
        """Raise InvalidCourseStructureError unless the structure is usable."""
        if not self.course_id:
            raise InvalidCourseStructureError("course_id must be non-empty")
        if self.version < 1:
            raise InvalidCourseStructureError("version must be >= 1")
        if not self.lessons:
            raise InvalidCourseStructureError(
                f"course {self.course_id!r} has no lessons"
            )

        lesson_ids: set[str] = set()
        section_ids: set[str] = set()
        for lesson in self.lessons:
            if lesson.lesson_id in lesson_ids:
                raise InvalidCourseStructureError(
                    f"duplicate lesson id {lesson.lesson_id!r}"
                )
            lesson_ids.add(lesson.lesson_id)
            if lesson.weight <= 0:
                raise InvalidCourseStructureError(
                    f"lesson {lesson.lesson_id!r} weight must be positive"
                )
            if not lesson.sections:
                raise InvalidCourseStructureError(
                    f"lesson {lesson.lesson_id!r} has no sections"
                )
            for section in lesson.sections:
                if section.section_id in section_ids:
                    raise InvalidCourseStructureError(
                        f"duplicate section id {section.section_id!r}"
                    )
                section_ids.add(section.section_id)
                if section.weight <= 0:
                    raise InvalidCourseStructureError(
                        f"section {section.section_id!r} weight must be positive"
                    )
                if not 0 <= section.mastery_threshold <= 100:
                    raise InvalidCourseStructureError(
                        f"section {section.section_id!r} mastery_threshold "
                        "must be between 0 and 100"
                    )

    def has_section(self, section_id: str) -> bool:
        return section_id in self._lesson_by_section

    def iter_sections(self) -> Iterator[tuple[Lesson, Section]]:
        for lesson in self.lessons:
            for section in lesson.sections:
                yield lesson, section
