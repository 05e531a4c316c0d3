"""Course structure providers.

The content system owns course structures; the engine only reads them.
Two implementations sit behind the same Protocol:

  InMemoryCourseStructureRepo: dev/test, and the target of the
    PUT /v1/courses/{id}/structure registration route.

  HttpCourseStructureRepo: fetches from the content service over
    HTTP.  Structures are immutable per version, so responses go
    through the shared read-through cache.

Either one raises StructureUnavailableError when the provider cannot
answer.  That is a transient, retryable condition and distinct from
"no such course" (None).
"""

from __future__ import annotations

import json
import logging
from typing import Any, Protocol

import httpx

from progress_engine.core.errors import (
    InvalidCourseStructureError,
    StructureUnavailableError,
)
from progress_engine.core.metrics import CACHE_OPERATIONS
from progress_engine.models.course import CourseStructure, Lesson, Section
from progress_engine.services.cache import CacheService

logger = logging.getLogger(__name__)

_STRUCTURE_CACHE_TTL = 3600


class CourseStructureRepo(Protocol):
    async def get(self, course_id: str) -> CourseStructure | None: ...


def structure_from_dict(data: dict[str, Any]) -> CourseStructure:
    """Build and validate a CourseStructure from its JSON representation."""
    try:
        lessons = [
            Lesson(
                lesson_id=str(lesson["lesson_id"]),
                weight=float(lesson.get("weight", 1.0)),
                sections=tuple(
                    Section(
                        section_id=str(section["section_id"]),
                        weight=float(section.get("weight", 1.0)),
                        mastery_threshold=float(section.get("mastery_threshold", 0.0)),
                    )
                    for section in lesson["sections"]
                ),
            )
            for lesson in data["lessons"]
        ]
        return CourseStructure.new(
            course_id=str(data["course_id"]),
            lessons=lessons,
            version=int(data.get("version", 1)),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise InvalidCourseStructureError(f"malformed course structure: {e}") from None


def structure_to_dict(structure: CourseStructure) -> dict[str, Any]:
    return {
        "course_id": structure.course_id,
        "version": structure.version,
        "lessons": [
            {
                "lesson_id": lesson.lesson_id,
                "weight": lesson.weight,
                "sections": [
                    {
                        "section_id": s.section_id,
                        "weight": s.weight,
                        "mastery_threshold": s.mastery_threshold,
                    }
                    for s in lesson.sections
                ],
            }
            for lesson in structure.lessons
        ],
    }


class InMemoryCourseStructureRepo:
    def __init__(self) -> None:
        self._by_id: dict[str, CourseStructure] = {}
        self._available = True

    async def get(self, course_id: str) -> CourseStructure | None:
        if not self._available:
            raise StructureUnavailableError(
                f"course structure provider unavailable (course={course_id})"
            )
        return self._by_id.get(course_id)

    def put(self, structure: CourseStructure) -> bool:
        """Register a structure.  Returns False if it was already registered.

        Re-registering the identical structure is a no-op; a different
        structure under an existing (course_id, version) is refused.
        """
        structure.validate()
        existing = self._by_id.get(structure.course_id)
        if existing is not None:
            if existing == structure:
                return False
            if existing.version >= structure.version:
                raise InvalidCourseStructureError(
                    f"course {structure.course_id!r} version {existing.version} "
                    "is already registered with different content"
                )
        self._by_id[structure.course_id] = structure
        return True

    def set_available(self, available: bool) -> None:
        self._available = available

    def clear(self) -> None:
        self._by_id.clear()
        self._available = True


class HttpCourseStructureRepo:
    """Reads structures from the content service: GET /v1/courses/{id}/structure."""

    def __init__(
        self,
        base_url: str,
        cache: CacheService,
        *,
        timeout: float = 2.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._cache = cache
        self._timeout = timeout
        self._transport = transport

    async def get(self, course_id: str) -> CourseStructure | None:
        cache_key = f"structure:{course_id}"
        cached = await self._cache.get(cache_key)
        if cached is not None:
            CACHE_OPERATIONS.labels(operation="hit").inc()
            return structure_from_dict(json.loads(cached))
        CACHE_OPERATIONS.labels(operation="miss").inc()

        try:
            async with httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                transport=self._transport,
            ) as client:
                resp = await client.get(f"/v1/courses/{course_id}/structure")
        except httpx.HTTPError as e:
            logger.warning("Content service unreachable course_id=%s: %s", course_id, e)
            raise StructureUnavailableError(
                f"content service unreachable (course={course_id})"
            ) from e

        if resp.status_code == 404:
            return None
        if not resp.is_success:
            # 5xx, auth failures and throttling are all the provider not
            # answering; the event is retried later.
            logger.warning(
                "Content service error course_id=%s status=%d",
                course_id,
                resp.status_code,
            )
            raise StructureUnavailableError(
                f"content service returned {resp.status_code} (course={course_id})"
            )

        try:
            structure = structure_from_dict(resp.json())
        except (InvalidCourseStructureError, ValueError) as e:
            logger.warning(
                "Content service sent an unusable structure course_id=%s: %s", course_id, e
            )
            raise StructureUnavailableError(
                f"content service sent a malformed structure (course={course_id})"
            ) from e

        await self._cache.set(
            cache_key, json.dumps(structure_to_dict(structure)), _STRUCTURE_CACHE_TTL
        )
        return structure
