"""Course structure registration and lookup.

Structures are produced by the content system.  PUT exists so that
system (or an admin, or a dev seeding a local instance) can hand one
to the engine; there is no way to edit a structure in place.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Response, status
from pydantic import BaseModel, Field

from progress_engine.api.dependencies import http_error, require_any_role, require_user
from progress_engine.core.errors import ProgressEngineError
from progress_engine.models.principal import Principal
from progress_engine.repos.course_repo import structure_from_dict, structure_to_dict
from progress_engine.services.engine import course_repo, local_courses

router = APIRouter(prefix="/v1/courses", tags=["courses"])


class SectionIn(BaseModel):
    section_id: str = Field(min_length=1)
    weight: float = 1.0
    mastery_threshold: float = 0.0


class LessonIn(BaseModel):
    lesson_id: str = Field(min_length=1)
    weight: float = 1.0
    sections: list[SectionIn]


class CourseStructureIn(BaseModel):
    version: int = 1
    lessons: list[LessonIn]


class CourseStructureOut(BaseModel):
    course_id: str
    version: int
    lessons: list[LessonIn]


@router.put("/{course_id}/structure", response_model=CourseStructureOut)
async def put_course_structure(
    course_id: str,
    body: CourseStructureIn,
    response: Response,
    _principal: Annotated[Principal, Depends(require_any_role({"admin", "content"}))],
) -> CourseStructureOut:
    data = {"course_id": course_id, **body.model_dump()}
    try:
        structure = structure_from_dict(data)
        created = local_courses.put(structure)
    except ProgressEngineError as e:
        raise http_error(e) from None
    response.status_code = status.HTTP_201_CREATED if created else status.HTTP_200_OK
    return CourseStructureOut(**structure_to_dict(structure))


@router.get("/{course_id}/structure", response_model=CourseStructureOut)
async def get_course_structure(
    course_id: str,
    _principal: Annotated[Principal, Depends(require_user)],
) -> CourseStructureOut:
    try:
        structure = await course_repo.get(course_id)
    except ProgressEngineError as e:
        raise http_error(e) from None
    if structure is None:
        raise HTTPException(status_code=404, detail="course not found")
    return CourseStructureOut(**structure_to_dict(structure))
