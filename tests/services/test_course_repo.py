from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from progress_engine.core.errors import InvalidCourseStructureError, StructureUnavailableError
from progress_engine.repos.course_repo import (
    HttpCourseStructureRepo,
    InMemoryCourseStructureRepo,
    structure_from_dict,
    structure_to_dict,
)
from progress_engine.services.cache import InMemoryCacheService
from tests.conftest import make_structure


def test_structure_dict_round_trip() -> None:
    structure = make_structure()
    assert structure_from_dict(structure_to_dict(structure)) == structure


@pytest.mark.parametrize(
    "data",
    [
        {"course_id": "c", "lessons": []},
        {"course_id": "c", "lessons": [{"lesson_id": "L1", "sections": []}]},
        {"course_id": "c", "lessons": [{"lesson_id": "L1", "sections": [{"section_id": "s"}, {"section_id": "s"}]}]},
        {"course_id": "c", "lessons": [{"lesson_id": "L1", "sections": [{"section_id": "s", "weight": 0}]}]},
        {"course_id": "c", "lessons": [{"lesson_id": "L1", "sections": [{"section_id": "s", "mastery_threshold": 150}]}]},
        {"course_id": "c", "version": 0, "lessons": [{"lesson_id": "L1", "sections": [{"section_id": "s"}]}]},
        {"lessons": [{"lesson_id": "L1", "sections": [{"section_id": "s"}]}]},
        {"course_id": "c", "lessons": [{"sections": [{"section_id": "s"}]}]},
    ],
)
def test_malformed_structures_are_rejected(data: dict) -> None:
    with pytest.raises(InvalidCourseStructureError):
        structure_from_dict(data)


def test_put_is_idempotent_and_versions_are_immutable() -> None:
    repo = InMemoryCourseStructureRepo()
    assert repo.put(make_structure()) is True
    assert repo.put(make_structure()) is False

    changed = structure_from_dict(
        {"course_id": "course-1", "lessons": [{"lesson_id": "L9", "sections": [{"section_id": "x"}]}]}
    )
    with pytest.raises(InvalidCourseStructureError):
        repo.put(changed)
    assert repo.put(make_structure(version=2)) is True
    assert asyncio.run(repo.get("course-1")).version == 2


def _http_repo(handler) -> tuple[HttpCourseStructureRepo, list[httpx.Request]]:
    seen: list[httpx.Request] = []

    def record(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return handler(request)

    repo = HttpCourseStructureRepo(
        "http://content.test",
        InMemoryCacheService(),
        transport=httpx.MockTransport(record),
    )
    return repo, seen


def test_http_repo_fetches_then_serves_from_cache() -> None:
    body = structure_to_dict(make_structure())
    repo, seen = _http_repo(lambda request: httpx.Response(200, json=body))

    async def run():
        return await repo.get("course-1"), await repo.get("course-1")

    first, second = asyncio.run(run())
    assert first == second == make_structure()
    assert len(seen) == 1
    assert seen[0].url.path == "/v1/courses/course-1/structure"


def test_http_repo_404_is_unknown_course() -> None:
    repo, _ = _http_repo(lambda request: httpx.Response(404, json={"detail": "nope"}))
    assert asyncio.run(repo.get("course-1")) is None


@pytest.mark.parametrize("status_code", [401, 403, 429, 500, 503])
def test_http_repo_error_status_is_unavailable(status_code: int) -> None:
    repo, _ = _http_repo(lambda request: httpx.Response(status_code, text="no"))
    with pytest.raises(StructureUnavailableError):
        asyncio.run(repo.get("course-1"))


def test_http_repo_connection_error_is_unavailable() -> None:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    repo, _ = _http_repo(refuse)
    with pytest.raises(StructureUnavailableError):
        asyncio.run(repo.get("course-1"))


@pytest.mark.parametrize(
    "content", [json.dumps({"course_id": "course-1"}), "not json", json.dumps([1, 2])]
)
def test_http_repo_malformed_payload_is_unavailable(content: str) -> None:
    repo, seen = _http_repo(lambda request: httpx.Response(200, content=content))

    for _ in range(2):
        with pytest.raises(StructureUnavailableError):
            asyncio.run(repo.get("course-1"))
    assert len(seen) == 2  # never cached
