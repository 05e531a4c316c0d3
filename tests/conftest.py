from __future__ import annotations

import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from progress_engine.main import app
from progress_engine.models.course import CourseStructure, Lesson, Section
from progress_engine.models.progress import ProgressEvent
from progress_engine.services import token_service
from progress_engine.services.cache import cache_service
from progress_engine.services.engine import ledger_store, local_courses, snapshot_store
from progress_engine.services.task_queue import task_queue

# Ensure repo root is on sys.path so `import progress_engine` works under pytest.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture(autouse=True)
def reset_engine_state() -> None:
    """Clear the in-memory ledger, snapshots and course structures."""
    ledger_store.clear()  # type: ignore[union-attr]
    snapshot_store.clear()  # type: ignore[union-attr]
    local_courses.clear()


@pytest.fixture(autouse=True)
def reset_cache() -> None:
    if hasattr(cache_service, "clear"):
        cache_service.clear()  # type: ignore[union-attr]


@pytest.fixture(autouse=True)
def reset_task_queue() -> None:
    if hasattr(task_queue, "clear"):
        task_queue.clear()  # type: ignore[union-attr]


@pytest.fixture
def client() -> TestClient:
    return TestClient(app)


def mint_token(
    username: str = "learner-1",
    roles: list[str] | None = None,
) -> str:
    """Create a valid ES256 JWT for testing."""
    return token_service.create_access_token(sub=username, roles=roles)


def auth(username: str = "learner-1", roles: list[str] | None = None) -> dict[str, str]:
    return {"Authorization": f"Bearer {mint_token(username, roles)}"}


# ---------------------------------------------------------------------------
# Course fixtures
# ---------------------------------------------------------------------------
#
#   course-1
#     L1: s1 (completion only), s2 (mastery 80)
#     L2: s3 (completion only)


def make_structure(course_id: str = "course-1", version: int = 1) -> CourseStructure:
    return CourseStructure.new(
        course_id=course_id,
        version=version,
        lessons=[
            Lesson(
                lesson_id="L1",
                sections=(Section("s1"), Section("s2", mastery_threshold=80.0)),
            ),
            Lesson(lesson_id="L2", sections=(Section("s3"),)),
        ],
    )


@pytest.fixture
def structure() -> CourseStructure:
    s = make_structure()
    local_courses.put(s)
    return s


def make_event(
    section_id: str = "s1",
    event_type: str = "STARTED",
    *,
    learner_id: str = "learner-1",
    course_id: str = "course-1",
    device_id: str = "phone",
    seq: int = 1,
    ts: int = 1_700_000_000_000,
    score: float | None = None,
) -> ProgressEvent:
    return ProgressEvent(
        learner_id=learner_id,
        course_id=course_id,
        section_id=section_id,
        event_type=event_type,
        client_timestamp=ts,
        device_id=device_id,
        sequence_number=seq,
        score=score,
    )
