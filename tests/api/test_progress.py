"""Progress routes: ingest, snapshot, gating, ledger."""

from __future__ import annotations

import asyncio

import pytest
from fastapi.testclient import TestClient

from progress_engine.api.progress import get_snapshot
from progress_engine.models.principal import Principal
from progress_engine.services.cache import cache_service
from progress_engine.services.engine import aggregation, local_courses
from progress_engine.services.progress_service import record_event, snapshot_cache_key
from progress_engine.services.task_queue import SNAPSHOT_REFRESH_QUEUE, task_queue
from tests.conftest import auth, make_event

pytestmark = pytest.mark.usefixtures("structure")


def _event(section_id: str = "s1", event_type: str = "STARTED", seq: int = 1, **extra) -> dict:
    return {
        "course_id": "course-1",
        "section_id": section_id,
        "event_type": event_type,
        "client_timestamp": 1_700_000_000_000 + seq,
        "device_id": "phone",
        "sequence_number": seq,
        **extra,
    }


def _post(client: TestClient, body: dict, user: str = "learner-1"):
    return client.post("/v1/progress/events", json=body, headers=auth(user))


# ---- POST /v1/progress/events ----


def test_ingest_requires_auth(client: TestClient) -> None:
    assert client.post("/v1/progress/events", json=_event()).status_code == 401


def test_ingest_accepts_event(client: TestClient) -> None:
    resp = _post(client, _event())
    assert resp.status_code == 202
    data = resp.json()
    assert data["duplicate"] is False
    assert data["entry"]["ledger_sequence"] >= 1
    assert data["entry"]["section_id"] == "s1"


def test_ingest_resend_is_duplicate_success(client: TestClient) -> None:
    first = _post(client, _event()).json()
    resp = _post(client, _event())
    assert resp.status_code == 200
    assert resp.json()["duplicate"] is True
    assert resp.json()["entry"]["ledger_sequence"] == first["entry"]["ledger_sequence"]


def test_ingest_stale_event(client: TestClient) -> None:
    _post(client, _event(seq=5))
    resp = _post(client, _event("s2", seq=4))
    assert resp.status_code == 422
    assert resp.json()["detail"]["code"] == "STALE"
    assert resp.json()["detail"]["retryable"] is False


@pytest.mark.parametrize(
    "body",
    [
        _event("no-such-section"),
        _event("s2", "SCORE_SUBMITTED"),
        _event("s2", "SCORE_SUBMITTED", score=140),
        _event(course_id="other-course"),
    ],
)
def test_ingest_invalid_transition(client: TestClient, body: dict) -> None:
    resp = _post(client, body)
    assert resp.status_code == 422
    assert resp.json()["detail"]["code"] == "INVALID_TRANSITION"


def test_ingest_unknown_event_type_fails_validation(client: TestClient) -> None:
    assert _post(client, _event(event_type="FINISHED")).status_code == 422


def test_ingest_structure_outage_is_retryable(client: TestClient) -> None:
    local_courses.set_available(False)
    resp = _post(client, _event())
    assert resp.status_code == 503
    assert resp.json()["detail"]["code"] == "STRUCTURE_UNAVAILABLE"
    assert resp.headers["retry-after"] == "1"


# ---- GET /v1/progress/{course_id}/snapshot ----


def test_snapshot_404_before_any_progress(client: TestClient) -> None:
    assert client.get("/v1/progress/course-1/snapshot", headers=auth()).status_code == 404


def test_snapshot_reflects_events(client: TestClient) -> None:
    _post(client, _event("s1", "COMPLETED", seq=1))
    _post(client, _event("s2", "SCORE_SUBMITTED", seq=2, score=91))
    resp = client.get("/v1/progress/course-1/snapshot", headers=auth())
    assert resp.status_code == 200
    data = resp.json()
    assert data["percent_complete"] == 25.0
    assert data["status"] == "in_progress"
    sections = {s["section_id"]: s for s in data["sections"]}
    assert sections["s2"]["best_score"] == 91.0
    assert not sections["s2"]["mastery_achieved"]


def test_snapshot_is_cached_and_invalidated_on_new_event(client: TestClient) -> None:
    _post(client, _event("s1", "STARTED", seq=1))
    client.get("/v1/progress/course-1/snapshot", headers=auth())
    key = snapshot_cache_key("learner-1", "course-1")
    assert asyncio.run(cache_service.get(key)) is not None

    _post(client, _event("s1", "COMPLETED", seq=2))
    assert asyncio.run(cache_service.get(key)) is None
    resp = client.get("/v1/progress/course-1/snapshot", headers=auth())
    assert resp.json()["percent_complete"] == 25.0


def test_read_during_refresh_does_not_pin_old_snapshot(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    me = Principal("learner-1", frozenset({"learner"}))
    original_refresh = aggregation.refresh

    async def run() -> tuple[int, int]:
        await record_event(make_event("s1", "STARTED", seq=1))
        refreshing = asyncio.Event()
        release = asyncio.Event()

        async def slow_refresh(learner_id: str, course_id: str):
            refreshing.set()
            await release.wait()
            return await original_refresh(learner_id, course_id)

        monkeypatch.setattr(aggregation, "refresh", slow_refresh)
        task = asyncio.create_task(
            record_event(make_event("s3", "COMPLETED", seq=2, ts=1_700_000_000_500))
        )
        await refreshing.wait()
        during = await get_snapshot("course-1", me)
        release.set()
        await task
        after = await get_snapshot("course-1", me)
        return during.ledger_watermark, after.ledger_watermark

    during, after = asyncio.run(run())
    assert during == 1
    assert after == 2


def test_snapshot_is_per_learner(client: TestClient) -> None:
    _post(client, _event(), user="learner-1")
    resp = client.get("/v1/progress/course-1/snapshot", headers=auth("learner-2"))
    assert resp.status_code == 404


def test_refresh_deferred_when_structure_disappears(
    client: TestClient, monkeypatch: pytest.MonkeyPatch
) -> None:
    _post(client, _event("s1", "STARTED", seq=1))

    # The ledger validates against the structure, then the provider goes
    # away before the snapshot refresh reads it.
    original_get = local_courses.get
    calls = {"n": 0}

    async def flaky_get(course_id: str):
        calls["n"] += 1
        if calls["n"] > 1:
            local_courses.set_available(False)
        return await original_get(course_id)

    monkeypatch.setattr(local_courses, "get", flaky_get)
    resp = _post(client, _event("s1", "COMPLETED", seq=2))
    monkeypatch.undo()
    local_courses.set_available(True)

    assert resp.status_code == 202
    assert asyncio.run(task_queue.queue_length(SNAPSHOT_REFRESH_QUEUE)) == 1
    snap = client.get("/v1/progress/course-1/snapshot", headers=auth()).json()
    assert snap["percent_complete"] == 0.0  # previous snapshot still served


# ---- GET /v1/progress/{course_id}/gating ----


def test_gating_for_new_learner(client: TestClient) -> None:
    resp = client.get("/v1/progress/course-1/gating", headers=auth())
    assert resp.status_code == 200
    data = resp.json()
    assert data["resume_section_id"] == "s1"
    assert [d["unlocked"] for d in data["decisions"]] == [True, False, False]


def test_gating_after_mastery(client: TestClient) -> None:
    _post(client, _event("s1", "COMPLETED", seq=1))
    _post(client, _event("s2", "SCORE_SUBMITTED", seq=2, score=85))
    _post(client, _event("s2", "COMPLETED", seq=3))
    data = client.get("/v1/progress/course-1/gating", headers=auth()).json()
    assert data["resume_section_id"] == "s3"
    reasons = {d["section_id"]: d["reason"] for d in data["decisions"]}
    assert reasons["s3"] == "previous_lesson_mastered"


def test_gating_unknown_course(client: TestClient) -> None:
    assert client.get("/v1/progress/nope/gating", headers=auth()).status_code == 404


# ---- GET /v1/progress/{course_id}/ledger ----


def test_ledger_lists_entries_after_watermark(client: TestClient) -> None:
    seqs = [
        _post(client, _event("s1", kind, seq=i)).json()["entry"]["ledger_sequence"]
        for i, kind in enumerate(["STARTED", "COMPLETED"], start=1)
    ]
    resp = client.get("/v1/progress/course-1/ledger", headers=auth())
    assert [e["ledger_sequence"] for e in resp.json()] == seqs

    resp = client.get(f"/v1/progress/course-1/ledger?after={seqs[0]}", headers=auth())
    assert [e["event_type"] for e in resp.json()] == ["COMPLETED"]
