from __future__ import annotations

import asyncio

import pytest
from fastapi.testclient import TestClient

from progress_engine.services.task_queue import PROGRESS_SYNC_QUEUE, task_queue
from progress_engine.worker import process_task
from tests.conftest import auth

pytestmark = pytest.mark.usefixtures("structure")


def _ev(section_id: str, event_type: str, seq: int, ts: int, **extra) -> dict:
    return {
        "section_id": section_id,
        "event_type": event_type,
        "client_timestamp": ts,
        "sequence_number": seq,
        **extra,
    }


BATCH = {
    "devices": {
        "phone": [_ev("s1", "STARTED", 1, 100), _ev("s1", "COMPLETED", 2, 300)],
        "tablet": [
            _ev("s2", "SCORE_SUBMITTED", 1, 200, score=88),
            _ev("s2", "COMPLETED", 2, 400),
        ],
    }
}


def test_sync_requires_auth(client: TestClient) -> None:
    assert client.post("/v1/sync/course-1", json=BATCH).status_code == 401


def test_sync_accepts_batch_in_merge_order(client: TestClient) -> None:
    resp = client.post("/v1/sync/course-1", json=BATCH, headers=auth())
    assert resp.status_code == 200
    data = resp.json()
    assert data["accepted"] == 4
    assert [(a["device_id"], a["sequence_number"]) for a in data["acks"]] == [
        ("phone", 1),
        ("tablet", 1),
        ("phone", 2),
        ("tablet", 2),
    ]
    seqs = [a["ledger_sequence"] for a in data["acks"]]
    assert seqs == sorted(seqs)
    assert data["snapshot"]["percent_complete"] == 50.0
    assert data["snapshot"]["lessons"][0]["mastery_achieved"] is True


def test_sync_resend_is_all_duplicates(client: TestClient) -> None:
    client.post("/v1/sync/course-1", json=BATCH, headers=auth())
    resp = client.post("/v1/sync/course-1", json=BATCH, headers=auth())
    data = resp.json()
    assert data["accepted"] == 0
    assert data["duplicates"] == 4
    assert data["snapshot"] is None
    assert {a["status"] for a in data["acks"]} == {"duplicate"}


def test_sync_bad_record_does_not_block_batch(client: TestClient) -> None:
    body = {
        "devices": {
            "phone": [
                _ev("s1", "STARTED", 1, 100),
                _ev("ghost", "STARTED", 2, 200),
                _ev("s1", "COMPLETED", 3, 300),
            ]
        }
    }
    data = client.post("/v1/sync/course-1", json=body, headers=auth()).json()
    assert data["accepted"] == 2
    assert data["conflicts"] == 1
    (conflict,) = [a for a in data["acks"] if a["status"] == "conflict"]
    assert conflict["sequence_number"] == 2
    assert "ghost" in conflict["reason"]


def test_sync_rejects_empty_body(client: TestClient) -> None:
    assert client.post("/v1/sync/course-1", json={"devices": {}}, headers=auth()).status_code == 422


def test_async_sync_is_queued_then_applied_by_worker(client: TestClient) -> None:
    resp = client.post("/v1/sync/course-1?mode=async", json=BATCH, headers=auth())
    assert resp.status_code == 202
    assert resp.json()["status"] == "queued"

    task = asyncio.run(task_queue.dequeue(PROGRESS_SYNC_QUEUE))
    assert task is not None
    assert task.id == resp.json()["task_id"]
    assert asyncio.run(process_task(task)) is True

    snap = client.get("/v1/progress/course-1/snapshot", headers=auth()).json()
    assert snap["percent_complete"] == 50.0
