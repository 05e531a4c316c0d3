"""Demo: two devices sync offline progress, then an instructor reads the cohort.

Run with:
    python scripts/demo_offline_sync.py
"""

from __future__ import annotations

from fastapi.testclient import TestClient

from progress_engine.main import app
from progress_engine.services.token_service import create_access_token

COURSE = "intro-python"


def _headers(sub: str, roles: list[str] | None = None) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(sub=sub, roles=roles)}"}


def main() -> None:
    client = TestClient(app)

    # ── Seed the course structure ───────────────────────────────────
    r = client.put(
        f"/v1/courses/{COURSE}/structure",
        json={
            "version": 1,
            "lessons": [
                {
                    "lesson_id": "basics",
                    "sections": [
                        {"section_id": "variables"},
                        {"section_id": "quiz-1", "mastery_threshold": 80},
                    ],
                },
                {"lesson_id": "functions", "sections": [{"section_id": "def"}]},
            ],
        },
        headers=_headers("content-bot", ["content"]),
    )
    print(f"1. PUT  structure          → {r.status_code}")

    # ── A learner studies on a phone and a tablet while offline ─────
    batch = {
        "devices": {
            "phone": [
                {"section_id": "variables", "event_type": "STARTED",
                 "client_timestamp": 1000, "sequence_number": 1},
                {"section_id": "variables", "event_type": "COMPLETED",
                 "client_timestamp": 3000, "sequence_number": 2},
            ],
            "tablet": [
                {"section_id": "quiz-1", "event_type": "SCORE_SUBMITTED", "score": 72,
                 "client_timestamp": 4000, "sequence_number": 1},
                {"section_id": "quiz-1", "event_type": "COMPLETED",
                 "client_timestamp": 5000, "sequence_number": 2},
            ],
        }
    }
    r = client.post(f"/v1/sync/{COURSE}", json=batch, headers=_headers("ada"))
    data = r.json()
    print(f"2. POST sync               → {r.status_code}  accepted={data['accepted']}")
    print(f"   course progress          {data['snapshot']['percent_complete']}%")

    # ── Resend after a flaky connection: all duplicates ─────────────
    r = client.post(f"/v1/sync/{COURSE}", json=batch, headers=_headers("ada"))
    print(f"3. POST sync (resend)      → {r.status_code}  duplicates={r.json()['duplicates']}")

    # ── Gating: quiz score 72 < 80, next lesson stays locked ────────
    r = client.get(f"/v1/progress/{COURSE}/gating", headers=_headers("ada"))
    for d in r.json()["decisions"]:
        print(f"   {d['section_id']:<10} unlocked={d['unlocked']!s:<5} ({d['reason']})")

    # ── Retake the quiz ─────────────────────────────────────────────
    r = client.post(
        "/v1/progress/events",
        json={"course_id": COURSE, "section_id": "quiz-1", "event_type": "SCORE_SUBMITTED",
              "score": 93, "device_id": "tablet", "sequence_number": 3},
        headers=_headers("ada"),
    )
    print(f"4. POST event (retake)     → {r.status_code}")
    r = client.get(f"/v1/progress/{COURSE}/gating", headers=_headers("ada"))
    print(f"   resume at                {r.json()['resume_section_id']}")

    # ── Instructor report: one learner is below k ───────────────────
    r = client.get(
        f"/v1/analytics/courses/{COURSE}",
        headers=_headers("prof", ["instructor"]),
    )
    print(f"5. GET  analytics          → {r.status_code}  {r.json()['detail']['code']}")


if __name__ == "__main__":
    main()
