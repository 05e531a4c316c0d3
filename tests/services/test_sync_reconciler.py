from __future__ import annotations

import asyncio

import httpx

from progress_engine.core.errors import LedgerTimeoutError
from progress_engine.models.progress import LedgerEntry, ProgressEvent
from progress_engine.repos.course_repo import HttpCourseStructureRepo, InMemoryCourseStructureRepo
from progress_engine.repos.ledger_repo import InMemoryLedgerRepo
from progress_engine.services.aggregation import fold
from progress_engine.services.cache import InMemoryCacheService
from progress_engine.services.ledger import ProgressLedger
from progress_engine.services.sync_reconciler import (
    ReconciliationResult,
    SyncReconciler,
    merge_order,
)
from tests.conftest import make_event, make_structure


def _reconciler(store: InMemoryLedgerRepo | None = None) -> tuple[SyncReconciler, ProgressLedger]:
    courses = InMemoryCourseStructureRepo()
    courses.put(make_structure())
    ledger = ProgressLedger(store or InMemoryLedgerRepo(), courses)
    return SyncReconciler(ledger), ledger


def _reconcile(reconciler: SyncReconciler, batch) -> ReconciliationResult:
    return asyncio.run(reconciler.reconcile("learner-1", "course-1", batch))


def _key(e: ProgressEvent) -> tuple[str, int]:
    return (e.device_id, e.sequence_number)


def test_merge_orders_by_timestamp_then_device_id() -> None:
    phone = [make_event(device_id="phone", seq=1, ts=200), make_event(device_id="phone", seq=2, ts=300)]
    tablet = [make_event(device_id="tablet", seq=1, ts=200), make_event(device_id="tablet", seq=2, ts=100)]
    order = [_key(e) for e in merge_order({"phone": phone, "tablet": tablet})]
    # tablet's stream stays in sequence order even though seq 2 has the earlier clock.
    assert order == [("phone", 1), ("tablet", 1), ("tablet", 2), ("phone", 2)]


def test_merge_order_ignores_arrival_order() -> None:
    a = [make_event(device_id="a", seq=i, ts=10 * i) for i in range(1, 4)]
    b = [make_event(device_id="b", seq=i, ts=10 * i + 5) for i in range(1, 4)]
    first = merge_order({"a": a, "b": b})
    assert merge_order({"b": b, "a": a}) == first
    assert merge_order(list(reversed(a + b))) == first


def test_ledger_outcome_independent_of_upload_order() -> None:
    a = [make_event("s1", "STARTED", device_id="a", seq=1, ts=10),
         make_event("s1", "COMPLETED", device_id="a", seq=2, ts=30)]
    b = [make_event("s2", "SCORE_SUBMITTED", device_id="b", seq=1, ts=20, score=90.0)]

    def ledger_events(batch) -> list[tuple[str, int]]:
        reconciler, ledger = _reconciler()
        _reconcile(reconciler, batch)

        async def read() -> list[LedgerEntry]:
            return [e async for e in ledger.read_all("learner-1", "course-1")]

        return [_key(e.event) for e in asyncio.run(read())]

    assert ledger_events({"a": a, "b": b}) == ledger_events({"b": b, "a": a})


def test_partial_acceptance_reports_each_event() -> None:
    reconciler, _ = _reconciler()
    batch = {
        "phone": [
            make_event("s1", "STARTED", device_id="phone", seq=1, ts=10),
            make_event("missing", "STARTED", device_id="phone", seq=2, ts=20),
            make_event("s1", "COMPLETED", device_id="phone", seq=3, ts=30),
        ],
        "tablet": [make_event("s2", "SCORE_SUBMITTED", device_id="tablet", seq=1, ts=15, score=250.0)],
    }
    result = _reconcile(reconciler, batch)

    assert len(result.accepted) == 2
    assert {c.event.section_id for c in result.conflicts} == {"missing", "s2"}
    assert all(c.code == "INVALID_TRANSITION" for c in result.conflicts)
    acks = result.acknowledgements()
    assert [(a.device_id, a.sequence_number, a.status) for a in acks] == [
        ("phone", 1, "accepted"),
        ("tablet", 1, "conflict"),
        ("phone", 2, "conflict"),
        ("phone", 3, "accepted"),
    ]
    assert result.changed


def test_resent_batch_is_idempotent() -> None:
    reconciler, ledger = _reconciler()
    batch = [make_event("s1", "STARTED", seq=1), make_event("s1", "COMPLETED", seq=2, ts=1_700_000_000_500)]
    first = _reconcile(reconciler, batch)
    second = _reconcile(reconciler, batch)

    assert len(first.accepted) == 2
    assert second.accepted == []
    assert len(second.rejected_duplicates) == 2
    assert not second.changed
    assert [a.ledger_sequence for a in second.acknowledgements()] == [
        e.ledger_sequence for e in first.accepted
    ]

    async def read() -> list[LedgerEntry]:
        return [e async for e in ledger.read_all("learner-1", "course-1")]

    assert len(asyncio.run(read())) == 2


def test_stale_event_is_a_conflict() -> None:
    reconciler, _ = _reconciler()
    _reconcile(reconciler, [make_event("s1", seq=5)])
    result = _reconcile(reconciler, [make_event("s2", seq=2)])
    (conflict,) = result.conflicts
    assert conflict.code == "STALE"


def test_foreign_learner_events_are_conflicts() -> None:
    reconciler, _ = _reconciler()
    result = _reconcile(reconciler, [make_event(learner_id="someone-else")])
    assert result.accepted == []
    assert result.conflicts[0].code == "INVALID_TRANSITION"


class _FlakyStore(InMemoryLedgerRepo):
    """Times out once for one (device, sequence_number)."""

    def __init__(self, fail_on: tuple[str, int]) -> None:
        super().__init__()
        self._fail_on = fail_on

    async def append(self, event: ProgressEvent, accepted_at: int) -> LedgerEntry:
        if (event.device_id, event.sequence_number) == self._fail_on:
            self._fail_on = ("", -1)
            raise LedgerTimeoutError("simulated")
        return await super().append(event, accepted_at)


def test_retryable_failure_holds_back_later_events_from_same_device() -> None:
    reconciler, ledger = _reconciler(_FlakyStore(fail_on=("phone", 1)))
    batch = {
        "phone": [
            make_event("s1", "STARTED", device_id="phone", seq=1, ts=10),
            make_event("s1", "COMPLETED", device_id="phone", seq=2, ts=30),
        ],
        "tablet": [make_event("s3", "STARTED", device_id="tablet", seq=1, ts=20)],
    }
    result = _reconcile(reconciler, batch)
    statuses = {(a.device_id, a.sequence_number): (a.status, a.reason) for a in result.acknowledgements()}
    assert statuses[("phone", 1)] == ("retry", "LEDGER_TIMEOUT")
    assert statuses[("phone", 2)] == ("retry", "EARLIER_EVENT_PENDING")
    assert statuses[("tablet", 1)][0] == "accepted"

    # The client resends everything unacknowledged; nothing is stale.
    retry = _reconcile(reconciler, batch)
    assert {a.status for a in retry.acknowledgements()} == {"accepted", "duplicate"}

    async def read() -> list[LedgerEntry]:
        return [e async for e in ledger.read_all("learner-1", "course-1")]

    snap = fold(make_structure(), "learner-1", "course-1", asyncio.run(read()))
    assert snap.section_state("s1").completed


def test_resend_during_structure_outage_is_still_a_duplicate() -> None:
    courses = InMemoryCourseStructureRepo()
    courses.put(make_structure())
    reconciler = SyncReconciler(ProgressLedger(InMemoryLedgerRepo(), courses))
    first = _reconcile(reconciler, [make_event("s1", "COMPLETED", seq=1)])

    courses.set_available(False)
    result = _reconcile(
        reconciler,
        [make_event("s1", "COMPLETED", seq=1), make_event("s2", "STARTED", seq=2, ts=1_700_000_000_500)],
    )
    acks = [(a.sequence_number, a.status, a.reason) for a in result.acknowledgements()]
    assert acks == [(1, "duplicate", None), (2, "retry", "STRUCTURE_UNAVAILABLE")]
    assert result.acknowledgements()[0].ledger_sequence == first.accepted[0].ledger_sequence


def test_content_service_refusal_yields_retry_acks() -> None:
    courses = HttpCourseStructureRepo(
        "http://content.test",
        InMemoryCacheService(),
        transport=httpx.MockTransport(lambda request: httpx.Response(403)),
    )
    reconciler = SyncReconciler(ProgressLedger(InMemoryLedgerRepo(), courses))
    batch = {
        "phone": [make_event("s1", "STARTED", device_id="phone", seq=1, ts=10)],
        "tablet": [make_event("s3", "STARTED", device_id="tablet", seq=1, ts=20)],
    }
    result = _reconcile(reconciler, batch)

    assert [(a.device_id, a.status, a.reason) for a in result.acknowledgements()] == [
        ("phone", "retry", "STRUCTURE_UNAVAILABLE"),
        ("tablet", "retry", "STRUCTURE_UNAVAILABLE"),
    ]
    assert not result.changed
