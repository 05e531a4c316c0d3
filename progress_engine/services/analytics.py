"""Privacy-preserving cohort analytics.

K-ANONYMITY
-----------
A report describes at least ``min_cohort_size`` (k) learners or it is
not produced at all:

  - If fewer than k snapshots match the query, CohortTooSmallError is
    raised.  There is no "partial" report and no zero-filled one that
    could be misread as "no activity".
  - Breakdown metrics (per section, per lesson) apply the same rule to
    each bucket.  A bucket describing fewer than k learners is left
    out of the report entirely, not rounded and not zeroed.

Output is aggregate-only (means, rates, counts), rounded to 2 decimal
places.  No learner id, snapshot or ledger event leaves this module,
and nothing here logs learner ids.

CANCELLATION
------------
Snapshots are scanned page by page with an ``await`` between pages.
Cancelling the task (or hitting the API's asyncio.timeout) stops the
scan at the next page boundary.  The scan is read-only, so there is
nothing to roll back.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from progress_engine.core.errors import CohortTooSmallError
from progress_engine.core.metrics import ANALYTICS_QUERIES
from progress_engine.models.analytics import (
    BREAKDOWN_METRICS,
    METRICS,
    CohortAnalyticsReport,
    CohortFilter,
    ReportBucket,
)
from progress_engine.models.course import CourseStructure
from progress_engine.models.progress import ProgressSnapshot
from progress_engine.repos.course_repo import CourseStructureRepo
from progress_engine.repos.snapshot_repo import SnapshotRepo

logger = logging.getLogger(__name__)

_VALUE_DIGITS = 2


@dataclass(slots=True)
class _Accumulator:
    """Running sums for one bucket (or for the whole cohort)."""

    count: int = 0
    total: float = 0.0

    def add(self, value: float) -> None:
        self.count += 1
        self.total += value

    @property
    def mean(self) -> float:
        return self.total / self.count if self.count else 0.0


@dataclass(slots=True)
class _Scan:
    cohort: _Accumulator = field(default_factory=_Accumulator)
    buckets: dict[str, _Accumulator] = field(default_factory=dict)


def _matches(snapshot: ProgressSnapshot, cohort_filter: CohortFilter) -> bool:
    if cohort_filter.learner_ids is not None and snapshot.learner_id not in cohort_filter.learner_ids:
        return False
    if cohort_filter.statuses is not None and snapshot.status not in cohort_filter.statuses:
        return False
    if cohort_filter.active_since is not None and (
        snapshot.last_activity_at is None
        or snapshot.last_activity_at < cohort_filter.active_since
    ):
        return False
    return True


def _all_lessons_mastered(snapshot: ProgressSnapshot) -> bool:
    return all(lesson.mastery_achieved for lesson in snapshot.lessons)


_SCALAR_VALUES: dict[str, Callable[[ProgressSnapshot], float]] = {
    "mean_percent_complete": lambda s: s.percent_complete,
    "completion_rate": lambda s: 1.0 if s.status == "completed" else 0.0,
    "certificate_rate": lambda s: 1.0 if s.certificate_eligible else 0.0,
    "mastery_rate": lambda s: 1.0 if _all_lessons_mastered(s) else 0.0,
    "section_mastery_rate": lambda s: 1.0 if _all_lessons_mastered(s) else 0.0,
    "lesson_percent_complete": lambda s: s.percent_complete,
}


class CohortAnalytics:
    def __init__(
        self,
        snapshots: SnapshotRepo,
        courses: CourseStructureRepo,
        *,
        min_cohort_size: int = 5,
        page_size: int = 200,
    ) -> None:
        if min_cohort_size < 2:
            raise ValueError("min_cohort_size must be >= 2")
        self._snapshots = snapshots
        self._courses = courses
        self._k = min_cohort_size
        self._page_size = page_size

    @property
    def min_cohort_size(self) -> int:
        return self._k

    async def aggregate(
        self,
        course_id: str,
        metric: str,
        cohort_filter: CohortFilter | None = None,
    ) -> CohortAnalyticsReport:
        if metric not in METRICS:
            raise ValueError(f"unknown metric {metric!r}")
        cohort_filter = cohort_filter or CohortFilter()

        structure = None
        if metric in BREAKDOWN_METRICS:
            structure = await self._courses.get(course_id)

        try:
            scan = await self._scan(course_id, metric, cohort_filter, structure)
        except asyncio.CancelledError:
            ANALYTICS_QUERIES.labels(result="cancelled").inc()
            logger.info("Analytics query cancelled metric=%s", metric, extra={"course_id": course_id})
            raise

        if scan.cohort.count < self._k:
            ANALYTICS_QUERIES.labels(result="cohort_too_small").inc()
            logger.info(
                "Analytics query suppressed metric=%s k=%d",
                metric,
                self._k,
                extra={"course_id": course_id},
            )
            raise CohortTooSmallError(self._k)

        buckets = tuple(
            ReportBucket(
                key=key,
                value=round(acc.mean, _VALUE_DIGITS),
                cohort_size=acc.count,
            )
            for key, acc in scan.buckets.items()
            if acc.count >= self._k
        )
        ANALYTICS_QUERIES.labels(result="ok").inc()
        logger.info(
            "Analytics report metric=%s cohort_size=%d buckets=%d suppressed=%d",
            metric,
            scan.cohort.count,
            len(buckets),
            len(scan.buckets) - len(buckets),
            extra={"course_id": course_id},
        )
        return CohortAnalyticsReport(
            course_id=course_id,
            metric=metric,
            aggregate_value=round(scan.cohort.mean, _VALUE_DIGITS),
            cohort_size=scan.cohort.count,
            buckets=buckets,
        )

    async def _scan(
        self,
        course_id: str,
        metric: str,
        cohort_filter: CohortFilter,
        structure: CourseStructure | None,
    ) -> _Scan:
        scan = _Scan()
        if structure is not None:
            # Pre-seed in course order so bucket order is deterministic.
            for lesson, section in structure.iter_sections():
                if cohort_filter.lesson_id is not None and lesson.lesson_id != cohort_filter.lesson_id:
                    continue
                if metric == "section_mastery_rate":
                    scan.buckets[section.section_id] = _Accumulator()
                else:
                    scan.buckets.setdefault(lesson.lesson_id, _Accumulator())

        value_of = _SCALAR_VALUES[metric]
        async for page in self._snapshots.iter_course(course_id, page_size=self._page_size):
            for snapshot in page:
                if not _matches(snapshot, cohort_filter):
                    continue
                scan.cohort.add(value_of(snapshot))
                if structure is not None:
                    self._add_to_buckets(scan, metric, snapshot, structure)
            # Yield to the loop between pages so cancellation lands promptly.
            await asyncio.sleep(0)
        return scan

    @staticmethod
    def _add_to_buckets(
        scan: _Scan,
        metric: str,
        snapshot: ProgressSnapshot,
        structure: CourseStructure,
    ) -> None:
        if snapshot.structure_version != structure.version:
            return
        if metric == "section_mastery_rate":
            for state in snapshot.sections:
                bucket = scan.buckets.get(state.section_id)
                if bucket is not None and state.touched:
                    bucket.add(1.0 if state.mastery_achieved else 0.0)
            return

        for lesson in structure.lessons:
            bucket = scan.buckets.get(lesson.lesson_id)
            if bucket is None:
                continue
            if any(snapshot.section_state(s.section_id).touched for s in lesson.sections):
                bucket.add(snapshot.lesson_progress(lesson.lesson_id).percent_complete)
