from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

Metric = Literal[
    "mean_percent_complete",
    "completion_rate",
    "certificate_rate",
    "mastery_rate",
    "section_mastery_rate",
    "lesson_percent_complete",
]
METRICS: frozenset[str] = frozenset(
    {
        "mean_percent_complete",
        "completion_rate",
        "certificate_rate",
        "mastery_rate",
        "section_mastery_rate",
        "lesson_percent_complete",
    }
)
BREAKDOWN_METRICS: frozenset[str] = frozenset(
    {"section_mastery_rate", "lesson_percent_complete"}
)


@dataclass(frozen=True, slots=True)
class CohortFilter:
    """Which snapshots of a course a report covers.  All criteria AND together."""

    learner_ids: frozenset[str] | None = None
    statuses: frozenset[str] | None = None
    active_since: int | None = None  # epoch ms, compared to last_activity_at
    lesson_id: str | None = None  # restrict breakdown buckets to one lesson


@dataclass(frozen=True, slots=True)
class ReportBucket:
    key: str  # section_id or lesson_id
    value: float
    cohort_size: int


@dataclass(frozen=True, slots=True)
class CohortAnalyticsReport:
    """Aggregate-only output.  Carries no learner identifiers."""

    course_id: str
    metric: str
    aggregate_value: float
    cohort_size: int
    buckets: tuple[ReportBucket, ...] = ()
