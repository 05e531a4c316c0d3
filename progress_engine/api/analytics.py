"""Instructor-facing cohort analytics.

GET /v1/analytics/courses/{course_id}?metric=...&statuses=...&active_since=...&lesson_id=...

Only aggregate values leave this endpoint.  A cohort (or breakdown
bucket) smaller than K_ANONYMITY_MIN is never reported; the whole
request fails with COHORT_TOO_SMALL when the cohort itself is small.
Long scans are cut off after ANALYTICS_TIMEOUT_SECONDS.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from progress_engine.api.dependencies import http_error, require_any_role
from progress_engine.core.config import SETTINGS
from progress_engine.core.errors import ProgressEngineError
from progress_engine.core.metrics import ANALYTICS_QUERIES
from progress_engine.models.analytics import CohortFilter, Metric
from progress_engine.models.principal import Principal
from progress_engine.services.engine import analytics, course_repo

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/analytics", tags=["analytics"])


class ReportBucketOut(BaseModel):
    key: str
    value: float
    cohort_size: int


class CohortReportOut(BaseModel):
    course_id: str
    metric: str
    aggregate_value: float
    cohort_size: int
    min_cohort_size: int
    buckets: list[ReportBucketOut]


@router.get("/courses/{course_id}", response_model=CohortReportOut)
async def course_report(
    course_id: str,
    _principal: Annotated[Principal, Depends(require_any_role({"admin", "instructor"}))],
    metric: Metric = "mean_percent_complete",
    statuses: Annotated[list[str] | None, Query()] = None,
    active_since: Annotated[int | None, Query(ge=0)] = None,
    lesson_id: str | None = None,
) -> CohortReportOut:
    cohort_filter = CohortFilter(
        statuses=frozenset(statuses) if statuses else None,
        active_since=active_since,
        lesson_id=lesson_id,
    )
    try:
        if await course_repo.get(course_id) is None:
            raise HTTPException(status_code=404, detail="course not found")
        async with asyncio.timeout(SETTINGS.analytics_timeout_seconds):
            report = await analytics.aggregate(course_id, metric, cohort_filter)
    except ProgressEngineError as e:
        raise http_error(e) from None
    except TimeoutError:
        ANALYTICS_QUERIES.labels(result="timeout").inc()
        logger.warning(
            "Analytics query timed out metric=%s after %.1fs",
            metric,
            SETTINGS.analytics_timeout_seconds,
            extra={"course_id": course_id},
        )
        raise HTTPException(status_code=504, detail="analytics query timed out") from None

    return CohortReportOut(
        course_id=report.course_id,
        metric=report.metric,
        aggregate_value=report.aggregate_value,
        cohort_size=report.cohort_size,
        min_cohort_size=analytics.min_cohort_size,
        buckets=[
            ReportBucketOut(key=b.key, value=b.value, cohort_size=b.cohort_size)
            for b in report.buckets
        ],
    )
