"""Process-wide engine singletons.

Same pattern as the cache and task queue: look at the configuration
once at import time and build either the PostgreSQL/HTTP-backed
components or their in-memory stand-ins.

    DATABASE_URL         set → PgLedgerRepo + PgSnapshotRepo
                         unset → InMemoryLedgerRepo + InMemorySnapshotRepo
    CONTENT_SERVICE_URL  set → HttpCourseStructureRepo (cached)
                         unset → InMemoryCourseStructureRepo

The API routes and the worker import these names; tests reset the
in-memory stores through the autouse fixtures in conftest.py.
"""

from __future__ import annotations

import logging

from progress_engine.core.config import SETTINGS
from progress_engine.db.engine import async_session_factory
from progress_engine.repos.course_repo import (
    CourseStructureRepo,
    HttpCourseStructureRepo,
    InMemoryCourseStructureRepo,
)
from progress_engine.repos.ledger_repo import InMemoryLedgerRepo, LedgerRepo
from progress_engine.repos.pg_ledger_repo import PgLedgerRepo
from progress_engine.repos.pg_snapshot_repo import PgSnapshotRepo
from progress_engine.repos.snapshot_repo import InMemorySnapshotRepo, SnapshotRepo
from progress_engine.services.aggregation import AggregationEngine
from progress_engine.services.analytics import CohortAnalytics
from progress_engine.services.cache import cache_service
from progress_engine.services.ledger import ProgressLedger
from progress_engine.services.sync_reconciler import SyncReconciler

logger = logging.getLogger(__name__)

if async_session_factory is not None:
    ledger_store: LedgerRepo = PgLedgerRepo(async_session_factory)
    snapshot_store: SnapshotRepo = PgSnapshotRepo(async_session_factory)
else:
    ledger_store = InMemoryLedgerRepo()
    snapshot_store = InMemorySnapshotRepo()

# Routes that register structures need the concrete in-memory repo.
local_courses = InMemoryCourseStructureRepo()

if SETTINGS.content_service_url:
    course_repo: CourseStructureRepo = HttpCourseStructureRepo(
        SETTINGS.content_service_url, cache_service
    )
else:
    course_repo = local_courses

ledger = ProgressLedger(
    ledger_store,
    course_repo,
    append_timeout=SETTINGS.ledger_append_timeout_seconds,
)
aggregation = AggregationEngine(
    ledger,
    course_repo,
    snapshot_store,
    completion_threshold=SETTINGS.completion_threshold,
)
reconciler = SyncReconciler(ledger)
analytics = CohortAnalytics(
    snapshot_store,
    course_repo,
    min_cohort_size=SETTINGS.k_anonymity_min,
)

logger.debug(
    "Engine wired ledger=%s snapshots=%s courses=%s k=%d",
    type(ledger_store).__name__,
    type(snapshot_store).__name__,
    type(course_repo).__name__,
    SETTINGS.k_anonymity_min,
)
