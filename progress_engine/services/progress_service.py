"""Glue between the ledger, the aggregation engine and the snapshot cache.

Shared by the HTTP routes and the background worker so both paths do
the same thing after new ledger entries land:

  1. invalidate the cached snapshot for that learner+course
  2. fold the new entries into the stored snapshot (incremental)
  3. invalidate again, dropping anything cached during step 2

If step 2 fails transiently (structure provider down, a concurrent
snapshot writer), the accepted events are still safe in the ledger.
The refresh is queued for the worker and the previous snapshot keeps
being served in the meantime.
"""

from __future__ import annotations

import logging
from dataclasses import asdict

from progress_engine.core.errors import (
    DuplicateEventError,
    StructureUnavailableError,
    SnapshotVersionConflictError,
)
from progress_engine.models.progress import LedgerEntry, ProgressEvent, ProgressSnapshot
from progress_engine.services.cache import cache_service
from progress_engine.services.engine import aggregation, ledger, reconciler
from progress_engine.services.sync_reconciler import ReconciliationResult, SyncBatch
from progress_engine.services.task_queue import SNAPSHOT_REFRESH_QUEUE, task_queue

logger = logging.getLogger(__name__)


def snapshot_cache_key(learner_id: str, course_id: str) -> str:
    return f"snapshot:{learner_id}:{course_id}"


async def refresh_snapshot(learner_id: str, course_id: str) -> ProgressSnapshot | None:
    """Bring the stored snapshot up to date.  Returns None if deferred."""
    cache_key = snapshot_cache_key(learner_id, course_id)
    await cache_service.delete(cache_key)
    try:
        snapshot = await aggregation.refresh(learner_id, course_id)
    except (StructureUnavailableError, SnapshotVersionConflictError) as e:
        task = await task_queue.enqueue(
            SNAPSHOT_REFRESH_QUEUE,
            {"learner_id": learner_id, "course_id": course_id},
        )
        logger.warning(
            "Snapshot refresh deferred learner=%s reason=%s",
            learner_id,
            e.code,
            extra={"course_id": course_id, "task_id": task.id},
        )
        return None

    # A read that ran while the refresh was in flight may have cached the
    # previous snapshot.
    await cache_service.delete(cache_key)
    return snapshot


async def record_event(event: ProgressEvent) -> tuple[LedgerEntry | None, bool]:
    """Append one event and refresh the snapshot.

    Returns (entry, duplicate).  A duplicate returns the entry accepted
    the first time.  Every other rejection propagates.
    """
    try:
        entry = await ledger.append(event)
    except DuplicateEventError as e:
        return e.existing, True
    await refresh_snapshot(event.learner_id, event.course_id)
    return entry, False


async def sync_batch(
    learner_id: str, course_id: str, batch: SyncBatch
) -> tuple[ReconciliationResult, ProgressSnapshot | None]:
    """Reconcile a device batch, then refresh the snapshot if anything landed."""
    result = await reconciler.reconcile(learner_id, course_id, batch)
    snapshot = None
    if result.changed:
        snapshot = await refresh_snapshot(learner_id, course_id)
    return result, snapshot


def batch_to_payload(learner_id: str, course_id: str, batch: dict[str, list[ProgressEvent]]) -> dict:
    """JSON-safe task payload for a queued sync batch."""
    return {
        "learner_id": learner_id,
        "course_id": course_id,
        "devices": {
            device_id: [asdict(event) for event in events]
            for device_id, events in batch.items()
        },
    }


def batch_from_payload(payload: dict) -> dict[str, list[ProgressEvent]]:
    return {
        device_id: [ProgressEvent(**fields) for fields in events]
        for device_id, events in payload["devices"].items()
    }
