"""Sync Reconciler: merge offline / multi-device batches into the ledger.

MERGE ORDER
-----------
Each device's events are put in ``sequence_number`` order, then the
devices are merged by (client_timestamp, device_id, sequence_number).
Two devices reporting the same millisecond are ordered by device id,
lexicographically.  The merged order (and so the ledger order and the
snapshot) depends only on the batch contents, never on which device's
upload reached the server first.

PER-EVENT OUTCOMES
------------------
Events are appended one at a time and each gets its own outcome:

  accepted   appended; carries its ledger_sequence
  duplicate  (device_id, sequence_number) was accepted before; a
             successful no-op so a device resending after a network
             failure sees no error
  conflict   invalid (unknown section, bad score, wrong learner/course)
             or stale; the client should drop it
  retry      transient failure (ledger timeout, structure provider
             down); the client keeps it queued and resends later

One bad record never blocks the rest of the batch.  The reconciler
does not touch snapshots; callers refresh the aggregation afterwards.
"""

from __future__ import annotations

import heapq
import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field

from progress_engine.core.errors import (
    DuplicateEventError,
    LedgerRejection,
    ProgressEngineError,
)
from progress_engine.core.metrics import SYNC_EVENTS
from progress_engine.models.progress import LedgerEntry, ProgressEvent
from progress_engine.services.ledger import ProgressLedger

logger = logging.getLogger(__name__)

SyncBatch = Mapping[str, Sequence[ProgressEvent]] | Sequence[ProgressEvent]


@dataclass(frozen=True, slots=True)
class SyncConflict:
    event: ProgressEvent
    code: str  # INVALID_TRANSITION|STALE
    reason: str


@dataclass(frozen=True, slots=True)
class EventAck:
    device_id: str
    sequence_number: int
    status: str  # accepted|duplicate|conflict|retry
    ledger_sequence: int | None = None
    reason: str | None = None


@dataclass(slots=True)
class ReconciliationResult:
    accepted: list[LedgerEntry] = field(default_factory=list)
    rejected_duplicates: list[ProgressEvent] = field(default_factory=list)
    conflicts: list[SyncConflict] = field(default_factory=list)
    retryable: list[ProgressEvent] = field(default_factory=list)
    _acks: list[EventAck] = field(default_factory=list, repr=False)

    def ack(
        self,
        event: ProgressEvent,
        status: str,
        *,
        ledger_sequence: int | None = None,
        reason: str | None = None,
    ) -> None:
        self._acks.append(
            EventAck(
                device_id=event.device_id,
                sequence_number=event.sequence_number,
                status=status,
                ledger_sequence=ledger_sequence,
                reason=reason,
            )
        )

    def acknowledgements(self) -> list[EventAck]:
        """One ack per event, in merge order."""
        return list(self._acks)

    @property
    def changed(self) -> bool:
        return bool(self.accepted)


def merge_order(batch: SyncBatch) -> list[ProgressEvent]:
    """Deterministic total order over a multi-device batch."""
    if isinstance(batch, Mapping):
        per_device: dict[str, list[ProgressEvent]] = {}
        for events in batch.values():
            for event in events:
                per_device.setdefault(event.device_id, []).append(event)
    else:
        per_device = {}
        for event in batch:
            per_device.setdefault(event.device_id, []).append(event)

    streams: list[Iterable[ProgressEvent]] = [
        sorted(per_device[device_id], key=lambda e: e.sequence_number)
        for device_id in sorted(per_device)
    ]
    return list(
        heapq.merge(
            *streams,
            key=lambda e: (e.client_timestamp, e.device_id, e.sequence_number),
        )
    )


class SyncReconciler:
    def __init__(self, ledger: ProgressLedger) -> None:
        self._ledger = ledger

    async def reconcile(
        self, learner_id: str, course_id: str, batch: SyncBatch
    ) -> ReconciliationResult:
        result = ReconciliationResult()
        # Devices with an event waiting for retry.  Their later events must
        # wait too, or the retried one would come back behind the watermark.
        held_devices: set[str] = set()
        for event in merge_order(batch):
            if event.learner_id != learner_id or event.course_id != course_id:
                self._conflict(
                    result,
                    event,
                    "INVALID_TRANSITION",
                    f"event belongs to ({event.learner_id}, {event.course_id})",
                )
                continue

            if event.device_id in held_devices:
                self._retry(result, event, "EARLIER_EVENT_PENDING")
                continue

            try:
                entry = await self._ledger.append(event)
            except DuplicateEventError as e:
                result.rejected_duplicates.append(event)
                result.ack(
                    event,
                    "duplicate",
                    ledger_sequence=(
                        e.existing.ledger_sequence if e.existing is not None else None
                    ),
                )
                SYNC_EVENTS.labels(outcome="duplicate").inc()
            except LedgerRejection as e:
                self._conflict(result, event, e.code, e.detail)
            except ProgressEngineError as e:
                if not e.retryable:
                    raise
                held_devices.add(event.device_id)
                self._retry(result, event, e.code)
            else:
                result.accepted.append(entry)
                result.ack(event, "accepted", ledger_sequence=entry.ledger_sequence)
                SYNC_EVENTS.labels(outcome="accepted").inc()

        logger.info(
            "Reconciled batch learner=%s accepted=%d duplicates=%d conflicts=%d retry=%d",
            learner_id,
            len(result.accepted),
            len(result.rejected_duplicates),
            len(result.conflicts),
            len(result.retryable),
            extra={"course_id": course_id},
        )
        return result

    @staticmethod
    def _retry(result: ReconciliationResult, event: ProgressEvent, reason: str) -> None:
        result.retryable.append(event)
        result.ack(event, "retry", reason=reason)
        SYNC_EVENTS.labels(outcome="retry").inc()

    @staticmethod
    def _conflict(
        result: ReconciliationResult, event: ProgressEvent, code: str, reason: str
    ) -> None:
        result.conflicts.append(SyncConflict(event=event, code=code, reason=reason))
        result.ack(event, "conflict", reason=reason)
        SYNC_EVENTS.labels(outcome="conflict").inc()
