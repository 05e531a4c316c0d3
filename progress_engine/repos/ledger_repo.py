from __future__ import annotations

from bisect import bisect_right
from typing import Protocol

from progress_engine.core.errors import DuplicateEventError, StaleEventError
from progress_engine.models.progress import LedgerEntry, ProgressEvent


class LedgerRepo(Protocol):
    """Append-only storage for ledger entries.

    ``append`` is atomic: the duplicate check, the device-watermark
    check and the insert happen as one step.  There is no
    update or delete.
    """

    async def append(self, event: ProgressEvent, accepted_at: int) -> LedgerEntry: ...
    async def find(
        self, learner_id: str, course_id: str, device_id: str, sequence_number: int
    ) -> LedgerEntry | None: ...
    async def list_entries(
        self,
        learner_id: str,
        course_id: str,
        *,
        after_sequence: int = 0,
        limit: int = 500,
    ) -> list[LedgerEntry]: ...


class InMemoryLedgerRepo:
    def __init__(self) -> None:
        self._next_sequence = 1
        # (learner_id, course_id) -> entries in ledger_sequence order
        self._entries: dict[tuple[str, str], list[LedgerEntry]] = {}
        self._by_key: dict[tuple[str, str, str, int], LedgerEntry] = {}
        # (learner_id, course_id, device_id) -> highest accepted sequence_number
        self._watermarks: dict[tuple[str, str, str], int] = {}

    async def append(self, event: ProgressEvent, accepted_at: int) -> LedgerEntry:
        existing = self._by_key.get(event.idempotency_key)
        if existing is not None:
            raise DuplicateEventError(event, existing)

        device_key = (event.learner_id, event.course_id, event.device_id)
        watermark = self._watermarks.get(device_key)
        if watermark is not None and event.sequence_number < watermark:
            raise StaleEventError(event, watermark)

        entry = LedgerEntry(
            ledger_sequence=self._next_sequence,
            accepted_at=accepted_at,
            event=event,
        )
        self._next_sequence += 1
        self._entries.setdefault((event.learner_id, event.course_id), []).append(entry)
        self._by_key[event.idempotency_key] = entry
        self._watermarks[device_key] = event.sequence_number
        return entry

    async def find(
        self, learner_id: str, course_id: str, device_id: str, sequence_number: int
    ) -> LedgerEntry | None:
        return self._by_key.get((learner_id, course_id, device_id, sequence_number))

    async def list_entries(
        self,
        learner_id: str,
        course_id: str,
        *,
        after_sequence: int = 0,
        limit: int = 500,
    ) -> list[LedgerEntry]:
        entries = self._entries.get((learner_id, course_id), [])
        start = bisect_right(entries, after_sequence, key=lambda e: e.ledger_sequence)
        return entries[start : start + limit]

    def clear(self) -> None:
        self._next_sequence = 1
        self._entries.clear()
        self._by_key.clear()
        self._watermarks.clear()
