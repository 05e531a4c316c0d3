"""Progress Ledger: the append-only source of truth for learner progress.

Every downstream result (snapshots, gating, analytics) is derived from
the order in which entries were accepted here, so two properties
matter more than anything else in this module:

  Linearizable appends per learner+course.  Duplicate detection, the
  device watermark check and ``ledger_sequence`` assignment must see
  a consistent view, so appends for one key go through a per-key
  asyncio.Lock.  Different keys never contend.

  Fail fast.  An append that cannot finish within ``append_timeout``
  raises LedgerTimeoutError instead of queueing behind a stuck writer.
  The caller (usually the sync reconciler) reports it as retryable;
  nothing here retries, because a hidden retry could reorder events.
"""

from __future__ import annotations

import asyncio
import datetime
import logging
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager

from progress_engine.core.errors import (
    DuplicateEventError,
    InvalidTransitionError,
    LedgerTimeoutError,
    StaleEventError,
    StructureUnavailableError,
)
from progress_engine.core.metrics import LEDGER_APPEND_DURATION, LEDGER_APPENDS
from progress_engine.models.progress import EVENT_TYPES, LedgerEntry, ProgressEvent
from progress_engine.repos.course_repo import CourseStructureRepo
from progress_engine.repos.ledger_repo import LedgerRepo

logger = logging.getLogger(__name__)


def now_ms() -> int:
    return int(datetime.datetime.now(datetime.UTC).timestamp() * 1000)


class KeyedLocks:
    """One asyncio.Lock per key, dropped again once nobody holds or awaits it."""

    def __init__(self) -> None:
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._users: dict[tuple[str, str], int] = {}

    @asynccontextmanager
    async def hold(self, key: tuple[str, str]):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class ProgressLedger:
    def __init__(
        self,
        store: LedgerRepo,
        courses: CourseStructureRepo,
        *,
        append_timeout: float = 2.0,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._store = store
        self._courses = courses
        self._append_timeout = append_timeout
        self._clock = clock
        self._locks = KeyedLocks()

    async def append(self, event: ProgressEvent) -> LedgerEntry:
        """Accept one event, or raise the reason it was not accepted.

        Raises DuplicateEventError (carrying the original entry),
        StaleEventError, InvalidTransitionError, StructureUnavailableError
        or LedgerTimeoutError.
        """
        start = time.monotonic()
        try:
            entry = await self._append(event)
        except DuplicateEventError:
            LEDGER_APPENDS.labels(result="duplicate").inc()
            logger.info(
                "Duplicate event ignored learner=%s course=%s device=%s seq=%d",
                event.learner_id,
                event.course_id,
                event.device_id,
                event.sequence_number,
            )
            raise
        except StaleEventError as e:
            LEDGER_APPENDS.labels(result="stale").inc()
            logger.warning(
                "Stale event rejected learner=%s device=%s seq=%d watermark=%d",
                event.learner_id,
                event.device_id,
                event.sequence_number,
                e.watermark,
            )
            raise
        except InvalidTransitionError as e:
            LEDGER_APPENDS.labels(result="invalid_transition").inc()
            logger.warning(
                "Invalid event rejected learner=%s course=%s: %s",
                event.learner_id,
                event.course_id,
                e.detail,
            )
            raise
        except StructureUnavailableError:
            LEDGER_APPENDS.labels(result="structure_unavailable").inc()
            raise
        except LedgerTimeoutError:
            LEDGER_APPENDS.labels(result="timeout").inc()
            logger.warning(
                "Ledger append timed out learner=%s course=%s after %.2fs",
                event.learner_id,
                event.course_id,
                self._append_timeout,
            )
            raise
        finally:
            LEDGER_APPEND_DURATION.observe(time.monotonic() - start)

        LEDGER_APPENDS.labels(result="accepted").inc()
        logger.debug(
            "Ledger entry accepted learner=%s section=%s type=%s",
            event.learner_id,
            event.section_id,
            event.event_type,
            extra={"course_id": event.course_id, "ledger_sequence": entry.ledger_sequence},
        )
        return entry

    async def _append(self, event: ProgressEvent) -> LedgerEntry:
        try:
            async with asyncio.timeout(self._append_timeout):
                self._check_fields(event)
                # A resend of an accepted event is a duplicate even while the
                # structure provider is down.
                existing = await self._store.find(
                    event.learner_id, event.course_id, event.device_id, event.sequence_number
                )
                if existing is not None:
                    raise DuplicateEventError(event, existing)
                await self._check_structure(event)
                async with self._locks.hold((event.learner_id, event.course_id)):
                    return await self._store.append(event, self._clock())
        except TimeoutError:
            raise LedgerTimeoutError(
                f"ledger append for ({event.learner_id}, {event.course_id}) "
                f"did not complete within {self._append_timeout}s"
            ) from None

    @staticmethod
    def _check_fields(event: ProgressEvent) -> None:
        if event.event_type not in EVENT_TYPES:
            raise InvalidTransitionError(
                event, f"unknown event type {event.event_type!r}"
            )
        if event.event_type == "SCORE_SUBMITTED" and event.score is None:
            raise InvalidTransitionError(event, "SCORE_SUBMITTED requires a score")
        if event.score is not None and not 0 <= event.score <= 100:
            raise InvalidTransitionError(
                event, f"score {event.score} is outside 0-100"
            )
        if event.sequence_number < 0:
            raise InvalidTransitionError(event, "sequence_number must be >= 0")

    async def _check_structure(self, event: ProgressEvent) -> None:
        structure = await self._courses.get(event.course_id)
        if structure is None:
            raise InvalidTransitionError(
                event, f"course {event.course_id!r} has no structure"
            )
        if not structure.has_section(event.section_id):
            raise InvalidTransitionError(
                event,
                f"section {event.section_id!r} is not part of course {event.course_id!r}",
            )

    async def read_all(
        self,
        learner_id: str,
        course_id: str,
        *,
        after_sequence: int = 0,
        page_size: int = 500,
    ) -> AsyncIterator[LedgerEntry]:
        """Yield entries in ``ledger_sequence`` order, paging lazily.

        Each call starts a fresh pass.  ``after_sequence`` is the
        watermark for incremental re-reads; 0 is a full replay.
        """
        watermark = after_sequence
        while True:
            page = await self._store.list_entries(
                learner_id, course_id, after_sequence=watermark, limit=page_size
            )
            for entry in page:
                yield entry
            if len(page) < page_size:
                return
            watermark = page[-1].ledger_sequence
