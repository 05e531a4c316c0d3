"""Error taxonomy shared by the ledger, aggregation, sync and analytics paths.

Each error carries a stable ``code`` (what API clients switch on) and a
``retryable`` flag.  Retryable errors are transient infrastructure
problems the *caller* retries with backoff; the engine itself never
retries, since a hidden retry could reorder events.

DuplicateEventError is the odd one out: it is a successful no-op.  It
is raised so the ledger can hand back the entry that was accepted the
first time, and callers report it as success.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from progress_engine.models.progress import LedgerEntry, ProgressEvent


class ProgressEngineError(Exception):
    code = "PROGRESS_ENGINE_ERROR"
    retryable = False

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


# --- Ledger append rejections ---


class LedgerRejection(ProgressEngineError):
    """Base class for append outcomes that refer to one specific event."""

    def __init__(self, event: ProgressEvent, detail: str) -> None:
        super().__init__(detail)
        self.event = event


class DuplicateEventError(LedgerRejection):
    code = "DUPLICATE"

    def __init__(self, event: ProgressEvent, existing: LedgerEntry | None) -> None:
        super().__init__(
            event,
            f"event device={event.device_id} seq={event.sequence_number} "
            "was already accepted",
        )
        self.existing = existing


class StaleEventError(LedgerRejection):
    code = "STALE"

    def __init__(self, event: ProgressEvent, watermark: int) -> None:
        super().__init__(
            event,
            f"sequence number {event.sequence_number} from device "
            f"{event.device_id} is behind the accepted watermark {watermark}",
        )
        self.watermark = watermark


class InvalidTransitionError(LedgerRejection):
    code = "INVALID_TRANSITION"


# --- Transient infrastructure errors ---


class LedgerTimeoutError(ProgressEngineError):
    code = "LEDGER_TIMEOUT"
    retryable = True


class StructureUnavailableError(ProgressEngineError):
    code = "STRUCTURE_UNAVAILABLE"
    retryable = True


class SnapshotVersionConflictError(ProgressEngineError):
    code = "SNAPSHOT_CONFLICT"
    retryable = True


# --- Validation ---


class InvalidCourseStructureError(ProgressEngineError):
    code = "INVALID_STRUCTURE"


class CohortTooSmallError(ProgressEngineError):
    """The matching cohort is below k.

    The message names k but never the actual cohort size: "2 learners
    matched" is itself a statement about individuals.
    """

    code = "COHORT_TOO_SMALL"

    def __init__(self, min_cohort_size: int) -> None:
        super().__init__(
            "insufficient cohort size for privacy: reports require at least "
            f"{min_cohort_size} learners"
        )
        self.min_cohort_size = min_cohort_size
