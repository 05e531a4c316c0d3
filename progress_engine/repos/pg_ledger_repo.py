"""PostgreSQL implementation of LedgerRepo."""

from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from progress_engine.core.errors import DuplicateEventError, StaleEventError
from progress_engine.db.tables import LedgerEntryRow
from progress_engine.models.progress import LedgerEntry, ProgressEvent


class PgLedgerRepo:
    """Satisfies the LedgerRepo Protocol using PostgreSQL via SQLAlchemy.

    Each append runs in its own transaction holding a transaction-scoped
    advisory lock on the learner+course key, so appends for one key are
    linearizable across API instances and workers, not just within one
    process.  The unique constraint is the last line of defence against
    duplicates.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def append(self, event: ProgressEvent, accepted_at: int) -> LedgerEntry:
        async with self._session_factory() as session, session.begin():
            await session.execute(
                select(
                    func.pg_advisory_xact_lock(
                        func.hashtext(f"{event.learner_id}:{event.course_id}")
                    )
                )
            )

            existing = await self._find(
                session,
                event.learner_id,
                event.course_id,
                event.device_id,
                event.sequence_number,
            )
            if existing is not None:
                raise DuplicateEventError(event, _row_to_entry(existing))

            watermark = await self._watermark(
                session, event.learner_id, event.course_id, event.device_id
            )
            if watermark is not None and event.sequence_number < watermark:
                raise StaleEventError(event, watermark)

            row = LedgerEntryRow(
                learner_id=event.learner_id,
                course_id=event.course_id,
                section_id=event.section_id,
                event_type=event.event_type,
                score=event.score,
                client_timestamp=event.client_timestamp,
                device_id=event.device_id,
                sequence_number=event.sequence_number,
                accepted_at=accepted_at,
            )
            session.add(row)
            try:
                await session.flush()
            except IntegrityError:
                raise DuplicateEventError(event, None) from None
            return _row_to_entry(row)

    async def find(
        self, learner_id: str, course_id: str, device_id: str, sequence_number: int
    ) -> LedgerEntry | None:
        async with self._session_factory() as session:
            row = await self._find(
                session, learner_id, course_id, device_id, sequence_number
            )
            return _row_to_entry(row) if row is not None else None

    async def list_entries(
        self,
        learner_id: str,
        course_id: str,
        *,
        after_sequence: int = 0,
        limit: int = 500,
    ) -> list[LedgerEntry]:
        stmt = (
            select(LedgerEntryRow)
            .where(
                LedgerEntryRow.learner_id == learner_id,
                LedgerEntryRow.course_id == course_id,
                LedgerEntryRow.ledger_sequence > after_sequence,
            )
            .order_by(LedgerEntryRow.ledger_sequence)
            .limit(limit)
        )
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_row_to_entry(r) for r in rows]

    @staticmethod
    async def _find(
        session: AsyncSession,
        learner_id: str,
        course_id: str,
        device_id: str,
        sequence_number: int,
    ) -> LedgerEntryRow | None:
        stmt = select(LedgerEntryRow).where(
            LedgerEntryRow.learner_id == learner_id,
            LedgerEntryRow.course_id == course_id,
            LedgerEntryRow.device_id == device_id,
            LedgerEntryRow.sequence_number == sequence_number,
        )
        return (await session.execute(stmt)).scalar_one_or_none()

    @staticmethod
    async def _watermark(
        session: AsyncSession, learner_id: str, course_id: str, device_id: str
    ) -> int | None:
        stmt = select(func.max(LedgerEntryRow.sequence_number)).where(
            LedgerEntryRow.learner_id == learner_id,
            LedgerEntryRow.course_id == course_id,
            LedgerEntryRow.device_id == device_id,
        )
        return (await session.execute(stmt)).scalar_one_or_none()


def _row_to_entry(row: LedgerEntryRow) -> LedgerEntry:
    return LedgerEntry(
        ledger_sequence=row.ledger_sequence,
        accepted_at=row.accepted_at,
        event=ProgressEvent(
            learner_id=row.learner_id,
            course_id=row.course_id,
            section_id=row.section_id,
            event_type=row.event_type,
            client_timestamp=row.client_timestamp,
            device_id=row.device_id,
            sequence_number=row.sequence_number,
            score=row.score,
        ),
    )
