"""PostgreSQL implementation of SnapshotRepo."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from dataclasses import asdict
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from progress_engine.core.errors import SnapshotVersionConflictError
from progress_engine.db.tables import ProgressSnapshotRow
from progress_engine.models.progress import (
    LessonProgress,
    ProgressSnapshot,
    SectionState,
    VersionedSnapshot,
)


class PgSnapshotRepo:
    """Satisfies the SnapshotRepo Protocol using PostgreSQL via SQLAlchemy."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, learner_id: str, course_id: str) -> VersionedSnapshot | None:
        stmt = select(ProgressSnapshotRow).where(
            ProgressSnapshotRow.learner_id == learner_id,
            ProgressSnapshotRow.course_id == course_id,
        )
        async with self._session_factory() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            if row is None:
                return None
            return VersionedSnapshot(snapshot=_row_to_snapshot(row), version=row.version)

    async def save(self, snapshot: ProgressSnapshot, expected_version: int) -> int:
        values = {
            "structure_version": snapshot.structure_version,
            "snapshot_json": json.dumps(asdict(snapshot)),
            "percent_complete": snapshot.percent_complete,
            "certificate_eligible": snapshot.certificate_eligible,
            "status": snapshot.status,
            "ledger_watermark": snapshot.ledger_watermark,
            "last_activity_at": snapshot.last_activity_at,
        }
        async with self._session_factory() as session, session.begin():
            if expected_version == 0:
                session.add(
                    ProgressSnapshotRow(
                        learner_id=snapshot.learner_id,
                        course_id=snapshot.course_id,
                        version=1,
                        **values,
                    )
                )
                try:
                    await session.flush()
                except IntegrityError:
                    raise SnapshotVersionConflictError(
                        f"snapshot ({snapshot.learner_id}, {snapshot.course_id}) "
                        "was created concurrently"
                    ) from None
                return 1

            # Compare-and-set on the version column.
            stmt = (
                update(ProgressSnapshotRow)
                .where(
                    ProgressSnapshotRow.learner_id == snapshot.learner_id,
                    ProgressSnapshotRow.course_id == snapshot.course_id,
                    ProgressSnapshotRow.version == expected_version,
                )
                .values(version=expected_version + 1, **values)
            )
            result = await session.execute(stmt)
            if result.rowcount == 0:
                raise SnapshotVersionConflictError(
                    f"snapshot ({snapshot.learner_id}, {snapshot.course_id}) "
                    f"is no longer at version {expected_version}"
                )
            return expected_version + 1

    async def iter_course(
        self, course_id: str, *, page_size: int = 200
    ) -> AsyncIterator[list[ProgressSnapshot]]:
        # Keyset pagination on learner_id: stable while rows are added.
        last_learner: str | None = None
        while True:
            stmt = select(ProgressSnapshotRow).where(
                ProgressSnapshotRow.course_id == course_id
            )
            if last_learner is not None:
                stmt = stmt.where(ProgressSnapshotRow.learner_id > last_learner)
            stmt = stmt.order_by(ProgressSnapshotRow.learner_id).limit(page_size)
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).scalars().all()
            if not rows:
                return
            yield [_row_to_snapshot(r) for r in rows]
            if len(rows) < page_size:
                return
            last_learner = rows[-1].learner_id


def _row_to_snapshot(row: ProgressSnapshotRow) -> ProgressSnapshot:
    data: dict[str, Any] = json.loads(row.snapshot_json)
    return ProgressSnapshot(
        learner_id=data["learner_id"],
        course_id=data["course_id"],
        structure_version=data["structure_version"],
        sections=tuple(SectionState(**s) for s in data["sections"]),
        lessons=tuple(LessonProgress(**lesson) for lesson in data["lessons"]),
        percent_complete=data["percent_complete"],
        certificate_eligible=data["certificate_eligible"],
        status=data["status"],
        ledger_watermark=data["ledger_watermark"],
        last_activity_at=data["last_activity_at"],
    )
