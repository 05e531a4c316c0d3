from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Protocol

from progress_engine.core.errors import SnapshotVersionConflictError
from progress_engine.models.progress import ProgressSnapshot, VersionedSnapshot


class SnapshotRepo(Protocol):
    """Storage for derived snapshots, one row per (learner_id, course_id).

    ``save`` is a compare-and-set on the version column: pass the
    version you read (0 for a snapshot that does not exist yet) and get
    the new version back.  A mismatch means another writer got there
    first and raises SnapshotVersionConflictError.
    """

    async def get(self, learner_id: str, course_id: str) -> VersionedSnapshot | None: ...
    async def save(self, snapshot: ProgressSnapshot, expected_version: int) -> int: ...
    def iter_course(
        self, course_id: str, *, page_size: int = 200
    ) -> AsyncIterator[list[ProgressSnapshot]]: ...


class InMemorySnapshotRepo:
    def __init__(self) -> None:
        self._store: dict[tuple[str, str], VersionedSnapshot] = {}

    async def get(self, learner_id: str, course_id: str) -> VersionedSnapshot | None:
        return self._store.get((learner_id, course_id))

    async def save(self, snapshot: ProgressSnapshot, expected_version: int) -> int:
        key = (snapshot.learner_id, snapshot.course_id)
        current = self._store.get(key)
        current_version = current.version if current is not None else 0
        if current_version != expected_version:
            raise SnapshotVersionConflictError(
                f"snapshot {key} is at version {current_version}, "
                f"expected {expected_version}"
            )
        new_version = current_version + 1
        self._store[key] = VersionedSnapshot(snapshot=snapshot, version=new_version)
        return new_version

    async def iter_course(
        self, course_id: str, *, page_size: int = 200
    ) -> AsyncIterator[list[ProgressSnapshot]]:
        # Copy the matching keys first so concurrent saves can't break iteration.
        keys = sorted(k for k in self._store if k[1] == course_id)
        for start in range(0, len(keys), page_size):
            page = [self._store[k].snapshot for k in keys[start : start + page_size]]
            yield page

    def clear(self) -> None:
        self._store.clear()
