"""SQLAlchemy table definitions.

These map to the frozen dataclass domain models in progress_engine/models/.
Repos convert between rows and dataclasses; nothing outside repos/
touches a row object.
"""

from __future__ import annotations

from sqlalchemy import (
    BigInteger,
    Boolean,
    Float,
    Identity,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from progress_engine.db.engine import Base

# --- Ledger (append-only; no UPDATE or DELETE is ever issued) ---


class LedgerEntryRow(Base):
    __tablename__ = "ledger_entries"

    ledger_sequence: Mapped[int] = mapped_column(
        BigInteger, Identity(always=True), primary_key=True
    )
    learner_id: Mapped[str] = mapped_column(String(255), nullable=False)
    course_id: Mapped[str] = mapped_column(String(255), nullable=False)
    section_id: Mapped[str] = mapped_column(String(255), nullable=False)
    event_type: Mapped[str] = mapped_column(
        String(32), nullable=False
    )  # STARTED|COMPLETED|SCORE_SUBMITTED
    score: Mapped[float | None] = mapped_column(Float, nullable=True)
    client_timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)
    device_id: Mapped[str] = mapped_column(String(255), nullable=False)
    sequence_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    accepted_at: Mapped[int] = mapped_column(BigInteger, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "learner_id",
            "course_id",
            "device_id",
            "sequence_number",
            name="uq_ledger_device_sequence",
        ),
        Index("ix_ledger_learner_course_seq", "learner_id", "course_id", "ledger_sequence"),
    )


# --- Snapshots (derived read model) ---


class ProgressSnapshotRow(Base):
    """One row per learner+course; ``version`` is the optimistic-lock column."""

    __tablename__ = "progress_snapshots"

    learner_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    course_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    structure_version: Mapped[int] = mapped_column(Integer, nullable=False)
    snapshot_json: Mapped[str] = mapped_column(Text, nullable=False)
    percent_complete: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    certificate_eligible: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default="not_started"
    )  # not_started|in_progress|completed
    ledger_watermark: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    last_activity_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __table_args__ = (Index("ix_snapshots_course", "course_id"),)
