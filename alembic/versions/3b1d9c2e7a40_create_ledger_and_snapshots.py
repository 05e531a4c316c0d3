"""create ledger_entries and progress_snapshots

Revision ID: 3b1d9c2e7a40
Revises:
Create Date: 2026-10-17 00:00:00.000000

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3b1d9c2e7a40"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "ledger_entries",
        sa.Column(
            "ledger_sequence",
            sa.BigInteger(),
            sa.Identity(always=True),
            primary_key=True,
        ),
        sa.Column("learner_id", sa.String(length=255), nullable=False),
        sa.Column("course_id", sa.String(length=255), nullable=False),
        sa.Column("section_id", sa.String(length=255), nullable=False),
        sa.Column("event_type", sa.String(length=32), nullable=False),
        sa.Column("score", sa.Float(), nullable=True),
        sa.Column("client_timestamp", sa.BigInteger(), nullable=False),
        sa.Column("device_id", sa.String(length=255), nullable=False),
        sa.Column("sequence_number", sa.BigInteger(), nullable=False),
        sa.Column("accepted_at", sa.BigInteger(), nullable=False),
        sa.UniqueConstraint(
            "learner_id",
            "course_id",
            "device_id",
            "sequence_number",
            name="uq_ledger_device_sequence",
        ),
    )
    op.create_index(
        "ix_ledger_learner_course_seq",
        "ledger_entries",
        ["learner_id", "course_id", "ledger_sequence"],
    )

    op.create_table(
        "progress_snapshots",
        sa.Column("learner_id", sa.String(length=255), primary_key=True),
        sa.Column("course_id", sa.String(length=255), primary_key=True),
        sa.Column("structure_version", sa.Integer(), nullable=False),
        sa.Column("snapshot_json", sa.Text(), nullable=False),
        sa.Column("percent_complete", sa.Float(), nullable=False, server_default="0"),
        sa.Column(
            "certificate_eligible", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column(
            "status", sa.String(length=32), nullable=False, server_default="not_started"
        ),
        sa.Column("ledger_watermark", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("last_activity_at", sa.BigInteger(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
    )
    op.create_index("ix_snapshots_course", "progress_snapshots", ["course_id"])


def downgrade() -> None:
    op.drop_index("ix_snapshots_course", table_name="progress_snapshots")
    op.drop_table("progress_snapshots")
    op.drop_index("ix_ledger_learner_course_seq", table_name="ledger_entries")
    op.drop_table("ledger_entries")
