"""Create run snapshot table for suspended runs."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261017_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "run_snapshots",
        sa.Column("run_id", sa.String(), nullable=False),
        sa.Column("stage", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("state_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("run_id"),
    )
    op.create_index("ix_run_snapshots_stage", "run_snapshots", ["stage"])
    op.create_index("ix_run_snapshots_status", "run_snapshots", ["status"])
    op.create_index("ix_run_snapshots_expires_at", "run_snapshots", ["expires_at"])


def downgrade() -> None:
    op.drop_index("ix_run_snapshots_expires_at", table_name="run_snapshots")
    op.drop_index("ix_run_snapshots_status", table_name="run_snapshots")
    op.drop_index("ix_run_snapshots_stage", table_name="run_snapshots")
    op.drop_table("run_snapshots")
