"""Initial batch state schema: jobs, settings, checkpoint, dedup, skips, log ring."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261017_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "batch_jobs",
        sa.Column("job_index", sa.Integer(), nullable=False),
        sa.Column("input_text", sa.Text(), nullable=False),
        sa.PrimaryKeyConstraint("job_index"),
    )

    op.create_table(
        "run_settings",
        sa.Column("settings_id", sa.Integer(), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("settings_id"),
    )

    op.create_table(
        "run_state",
        sa.Column("state_id", sa.Integer(), nullable=False),
        sa.Column("next_index", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(), nullable=False, server_default="idle"),
        sa.Column("stop_requested", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("next_index >= 0", name="ck_run_state_next_index_non_negative"),
        sa.PrimaryKeyConstraint("state_id"),
    )

    op.create_table(
        "dedup_results",
        sa.Column("result_id", sa.String(), nullable=False),
        sa.Column("artifact_id", sa.String(), nullable=True),
        sa.Column("stored_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("result_id"),
    )

    op.create_table(
        "skipped_jobs",
        sa.Column("skip_id", sa.Integer(), nullable=False),
        sa.Column("job_index", sa.Integer(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("skipped_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("skip_id"),
    )
    op.create_index("ix_skipped_jobs_job_index", "skipped_jobs", ["job_index"])

    op.create_table(
        "run_log",
        sa.Column("log_id", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("level", sa.String(), nullable=False, server_default="info"),
        sa.Column("message", sa.Text(), nullable=False),
        sa.PrimaryKeyConstraint("log_id"),
    )


def downgrade() -> None:
    op.drop_table("run_log")
    op.drop_index("ix_skipped_jobs_job_index", table_name="skipped_jobs")
    op.drop_table("skipped_jobs")
    op.drop_table("dedup_results")
    op.drop_table("run_state")
    op.drop_table("run_settings")
    op.drop_table("batch_jobs")
