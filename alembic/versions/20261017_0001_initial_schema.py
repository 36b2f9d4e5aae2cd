"""Create relay schema: clusters, tools, jobs, runs, locks, events."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261017_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "clusters",
        sa.Column("cluster_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("cluster_id"),
    )
    op.create_index("ix_clusters_cluster_id", "clusters", ["cluster_id"], unique=False)
    op.create_index("ix_clusters_name", "clusters", ["name"], unique=False)

    op.create_table(
        "tool_definitions",
        sa.Column("cluster_id", sa.String(), server_default="default", nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.String(), nullable=False),
        sa.Column("schema_json", sa.Text(), nullable=True),
        sa.Column("config_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["cluster_id"], ["clusters.cluster_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("cluster_id", "name"),
    )

    op.create_table(
        "jobs",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("cluster_id", sa.String(), server_default="default", nullable=False),
        sa.Column("target_fn", sa.String(), nullable=False),
        sa.Column("target_args", sa.Text(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("cache_key", sa.String(), nullable=True),
        sa.Column("remaining_attempts", sa.Integer(), nullable=False),
        sa.Column("timeout_interval_seconds", sa.Integer(), nullable=True),
        sa.Column("executing_machine_id", sa.String(), nullable=True),
        sa.Column("last_retrieved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "approval_requested",
            sa.Boolean(),
            server_default=sa.text("0"),
            nullable=False,
        ),
        sa.Column("approved", sa.Boolean(), nullable=True),
        sa.Column("result", sa.Text(), nullable=True),
        sa.Column("result_type", sa.String(), nullable=True),
        sa.Column("resulted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("function_execution_time_ms", sa.Integer(), nullable=True),
        sa.Column("run_id", sa.String(), nullable=True),
        sa.Column("auth_context", sa.Text(), nullable=True),
        sa.Column("run_context", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["cluster_id"], ["clusters.cluster_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("cluster_id", "id"),
    )
    op.create_index("ix_jobs_status", "jobs", ["status"], unique=False)
    op.create_index(
        "idx_jobs_dispatch",
        "jobs",
        ["cluster_id", "status", "target_fn"],
        unique=False,
    )
    op.create_index("idx_jobs_run", "jobs", ["cluster_id", "run_id"], unique=False)
    op.create_index(
        "idx_jobs_cache",
        "jobs",
        ["cluster_id", "target_fn", "cache_key", "resulted_at"],
        unique=False,
    )

    op.create_table(
        "runs",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("cluster_id", sa.String(), server_default="default", nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("attached_functions", sa.Text(), nullable=True),
        sa.Column("result_schema", sa.Text(), nullable=True),
        sa.Column("interactive", sa.Boolean(), server_default=sa.text("1"), nullable=False),
        sa.Column("system_prompt", sa.Text(), nullable=True),
        sa.Column("on_status_change", sa.Text(), nullable=True),
        sa.Column("tags", sa.Text(), nullable=True),
        sa.Column("owner_id", sa.String(), nullable=True),
        sa.Column("auth_context", sa.Text(), nullable=True),
        sa.Column("context", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["cluster_id"], ["clusters.cluster_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("cluster_id", "id"),
    )
    op.create_index("ix_runs_status", "runs", ["status"], unique=False)
    op.create_index("idx_runs_cluster_time", "runs", ["cluster_id", "created_at"], unique=False)

    op.create_table(
        "run_messages",
        sa.Column("seq", sa.Integer(), nullable=False),
        sa.Column("message_id", sa.String(), nullable=False),
        sa.Column("cluster_id", sa.String(), server_default="default", nullable=False),
        sa.Column("run_id", sa.String(), nullable=False),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("data_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["cluster_id"], ["clusters.cluster_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("seq"),
        sa.UniqueConstraint("message_id"),
    )
    op.create_index("ix_run_messages_run_id", "run_messages", ["run_id"], unique=False)
    op.create_index(
        "idx_run_messages_run_seq",
        "run_messages",
        ["cluster_id", "run_id", "seq"],
        unique=False,
    )

    op.create_table(
        "run_locks",
        sa.Column("cluster_id", sa.String(), nullable=False),
        sa.Column("run_id", sa.String(), nullable=False),
        sa.Column("holder", sa.String(), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("cluster_id", "run_id"),
    )

    op.create_table(
        "events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("cluster_id", sa.String(), nullable=False),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=True),
        sa.Column("run_id", sa.String(), nullable=True),
        sa.Column("machine_id", sa.String(), nullable=True),
        sa.Column("target_fn", sa.String(), nullable=True),
        sa.Column("result_type", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=True),
        sa.Column("meta_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_events_type", "events", ["type"], unique=False)
    op.create_index("idx_events_cluster_time", "events", ["cluster_id", "created_at"], unique=False)
    op.create_index("idx_events_job", "events", ["cluster_id", "job_id"], unique=False)
    op.create_index("idx_events_run", "events", ["cluster_id", "run_id"], unique=False)


def downgrade() -> None:
    op.drop_table("events")
    op.drop_table("run_locks")
    op.drop_table("run_messages")
    op.drop_table("runs")
    op.drop_table("jobs")
    op.drop_table("tool_definitions")
    op.drop_table("clusters")
