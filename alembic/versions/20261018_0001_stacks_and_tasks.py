"""Stacks, predictive branches and task queue baseline."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "stacks",
        sa.Column("stack_id", sa.String(), nullable=False),
        sa.Column("repo_full_name", sa.String(), nullable=False),
        sa.Column("branch", sa.String(), nullable=False),
        sa.Column("repo_url", sa.String(), nullable=False),
        sa.Column(
            "release_status_delay_seconds",
            sa.Integer(),
            nullable=False,
            server_default="0",
        ),
        sa.Column("dependencies_steps_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("deploy_steps_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("ci_run_steps_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("ci_verify_steps_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("ci_abort_steps_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("stack_id"),
        sa.UniqueConstraint("repo_full_name", "branch", name="uq_stacks_repo_branch"),
    )
    op.create_index("ix_stacks_repo_full_name", "stacks", ["repo_full_name"])

    op.create_table(
        "predictive_builds",
        sa.Column("build_id", sa.String(), nullable=False),
        sa.Column("pipeline_id", sa.String(), nullable=False),
        sa.Column("branch", sa.String(), nullable=False),
        sa.Column("mode", sa.String(), nullable=False, server_default="default"),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("build_message", sa.Text(), nullable=False, server_default=""),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("build_id"),
    )
    op.create_index("ix_predictive_builds_pipeline_id", "predictive_builds", ["pipeline_id"])
    op.create_index("ix_predictive_builds_status", "predictive_builds", ["status"])

    op.create_table(
        "predictive_branches",
        sa.Column("branch_id", sa.String(), nullable=False),
        sa.Column("build_id", sa.String(), nullable=False),
        sa.Column("stack_id", sa.String(), nullable=False),
        sa.Column("branch", sa.String(), nullable=False),
        sa.Column("commit_sha", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("lock_version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(
            ["build_id"],
            ["predictive_builds.build_id"],
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(["stack_id"], ["stacks.stack_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("branch_id"),
    )
    op.create_index("ix_predictive_branches_build_id", "predictive_branches", ["build_id"])
    op.create_index("ix_predictive_branches_stack_id", "predictive_branches", ["stack_id"])
    op.create_index("ix_predictive_branches_status", "predictive_branches", ["status"])

    op.create_table(
        "tasks",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("stack_id", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("pid", sa.Integer(), nullable=True),
        sa.Column("since_commit_sha", sa.String(), nullable=True),
        sa.Column("until_commit_sha", sa.String(), nullable=True),
        sa.Column("predictive_build_id", sa.String(), nullable=True),
        sa.Column("predictive_branch_id", sa.String(), nullable=True),
        sa.Column(
            "predictive_task_type",
            sa.String(),
            nullable=False,
            server_default="none",
        ),
        sa.Column("abort_requested_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("abort_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("error_summary", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("heartbeat_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["stack_id"], ["stacks.stack_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(
            ["predictive_build_id"],
            ["predictive_builds.build_id"],
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["predictive_branch_id"],
            ["predictive_branches.branch_id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("task_id"),
    )
    op.create_index("idx_tasks_queue", "tasks", ["status", "created_at"])
    op.create_index("ix_tasks_predictive_branch_id", "tasks", ["predictive_branch_id"])
    op.create_index("ix_tasks_stack_id", "tasks", ["stack_id"])

    op.create_table(
        "task_chunks",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("text", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_task_chunks_task_id", "task_chunks", ["task_id"])

    op.create_table(
        "task_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_task_events_task_time", "task_events", ["task_id", "created_at"])


def downgrade() -> None:
    op.drop_index("idx_task_events_task_time", table_name="task_events")
    op.drop_table("task_events")
    op.drop_index("ix_task_chunks_task_id", table_name="task_chunks")
    op.drop_table("task_chunks")
    op.drop_index("ix_tasks_stack_id", table_name="tasks")
    op.drop_index("ix_tasks_predictive_branch_id", table_name="tasks")
    op.drop_index("idx_tasks_queue", table_name="tasks")
    op.drop_table("tasks")
    op.drop_index("ix_predictive_branches_status", table_name="predictive_branches")
    op.drop_index("ix_predictive_branches_stack_id", table_name="predictive_branches")
    op.drop_index("ix_predictive_branches_build_id", table_name="predictive_branches")
    op.drop_table("predictive_branches")
    op.drop_index("ix_predictive_builds_status", table_name="predictive_builds")
    op.drop_index("ix_predictive_builds_pipeline_id", table_name="predictive_builds")
    op.drop_table("predictive_builds")
    op.drop_index("ix_stacks_repo_full_name", table_name="stacks")
    op.drop_table("stacks")
