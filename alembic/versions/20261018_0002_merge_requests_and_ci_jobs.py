"""Merge request tracking, CI job statuses and atomic counters."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0002"
down_revision = "20261018_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "merge_requests",
        sa.Column("merge_request_id", sa.String(), nullable=False),
        sa.Column("stack_id", sa.String(), nullable=False),
        sa.Column("number", sa.Integer(), nullable=False),
        sa.Column("branch", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("rejection_reason", sa.String(), nullable=True),
        sa.Column("parent_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["stack_id"], ["stacks.stack_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(
            ["parent_id"],
            ["merge_requests.merge_request_id"],
            ondelete="SET NULL",
        ),
        sa.PrimaryKeyConstraint("merge_request_id"),
        sa.UniqueConstraint("stack_id", "number", name="uq_merge_requests_stack_number"),
    )
    op.create_index("ix_merge_requests_parent_id", "merge_requests", ["parent_id"])
    op.create_index("ix_merge_requests_status", "merge_requests", ["status"])

    op.create_table(
        "merge_request_comments",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("merge_request_id", sa.String(), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["merge_request_id"],
            ["merge_requests.merge_request_id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_merge_request_comments_merge_request_id",
        "merge_request_comments",
        ["merge_request_id"],
    )

    op.create_table(
        "predictive_merge_requests",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("branch_id", sa.String(), nullable=False),
        sa.Column("merge_request_id", sa.String(), nullable=False),
        sa.Column("head_sha", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["branch_id"],
            ["predictive_branches.branch_id"],
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["merge_request_id"],
            ["merge_requests.merge_request_id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_predictive_merge_requests_branch_id",
        "predictive_merge_requests",
        ["branch_id"],
    )
    op.create_index(
        "ix_predictive_merge_requests_status",
        "predictive_merge_requests",
        ["status"],
    )

    op.create_table(
        "ci_jobs_statuses",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("branch_id", sa.String(), nullable=False),
        sa.Column("build_id", sa.String(), nullable=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("link", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["branch_id"],
            ["predictive_branches.branch_id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("branch_id", "name", name="uq_ci_jobs_statuses_branch_name"),
    )
    op.create_index("ix_ci_jobs_statuses_branch_id", "ci_jobs_statuses", ["branch_id"])

    op.create_table(
        "counters",
        sa.Column("key", sa.String(), nullable=False),
        sa.Column("value", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("key"),
    )


def downgrade() -> None:
    op.drop_table("counters")
    op.drop_index("ix_ci_jobs_statuses_branch_id", table_name="ci_jobs_statuses")
    op.drop_table("ci_jobs_statuses")
    op.drop_index("ix_predictive_merge_requests_status", table_name="predictive_merge_requests")
    op.drop_index(
        "ix_predictive_merge_requests_branch_id",
        table_name="predictive_merge_requests",
    )
    op.drop_table("predictive_merge_requests")
    op.drop_index(
        "ix_merge_request_comments_merge_request_id",
        table_name="merge_request_comments",
    )
    op.drop_table("merge_request_comments")
    op.drop_index("ix_merge_requests_status", table_name="merge_requests")
    op.drop_index("ix_merge_requests_parent_id", table_name="merge_requests")
    op.drop_table("merge_requests")
