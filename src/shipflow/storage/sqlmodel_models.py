"""SQLModel ORM tables for orchestrator storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class Stack(SQLModel, table=True):
    __tablename__ = "stacks"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("repo_full_name", "branch", name="uq_stacks_repo_branch"),
    )

    stack_id: str = Field(primary_key=True)
    repo_full_name: str = Field(index=True)
    branch: str
    repo_url: str
    release_status_delay_seconds: int = 0
    dependencies_steps_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    deploy_steps_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    ci_run_steps_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    ci_verify_steps_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    ci_abort_steps_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class PredictiveBuild(SQLModel, table=True):
    __tablename__ = "predictive_builds"  # type: ignore[bad-override]

    build_id: str = Field(primary_key=True)
    pipeline_id: str = Field(index=True)
    branch: str
    mode: str = "default"
    status: str = Field(index=True)
    build_message: str = Field(default="", sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class PredictiveBranch(SQLModel, table=True):
    __tablename__ = "predictive_branches"  # type: ignore[bad-override]

    branch_id: str = Field(primary_key=True)
    build_id: str = Field(
        sa_column=Column(
            ForeignKey("predictive_builds.build_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    stack_id: str = Field(
        sa_column=Column(
            ForeignKey("stacks.stack_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    branch: str
    commit_sha: str | None = None
    status: str = Field(index=True)
    lock_version: int = 0
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class Task(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_tasks_queue", "status", "created_at"),)

    task_id: str = Field(primary_key=True)
    stack_id: str = Field(
        sa_column=Column(
            ForeignKey("stacks.stack_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    kind: str = Field(index=True)
    status: str = Field(index=True)
    pid: int | None = None
    since_commit_sha: str | None = None
    until_commit_sha: str | None = None
    predictive_build_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("predictive_builds.build_id", ondelete="CASCADE"),
            nullable=True,
            index=True,
        ),
    )
    predictive_branch_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("predictive_branches.branch_id", ondelete="CASCADE"),
            nullable=True,
            index=True,
        ),
    )
    predictive_task_type: str = Field(default="none", index=True)
    abort_requested_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    abort_attempts: int = 0
    worker_id: str | None = Field(default=None, index=True)
    error_summary: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    heartbeat_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskChunk(SQLModel, table=True):
    __tablename__ = "task_chunks"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    text: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskEvent(SQLModel, table=True):
    __tablename__ = "task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_events_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class CiJobsStatus(SQLModel, table=True):
    __tablename__ = "ci_jobs_statuses"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("branch_id", "name", name="uq_ci_jobs_statuses_branch_name"),
    )

    id: int | None = Field(default=None, primary_key=True)
    branch_id: str = Field(
        sa_column=Column(
            ForeignKey("predictive_branches.branch_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    build_id: str | None = Field(default=None, index=True)
    name: str
    status: str = Field(index=True)
    link: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class MergeRequest(SQLModel, table=True):
    __tablename__ = "merge_requests"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("stack_id", "number", name="uq_merge_requests_stack_number"),
    )

    merge_request_id: str = Field(primary_key=True)
    stack_id: str = Field(
        sa_column=Column(
            ForeignKey("stacks.stack_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    number: int
    branch: str
    status: str = Field(index=True)
    rejection_reason: str | None = None
    parent_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("merge_requests.merge_request_id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class MergeRequestComment(SQLModel, table=True):
    __tablename__ = "merge_request_comments"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    merge_request_id: str = Field(
        sa_column=Column(
            ForeignKey("merge_requests.merge_request_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    body: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class PredictiveMergeRequest(SQLModel, table=True):
    __tablename__ = "predictive_merge_requests"  # type: ignore[bad-override]

    id: str = Field(primary_key=True)
    branch_id: str = Field(
        sa_column=Column(
            ForeignKey("predictive_branches.branch_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    merge_request_id: str = Field(
        sa_column=Column(
            ForeignKey("merge_requests.merge_request_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    head_sha: str | None = None
    status: str = Field(index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Counter(SQLModel, table=True):
    __tablename__ = "counters"  # type: ignore[bad-override]

    key: str = Field(primary_key=True)
    value: int = 0
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
