"""Domain models for task execution and the task queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    ERROR = "error"
    ABORTED = "aborted"


TERMINAL_TASK_STATUSES = frozenset(
    {
        TaskStatus.SUCCESS,
        TaskStatus.FAILED,
        TaskStatus.TIMED_OUT,
        TaskStatus.ERROR,
        TaskStatus.ABORTED,
    },
)

# Task event recorded once a deploy outlived its stack's release validation delay.
HEALTHY_EVENT = "healthy"


class TaskKind(str, Enum):
    DEPLOY = "deploy"
    PREDICTIVE = "predictive"


class PredictiveTaskType(str, Enum):
    """Which predictive workflow a task drives."""

    RUN = "run"
    VERIFY = "verify"
    ABORT = "abort"
    NONE = "none"


@dataclass(slots=True)
class StackCreate:
    """Input payload for registering a stack."""

    stack_id: str
    repo_full_name: str
    branch: str
    repo_url: str
    release_status_delay_seconds: int = 0
    dependencies_steps: tuple[str, ...] = ()
    deploy_steps: tuple[str, ...] = ()
    ci_run_steps: tuple[str, ...] = ()
    ci_verify_steps: tuple[str, ...] = ()
    ci_abort_steps: tuple[str, ...] = ()


@dataclass(slots=True)
class StackView:
    """Deployable unit (repository + branch) with its workflow steps."""

    stack_id: str
    repo_full_name: str
    branch: str
    repo_url: str
    release_status_delay_seconds: int
    dependencies_steps: tuple[str, ...]
    deploy_steps: tuple[str, ...]
    ci_run_steps: tuple[str, ...]
    ci_verify_steps: tuple[str, ...]
    ci_abort_steps: tuple[str, ...]
    created_at: datetime


@dataclass(slots=True)
class TaskCreate:
    """Input payload for enqueuing a deploy task."""

    stack_id: str
    until_commit_sha: str
    since_commit_sha: str | None = None
    task_id: str | None = None


@dataclass(slots=True)
class TaskView:
    """Readable task view for engine, controller and CLI logic."""

    task_id: str
    stack_id: str
    kind: TaskKind
    status: TaskStatus
    pid: int | None
    since_commit_sha: str | None
    until_commit_sha: str | None
    predictive_build_id: str | None
    predictive_branch_id: str | None
    predictive_task_type: PredictiveTaskType
    abort_requested_at: datetime | None
    abort_attempts: int
    worker_id: str | None
    error_summary: str | None
    created_at: datetime
    started_at: datetime | None
    heartbeat_at: datetime | None
    finished_at: datetime | None
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for audit trail."""

    event_id: int
    task_id: str
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskDetails:
    """Task details with event stream and output log."""

    task: TaskView
    events: list[TaskEventView]
    output: str
