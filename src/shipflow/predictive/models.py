"""Domain models for predictive branches, their merge requests and CI jobs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class BranchStatus(str, Enum):
    """Predictive branch lifecycle states."""

    PENDING = "pending"
    TASKS_RUNNING = "tasks_running"
    TASKS_VERIFICATION = "tasks_verification"
    TASKS_VERIFYING = "tasks_verifying"
    TASKS_CANCELING = "tasks_canceling"
    TASKS_CANCELED = "tasks_canceled"
    FAILED = "failed"
    COMPLETED = "completed"


TERMINAL_BRANCH_STATUSES = frozenset(
    {BranchStatus.TASKS_CANCELED, BranchStatus.FAILED, BranchStatus.COMPLETED},
)


class PredictiveMergeRequestStatus(str, Enum):
    PENDING = "pending"
    REJECTED = "rejected"
    CANCELED = "canceled"
    MERGED = "merged"


class MergeRequestStatus(str, Enum):
    """Underlying change request states that this layer moves between."""

    PENDING = "pending"
    REJECTED = "rejected"
    COMPLETED = "completed"


class CiJobState(str, Enum):
    RUNNING = "running"
    FAILED = "failed"
    ABORTED = "aborted"
    COMPLETED = "completed"


class CiCoarseStatus(str, Enum):
    """Overall CI outcome reported in a task's output."""

    SUCCESS = "success"
    PENDING = "pending"
    RUNNING = "running"
    ABORTED = "aborted"
    OTHER = "other"


class RejectReason(str, Enum):
    """Reasons a branch comments on or rejects its merge requests."""

    STACK_TASKS_FAILED = "stack_tasks_failed"
    PIPELINE_TASKS_FAILED = "pipeline_tasks_failed"
    PREDICTIVE_BRANCH_CREATION_MERGE_FAILED = "predictive_branch_creation_merge_failed"
    COMMIT_VALIDATION_FAILED = "commit_validation_failed"
    MERGE_PREDICTIVE_TO_STACK_FAILED = "merge_predictive_to_stack_failed"
    MERGE_MR_TO_PREDICTIVE_FAILED = "merge_mr_to_predictive_failed"
    MR_MERGED_TO_PREDICTIVE = "mr_merged_to_predictive"
    CANCELED_DUE_TO_EMERGENCY = "canceled_due_to_emergency"
    MR_STOPPED = "mr_stopped"


MERGE_CONFLICT_REJECTION = "merge_conflict"


@dataclass(slots=True)
class CiJob:
    """One job entry from a CI summary."""

    status: str
    link: str | None = None


@dataclass(slots=True)
class CiSummary:
    """Parsed CI summary: coarse status, per-job map and parse outcome."""

    status: CiCoarseStatus
    jobs: dict[str, CiJob] = field(default_factory=dict)
    parse_failed: bool = False


@dataclass(slots=True)
class PredictiveBuildCreate:
    pipeline_id: str
    branch: str
    mode: str = "default"
    build_message: str = ""
    build_id: str | None = None


@dataclass(slots=True)
class PredictiveBuildView:
    build_id: str
    pipeline_id: str
    branch: str
    mode: str
    status: str
    build_message: str
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class PredictiveBranchCreate:
    """Input payload for opening a predictive branch on a stack."""

    build_id: str
    stack_id: str
    branch: str
    commit_sha: str | None = None
    merge_request_ids: tuple[str, ...] = ()
    branch_id: str | None = None


@dataclass(slots=True)
class PredictiveBranchView:
    """Readable predictive branch view for controller and CLI logic."""

    branch_id: str
    build_id: str
    stack_id: str
    branch: str
    commit_sha: str | None
    status: BranchStatus
    lock_version: int
    created_at: datetime
    updated_at: datetime
    finished_at: datetime | None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_BRANCH_STATUSES

    @property
    def tasks_in_progress(self) -> bool:
        return not self.is_terminal

    @property
    def branch_failed(self) -> bool:
        return self.status in {BranchStatus.TASKS_CANCELED, BranchStatus.FAILED}


@dataclass(slots=True)
class MergeRequestCreate:
    stack_id: str
    number: int
    branch: str
    parent_id: str | None = None
    merge_request_id: str | None = None


@dataclass(slots=True)
class MergeRequestView:
    merge_request_id: str
    stack_id: str
    number: int
    branch: str
    status: str
    rejection_reason: str | None
    parent_id: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class PredictiveMergeRequestView:
    """Binding of one merge request to one predictive branch."""

    pmr_id: str
    branch_id: str
    merge_request_id: str
    head_sha: str | None
    status: PredictiveMergeRequestStatus
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class CiJobStatusView:
    job_id: int
    branch_id: str
    build_id: str | None
    name: str
    status: CiJobState
    link: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class BranchDetails:
    """Branch with its merge requests, CI jobs and tasks for inspection."""

    branch: PredictiveBranchView
    merge_requests: list[PredictiveMergeRequestView]
    ci_jobs: list[CiJobStatusView]
    comments: dict[str, list[str]] = field(default_factory=dict)
