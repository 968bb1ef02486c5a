"""Pure transition rules of the predictive branch state machine.

Nothing here touches storage: the controller loads the inputs, asks for a
decision and applies it. That keeps every rule testable with plain values.
"""

from __future__ import annotations

from dataclasses import dataclass

from shipflow.execution.models import PredictiveTaskType, TaskStatus
from shipflow.predictive.models import (
    TERMINAL_BRANCH_STATUSES,
    BranchStatus,
    CiCoarseStatus,
    RejectReason,
)

MERGE_CONFLICT_SIGNATURE = "terminated with exit status 128"

_HEALTHY_TASK_STATUSES = frozenset({TaskStatus.SUCCESS, TaskStatus.PENDING, TaskStatus.RUNNING})
_IN_FLIGHT_TASK_STATUSES = frozenset({TaskStatus.PENDING, TaskStatus.RUNNING})

# Canceling only ends as canceled or failed.
_CANCELING_EXITS = frozenset(
    {BranchStatus.TASKS_CANCELING, BranchStatus.TASKS_CANCELED, BranchStatus.FAILED},
)

# Forward-only ordering; terminal states share the top rank and never move.
_STATUS_RANK = {
    BranchStatus.PENDING: 0,
    BranchStatus.TASKS_RUNNING: 1,
    BranchStatus.TASKS_VERIFICATION: 2,
    BranchStatus.TASKS_VERIFYING: 3,
    BranchStatus.TASKS_CANCELING: 4,
    BranchStatus.TASKS_CANCELED: 5,
    BranchStatus.FAILED: 5,
    BranchStatus.COMPLETED: 5,
}


@dataclass(frozen=True, slots=True)
class BranchDecision:
    """Outcome of evaluating one task against a branch.

    ``reject_reason`` is set when the decision is a failure that must also
    reject the branch's waiting merge requests.
    """

    target: BranchStatus | None = None
    reject_reason: RejectReason | None = None


NO_CHANGE = BranchDecision()


def new_task_type(status: BranchStatus) -> PredictiveTaskType:
    if status == BranchStatus.PENDING:
        return PredictiveTaskType.RUN
    if status in {BranchStatus.TASKS_VERIFICATION, BranchStatus.TASKS_VERIFYING}:
        return PredictiveTaskType.VERIFY
    if status == BranchStatus.TASKS_CANCELING:
        return PredictiveTaskType.ABORT
    return PredictiveTaskType.NONE


def can_transition(current: BranchStatus, target: BranchStatus) -> bool:
    """Transitions only move forward and never leave a terminal state."""

    if current in TERMINAL_BRANCH_STATUSES:
        return False
    if current == BranchStatus.TASKS_CANCELING:
        return target in _CANCELING_EXITS
    return _STATUS_RANK[target] >= _STATUS_RANK[current]


def effective_task_status(
    task_status: TaskStatus,
    *,
    parse_failures: int,
    threshold: int,
) -> TaskStatus:
    """Force ``failed`` once consecutive unparseable outputs exceed ``threshold``."""

    if parse_failures > threshold:
        return TaskStatus.FAILED
    return task_status


def is_merge_conflict(output: str) -> bool:
    return MERGE_CONFLICT_SIGNATURE in output


def decide(
    task_type: PredictiveTaskType,
    task_status: TaskStatus,
    ci_status: CiCoarseStatus,
    *,
    output: str = "",
) -> BranchDecision:
    """Map a task outcome and CI status to the branch's next state."""

    if task_status not in _HEALTHY_TASK_STATUSES:
        if task_type == PredictiveTaskType.RUN and is_merge_conflict(output):
            return BranchDecision(
                target=BranchStatus.FAILED,
                reject_reason=RejectReason.PREDICTIVE_BRANCH_CREATION_MERGE_FAILED,
            )
        return BranchDecision(
            target=BranchStatus.FAILED,
            reject_reason=RejectReason.STACK_TASKS_FAILED,
        )

    if task_type == PredictiveTaskType.RUN:
        if task_status in _IN_FLIGHT_TASK_STATUSES:
            return BranchDecision(target=BranchStatus.TASKS_RUNNING)
        return BranchDecision(target=BranchStatus.TASKS_VERIFICATION)

    if task_type == PredictiveTaskType.VERIFY:
        if task_status in _IN_FLIGHT_TASK_STATUSES or ci_status == CiCoarseStatus.RUNNING:
            return BranchDecision(target=BranchStatus.TASKS_VERIFYING)
        if ci_status == CiCoarseStatus.SUCCESS:
            return BranchDecision(target=BranchStatus.COMPLETED)
        if ci_status == CiCoarseStatus.ABORTED:
            return BranchDecision(
                target=BranchStatus.FAILED,
                reject_reason=RejectReason.STACK_TASKS_FAILED,
            )
        return NO_CHANGE

    if task_type == PredictiveTaskType.ABORT:
        if task_status in _IN_FLIGHT_TASK_STATUSES:
            return BranchDecision(target=BranchStatus.TASKS_CANCELING)
        return BranchDecision(target=BranchStatus.TASKS_CANCELED)

    return NO_CHANGE
