"""Refresh and follow-up entry points invoked by the worker and the CLI."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from shipflow.execution.models import TaskKind, TaskStatus, TaskView
from shipflow.execution.repository import TaskRepository
from shipflow.predictive.controller import PredictiveBranchController
from shipflow.predictive.models import BranchStatus
from shipflow.storage.common import utc_now

logger = logging.getLogger(__name__)


class RefreshJobs:
    """Re-evaluate branches after a task finishes or a merge request changes."""

    def __init__(self, controller: PredictiveBranchController) -> None:
        self.controller = controller

    def refresh_branch(self, branch_id: str) -> BranchStatus:
        """Evaluate the branch's latest finished task, then schedule whatever comes next.

        A queued or running task has no output yet and is left for the worker
        to report once it finishes.
        """

        latest = self.controller.tasks.latest_branch_task(branch_id=branch_id)
        if latest is not None and latest.is_terminal:
            self.controller.update_status(latest)
        self.controller.trigger_task(branch_id)
        return self.controller.repository.get_branch(branch_id).status

    def on_task_finished(self, task: TaskView) -> None:
        if task.predictive_branch_id is None:
            return
        status = self.refresh_branch(task.predictive_branch_id)
        logger.info(
            "Predictive branch %s refreshed after task %s: %s",
            task.predictive_branch_id,
            task.task_id,
            status.value,
        )

    def refresh_merge_request(self, merge_request_id: str) -> list[str]:
        """Refresh a merge request; a root request also refreshes its stacked children.

        Returns the ids of the branches that were re-evaluated.
        """

        repository = self.controller.repository
        merge_request = repository.get_merge_request(merge_request_id)
        refreshed: list[str] = []
        if merge_request.parent_id is None:
            for dependent in repository.dependent_merge_requests(merge_request_id):
                refreshed.extend(self._refresh_branches_of(dependent.merge_request_id))
        refreshed.extend(self._refresh_branches_of(merge_request_id))
        return sorted(set(refreshed))

    def _refresh_branches_of(self, merge_request_id: str) -> list[str]:
        refreshed: list[str] = []
        for branch in self.controller.repository.branches_for_merge_request(merge_request_id):
            if not branch.tasks_in_progress:
                continue
            self.refresh_branch(branch.branch_id)
            refreshed.append(branch.branch_id)
        return refreshed


class DeployJobs:
    """Follow-up work on finished deploys."""

    def __init__(self, tasks: TaskRepository) -> None:
        self.tasks = tasks

    def mark_deploy_healthy(self, task_id: str, *, now: datetime | None = None) -> bool:
        """Report a validating deploy healthy once its stack's release delay has passed.

        A deploy is validating while it succeeded on a stack with a release
        delay and has not been reported healthy yet. Returns True when the
        ``healthy`` event was recorded by this call.
        """

        task = self.tasks.get_task(task_id)
        if task is None:
            raise RuntimeError(f"Task not found: {task_id}")
        stack = self.tasks.get_stack(task.stack_id)
        delay = stack.release_status_delay_seconds
        finished_at = task.finished_at
        if finished_at is None or not self._validating(task, delay):
            logger.info("Deploy %s is not validating, nothing to report", task_id)
            return False
        due_at = finished_at + timedelta(seconds=delay)
        if (now or utc_now()) < due_at:
            logger.info("Deploy %s is still validating until %s", task_id, due_at.isoformat())
            return False
        recorded = self.tasks.mark_deploy_healthy(
            task_id=task_id,
            description=f"No issues were signalled after {describe_delay(delay)}",
        )
        if recorded:
            logger.info("Deploy %s on %s reported healthy", task_id, stack.stack_id)
        return recorded

    def _validating(self, task: TaskView, delay: int) -> bool:
        return (
            task.kind == TaskKind.DEPLOY
            and task.status == TaskStatus.SUCCESS
            and delay > 0
            and not self.tasks.is_deploy_healthy(task_id=task.task_id)
        )


def describe_delay(seconds: int) -> str:
    if seconds % 3600 == 0:
        hours = seconds // 3600
        return f"{hours} hour{'s' if hours != 1 else ''}"
    if seconds % 60 == 0:
        minutes = seconds // 60
        return f"{minutes} minute{'s' if minutes != 1 else ''}"
    return f"{seconds} second{'s' if seconds != 1 else ''}"
