"""Predictive branch controller: task scheduling, status evaluation and fan-out."""

from __future__ import annotations

import logging

from shipflow.best_effort import best_effort
from shipflow.execution.engine import TaskExecutor
from shipflow.execution.models import PredictiveTaskType, TaskView
from shipflow.execution.repository import TaskRepository
from shipflow.metrics import (
    MERGE_REQUESTS,
    PREDICTIVE_BRANCH_COUNT,
    PREDICTIVE_BRANCH_DURATION_SECONDS_SUM,
    ApplicationMetrics,
)
from shipflow.predictive.ci_jobs import CiJobStatusTracker
from shipflow.predictive.ci_summary import parse_task_output
from shipflow.predictive.counters import CounterStore, parse_failure_key
from shipflow.predictive.merge_requests import CommentSink, PredictiveMergeRequestTracker
from shipflow.predictive.models import (
    MERGE_CONFLICT_REJECTION,
    TERMINAL_BRANCH_STATUSES,
    BranchStatus,
    MergeRequestStatus,
    PredictiveBranchView,
    PredictiveMergeRequestStatus,
    RejectReason,
)
from shipflow.predictive.repository import PredictiveRepository
from shipflow.predictive.state_machine import (
    BranchDecision,
    can_transition,
    decide,
    effective_task_status,
    is_merge_conflict,
    new_task_type,
)

logger = logging.getLogger(__name__)

CI_FAILURE_MESSAGE = (
    "Failed to process your request due to CI failures.\n"
    "For additional information, please check the CI checks below.\n\n"
    "This can be due to a CI failure on another branch. If you think the error is not "
    "related to your code, request a single-mode build to run your pull request alone "
    "(single mode is only handled when no other pull requests are waiting, so it can "
    "take some time during rush hours).\n"
    "Otherwise you can just request the build again."
)


class PredictiveBranchController:
    """Drives one predictive branch through its tasks.

    Status changes go through :meth:`_transition`, which only commits forward
    moves and runs side effects (metrics, merge fan-out) after the new status
    is stored.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: PredictiveRepository,
        tasks: TaskRepository,
        counters: CounterStore,
        metrics: ApplicationMetrics | None = None,
        executor: TaskExecutor | None = None,
        comments: CommentSink | None = None,
        parse_failure_threshold: int = 3,
        task_creation_retries: int = 5,
    ) -> None:
        self.repository = repository
        self.tasks = tasks
        self.counters = counters
        self.metrics = metrics
        self.executor = executor
        self.parse_failure_threshold = parse_failure_threshold
        self.task_creation_retries = task_creation_retries
        self.merge_requests = PredictiveMergeRequestTracker(repository, comments)
        self.ci_jobs = CiJobStatusTracker(repository)

    def new_task_type(self, branch_id: str) -> PredictiveTaskType:
        return new_task_type(self.repository.get_branch(branch_id).status)

    def trigger_task(self, branch_id: str, *, run_now: bool = False) -> TaskView | None:
        """Create the task the branch status calls for, then evaluate it.

        With ``run_now`` the task is executed inline; otherwise it waits in the
        queue for a worker.
        """

        if run_now and self.executor is None:
            raise RuntimeError("Running a predictive task inline requires an executor.")

        task = self._create_task(branch_id)
        if task is None:
            return None
        self.update_status(task)
        if run_now and self.executor is not None:
            self.executor.perform(task.task_id)
            finished = self.tasks.get_task(task.task_id)
            if finished is not None:
                self.update_status(finished)
        return task

    def update_status(self, task: TaskView) -> BranchStatus:
        """Re-evaluate the owning branch from a task and the CI summary in its output."""

        if task.predictive_branch_id is None:
            raise ValueError(f"Task {task.task_id} does not belong to a predictive branch")
        branch = self.repository.get_branch(task.predictive_branch_id)
        output = self.tasks.read_output(task_id=task.task_id)
        summary = parse_task_output(output)
        if task.predictive_task_type != PredictiveTaskType.RUN:
            self.ci_jobs.upsert(branch.branch_id, dict(summary.jobs), build_id=branch.build_id)

        task_status = task.status
        counter_key = parse_failure_key(branch.branch_id)
        if summary.parse_failed:
            failures = self.counters.increment(counter_key)
            task_status = effective_task_status(
                task_status,
                parse_failures=failures,
                threshold=self.parse_failure_threshold,
            )
            if task_status != task.status:
                logger.warning(
                    "Predictive branch %s: %d unparseable CI summaries in a row, failing task %s",
                    branch.branch_id,
                    failures,
                    task.task_id,
                )
        else:
            self.counters.reset(counter_key)

        decision = decide(task.predictive_task_type, task_status, summary.status, output=output)
        return self._apply(branch, task, decision)

    def task_failed(self, branch_id: str) -> None:
        self._fail(self.repository.get_branch(branch_id), RejectReason.STACK_TASKS_FAILED)

    def run_task_failed(self, branch_id: str, task: TaskView) -> None:
        """Fail the branch, naming a merge conflict when the run output shows one."""

        reason = RejectReason.STACK_TASKS_FAILED
        if is_merge_conflict(self.tasks.read_output(task_id=task.task_id)):
            reason = RejectReason.PREDICTIVE_BRANCH_CREATION_MERGE_FAILED
        self._fail(self.repository.get_branch(branch_id), reason)

    def start_canceling(self, branch_id: str) -> bool:
        branch = self.repository.get_branch(branch_id)
        return self._transition(branch, BranchStatus.TASKS_CANCELING)

    def reject_predictive_merge_requests(self, branch_id: str, reason: RejectReason) -> None:
        branch = self.repository.get_branch(branch_id)
        logger.info(
            "Predictive branch %s rejecting predictive merge requests with reason %s",
            branch_id,
            reason.value,
        )
        msg = self.comment_msg(branch, reason)
        for pmr in self.repository.list_predictive_merge_requests(
            branch_id,
            status=PredictiveMergeRequestStatus.PENDING,
        ):
            if self.merge_requests.reject(pmr, msg):
                self._merge_request_metric(branch, "rejected")

    def cancel_predictive_merge_requests(
        self,
        branch_id: str,
        reason: RejectReason | None = None,
    ) -> int:
        """Cancel every waiting merge request without touching branch status."""

        branch = self.repository.get_branch(branch_id)
        logger.info(
            "Predictive branch %s canceling predictive merge requests with reason %s",
            branch_id,
            reason.value if reason is not None else None,
        )
        msg = self.comment_msg(branch, reason) if reason is not None else None
        canceled = 0
        for pmr in self.repository.list_predictive_merge_requests(
            branch_id,
            status=PredictiveMergeRequestStatus.PENDING,
        ):
            if self.merge_requests.cancel(pmr, msg):
                canceled += 1
        return canceled

    def update_completed_requests(self, branch_id: str) -> None:
        """Merge waiting requests and reject the blocked ones of a completed branch."""

        branch = self.repository.get_branch(branch_id)
        merged_msg = self.comment_msg(branch, RejectReason.MR_MERGED_TO_PREDICTIVE)
        for pmr in self.repository.list_predictive_merge_requests(
            branch_id,
            status=PredictiveMergeRequestStatus.PENDING,
        ):
            self.repository.set_merge_request_status(
                pmr.merge_request_id,
                MergeRequestStatus.COMPLETED,
            )
            if self.merge_requests.merge(pmr, merged_msg):
                self._merge_request_metric(branch, "merged")

        conflict_msg = self.comment_msg(branch, RejectReason.MERGE_PREDICTIVE_TO_STACK_FAILED)
        for pmr in self.repository.list_predictive_merge_requests(
            branch_id,
            status=PredictiveMergeRequestStatus.REJECTED,
        ):
            self.repository.set_merge_request_status(
                pmr.merge_request_id,
                MergeRequestStatus.REJECTED,
                rejection_reason=MERGE_CONFLICT_REJECTION,
            )
            self.merge_requests.reject(pmr, conflict_msg)

    def set_comment_to_related_merge_requests(self, branch_id: str, msg: str) -> None:
        for pmr in self.repository.list_predictive_merge_requests(branch_id):
            self.merge_requests.add_comment(pmr, msg)

    def comment_msg(  # noqa: PLR0911
        self,
        branch: PredictiveBranchView,
        reason: RejectReason | str,
    ) -> str | None:
        """Comment text for a reason; None for reasons that get no comment."""

        try:
            reason = RejectReason(reason)
        except ValueError:
            return None
        stack_branch = self.repository.stack_branch(branch.stack_id)
        if reason in {RejectReason.PIPELINE_TASKS_FAILED, RejectReason.STACK_TASKS_FAILED}:
            return self.additional_failed_information(branch)
        if reason == RejectReason.COMMIT_VALIDATION_FAILED:
            return (
                f"Someone pushed changes directly to {stack_branch} branch, we had to stop "
                "what we're doing, please try again later."
            )
        if reason == RejectReason.MERGE_PREDICTIVE_TO_STACK_FAILED:
            return f"Failed to merge predictive branch to {stack_branch}"
        if reason == RejectReason.MERGE_MR_TO_PREDICTIVE_FAILED:
            return "Failed to merge pull request to predictive branch"
        if reason == RejectReason.PREDICTIVE_BRANCH_CREATION_MERGE_FAILED:
            return (
                "Failed to process your request due to merge conflicts with other pull "
                f"requests / branch {stack_branch} in this CI cycle.\n"
                "The current cycle will fail and the build will be retried. "
                "Please check again later."
            )
        if reason == RejectReason.MR_MERGED_TO_PREDICTIVE:
            build = self.repository.get_build(branch.build_id)
            return f"Pull request merged to branch {stack_branch}.\n{build.build_message}".rstrip()
        if reason == RejectReason.CANCELED_DUE_TO_EMERGENCY:
            return (
                f"Pull request build attempt was canceled as part of branch '{branch.branch}' "
                "due to emergency build."
            )
        if reason == RejectReason.MR_STOPPED:
            return "The pipeline process was stopped"
        return None

    def additional_failed_information(self, branch: PredictiveBranchView) -> str:
        """Explain a CI failure, naming failed sibling branches of the same build."""

        if branch.status == BranchStatus.FAILED:
            return CI_FAILURE_MESSAGE
        failed_siblings = self.repository.list_branches(
            build_id=branch.build_id,
            status=BranchStatus.FAILED,
        )
        if not failed_siblings:
            return "Something went wrong, please start over."
        lines = [
            "We had to start over, we failed to process your request due to CI failures "
            "of the following projects: ",
        ]
        for sibling in failed_siblings:
            name = self.repository.repository_name(sibling.stack_id)
            lines.append(f"**{name}**")
            for pmr in self.repository.list_predictive_merge_requests(sibling.branch_id):
                number = self.repository.get_merge_request(pmr.merge_request_id).number
                lines.append(f"* /{name}/pull/{number}")
        return "\n".join(lines)

    def set_metrics(self, branch: PredictiveBranchView) -> None:
        if self.metrics is None:
            return
        with best_effort(f"predictive branch {branch.branch_id} metrics"):
            build = self.repository.get_build(branch.build_id)
            labels = {
                "pipeline": build.pipeline_id,
                "repository": self.repository.repository_name(branch.stack_id),
                "status": branch.status.value,
            }
            seconds = int((branch.updated_at - branch.created_at).total_seconds())
            self.metrics.increment_counter(PREDICTIVE_BRANCH_COUNT, labels)
            self.metrics.increment_counter(PREDICTIVE_BRANCH_DURATION_SECONDS_SUM, labels, seconds)

    def _create_task(self, branch_id: str) -> TaskView | None:
        for _ in range(self.task_creation_retries):
            branch = self.repository.get_branch(branch_id)
            task_type = new_task_type(branch.status)
            if task_type == PredictiveTaskType.NONE:
                return None
            task = self.repository.create_branch_task(branch=branch, task_type=task_type)
            if task is not None:
                logger.info(
                    "Predictive branch %s created %s task %s",
                    branch_id,
                    task_type.value,
                    task.task_id,
                )
                return task
            if self.repository.get_branch(branch_id).lock_version == branch.lock_version:
                # Refused because a task of this type is still in flight.
                return None
        logger.warning(
            "Predictive branch %s: gave up creating a task after %d concurrent updates",
            branch_id,
            self.task_creation_retries,
        )
        return None

    def _apply(
        self,
        branch: PredictiveBranchView,
        task: TaskView,
        decision: BranchDecision,
    ) -> BranchStatus:
        if decision.target is None:
            return branch.status
        if decision.reject_reason is None:
            self._transition(branch, decision.target)
        elif task.predictive_task_type == PredictiveTaskType.RUN:
            self.run_task_failed(branch.branch_id, task)
        else:
            self.task_failed(branch.branch_id)
        return self.repository.get_branch(branch.branch_id).status

    def _fail(self, branch: PredictiveBranchView, reason: RejectReason) -> None:
        self._transition(branch, BranchStatus.FAILED)
        if self.repository.get_branch(branch.branch_id).status != BranchStatus.FAILED:
            return
        self.reject_predictive_merge_requests(branch.branch_id, reason)

    def _transition(self, branch: PredictiveBranchView, target: BranchStatus) -> bool:
        current = branch
        for _ in range(self.task_creation_retries):
            if current.status == target:
                return False
            if not can_transition(current.status, target):
                logger.info(
                    "Predictive branch %s: ignoring %s -> %s",
                    current.branch_id,
                    current.status.value,
                    target.value,
                )
                return False
            updated = self.repository.transition_branch(
                branch_id=current.branch_id,
                current=current.status,
                target=target,
            )
            if updated is not None:
                logger.info(
                    "Predictive branch %s: %s -> %s",
                    updated.branch_id,
                    current.status.value,
                    updated.status.value,
                )
                self._after_transition(updated)
                return True
            current = self.repository.get_branch(branch.branch_id)
        return False

    def _after_transition(self, branch: PredictiveBranchView) -> None:
        if branch.status in TERMINAL_BRANCH_STATUSES:
            self.set_metrics(branch)
        if branch.status == BranchStatus.COMPLETED:
            self.update_completed_requests(branch.branch_id)

    def _merge_request_metric(self, branch: PredictiveBranchView, final_result: str) -> None:
        if self.metrics is None:
            return
        with best_effort("merge_requests metric"):
            self.metrics.increment_counter(
                MERGE_REQUESTS,
                {
                    "final_result": final_result,
                    "repository": self.repository.repository_name(branch.stack_id),
                },
            )
