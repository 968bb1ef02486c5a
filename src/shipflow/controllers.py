"""Controllers for shipflow CLI commands."""

from __future__ import annotations

import os
import socket
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from shipflow.config import Settings
from shipflow.execution.engine import TaskExecutor
from shipflow.execution.models import PredictiveTaskType, StackCreate, TaskCreate, TaskStatus
from shipflow.execution.repository import TaskRepository
from shipflow.execution.worker import TaskWorker
from shipflow.jobs import DeployJobs, RefreshJobs
from shipflow.metrics import (
    ApplicationMetrics,
    OperationsSnapshot,
    build_application_metrics,
    render_stats_lines,
)
from shipflow.predictive.controller import PredictiveBranchController
from shipflow.predictive.counters import SqliteCounterStore
from shipflow.predictive.models import (
    MergeRequestCreate,
    PredictiveBranchCreate,
    PredictiveBuildCreate,
    RejectReason,
)
from shipflow.predictive.repository import PredictiveRepository


@dataclass(slots=True)
class StackAddCommand:
    """CLI input for registering a stack."""

    db_path: Path | None
    stack_id: str
    repo_full_name: str
    branch: str
    repo_url: str
    dependencies_steps: tuple[str, ...]
    deploy_steps: tuple[str, ...]
    ci_run_steps: tuple[str, ...]
    ci_verify_steps: tuple[str, ...]
    ci_abort_steps: tuple[str, ...]
    release_status_delay_seconds: int = 0


@dataclass(slots=True)
class DeployCommand:
    db_path: Path | None
    stack_id: str
    until_commit_sha: str
    since_commit_sha: str | None


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    max_tasks: int | None
    max_idle_polls: int = 1


@dataclass(slots=True)
class ListTasksCommand:
    db_path: Path | None
    status: str | None
    branch_id: str | None
    limit: int


@dataclass(slots=True)
class TaskIdCommand:
    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class BranchIdCommand:
    db_path: Path | None
    branch_id: str


@dataclass(slots=True)
class CancelRequestsCommand:
    db_path: Path | None
    branch_id: str
    reason: str | None


@dataclass(slots=True)
class MergeRequestIdCommand:
    db_path: Path | None
    merge_request_id: str


@dataclass(slots=True)
class MergeRequestAddCommand:
    db_path: Path | None
    stack_id: str
    number: int
    branch: str
    parent_id: str | None


@dataclass(slots=True)
class BranchOpenCommand:
    """CLI input for opening a predictive branch over merge requests."""

    db_path: Path | None
    stack_id: str
    pipeline_id: str
    build_branch: str
    branch: str
    commit_sha: str | None
    merge_request_ids: tuple[str, ...]
    build_message: str


@dataclass(slots=True)
class BuildTaskCommand:
    """CLI input for queueing a task on a build's aggregate branch."""

    db_path: Path | None
    build_id: str
    stack_id: str
    task_type: str


@dataclass(slots=True)
class StatsCommand:
    db_path: Path | None


@dataclass(slots=True)
class Stores:
    """Repositories sharing one SQLite file for the duration of a command."""

    settings: Settings
    tasks: TaskRepository
    predictive: PredictiveRepository
    counters: SqliteCounterStore


class ShipflowCliController:
    """Coordinates stack, queue, worker and predictive branch CLI operations."""

    def __init__(self, metrics: ApplicationMetrics | None = None) -> None:
        self.metrics = metrics or build_application_metrics()

    def add_stack(self, command: StackAddCommand) -> list[str]:
        with _stores(command.db_path) as stores:
            stack = stores.tasks.create_stack(
                StackCreate(
                    stack_id=command.stack_id,
                    repo_full_name=command.repo_full_name,
                    branch=command.branch,
                    repo_url=command.repo_url,
                    dependencies_steps=command.dependencies_steps,
                    deploy_steps=command.deploy_steps,
                    ci_run_steps=command.ci_run_steps,
                    ci_verify_steps=command.ci_verify_steps,
                    ci_abort_steps=command.ci_abort_steps,
                    release_status_delay_seconds=command.release_status_delay_seconds,
                ),
            )
        return [f"Stack registered: stack_id={stack.stack_id} repo={stack.repo_full_name}"]

    def enqueue_deploy(self, command: DeployCommand) -> list[str]:
        with _stores(command.db_path) as stores:
            task = stores.tasks.enqueue_deploy(
                TaskCreate(
                    stack_id=command.stack_id,
                    until_commit_sha=command.until_commit_sha,
                    since_commit_sha=command.since_commit_sha,
                ),
            )
        return [
            "Deploy enqueued: "
            f"task_id={task.task_id} stack={task.stack_id} status={task.status.value}",
        ]

    def run_worker(self, command: WorkerCommand) -> list[str]:
        with _stores(command.db_path) as stores:
            settings = stores.settings
            worker_id = f"{socket.gethostname()}:{os.getpid()}"
            executor = TaskExecutor(
                repository=stores.tasks,
                settings=settings.execution,
                metrics=self.metrics,
                worker_id=worker_id,
            )
            jobs = RefreshJobs(self._branch_controller(stores, executor=executor))
            worker = TaskWorker(
                repository=stores.tasks,
                executor=executor,
                worker_id=worker_id,
                poll_interval_seconds=settings.worker.poll_interval_seconds,
                stale_task_seconds=settings.worker.stale_task_seconds,
                on_predictive_task_finished=jobs.on_task_finished,
            )
            summary = (
                worker.run_once()
                if command.once
                else worker.run_loop(
                    max_tasks=command.max_tasks,
                    max_idle_polls=command.max_idle_polls,
                )
            )

        return [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} timeouts={summary.timeouts} "
            f"aborted={summary.aborted} idle_polls={summary.idle_polls}",
        ]

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        status_filter = TaskStatus(command.status.strip().lower()) if command.status else None
        with _stores(command.db_path) as stores:
            tasks = stores.tasks.list_tasks(
                status=status_filter,
                predictive_branch_id=command.branch_id,
                limit=command.limit,
            )

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            lines.append(
                f"  {task.task_id} kind={task.kind.value} status={task.status.value} "
                f"type={task.predictive_task_type.value} stack={task.stack_id} "
                f"created_at={task.created_at.isoformat()}",
            )
        return lines

    def show_task(self, command: TaskIdCommand) -> list[str]:
        with _stores(command.db_path) as stores:
            details = stores.tasks.get_task_details(task_id=command.task_id)
        if details is None:
            return [f"Task not found: {command.task_id}"]

        task = details.task
        lines = [
            f"Task: {task.task_id}",
            f"Kind: {task.kind.value}",
            f"Status: {task.status.value}",
            f"Predictive type: {task.predictive_task_type.value}",
            f"Branch: {task.predictive_branch_id or '-'}",
            f"Build: {task.predictive_build_id or '-'}",
            f"Commit: {task.until_commit_sha or '-'}",
            f"Pid: {task.pid if task.pid is not None else '-'}",
            f"Error: {task.error_summary or '-'}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        lines.append("Output:")
        lines.extend(f"  {line}" for line in details.output.splitlines())
        return lines

    def abort_task(self, command: TaskIdCommand) -> list[str]:
        with _stores(command.db_path) as stores:
            stores.tasks.request_abort(task_id=command.task_id)
        return [f"Abort requested: {command.task_id}"]

    def mark_deploy_healthy(self, command: TaskIdCommand) -> list[str]:
        with _stores(command.db_path) as stores:
            recorded = DeployJobs(stores.tasks).mark_deploy_healthy(command.task_id)
        if not recorded:
            return [f"Deploy {command.task_id} is not due for a health report."]
        return [f"Deploy reported healthy: {command.task_id}"]

    def enqueue_build_task(self, command: BuildTaskCommand) -> list[str]:
        with _stores(command.db_path) as stores:
            task = stores.predictive.create_build_task(
                build_id=command.build_id,
                stack_id=command.stack_id,
                task_type=PredictiveTaskType(command.task_type),
            )
        return [
            "Build task enqueued: "
            f"task_id={task.task_id} build_id={command.build_id} "
            f"type={task.predictive_task_type.value}",
        ]

    def add_merge_request(self, command: MergeRequestAddCommand) -> list[str]:
        with _stores(command.db_path) as stores:
            merge_request = stores.predictive.create_merge_request(
                MergeRequestCreate(
                    stack_id=command.stack_id,
                    number=command.number,
                    branch=command.branch,
                    parent_id=command.parent_id,
                ),
            )
        return [
            "Merge request registered: "
            f"merge_request_id={merge_request.merge_request_id} number={merge_request.number}",
        ]

    def open_branch(self, command: BranchOpenCommand) -> list[str]:
        """Open a predictive branch (in a fresh build) and queue its first task."""

        with _stores(command.db_path) as stores:
            build = stores.predictive.create_build(
                PredictiveBuildCreate(
                    pipeline_id=command.pipeline_id,
                    branch=command.build_branch,
                    build_message=command.build_message,
                ),
            )
            branch = stores.predictive.create_branch(
                PredictiveBranchCreate(
                    build_id=build.build_id,
                    stack_id=command.stack_id,
                    branch=command.branch,
                    commit_sha=command.commit_sha,
                    merge_request_ids=command.merge_request_ids,
                ),
            )
            task = self._branch_controller(stores).trigger_task(branch.branch_id)
        lines = [
            f"Predictive branch opened: branch_id={branch.branch_id} build_id={build.build_id}",
        ]
        if task is not None:
            lines.append(
                f"Task enqueued: task_id={task.task_id} "
                f"type={task.predictive_task_type.value}",
            )
        return lines

    def show_branch(self, command: BranchIdCommand) -> list[str]:
        with _stores(command.db_path) as stores:
            branch = stores.predictive.get_branch(command.branch_id)
            pmrs = stores.predictive.list_predictive_merge_requests(command.branch_id)
            jobs = stores.predictive.list_ci_jobs(command.branch_id)
            numbers = {
                pmr.merge_request_id: stores.predictive.get_merge_request(
                    pmr.merge_request_id,
                ).number
                for pmr in pmrs
            }

        lines = [
            f"Predictive branch: {branch.branch_id}",
            f"Branch: {branch.branch}",
            f"Stack: {branch.stack_id}",
            f"Status: {branch.status.value}",
            f"Merge requests: {len(pmrs)}",
        ]
        for pmr in pmrs:
            lines.append(f"  #{numbers[pmr.merge_request_id]} {pmr.status.value}")
        lines.append(f"CI jobs: {len(jobs)}")
        for job in jobs:
            lines.append(f"  {job.name} {job.status.value} {job.link or '-'}")
        return lines

    def refresh_branch(self, command: BranchIdCommand) -> list[str]:
        with _stores(command.db_path) as stores:
            jobs = RefreshJobs(self._branch_controller(stores))
            status = jobs.refresh_branch(command.branch_id)
        return [f"Predictive branch {command.branch_id}: {status.value}"]

    def cancel_branch(self, command: BranchIdCommand) -> list[str]:
        with _stores(command.db_path) as stores:
            controller = self._branch_controller(stores)
            changed = controller.start_canceling(command.branch_id)
            task = controller.trigger_task(command.branch_id) if changed else None
        if not changed:
            return [f"Predictive branch {command.branch_id} cannot be canceled now."]
        return [
            f"Predictive branch {command.branch_id}: canceling"
            + (f" (abort task {task.task_id})" if task is not None else ""),
        ]

    def cancel_requests(self, command: CancelRequestsCommand) -> list[str]:
        reason = RejectReason(command.reason) if command.reason else None
        with _stores(command.db_path) as stores:
            canceled = self._branch_controller(stores).cancel_predictive_merge_requests(
                command.branch_id,
                reason,
            )
        return [f"Canceled merge requests: {canceled}"]

    def refresh_merge_request(self, command: MergeRequestIdCommand) -> list[str]:
        with _stores(command.db_path) as stores:
            jobs = RefreshJobs(self._branch_controller(stores))
            refreshed = jobs.refresh_merge_request(command.merge_request_id)
        return [f"Refreshed predictive branches: {len(refreshed)}"] + [
            f"  {branch_id}" for branch_id in refreshed
        ]

    def stats(self, command: StatsCommand) -> list[str]:
        """Show operator-facing queue and branch health."""

        with _stores(command.db_path) as stores:
            task_counts = stores.tasks.count_tasks_by_status()
            predictive_counts = stores.predictive.count_by_status()
        snapshot = OperationsSnapshot(
            task_status_counts=task_counts,
            branch_status_counts=predictive_counts["branches"],
            merge_request_status_counts=predictive_counts["merge_requests"],
            ci_job_status_counts=predictive_counts["ci_jobs"],
        )
        return render_stats_lines(snapshot=snapshot)

    def _branch_controller(
        self,
        stores: Stores,
        *,
        executor: TaskExecutor | None = None,
    ) -> PredictiveBranchController:
        return PredictiveBranchController(
            repository=stores.predictive,
            tasks=stores.tasks,
            counters=stores.counters,
            metrics=self.metrics,
            executor=executor,
            parse_failure_threshold=stores.settings.predictive.parse_failure_threshold,
            task_creation_retries=stores.settings.predictive.task_creation_retries,
        )


@contextmanager
def _stores(db_path: Path | None) -> Iterator[Stores]:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    tasks = TaskRepository(settings.db_path)
    tasks.init_schema()
    predictive = PredictiveRepository(settings.db_path)
    counters = SqliteCounterStore(settings.db_path)
    try:
        yield Stores(settings=settings, tasks=tasks, predictive=predictive, counters=counters)
    finally:
        tasks.close()
        predictive.close()
        counters.close()
