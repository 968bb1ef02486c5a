"""CLI entrypoint for shipflow."""

import logging
import sys
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from shipflow import __version__
from shipflow.controllers import (
    BranchIdCommand,
    BranchOpenCommand,
    BuildTaskCommand,
    CancelRequestsCommand,
    DeployCommand,
    ListTasksCommand,
    MergeRequestAddCommand,
    MergeRequestIdCommand,
    ShipflowCliController,
    StackAddCommand,
    StatsCommand,
    TaskIdCommand,
    WorkerCommand,
)
from shipflow.execution.models import PredictiveTaskType, TaskStatus
from shipflow.predictive.models import RejectReason

click.rich_click.USE_MARKDOWN = True
CONTROLLER = ShipflowCliController()

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
CommandT = TypeVar("CommandT")


@click.group()
@click.version_option(version=__version__, prog_name="shipflow")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    envvar="SHIPFLOW_LOG_LEVEL",
    help="Log level for diagnostics written to stderr.",
)
def shipflow(log_level: str) -> None:
    """Shipflow continuous delivery CLI."""

    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT, stream=sys.stderr)


@shipflow.group()
def stack() -> None:
    """Stack registration commands."""


@stack.command("add")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--stack-id", required=True, help="Stack id, for example owner/repo/production.")
@click.option("--repo", "repo_full_name", required=True, help="Repository full name owner/repo.")
@click.option("--branch", default="main", show_default=True, help="Deployed branch.")
@click.option("--repo-url", required=True, help="Git URL the cache clones from.")
@click.option(
    "--release-status-delay",
    "release_status_delay_seconds",
    type=click.IntRange(min=0),
    default=0,
    show_default=True,
    help="Seconds a successful deploy stays validating before it is reported healthy.",
)
@click.option(
    "--dependencies-step",
    "dependencies_steps",
    multiple=True,
    help="Shell step run before every task. Can be repeated.",
)
@click.option("--deploy-step", "deploy_steps", multiple=True, help="Deploy shell step.")
@click.option("--ci-run-step", "ci_run_steps", multiple=True, help="Predictive run step.")
@click.option("--ci-verify-step", "ci_verify_steps", multiple=True, help="Verify step.")
@click.option("--ci-abort-step", "ci_abort_steps", multiple=True, help="Abort step.")
def stack_add(  # noqa: PLR0913
    db_path: Path | None,
    stack_id: str,
    repo_full_name: str,
    branch: str,
    repo_url: str,
    release_status_delay_seconds: int,
    dependencies_steps: tuple[str, ...],
    deploy_steps: tuple[str, ...],
    ci_run_steps: tuple[str, ...],
    ci_verify_steps: tuple[str, ...],
    ci_abort_steps: tuple[str, ...],
) -> None:
    """Register a stack and the shell steps its tasks run."""

    _emit_lines(
        _call(
            CONTROLLER.add_stack,
            StackAddCommand(
                db_path=db_path,
                stack_id=stack_id,
                repo_full_name=repo_full_name,
                branch=branch,
                repo_url=repo_url,
                dependencies_steps=dependencies_steps,
                deploy_steps=deploy_steps,
                ci_run_steps=ci_run_steps,
                ci_verify_steps=ci_verify_steps,
                ci_abort_steps=ci_abort_steps,
                release_status_delay_seconds=release_status_delay_seconds,
            ),
        ),
    )


@shipflow.command("deploy")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--stack-id", required=True, help="Stack to deploy.")
@click.option("--sha", "until_commit_sha", required=True, help="Commit to deploy.")
@click.option("--since", "since_commit_sha", default=None, help="Previously deployed commit.")
def deploy(
    db_path: Path | None,
    stack_id: str,
    until_commit_sha: str,
    since_commit_sha: str | None,
) -> None:
    """Queue a deploy task."""

    _emit_lines(
        _call(
            CONTROLLER.enqueue_deploy,
            DeployCommand(
                db_path=db_path,
                stack_id=stack_id,
                until_commit_sha=until_commit_sha,
                since_commit_sha=since_commit_sha,
            ),
        ),
    )


@shipflow.command("worker")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=True,
    show_default=True,
    help="Run one claim-execute cycle or loop until idle.",
)
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed tasks in loop mode.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Stop the loop after this many empty polls in a row.",
)
def worker(
    db_path: Path | None,
    once: bool,
    max_tasks: int | None,
    max_idle_polls: int,
) -> None:
    """Run the task worker."""

    _emit_lines(
        _call(
            CONTROLLER.run_worker,
            WorkerCommand(
                db_path=db_path,
                once=once,
                max_tasks=max_tasks,
                max_idle_polls=max_idle_polls,
            ),
        ),
    )


@shipflow.group()
def task() -> None:
    """Task queue commands."""


@task.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in TaskStatus], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option("--branch-id", default=None, help="Only tasks of this predictive branch.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max tasks to print.",
)
def task_list(
    db_path: Path | None,
    status: str | None,
    branch_id: str | None,
    limit: int,
) -> None:
    """List tasks, newest first."""

    _emit_lines(
        _call(
            CONTROLLER.list_tasks,
            ListTasksCommand(db_path=db_path, status=status, branch_id=branch_id, limit=limit),
        ),
    )


@task.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
def task_show(db_path: Path | None, task_id: str) -> None:
    """Show one task with its events and output."""

    _emit_lines(_call(CONTROLLER.show_task, TaskIdCommand(db_path=db_path, task_id=task_id)))


@task.command("abort")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
def task_abort(db_path: Path | None, task_id: str) -> None:
    """Request abort of a pending or running task."""

    _emit_lines(_call(CONTROLLER.abort_task, TaskIdCommand(db_path=db_path, task_id=task_id)))


@task.command("mark-healthy")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Deploy task id.")
def task_mark_healthy(db_path: Path | None, task_id: str) -> None:
    """Report a deploy healthy once its stack's release delay has passed."""

    _emit_lines(
        _call(CONTROLLER.mark_deploy_healthy, TaskIdCommand(db_path=db_path, task_id=task_id)),
    )


@shipflow.group("mr")
def merge_request() -> None:
    """Merge request commands."""


@merge_request.command("add")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--stack-id", required=True, help="Stack the merge request targets.")
@click.option("--number", type=click.IntRange(min=1), required=True, help="Pull request number.")
@click.option("--branch", required=True, help="Head branch of the merge request.")
@click.option("--parent-id", default=None, help="Merge request this one is stacked on.")
def merge_request_add(
    db_path: Path | None,
    stack_id: str,
    number: int,
    branch: str,
    parent_id: str | None,
) -> None:
    """Register a merge request."""

    _emit_lines(
        _call(
            CONTROLLER.add_merge_request,
            MergeRequestAddCommand(
                db_path=db_path,
                stack_id=stack_id,
                number=number,
                branch=branch,
                parent_id=parent_id,
            ),
        ),
    )


@merge_request.command("refresh")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--merge-request-id", required=True, help="Merge request id.")
def merge_request_refresh(db_path: Path | None, merge_request_id: str) -> None:
    """Refresh the predictive branches a merge request (and its children) belong to."""

    _emit_lines(
        _call(
            CONTROLLER.refresh_merge_request,
            MergeRequestIdCommand(db_path=db_path, merge_request_id=merge_request_id),
        ),
    )


@shipflow.group()
def branch() -> None:
    """Predictive branch commands."""


@branch.command("open")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--stack-id", required=True, help="Stack the branch belongs to.")
@click.option("--pipeline-id", default="default", show_default=True, help="Pipeline id.")
@click.option(
    "--build-branch",
    default=None,
    help="Branch holding the combined build; defaults to --branch.",
)
@click.option("--branch", "branch_name", required=True, help="Predictive branch name.")
@click.option("--sha", "commit_sha", default=None, help="Head commit of the predictive branch.")
@click.option(
    "--merge-request-id",
    "merge_request_ids",
    multiple=True,
    required=True,
    help="Merge request in this batch. Can be repeated.",
)
@click.option("--message", "build_message", default="", help="Build message.")
def branch_open(  # noqa: PLR0913
    db_path: Path | None,
    stack_id: str,
    pipeline_id: str,
    build_branch: str | None,
    branch_name: str,
    commit_sha: str | None,
    merge_request_ids: tuple[str, ...],
    build_message: str,
) -> None:
    """Open a predictive branch over merge requests and queue its run task."""

    _emit_lines(
        _call(
            CONTROLLER.open_branch,
            BranchOpenCommand(
                db_path=db_path,
                stack_id=stack_id,
                pipeline_id=pipeline_id,
                build_branch=build_branch or branch_name,
                branch=branch_name,
                commit_sha=commit_sha,
                merge_request_ids=merge_request_ids,
                build_message=build_message,
            ),
        ),
    )


@branch.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--branch-id", required=True, help="Predictive branch id.")
def branch_show(db_path: Path | None, branch_id: str) -> None:
    """Show a predictive branch with its merge requests and CI jobs."""

    _emit_lines(
        _call(CONTROLLER.show_branch, BranchIdCommand(db_path=db_path, branch_id=branch_id)),
    )


@branch.command("refresh")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--branch-id", required=True, help="Predictive branch id.")
def branch_refresh(db_path: Path | None, branch_id: str) -> None:
    """Re-evaluate the latest task and schedule the next one."""

    _emit_lines(
        _call(CONTROLLER.refresh_branch, BranchIdCommand(db_path=db_path, branch_id=branch_id)),
    )


@branch.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--branch-id", required=True, help="Predictive branch id.")
def branch_cancel(db_path: Path | None, branch_id: str) -> None:
    """Start canceling a predictive branch and queue its abort task."""

    _emit_lines(
        _call(CONTROLLER.cancel_branch, BranchIdCommand(db_path=db_path, branch_id=branch_id)),
    )


@branch.command("cancel-requests")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--branch-id", required=True, help="Predictive branch id.")
@click.option(
    "--reason",
    type=click.Choice([reason.value for reason in RejectReason], case_sensitive=False),
    default=None,
    help="Optional reason; known reasons also comment on the merge requests.",
)
def branch_cancel_requests(db_path: Path | None, branch_id: str, reason: str | None) -> None:
    """Cancel every pending merge request of a predictive branch."""

    _emit_lines(
        _call(
            CONTROLLER.cancel_requests,
            CancelRequestsCommand(
                db_path=db_path,
                branch_id=branch_id,
                reason=reason.lower() if reason else None,
            ),
        ),
    )


@shipflow.group()
def build() -> None:
    """Predictive build commands."""


@build.command("task")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--build-id", required=True, help="Predictive build id.")
@click.option("--stack-id", required=True, help="Stack whose steps the task runs.")
@click.option(
    "--type",
    "task_type",
    type=click.Choice(
        [
            task_type.value
            for task_type in PredictiveTaskType
            if task_type != PredictiveTaskType.NONE
        ],
    ),
    default=PredictiveTaskType.RUN.value,
    show_default=True,
    help="Which predictive steps to run.",
)
def build_task(db_path: Path | None, build_id: str, stack_id: str, task_type: str) -> None:
    """Queue a task on the build's aggregate branch."""

    _emit_lines(
        _call(
            CONTROLLER.enqueue_build_task,
            BuildTaskCommand(
                db_path=db_path,
                build_id=build_id,
                stack_id=stack_id,
                task_type=task_type,
            ),
        ),
    )


@shipflow.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def stats(db_path: Path | None) -> None:
    """Show queue and predictive branch counts by status."""

    _emit_lines(_call(CONTROLLER.stats, StatsCommand(db_path=db_path)))


def _call(handler: Callable[[CommandT], list[str]], command: CommandT) -> list[str]:
    try:
        return handler(command)
    except (RuntimeError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    shipflow()
