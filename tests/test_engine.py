from __future__ import annotations

import signal
import sqlite3
import threading
import time
from dataclasses import replace
from pathlib import Path

import allure
import pytest
from conftest import Stores, add_stack, init_git_repo, requires_git
from sqlalchemy.exc import OperationalError

from shipflow.config import ExecutionSettings
from shipflow.execution import engine as engine_module
from shipflow.execution.command import Command
from shipflow.execution.engine import TaskAborted, TaskExecutor, WorkerFatalError
from shipflow.execution.models import PredictiveTaskType, TaskCreate, TaskStatus
from shipflow.metrics import DEPLOYS, ApplicationMetrics
from shipflow.predictive.models import PredictiveBranchCreate, PredictiveBuildCreate

pytestmark = [
    allure.epic("Task Execution"),
    allure.feature("Execution Engine"),
]


def _skip_checkout(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(TaskExecutor, "_checkout_repository", lambda self, task, commands: None)


def _deploy(stores: Stores, sha: str = "abc123", **steps: tuple[str, ...]) -> str:
    add_stack(stores.tasks, **steps)
    return stores.tasks.enqueue_deploy(
        TaskCreate(stack_id="acme/api/production", until_commit_sha=sha),
    ).task_id


def _executor(
    stores: Stores,
    settings: ExecutionSettings,
    metrics: ApplicationMetrics | None = None,
) -> TaskExecutor:
    return TaskExecutor(
        repository=stores.tasks,
        settings=settings,
        metrics=metrics,
        worker_id="test-worker",
    )


def test_deploy_steps_run_in_order_with_task_environment(
    stores: Stores,
    execution_settings: ExecutionSettings,
    metrics: ApplicationMetrics,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _skip_checkout(monkeypatch)
    task_id = _deploy(
        stores,
        dependencies_steps=("echo installing",),
        deploy_steps=('echo "deploying $SHA to $STACK"', "echo $DIFF_LINK"),
    )

    status = _executor(stores, execution_settings, metrics).perform(task_id)

    assert status == TaskStatus.SUCCESS
    output = stores.tasks.read_output(task_id=task_id)
    assert output.index("installing") < output.index("deploying abc123 to acme/api/production")
    assert "https://github.com/acme/api/compare/abc123...abc123" in output
    assert output.endswith("\nCompleted successfully\n")
    assert not (execution_settings.work_root / task_id).exists()
    assert metrics.value(DEPLOYS, {"final_result": "success", "repository": "acme/api"}) == 1


def test_failing_step_marks_task_failed(
    stores: Stores,
    execution_settings: ExecutionSettings,
    metrics: ApplicationMetrics,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _skip_checkout(monkeypatch)
    task_id = _deploy(stores, deploy_steps=("exit 3", "echo never"))

    status = _executor(stores, execution_settings, metrics).perform(task_id)

    assert status == TaskStatus.FAILED
    task = stores.tasks.get_task(task_id)
    assert task is not None
    assert task.error_summary == "exit 3 terminated with exit status 3"
    assert "echo never" not in stores.tasks.read_output(task_id=task_id)
    assert metrics.value(DEPLOYS, {"final_result": "failed", "repository": "acme/api"}) == 1


def test_step_exceeding_timeout_marks_task_timed_out(
    stores: Stores,
    execution_settings: ExecutionSettings,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _skip_checkout(monkeypatch)
    task_id = _deploy(stores, deploy_steps=("sleep 10",))
    settings = replace(execution_settings, command_timeout_seconds=0.3)

    started = time.monotonic()
    status = _executor(stores, settings).perform(task_id)

    assert status == TaskStatus.TIMED_OUT
    assert time.monotonic() - started < 5
    assert "timed out after 0.3s" in stores.tasks.read_output(task_id=task_id)


def test_unexpected_error_marks_task_errored(
    stores: Stores,
    execution_settings: ExecutionSettings,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def _broken_checkout(self: TaskExecutor, task: object, commands: object) -> None:
        raise KeyError("no such ref")

    monkeypatch.setattr(TaskExecutor, "_checkout_repository", _broken_checkout)
    task_id = _deploy(stores, deploy_steps=("true",))

    status = _executor(stores, execution_settings).perform(task_id)

    assert status == TaskStatus.ERROR
    task = stores.tasks.get_task(task_id)
    assert task is not None
    assert task.error_summary == "KeyError('no such ref')"


def test_fatal_error_marks_task_errored_and_propagates(
    stores: Stores,
    execution_settings: ExecutionSettings,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def _fatal_checkout(self: TaskExecutor, task: object, commands: object) -> None:
        raise WorkerFatalError("disk gone")

    monkeypatch.setattr(TaskExecutor, "_checkout_repository", _fatal_checkout)
    task_id = _deploy(stores, deploy_steps=("true",))

    with pytest.raises(WorkerFatalError):
        _executor(stores, execution_settings).perform(task_id)

    task = stores.tasks.get_task(task_id)
    assert task is not None
    assert task.status == TaskStatus.ERROR


def test_unrecordable_outcome_stops_the_worker(
    stores: Stores,
    execution_settings: ExecutionSettings,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _skip_checkout(monkeypatch)
    task_id = _deploy(stores, deploy_steps=("true",))

    def _locked(**_kwargs: object) -> bool:
        raise OperationalError(
            "UPDATE tasks",
            {},
            sqlite3.OperationalError("database is locked"),
        )

    monkeypatch.setattr(stores.tasks, "finish_task", _locked)

    with pytest.raises(WorkerFatalError, match="could not record status success"):
        _executor(stores, execution_settings).perform(task_id)

    task = stores.tasks.get_task(task_id)
    assert task is not None
    assert task.status == TaskStatus.RUNNING


def test_perform_skips_task_that_is_not_pending(
    stores: Stores,
    execution_settings: ExecutionSettings,
) -> None:
    task_id = _deploy(stores, deploy_steps=("true",))
    stores.tasks.start_task(task_id=task_id, worker_id="someone-else")

    assert _executor(stores, execution_settings).perform(task_id) is None
    assert _executor(stores, execution_settings).perform("missing") is None
    task = stores.tasks.get_task(task_id)
    assert task is not None
    assert task.worker_id == "someone-else"


def test_check_for_abort_escalates_from_term_to_kill(
    stores: Stores,
    execution_settings: ExecutionSettings,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    sent: list[tuple[int, signal.Signals]] = []
    monkeypatch.setattr(engine_module.os, "killpg", lambda pid, sig: sent.append((pid, sig)))
    task_id = _deploy(stores)
    stores.tasks.start_task(task_id=task_id)
    stores.tasks.set_pid(task_id=task_id, pid=4242)
    executor = _executor(stores, execution_settings)

    executor.check_for_abort(task_id)
    assert sent == []

    stores.tasks.request_abort(task_id=task_id)
    for _ in range(4):
        executor.check_for_abort(task_id)

    assert sent == [
        (4242, signal.SIGTERM),
        (4242, signal.SIGTERM),
        (4242, signal.SIGTERM),
        (4242, signal.SIGKILL),
    ]
    output = stores.tasks.read_output(task_id=task_id)
    assert output.count("$ kill -SIGTERM 4242") == 3
    assert "$ kill -SIGKILL 4242" in output


def test_abort_without_pid_is_recorded(
    stores: Stores,
    execution_settings: ExecutionSettings,
) -> None:
    task_id = _deploy(stores)
    stores.tasks.start_task(task_id=task_id)

    _executor(stores, execution_settings).abort(task_id)

    assert stores.tasks.read_output(task_id=task_id) == "Can't abort, no recorded pid\n"


def test_abort_of_vanished_process_is_recorded(
    stores: Stores,
    execution_settings: ExecutionSettings,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def _gone(pid: int, sig: signal.Signals) -> None:
        raise ProcessLookupError(3, "No such process")

    monkeypatch.setattr(engine_module.os, "killpg", _gone)
    task_id = _deploy(stores)
    stores.tasks.start_task(task_id=task_id)
    stores.tasks.set_pid(task_id=task_id, pid=4242)

    _executor(stores, execution_settings).abort(task_id, sig=signal.SIGKILL)

    output = stores.tasks.read_output(task_id=task_id)
    assert "$ kill -SIGKILL 4242\n" in output
    assert "kill: (4242) - " in output


def test_no_command_starts_once_abort_was_requested(
    stores: Stores,
    execution_settings: ExecutionSettings,
) -> None:
    task_id = _deploy(stores)
    stores.tasks.start_task(task_id=task_id)
    stores.tasks.request_abort(task_id=task_id)

    with pytest.raises(TaskAborted):
        _executor(stores, execution_settings)._capture(task_id, Command.shell("echo hi"))

    assert stores.tasks.read_output(task_id=task_id) == ""


def test_running_step_is_aborted_on_request(
    stores: Stores,
    execution_settings: ExecutionSettings,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _skip_checkout(monkeypatch)
    task_id = _deploy(stores, deploy_steps=("sleep 30",))

    def _abort_when_started() -> None:
        deadline = time.monotonic() + 10
        while time.monotonic() < deadline:
            task = stores.tasks.get_task(task_id)
            if task is not None and task.pid is not None:
                stores.tasks.request_abort(task_id=task_id)
                return
            time.sleep(0.05)

    aborter = threading.Thread(target=_abort_when_started)
    aborter.start()
    status = _executor(stores, execution_settings).perform(task_id)
    aborter.join()

    assert status == TaskStatus.ABORTED
    assert "$ kill -SIGTERM" in stores.tasks.read_output(task_id=task_id)


@requires_git
def test_deploy_checks_out_commit_through_git_cache(
    stores: Stores,
    execution_settings: ExecutionSettings,
    tmp_path: Path,
) -> None:
    origin = tmp_path / "origin"
    sha = init_git_repo(origin)
    add_stack(
        stores.tasks,
        repo_url=str(origin),
        deploy_steps=("git rev-parse HEAD", "cat README.md"),
    )
    executor = _executor(stores, execution_settings)

    first = stores.tasks.enqueue_deploy(
        TaskCreate(stack_id="acme/api/production", until_commit_sha=sha),
    )
    assert executor.perform(first.task_id) == TaskStatus.SUCCESS
    first_output = stores.tasks.read_output(task_id=first.task_id)
    assert "--bare" in first_output
    assert f"{sha}\n" in first_output
    assert "hello\n" in first_output
    assert (execution_settings.git_cache_root / "acme_api_production.git" / "HEAD").exists()

    second = stores.tasks.enqueue_deploy(
        TaskCreate(stack_id="acme/api/production", until_commit_sha=sha),
    )
    assert executor.perform(second.task_id) == TaskStatus.SUCCESS
    assert "--bare" not in stores.tasks.read_output(task_id=second.task_id)


@requires_git
def test_predictive_task_clones_its_branch(
    stores: Stores,
    execution_settings: ExecutionSettings,
    tmp_path: Path,
) -> None:
    origin = tmp_path / "origin"
    init_git_repo(origin)
    add_stack(
        stores.tasks,
        repo_url=str(origin),
        ci_run_steps=('echo "$PREDICTIVE_TASK_TYPE for $PREDICTIVE_BRANCH_ID"',),
    )
    build = stores.predictive.create_build(PredictiveBuildCreate(pipeline_id="p", branch="main"))
    branch = stores.predictive.create_branch(
        PredictiveBranchCreate(
            build_id=build.build_id,
            stack_id="acme/api/production",
            branch="main",
        ),
    )
    task = stores.predictive.create_branch_task(branch=branch, task_type=PredictiveTaskType.RUN)
    assert task is not None

    assert _executor(stores, execution_settings).perform(task.task_id) == TaskStatus.SUCCESS
    output = stores.tasks.read_output(task_id=task.task_id)
    assert "--single-branch" in output
    assert f"run for {branch.branch_id}" in output


@requires_git
def test_build_task_clones_the_build_branch(
    stores: Stores,
    execution_settings: ExecutionSettings,
    tmp_path: Path,
) -> None:
    origin = tmp_path / "origin"
    init_git_repo(origin)
    add_stack(
        stores.tasks,
        repo_url=str(origin),
        ci_run_steps=(
            'echo "$PREDICTIVE_TASK_TYPE for build $PREDICTIVE_BUILD_ID"',
            "cat README.md",
        ),
    )
    build = stores.predictive.create_build(PredictiveBuildCreate(pipeline_id="p", branch="main"))
    task = stores.predictive.create_build_task(
        build_id=build.build_id,
        stack_id="acme/api/production",
    )

    assert _executor(stores, execution_settings).perform(task.task_id) == TaskStatus.SUCCESS
    output = stores.tasks.read_output(task_id=task.task_id)
    assert "--branch main --single-branch" in output
    assert "--bare" not in output
    assert f"run for build {build.build_id}" in output
    assert "hello\n" in output
