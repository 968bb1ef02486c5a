"""Shared test fixtures."""

from __future__ import annotations

import shutil
import subprocess
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path

import pytest

from shipflow.config import ExecutionSettings
from shipflow.execution.models import StackCreate, StackView, TaskStatus, TaskView
from shipflow.execution.repository import TaskRepository
from shipflow.metrics import ApplicationMetrics, build_application_metrics
from shipflow.predictive.controller import PredictiveBranchController
from shipflow.predictive.counters import SqliteCounterStore
from shipflow.predictive.repository import PredictiveRepository

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")


@dataclass(slots=True)
class Stores:
    tasks: TaskRepository
    predictive: PredictiveRepository
    counters: SqliteCounterStore


@pytest.fixture()
def stores(tmp_path: Path) -> Iterator[Stores]:
    db_path = tmp_path / "shipflow.db"
    tasks = TaskRepository(db_path)
    tasks.init_schema()
    predictive = PredictiveRepository(db_path)
    counters = SqliteCounterStore(db_path)
    try:
        yield Stores(tasks=tasks, predictive=predictive, counters=counters)
    finally:
        tasks.close()
        predictive.close()
        counters.close()


@pytest.fixture()
def metrics() -> ApplicationMetrics:
    return build_application_metrics()


@pytest.fixture()
def controller(stores: Stores, metrics: ApplicationMetrics) -> PredictiveBranchController:
    return PredictiveBranchController(
        repository=stores.predictive,
        tasks=stores.tasks,
        counters=stores.counters,
        metrics=metrics,
    )


@pytest.fixture()
def execution_settings(tmp_path: Path) -> ExecutionSettings:
    return ExecutionSettings(
        work_root=tmp_path / "work",
        git_cache_root=tmp_path / "git-cache",
        git_cache_lock_timeout_seconds=2.0,
        lock_poll_seconds=0.02,
        command_timeout_seconds=30.0,
        tick_seconds=0.05,
    )


def add_stack(
    tasks: TaskRepository,
    *,
    stack_id: str = "acme/api/production",
    repo_full_name: str = "acme/api",
    repo_url: str = "https://example.com/acme/api.git",
    release_status_delay_seconds: int = 0,
    **steps: tuple[str, ...],
) -> StackView:
    return tasks.create_stack(
        StackCreate(
            stack_id=stack_id,
            repo_full_name=repo_full_name,
            branch="main",
            repo_url=repo_url,
            release_status_delay_seconds=release_status_delay_seconds,
            **steps,
        ),
    )


def complete_task(
    tasks: TaskRepository,
    task: TaskView,
    *,
    status: TaskStatus = TaskStatus.SUCCESS,
    output: str = "",
) -> TaskView:
    """Play the worker's part for a queued task without running anything."""

    assert tasks.start_task(task_id=task.task_id, worker_id="test-worker")
    tasks.write(task_id=task.task_id, text=output)
    assert tasks.finish_task(task_id=task.task_id, status=status)
    finished = tasks.get_task(task.task_id)
    assert finished is not None
    return finished


def init_git_repo(path: Path) -> str:
    """Create a one-commit repository with a ``main`` branch; returns the commit sha."""

    path.mkdir(parents=True, exist_ok=True)
    _git(path, "init", "--quiet", "--initial-branch=main")
    (path / "README.md").write_text("hello\n", encoding="utf-8")
    _git(path, "add", "README.md")
    _git(
        path,
        "-c",
        "user.name=Shipflow Tests",
        "-c",
        "user.email=tests@example.com",
        "commit",
        "--quiet",
        "-m",
        "initial",
    )
    return _git(path, "rev-parse", "HEAD").strip()


def _git(cwd: Path, *args: str) -> str:
    return subprocess.run(  # noqa: S603
        ["git", *args],  # noqa: S607
        cwd=cwd,
        check=True,
        capture_output=True,
        text=True,
    ).stdout
