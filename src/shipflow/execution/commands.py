"""Workflow factory: the shell commands a task runs and their environment."""

from __future__ import annotations

import os
from pathlib import Path

from shipflow.config import ExecutionSettings
from shipflow.execution.command import Command
from shipflow.execution.models import PredictiveTaskType, StackView, TaskKind, TaskView


class TaskCommands:
    """Checkout and step commands shared by every task kind."""

    def __init__(
        self,
        *,
        task: TaskView,
        stack: StackView,
        settings: ExecutionSettings,
        cache_path: Path,
    ) -> None:
        self.task = task
        self.stack = stack
        self.settings = settings
        self.cache_path = cache_path

    @property
    def working_directory(self) -> Path:
        return self.settings.work_root / self.task.task_id

    def env(self) -> dict[str, str]:
        env = dict(os.environ)
        env.update(
            {
                "STACK": self.stack.stack_id,
                "REPO": self.stack.repo_full_name,
                "BRANCH": self.stack.branch,
                "TASK_ID": self.task.task_id,
                "GIT_TERMINAL_PROMPT": "0",
            },
        )
        return env

    def steps(self) -> tuple[str, ...]:
        return ()

    def install_dependencies(self) -> list[Command]:
        return [self._step(script) for script in self.stack.dependencies_steps]

    def perform(self) -> list[Command]:
        return [self._step(script) for script in self.steps()]

    def fetched(self, commit_sha: str) -> Command:
        """Check whether ``commit_sha`` is already present in the git cache."""

        return self._git(
            "-C",
            str(self.cache_path),
            "rev-parse",
            "--quiet",
            "--verify",
            f"{commit_sha}^{{commit}}",
        )

    def fetch(self) -> Command:
        """Populate or refresh the git cache from the stack remote."""

        if (self.cache_path / "HEAD").exists():
            return self._git(
                "-C",
                str(self.cache_path),
                "fetch",
                "--quiet",
                "origin",
                "+refs/heads/*:refs/heads/*",
            )
        return self._git("clone", "--quiet", "--bare", self.stack.repo_url, str(self.cache_path))

    def fetch_branch(self, branch: str) -> Command:
        """Clone one branch of the remote straight into the working directory."""

        return self._git(
            "clone",
            "--quiet",
            "--branch",
            branch,
            "--single-branch",
            self.stack.repo_url,
            str(self.working_directory),
        )

    def clone(self) -> list[Command]:
        return [self._git("clone", "--quiet", str(self.cache_path), str(self.working_directory))]

    def checkout(self, commit_sha: str) -> Command:
        return self._git("-C", str(self.working_directory), "checkout", "--quiet", commit_sha)

    def _git(self, *args: str) -> Command:
        return Command(
            ["git", *args],
            env=self.env(),
            timeout_seconds=self.settings.command_timeout_seconds,
            tick_seconds=self.settings.tick_seconds,
        )

    def _step(self, script: str) -> Command:
        return Command.shell(
            script,
            env=self.env(),
            cwd=self.working_directory,
            timeout_seconds=self.settings.command_timeout_seconds,
            tick_seconds=self.settings.tick_seconds,
        )


class DeployCommands(TaskCommands):
    """Deploy steps, with the deployed revision and compare link exported."""

    def steps(self) -> tuple[str, ...]:
        return self.stack.deploy_steps

    def env(self) -> dict[str, str]:
        env = super().env()
        commit_sha = self.task.until_commit_sha or ""
        env.update(
            {
                "SHA": commit_sha,
                "REVISION": commit_sha,
                "DIFF_LINK": self.diff_url(),
            },
        )
        return env

    def diff_url(self) -> str:
        since = self.task.since_commit_sha or self.task.until_commit_sha or ""
        until = self.task.until_commit_sha or ""
        return f"https://github.com/{self.stack.repo_full_name}/compare/{since}...{until}"


class PredictiveTaskCommands(TaskCommands):
    """CI run / verify / abort steps of a predictive branch task."""

    def steps(self) -> tuple[str, ...]:
        task_type = self.task.predictive_task_type
        if task_type == PredictiveTaskType.RUN:
            return self.stack.ci_run_steps
        if task_type == PredictiveTaskType.VERIFY:
            return self.stack.ci_verify_steps
        if task_type == PredictiveTaskType.ABORT:
            return self.stack.ci_abort_steps
        return ()

    def env(self) -> dict[str, str]:
        env = super().env()
        env["PREDICTIVE_TASK_TYPE"] = self.task.predictive_task_type.value
        if self.task.predictive_branch_id is not None:
            env["PREDICTIVE_BRANCH_ID"] = self.task.predictive_branch_id
        if self.task.predictive_build_id is not None:
            env["PREDICTIVE_BUILD_ID"] = self.task.predictive_build_id
        return env


def commands_for(
    *,
    task: TaskView,
    stack: StackView,
    settings: ExecutionSettings,
    cache_path: Path,
) -> TaskCommands:
    """Pick the command set matching the task kind."""

    command_cls: type[TaskCommands]
    if task.kind == TaskKind.PREDICTIVE:
        command_cls = PredictiveTaskCommands
    else:
        command_cls = DeployCommands
    return command_cls(task=task, stack=stack, settings=settings, cache_path=cache_path)
