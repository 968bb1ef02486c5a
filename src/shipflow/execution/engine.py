"""Task execution engine: checkout, install, run, report, abort."""

from __future__ import annotations

import logging
import os
import shutil
import signal
from pathlib import Path

from sqlalchemy.exc import SQLAlchemyError

from shipflow.best_effort import best_effort
from shipflow.config import ExecutionSettings
from shipflow.execution.command import Command, CommandError, CommandFailed, CommandTimedOut
from shipflow.execution.commands import TaskCommands, commands_for
from shipflow.execution.git_cache import GitCacheLock
from shipflow.execution.models import TaskKind, TaskStatus, TaskView
from shipflow.execution.repository import TaskRepository
from shipflow.metrics import DEPLOYS, ApplicationMetrics

logger = logging.getLogger(__name__)

GRACEFUL_ABORT_ATTEMPTS = 3


class WorkerFatalError(BaseException):
    """Unrecoverable condition: the task is marked errored and the worker exits."""


class TaskAborted(CommandFailed):
    """Abort was requested before the next command could start."""


class TaskExecutor:
    """Drives one task from ``pending`` to a terminal status."""

    def __init__(
        self,
        *,
        repository: TaskRepository,
        settings: ExecutionSettings,
        metrics: ApplicationMetrics | None = None,
        worker_id: str | None = None,
    ) -> None:
        self.repository = repository
        self.settings = settings
        self.metrics = metrics
        self.worker_id = worker_id
        self.git_cache = GitCacheLock(
            settings.git_cache_root,
            timeout_seconds=settings.git_cache_lock_timeout_seconds,
            poll_seconds=settings.lock_poll_seconds,
        )

    def perform(self, task_id: str) -> TaskStatus | None:
        """Execute a pending task; returns its terminal status, or None when skipped.

        Delivery is at-least-once, so a task that is not ``pending`` is left
        untouched.
        """

        task = self.repository.get_task(task_id)
        if task is None:
            logger.error("Task %s not found. Aborting.", task_id)
            return None
        if task.status != TaskStatus.PENDING:
            logger.error("Task %s already in `%s` state. Aborting.", task_id, task.status.value)
            return None
        if not self.repository.start_task(task_id=task_id, worker_id=self.worker_id):
            logger.error("Task %s was picked up by another worker. Aborting.", task_id)
            return None

        try:
            return self._run(task)
        finally:
            self._clear_working_directory(task_id)

    def check_for_abort(self, task_id: str) -> None:
        """Escalate to a process signal when an abort was requested."""

        attempts = self.repository.should_abort(task_id=task_id)
        if attempts is None:
            return
        logger.info("Task %s abort requested, attempt %d", task_id, attempts)
        if attempts > GRACEFUL_ABORT_ATTEMPTS:
            self.abort(task_id, sig=signal.SIGKILL)
        else:
            self.abort(task_id, sig=signal.SIGTERM)

    def abort(self, task_id: str, *, sig: signal.Signals = signal.SIGTERM) -> None:
        task = self.repository.get_task(task_id)
        pid = task.pid if task is not None else None
        if pid is None:
            logger.warning("Task %s can't be aborted, no recorded pid", task_id)
            self.repository.write(task_id=task_id, text="Can't abort, no recorded pid\n")
            return
        self.repository.write(task_id=task_id, text=f"$ kill -{sig.name} {pid}\n")
        try:
            os.killpg(pid, sig)
        except OSError as error:
            self.repository.write(task_id=task_id, text=f"kill: ({pid}) - {error}\n")

    def _run(self, task: TaskView) -> TaskStatus:
        task_id = task.task_id
        error_summary: str | None = None
        try:
            self.repository.ping(task_id=task_id)
            logger.info("Task %s run!", task_id)
            commands = self._commands_for(task)
            self._checkout_repository(task, commands)
            logger.info("Task %s checkout_repository", task_id)
            self._capture_all(task_id, commands.install_dependencies())
            logger.info("Task %s install_dependencies", task_id)
            self._capture_all(task_id, commands.perform())
            self.repository.write(task_id=task_id, text="\nCompleted successfully\n")
            logger.info("Task %s Completed successfully", task_id)
            status = TaskStatus.SUCCESS
        except CommandTimedOut as error:
            self.repository.write(task_id=task_id, text=f"\n{error}\n")
            status, error_summary = TaskStatus.TIMED_OUT, str(error)
        except CommandError as error:
            self.repository.write(task_id=task_id, text=f"\n{error}\n")
            status = TaskStatus.ABORTED if self._abort_requested(task_id) else TaskStatus.FAILED
            error_summary = str(error)
        except Exception as error:
            logger.exception("Task %s errored", task_id)
            status, error_summary = TaskStatus.ERROR, repr(error)
        except BaseException as error:
            logger.critical("Task %s hit a fatal error: %r", task_id, error)
            self._report(task, TaskStatus.ERROR, error_summary=repr(error))
            raise
        return self._report(task, status, error_summary=error_summary)

    def _commands_for(self, task: TaskView) -> TaskCommands:
        stack = self.repository.get_stack(task.stack_id)
        return commands_for(
            task=task,
            stack=stack,
            settings=self.settings,
            cache_path=self.git_cache.cache_path(stack.stack_id),
        )

    def _checkout_repository(self, task: TaskView, commands: TaskCommands) -> None:
        predictive_ref = self.repository.predictive_checkout_ref(task)
        if predictive_ref is not None:
            self._capture(task.task_id, commands.fetch_branch(predictive_ref))
            return

        commit_sha = task.until_commit_sha
        if commit_sha is None:
            raise RuntimeError(f"Task {task.task_id} has no target commit")
        if not commands.fetched(commit_sha).run().success():
            # Lock wait can take the whole timeout; keep the task alive meanwhile.
            self.repository.ping(task_id=task.task_id)
            with self.git_cache.acquire(task.stack_id):
                self.repository.ping(task_id=task.task_id)
                if not commands.fetched(commit_sha).run().success():
                    self._capture(task.task_id, commands.fetch())

        self._capture_all(task.task_id, commands.clone())
        self._capture(task.task_id, commands.checkout(commit_sha))

    def _capture_all(self, task_id: str, commands: list[Command]) -> list[bool]:
        return [self._capture(task_id, command) for command in commands]

    def _capture(self, task_id: str, command: Command) -> bool:
        if self._abort_requested(task_id):
            raise TaskAborted(f"Task {task_id} aborted before running: {command}")
        logger.info("Task %s running command: %s", task_id, command)
        command.start(on_tick=lambda: self._on_tick(task_id))
        self.repository.write(task_id=task_id, text=f"$ {command}\npid: {command.pid}\n")
        self.repository.set_pid(task_id=task_id, pid=command.pid)
        for line in command.stream():
            self.repository.write(task_id=task_id, text=line)
        self.repository.write(task_id=task_id, text="\n")
        return command.success()

    def _on_tick(self, task_id: str) -> None:
        self.repository.ping(task_id=task_id)
        self.check_for_abort(task_id)

    def _abort_requested(self, task_id: str) -> bool:
        task = self.repository.get_task(task_id)
        return task is not None and task.abort_requested_at is not None

    def _report(
        self,
        task: TaskView,
        status: TaskStatus,
        *,
        error_summary: str | None = None,
    ) -> TaskStatus:
        """Persist the terminal status; a store that refuses the write stops the worker."""

        try:
            finished = self.repository.finish_task(
                task_id=task.task_id,
                status=status,
                error_summary=error_summary,
            )
        except SQLAlchemyError as error:
            raise WorkerFatalError(
                f"Task {task.task_id}: could not record status {status.value}: {error}",
            ) from error
        if not finished:
            logger.warning("Task %s left running state before reporting %s", task.task_id, status)
        if task.kind == TaskKind.DEPLOY and self.metrics is not None:
            with best_effort("deploys metric"):
                stack = self.repository.get_stack(task.stack_id)
                self.metrics.increment_counter(
                    DEPLOYS,
                    {"final_result": status.value, "repository": stack.repo_full_name},
                )
        return status

    def _clear_working_directory(self, task_id: str) -> None:
        shutil.rmtree(Path(self.settings.work_root) / task_id, ignore_errors=True)
