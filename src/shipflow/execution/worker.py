"""Queue worker that executes pending tasks one at a time."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from shipflow.best_effort import best_effort
from shipflow.execution.engine import TaskExecutor
from shipflow.execution.models import TaskKind, TaskStatus, TaskView
from shipflow.execution.repository import TaskRepository
from shipflow.storage.common import utc_now

logger = logging.getLogger(__name__)

STOP_SIGNALS = (signal.SIGINT, signal.SIGTERM)


@dataclass(slots=True)
class WorkerRunSummary:
    """Task outcome counts for one worker invocation."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    timeouts: int = 0
    aborted: int = 0
    idle_polls: int = 0

    def record(self, status: TaskStatus) -> None:
        self.processed += 1
        if status == TaskStatus.SUCCESS:
            self.succeeded += 1
        elif status == TaskStatus.TIMED_OUT:
            self.timeouts += 1
        elif status == TaskStatus.ABORTED:
            self.aborted += 1
        else:
            self.failed += 1


class TaskWorker:
    """Consumes pending tasks and hands predictive outcomes back to their branch."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: TaskRepository,
        executor: TaskExecutor,
        worker_id: str,
        poll_interval_seconds: float = 2.0,
        stale_task_seconds: int = 1800,
        on_predictive_task_finished: Callable[[TaskView], None] | None = None,
    ) -> None:
        self.repository = repository
        self.executor = executor
        self.worker_id = worker_id
        self.poll_interval_seconds = poll_interval_seconds
        self.stale_task_seconds = stale_task_seconds
        self.on_predictive_task_finished = on_predictive_task_finished
        self._stopping = False

    def run_once(self) -> WorkerRunSummary:
        """Process at most one task from the queue."""

        summary = WorkerRunSummary()
        if not self._step(summary):
            summary.idle_polls += 1
        return summary

    def run_loop(
        self,
        *,
        max_tasks: int | None = None,
        max_idle_polls: int = 1,
    ) -> WorkerRunSummary:
        """Keep draining the queue.

        Stops on SIGINT/SIGTERM, after ``max_tasks`` processed tasks, or after
        ``max_idle_polls`` empty polls in a row.
        """

        summary = WorkerRunSummary()
        idle_streak = 0
        with self._stop_on_signals():
            while not self._stopping:
                if max_tasks is not None and summary.processed >= max_tasks:
                    break
                if self._step(summary):
                    idle_streak = 0
                    continue
                summary.idle_polls += 1
                idle_streak += 1
                if idle_streak >= max_idle_polls:
                    break
                self._idle_wait(self.poll_interval_seconds)
        return summary

    def _step(self, summary: WorkerRunSummary) -> bool:
        """Claim and run the next task; False when nothing was run."""

        if self._stopping:
            return False
        self._recover_stale_tasks()
        task_id = self.repository.next_pending_task_id()
        if task_id is None:
            return False
        status = self.executor.perform(task_id)
        if status is None:
            # Lost the claim to another worker.
            return False
        summary.record(status)
        self._notify_finished(task_id)
        return True

    def _recover_stale_tasks(self) -> None:
        if self.stale_task_seconds <= 0:
            return
        cutoff = utc_now() - timedelta(seconds=self.stale_task_seconds)
        for task_id in self.repository.recover_stale_tasks(stale_before=cutoff):
            logger.warning("Recovered stale task %s", task_id)
            self._notify_finished(task_id)

    def _notify_finished(self, task_id: str) -> None:
        if self.on_predictive_task_finished is None:
            return
        task = self.repository.get_task(task_id)
        if task is None or task.kind != TaskKind.PREDICTIVE:
            return
        with best_effort(f"refresh predictive branch after task {task_id}"):
            self.on_predictive_task_finished(task)

    def _idle_wait(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stopping:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            time.sleep(min(0.1, remaining))

    @contextmanager
    def _stop_on_signals(self) -> Iterator[None]:
        def _handler(signum: int, _frame: object | None) -> None:
            self._stopping = True
            logger.info(
                "Worker %s stopping after signal %s",
                self.worker_id,
                signal.Signals(signum).name,
            )

        previous: dict[signal.Signals, Any] = {}
        try:
            for signum in STOP_SIGNALS:
                previous[signum] = signal.signal(signum, _handler)
        except ValueError:
            # Not the main thread: run without signal handling.
            pass
        try:
            yield
        finally:
            for signum, handler in previous.items():
                signal.signal(signum, handler)
