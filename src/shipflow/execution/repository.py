"""Persistent task queue repository."""

from __future__ import annotations

import json
from datetime import datetime
from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from shipflow.execution.models import (
    HEALTHY_EVENT,
    TERMINAL_TASK_STATUSES,
    PredictiveTaskType,
    StackCreate,
    StackView,
    TaskCreate,
    TaskDetails,
    TaskEventView,
    TaskKind,
    TaskStatus,
    TaskView,
)
from shipflow.storage.common import (
    SqliteStore,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from shipflow.storage.sqlmodel_models import (
    PredictiveBranch,
    PredictiveBuild,
    Stack,
    Task,
    TaskChunk,
    TaskEvent,
)


class TaskRepository(SqliteStore):
    """Task queue persistence facade backed by SQLModel + SQLite."""

    def create_stack(self, payload: StackCreate) -> StackView:
        with Session(self.engine) as session:
            row = Stack(
                stack_id=payload.stack_id,
                repo_full_name=payload.repo_full_name,
                branch=payload.branch,
                repo_url=payload.repo_url,
                release_status_delay_seconds=payload.release_status_delay_seconds,
                dependencies_steps_json=json.dumps(list(payload.dependencies_steps)),
                deploy_steps_json=json.dumps(list(payload.deploy_steps)),
                ci_run_steps_json=json.dumps(list(payload.ci_run_steps)),
                ci_verify_steps_json=json.dumps(list(payload.ci_verify_steps)),
                ci_abort_steps_json=json.dumps(list(payload.ci_abort_steps)),
                created_at=utc_now(),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_stack_view(row)

    def get_stack(self, stack_id: str) -> StackView:
        with Session(self.engine) as session:
            row = session.get(Stack, stack_id)
            if row is None:
                raise RuntimeError(f"Stack not found: {stack_id}")
            return _to_stack_view(row)

    def enqueue_deploy(self, payload: TaskCreate) -> TaskView:
        """Create a pending deploy task."""

        now = utc_now()
        task_id = payload.task_id or str(uuid4())
        with Session(self.engine) as session:
            if session.get(Stack, payload.stack_id) is None:
                raise RuntimeError(f"Stack not found: {payload.stack_id}")
            row = Task(
                task_id=task_id,
                stack_id=payload.stack_id,
                kind=TaskKind.DEPLOY.value,
                status=TaskStatus.PENDING.value,
                since_commit_sha=payload.since_commit_sha,
                until_commit_sha=payload.until_commit_sha,
                predictive_task_type=PredictiveTaskType.NONE.value,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="enqueued",
                status_from=None,
                status_to=TaskStatus.PENDING,
                details={"kind": TaskKind.DEPLOY.value, "until_commit": payload.until_commit_sha},
            )
            session.commit()
            session.refresh(row)
            return to_task_view(row)

    def get_task(self, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.get(Task, task_id)
            return to_task_view(row) if row is not None else None

    def next_pending_task_id(self) -> str | None:
        """Oldest pending task, the head of the work queue."""

        with Session(self.engine) as session:
            return session.exec(
                select(Task.task_id)
                .where(Task.status == TaskStatus.PENDING.value)
                .order_by(col(Task.created_at).asc())
                .limit(1),
            ).one_or_none()

    def start_task(self, *, task_id: str, worker_id: str | None = None) -> bool:
        """Move a pending task to running; False when it is no longer pending."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Task)
                .where(
                    col(Task.task_id) == task_id,
                    col(Task.status) == TaskStatus.PENDING.value,
                )
                .values(
                    status=TaskStatus.RUNNING.value,
                    started_at=to_db_datetime(now),
                    heartbeat_at=to_db_datetime(now),
                    worker_id=worker_id,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="started",
                status_from=TaskStatus.PENDING,
                status_to=TaskStatus.RUNNING,
                details={"worker_id": worker_id},
            )
            session.commit()
            return True

    def ping(self, *, task_id: str) -> None:
        """Update heartbeat for a running task."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            session.exec(
                sa_update(Task)
                .where(
                    col(Task.task_id) == task_id,
                    col(Task.status) == TaskStatus.RUNNING.value,
                )
                .values(heartbeat_at=now, updated_at=now),
            )
            session.commit()

    def set_pid(self, *, task_id: str, pid: int | None) -> None:
        with Session(self.engine) as session:
            session.exec(
                sa_update(Task)
                .where(
                    col(Task.task_id) == task_id,
                    col(Task.status) == TaskStatus.RUNNING.value,
                )
                .values(pid=pid, updated_at=to_db_datetime(utc_now())),
            )
            session.commit()

    def write(self, *, task_id: str, text: str) -> None:
        """Append text to the task output log."""

        if not text:
            return
        with Session(self.engine) as session:
            session.add(TaskChunk(task_id=task_id, text=text, created_at=utc_now()))
            session.commit()

    def read_output(self, *, task_id: str) -> str:
        with Session(self.engine) as session:
            chunks = session.exec(
                select(TaskChunk.text)
                .where(TaskChunk.task_id == task_id)
                .order_by(col(TaskChunk.id).asc()),
            ).all()
        return "".join(chunks)

    def finish_task(
        self,
        *,
        task_id: str,
        status: TaskStatus,
        error_summary: str | None = None,
    ) -> bool:
        """Record a terminal outcome for a running task."""

        if status not in TERMINAL_TASK_STATUSES:
            raise ValueError(f"Unsupported terminal status: {status}")

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Task)
                .where(
                    col(Task.task_id) == task_id,
                    col(Task.status) == TaskStatus.RUNNING.value,
                )
                .values(
                    status=status.value,
                    error_summary=error_summary,
                    finished_at=to_db_datetime(now),
                    heartbeat_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type=status.value,
                status_from=TaskStatus.RUNNING,
                status_to=status,
                details={"error_summary": error_summary} if error_summary else {},
            )
            session.commit()
            return True

    def mark_deploy_healthy(self, *, task_id: str, description: str) -> bool:
        """Record the ``healthy`` event of a successful deploy, at most once."""

        with Session(self.engine) as session:
            row = session.get(Task, task_id)
            if row is None:
                raise RuntimeError(f"Task not found: {task_id}")
            if row.kind != TaskKind.DEPLOY.value or row.status != TaskStatus.SUCCESS.value:
                return False
            already = session.exec(
                select(TaskEvent.id).where(
                    TaskEvent.task_id == task_id,
                    TaskEvent.event_type == HEALTHY_EVENT,
                ),
            ).first()
            if already is not None:
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type=HEALTHY_EVENT,
                status_from=None,
                status_to=None,
                details={"description": description},
            )
            session.commit()
            return True

    def is_deploy_healthy(self, *, task_id: str) -> bool:
        with Session(self.engine) as session:
            found = session.exec(
                select(TaskEvent.id).where(
                    TaskEvent.task_id == task_id,
                    TaskEvent.event_type == HEALTHY_EVENT,
                ),
            ).first()
        return found is not None

    def request_abort(self, *, task_id: str) -> None:
        """Flag a task for cooperative abort; a pending task is aborted outright."""

        now = utc_now()
        with Session(self.engine) as session:
            row = session.get(Task, task_id)
            if row is None:
                raise RuntimeError(f"Task not found: {task_id}")
            previous = TaskStatus(row.status)
            if previous in TERMINAL_TASK_STATUSES:
                raise RuntimeError(f"Task cannot be aborted from status={row.status}")

            values: dict[str, object] = {
                "abort_requested_at": to_db_datetime(now),
                "updated_at": to_db_datetime(now),
            }
            if previous == TaskStatus.PENDING:
                values["status"] = TaskStatus.ABORTED.value
                values["finished_at"] = to_db_datetime(now)
            result = session.exec(
                sa_update(Task)
                .where(col(Task.task_id) == task_id, col(Task.status) == previous.value)
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                raise RuntimeError(
                    "Task state changed concurrently while aborting; "
                    f"please retry command (task_id={task_id}).",
                )
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="abort_requested",
                status_from=previous,
                status_to=TaskStatus(values.get("status", previous.value)),
                details={},
            )
            session.commit()

    def should_abort(self, *, task_id: str) -> int | None:
        """Return the new abort attempt number when an abort was requested."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Task)
                .where(
                    col(Task.task_id) == task_id,
                    col(Task.status) == TaskStatus.RUNNING.value,
                    col(Task.abort_requested_at).is_not(None),
                )
                .values(abort_attempts=Task.abort_attempts + 1),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            attempts = session.exec(
                select(Task.abort_attempts).where(Task.task_id == task_id),
            ).one()
            session.commit()
            return attempts

    def recover_stale_tasks(self, *, stale_before: datetime) -> list[str]:
        """Mark running tasks whose heartbeat stopped as errored."""

        now = utc_now()
        recovered: list[str] = []
        with Session(self.engine) as session:
            rows = session.exec(
                select(Task).where(
                    Task.status == TaskStatus.RUNNING.value,
                    col(Task.heartbeat_at) < to_db_datetime(stale_before),
                ),
            ).all()
            for row in rows:
                result = session.exec(
                    sa_update(Task)
                    .where(
                        col(Task.task_id) == row.task_id,
                        col(Task.status) == TaskStatus.RUNNING.value,
                    )
                    .values(
                        status=TaskStatus.ERROR.value,
                        error_summary="Task heartbeat lost; worker presumed dead.",
                        finished_at=to_db_datetime(now),
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    continue
                self._add_event(
                    session=session,
                    task_id=row.task_id,
                    event_type="stale_recovered",
                    status_from=TaskStatus.RUNNING,
                    status_to=TaskStatus.ERROR,
                    details={"worker_id": row.worker_id},
                )
                recovered.append(row.task_id)
            session.commit()
        return recovered

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        predictive_branch_id: str | None = None,
        limit: int = 50,
    ) -> list[TaskView]:
        """List recent tasks, optionally filtered by status or branch."""

        with Session(self.engine) as session:
            statement = select(Task).order_by(col(Task.created_at).desc()).limit(limit)
            if status is not None:
                statement = statement.where(Task.status == status.value)
            if predictive_branch_id is not None:
                statement = statement.where(Task.predictive_branch_id == predictive_branch_id)
            rows = session.exec(statement).all()
        return [to_task_view(row) for row in rows]

    def latest_branch_task(self, *, branch_id: str) -> TaskView | None:
        tasks = self.list_tasks(predictive_branch_id=branch_id, limit=1)
        return tasks[0] if tasks else None

    def predictive_checkout_ref(self, task: TaskView) -> str | None:
        """Branch to clone for a predictive task; build aggregate first, then branch."""

        with Session(self.engine) as session:
            if task.predictive_build_id is not None:
                build = session.get(PredictiveBuild, task.predictive_build_id)
                if build is None:
                    raise RuntimeError(f"Predictive build not found: {task.predictive_build_id}")
                return build.branch
            if task.predictive_branch_id is not None:
                branch = session.get(PredictiveBranch, task.predictive_branch_id)
                if branch is None:
                    raise RuntimeError(
                        f"Predictive branch not found: {task.predictive_branch_id}",
                    )
                return branch.branch
        return None

    def count_tasks_by_status(self) -> dict[str, int]:
        with Session(self.engine) as session:
            statuses = session.exec(select(Task.status)).all()
        counts: dict[str, int] = {}
        for status in statuses:
            counts[status] = counts.get(status, 0) + 1
        return counts

    def get_task_details(self, *, task_id: str) -> TaskDetails | None:
        """Return task details with event stream and output."""

        with Session(self.engine) as session:
            task = session.get(Task, task_id)
            if task is None:
                return None
            event_rows = session.exec(
                select(TaskEvent)
                .where(TaskEvent.task_id == task_id)
                .order_by(col(TaskEvent.id).asc()),
            ).all()
            task_view = to_task_view(task)

        events: list[TaskEventView] = []
        for row in event_rows:
            details = {}
            if row.details_json:
                parsed = json.loads(row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                TaskEventView(
                    event_id=row.id or 0,
                    task_id=row.task_id,
                    event_type=row.event_type,
                    status_from=(
                        TaskStatus(row.status_from) if row.status_from is not None else None
                    ),
                    status_to=TaskStatus(row.status_to) if row.status_to is not None else None,
                    created_at=to_utc_aware_datetime(row.created_at),
                    details=details,
                ),
            )
        return TaskDetails(task=task_view, events=events, output=self.read_output(task_id=task_id))

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, object],
    ) -> None:
        add_task_event(
            session=session,
            task_id=task_id,
            event_type=event_type,
            status_from=status_from,
            status_to=status_to,
            details=details,
        )


def add_task_event(  # noqa: PLR0913
    *,
    session: Session,
    task_id: str,
    event_type: str,
    status_from: TaskStatus | None,
    status_to: TaskStatus | None,
    details: dict[str, object],
) -> None:
    session.add(
        TaskEvent(
            task_id=task_id,
            event_type=event_type,
            status_from=status_from.value if status_from is not None else None,
            status_to=status_to.value if status_to is not None else None,
            details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
            if details
            else None,
            created_at=utc_now(),
        ),
    )


def to_task_view(row: Task) -> TaskView:
    return TaskView(
        task_id=row.task_id,
        stack_id=row.stack_id,
        kind=TaskKind(row.kind),
        status=TaskStatus(row.status),
        pid=row.pid,
        since_commit_sha=row.since_commit_sha,
        until_commit_sha=row.until_commit_sha,
        predictive_build_id=row.predictive_build_id,
        predictive_branch_id=row.predictive_branch_id,
        predictive_task_type=PredictiveTaskType(row.predictive_task_type),
        abort_requested_at=optional_utc(row.abort_requested_at),
        abort_attempts=row.abort_attempts,
        worker_id=row.worker_id,
        error_summary=row.error_summary,
        created_at=to_utc_aware_datetime(row.created_at),
        started_at=optional_utc(row.started_at),
        heartbeat_at=optional_utc(row.heartbeat_at),
        finished_at=optional_utc(row.finished_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_stack_view(row: Stack) -> StackView:
    return StackView(
        stack_id=row.stack_id,
        repo_full_name=row.repo_full_name,
        branch=row.branch,
        repo_url=row.repo_url,
        release_status_delay_seconds=row.release_status_delay_seconds,
        dependencies_steps=tuple(json.loads(row.dependencies_steps_json)),
        deploy_steps=tuple(json.loads(row.deploy_steps_json)),
        ci_run_steps=tuple(json.loads(row.ci_run_steps_json)),
        ci_verify_steps=tuple(json.loads(row.ci_verify_steps_json)),
        ci_abort_steps=tuple(json.loads(row.ci_abort_steps_json)),
        created_at=to_utc_aware_datetime(row.created_at),
    )
