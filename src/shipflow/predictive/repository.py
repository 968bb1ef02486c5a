"""Persistence for predictive builds, branches, merge requests and CI jobs."""

from __future__ import annotations

import logging
from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from shipflow.execution.models import (
    TERMINAL_TASK_STATUSES,
    PredictiveTaskType,
    TaskKind,
    TaskStatus,
    TaskView,
)
from shipflow.execution.repository import add_task_event, to_task_view
from shipflow.predictive.models import (
    TERMINAL_BRANCH_STATUSES,
    BranchStatus,
    CiJobState,
    CiJobStatusView,
    MergeRequestCreate,
    MergeRequestStatus,
    MergeRequestView,
    PredictiveBranchCreate,
    PredictiveBranchView,
    PredictiveBuildCreate,
    PredictiveBuildView,
    PredictiveMergeRequestStatus,
    PredictiveMergeRequestView,
)
from shipflow.storage.common import (
    SqliteStore,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from shipflow.storage.sqlmodel_models import (
    CiJobsStatus,
    MergeRequest,
    MergeRequestComment,
    PredictiveBranch,
    PredictiveBuild,
    PredictiveMergeRequest,
    Stack,
    Task,
)

logger = logging.getLogger(__name__)


class PredictiveRepository(SqliteStore):
    """Predictive-branch persistence facade backed by SQLModel + SQLite."""

    def create_build(self, payload: PredictiveBuildCreate) -> PredictiveBuildView:
        now = utc_now()
        with Session(self.engine) as session:
            row = PredictiveBuild(
                build_id=payload.build_id or str(uuid4()),
                pipeline_id=payload.pipeline_id,
                branch=payload.branch,
                mode=payload.mode,
                status="running",
                build_message=payload.build_message,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_build_view(row)

    def get_build(self, build_id: str) -> PredictiveBuildView:
        with Session(self.engine) as session:
            row = session.get(PredictiveBuild, build_id)
            if row is None:
                raise RuntimeError(f"Predictive build not found: {build_id}")
            return _to_build_view(row)

    def repository_name(self, stack_id: str) -> str:
        with Session(self.engine) as session:
            row = session.get(Stack, stack_id)
            if row is None:
                raise RuntimeError(f"Stack not found: {stack_id}")
            return row.repo_full_name

    def stack_branch(self, stack_id: str) -> str:
        with Session(self.engine) as session:
            row = session.get(Stack, stack_id)
            if row is None:
                raise RuntimeError(f"Stack not found: {stack_id}")
            return row.branch

    # Merge requests

    def create_merge_request(self, payload: MergeRequestCreate) -> MergeRequestView:
        now = utc_now()
        with Session(self.engine) as session:
            row = MergeRequest(
                merge_request_id=payload.merge_request_id or str(uuid4()),
                stack_id=payload.stack_id,
                number=payload.number,
                branch=payload.branch,
                status=MergeRequestStatus.PENDING.value,
                parent_id=payload.parent_id,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_merge_request_view(row)

    def get_merge_request(self, merge_request_id: str) -> MergeRequestView:
        with Session(self.engine) as session:
            row = session.get(MergeRequest, merge_request_id)
            if row is None:
                raise RuntimeError(f"Merge request not found: {merge_request_id}")
            return _to_merge_request_view(row)

    def dependent_merge_requests(self, merge_request_id: str) -> list[MergeRequestView]:
        """Every request stacked on this one, transitively, parents before children."""

        found: list[MergeRequestView] = []
        seen = {merge_request_id}
        frontier = [merge_request_id]
        with Session(self.engine) as session:
            while frontier:
                rows = session.exec(
                    select(MergeRequest)
                    .where(col(MergeRequest.parent_id).in_(frontier))
                    .order_by(col(MergeRequest.number).asc()),
                ).all()
                frontier = []
                for row in rows:
                    if row.merge_request_id in seen:
                        continue
                    seen.add(row.merge_request_id)
                    frontier.append(row.merge_request_id)
                    found.append(_to_merge_request_view(row))
        return found

    def set_merge_request_status(
        self,
        merge_request_id: str,
        status: MergeRequestStatus,
        *,
        rejection_reason: str | None = None,
    ) -> None:
        with Session(self.engine) as session:
            values: dict[str, object] = {
                "status": status.value,
                "updated_at": to_db_datetime(utc_now()),
            }
            if rejection_reason is not None:
                values["rejection_reason"] = rejection_reason
            result = session.exec(
                sa_update(MergeRequest)
                .where(col(MergeRequest.merge_request_id) == merge_request_id)
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                raise RuntimeError(f"Merge request not found: {merge_request_id}")
            session.commit()

    def post_comment(self, merge_request_id: str, body: str) -> None:
        with Session(self.engine) as session:
            session.add(
                MergeRequestComment(
                    merge_request_id=merge_request_id,
                    body=body,
                    created_at=utc_now(),
                ),
            )
            session.commit()

    def list_comments(self, merge_request_id: str) -> list[str]:
        with Session(self.engine) as session:
            return list(
                session.exec(
                    select(MergeRequestComment.body)
                    .where(MergeRequestComment.merge_request_id == merge_request_id)
                    .order_by(col(MergeRequestComment.id).asc()),
                ).all(),
            )

    # Branches

    def create_branch(self, payload: PredictiveBranchCreate) -> PredictiveBranchView:
        """Open a branch in ``pending`` with one waiting binding per merge request."""

        now = utc_now()
        branch_id = payload.branch_id or str(uuid4())
        with Session(self.engine) as session:
            row = PredictiveBranch(
                branch_id=branch_id,
                build_id=payload.build_id,
                stack_id=payload.stack_id,
                branch=payload.branch,
                commit_sha=payload.commit_sha,
                status=BranchStatus.PENDING.value,
                lock_version=0,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            for merge_request_id in payload.merge_request_ids:
                session.add(
                    PredictiveMergeRequest(
                        id=str(uuid4()),
                        branch_id=branch_id,
                        merge_request_id=merge_request_id,
                        status=PredictiveMergeRequestStatus.PENDING.value,
                        created_at=now,
                        updated_at=now,
                    ),
                )
            session.commit()
            session.refresh(row)
            return _to_branch_view(row)

    def get_branch(self, branch_id: str) -> PredictiveBranchView:
        with Session(self.engine) as session:
            row = session.get(PredictiveBranch, branch_id)
            if row is None:
                raise RuntimeError(f"Predictive branch not found: {branch_id}")
            return _to_branch_view(row)

    def list_branches(
        self,
        *,
        build_id: str | None = None,
        status: BranchStatus | None = None,
    ) -> list[PredictiveBranchView]:
        with Session(self.engine) as session:
            statement = select(PredictiveBranch).order_by(col(PredictiveBranch.created_at).asc())
            if build_id is not None:
                statement = statement.where(PredictiveBranch.build_id == build_id)
            if status is not None:
                statement = statement.where(PredictiveBranch.status == status.value)
            rows = session.exec(statement).all()
        return [_to_branch_view(row) for row in rows]

    def branches_for_merge_request(self, merge_request_id: str) -> list[PredictiveBranchView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(PredictiveBranch)
                .join(
                    PredictiveMergeRequest,
                    col(PredictiveMergeRequest.branch_id) == col(PredictiveBranch.branch_id),
                )
                .where(PredictiveMergeRequest.merge_request_id == merge_request_id)
                .order_by(col(PredictiveBranch.created_at).asc()),
            ).all()
        return [_to_branch_view(row) for row in rows]

    def transition_branch(
        self,
        *,
        branch_id: str,
        current: BranchStatus,
        target: BranchStatus,
    ) -> PredictiveBranchView | None:
        """Move a branch from ``current`` to ``target``; None if it moved meanwhile."""

        now = utc_now()
        values: dict[str, object] = {
            "status": target.value,
            "lock_version": PredictiveBranch.lock_version + 1,
            "updated_at": to_db_datetime(now),
        }
        if target in TERMINAL_BRANCH_STATUSES:
            values["finished_at"] = to_db_datetime(now)
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(PredictiveBranch)
                .where(
                    col(PredictiveBranch.branch_id) == branch_id,
                    col(PredictiveBranch.status) == current.value,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            session.commit()
            row = session.get(PredictiveBranch, branch_id)
            if row is None:
                raise RuntimeError(f"Predictive branch not found: {branch_id}")
            session.refresh(row)
            return _to_branch_view(row)

    def create_branch_task(
        self,
        *,
        branch: PredictiveBranchView,
        task_type: PredictiveTaskType,
    ) -> TaskView | None:
        """Insert a pending task for the branch under its ``lock_version``.

        Returns None when the branch changed since ``branch`` was read, or when
        a non-terminal task of the same type already exists.
        """

        now = utc_now()
        task_id = str(uuid4())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(PredictiveBranch)
                .where(
                    col(PredictiveBranch.branch_id) == branch.branch_id,
                    col(PredictiveBranch.lock_version) == branch.lock_version,
                )
                .values(lock_version=PredictiveBranch.lock_version + 1),
            )
            if result.rowcount != 1:
                session.rollback()
                return None

            active = session.exec(
                select(Task.task_id).where(
                    Task.predictive_branch_id == branch.branch_id,
                    Task.predictive_task_type == task_type.value,
                    col(Task.status).not_in([status.value for status in TERMINAL_TASK_STATUSES]),
                ),
            ).first()
            if active is not None:
                session.rollback()
                logger.info(
                    "Predictive branch %s already has %s task %s in flight",
                    branch.branch_id,
                    task_type.value,
                    active,
                )
                return None

            row = Task(
                task_id=task_id,
                stack_id=branch.stack_id,
                kind=TaskKind.PREDICTIVE.value,
                status=TaskStatus.PENDING.value,
                until_commit_sha=branch.commit_sha,
                predictive_branch_id=branch.branch_id,
                predictive_task_type=task_type.value,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            add_task_event(
                session=session,
                task_id=task_id,
                event_type="enqueued",
                status_from=None,
                status_to=TaskStatus.PENDING,
                details={
                    "kind": TaskKind.PREDICTIVE.value,
                    "predictive_task_type": task_type.value,
                    "branch_id": branch.branch_id,
                },
            )
            session.commit()
            session.refresh(row)
            return to_task_view(row)

    def create_build_task(
        self,
        *,
        build_id: str,
        stack_id: str,
        task_type: PredictiveTaskType = PredictiveTaskType.RUN,
    ) -> TaskView:
        """Queue a task that checks out the build's aggregate branch on ``stack_id``.

        Such a task belongs to no predictive branch, so its outcome moves no
        branch state.
        """

        if task_type == PredictiveTaskType.NONE:
            raise ValueError("A build task needs a run, verify or abort type.")
        now = utc_now()
        task_id = str(uuid4())
        with Session(self.engine) as session:
            if session.get(PredictiveBuild, build_id) is None:
                raise RuntimeError(f"Predictive build not found: {build_id}")
            if session.get(Stack, stack_id) is None:
                raise RuntimeError(f"Stack not found: {stack_id}")
            active = session.exec(
                select(Task.task_id).where(
                    Task.predictive_build_id == build_id,
                    Task.stack_id == stack_id,
                    Task.predictive_task_type == task_type.value,
                    col(Task.status).not_in([status.value for status in TERMINAL_TASK_STATUSES]),
                ),
            ).first()
            if active is not None:
                raise RuntimeError(
                    f"Build {build_id} already has {task_type.value} task {active} "
                    f"in flight on {stack_id}",
                )

            row = Task(
                task_id=task_id,
                stack_id=stack_id,
                kind=TaskKind.PREDICTIVE.value,
                status=TaskStatus.PENDING.value,
                predictive_build_id=build_id,
                predictive_task_type=task_type.value,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            add_task_event(
                session=session,
                task_id=task_id,
                event_type="enqueued",
                status_from=None,
                status_to=TaskStatus.PENDING,
                details={
                    "kind": TaskKind.PREDICTIVE.value,
                    "predictive_task_type": task_type.value,
                    "build_id": build_id,
                },
            )
            session.commit()
            session.refresh(row)
            logger.info(
                "Predictive build %s queued %s task %s on %s",
                build_id,
                task_type.value,
                task_id,
                stack_id,
            )
            return to_task_view(row)

    # Predictive merge requests

    def list_predictive_merge_requests(
        self,
        branch_id: str,
        *,
        status: PredictiveMergeRequestStatus | None = None,
    ) -> list[PredictiveMergeRequestView]:
        with Session(self.engine) as session:
            statement = (
                select(PredictiveMergeRequest)
                .where(PredictiveMergeRequest.branch_id == branch_id)
                .order_by(col(PredictiveMergeRequest.created_at).asc())
            )
            if status is not None:
                statement = statement.where(PredictiveMergeRequest.status == status.value)
            rows = session.exec(statement).all()
        return [_to_pmr_view(row) for row in rows]

    def transition_predictive_merge_request(
        self,
        pmr_id: str,
        target: PredictiveMergeRequestStatus,
    ) -> bool:
        """Move a binding out of ``pending``; False when it already left it."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(PredictiveMergeRequest)
                .where(
                    col(PredictiveMergeRequest.id) == pmr_id,
                    col(PredictiveMergeRequest.status)
                    == PredictiveMergeRequestStatus.PENDING.value,
                )
                .values(status=target.value, updated_at=to_db_datetime(utc_now())),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    # CI jobs

    def list_ci_jobs(self, branch_id: str) -> list[CiJobStatusView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(CiJobsStatus)
                .where(CiJobsStatus.branch_id == branch_id)
                .order_by(col(CiJobsStatus.id).asc()),
            ).all()
        return [_to_ci_job_view(row) for row in rows]

    def update_ci_job_status(self, job_id: int, status: CiJobState) -> None:
        with Session(self.engine) as session:
            session.exec(
                sa_update(CiJobsStatus)
                .where(col(CiJobsStatus.id) == job_id)
                .values(status=status.value, updated_at=to_db_datetime(utc_now())),
            )
            session.commit()

    def create_ci_job(  # noqa: PLR0913
        self,
        *,
        branch_id: str,
        build_id: str | None,
        name: str,
        status: CiJobState,
        link: str | None,
    ) -> CiJobStatusView:
        now = utc_now()
        with Session(self.engine) as session:
            row = CiJobsStatus(
                branch_id=branch_id,
                build_id=build_id,
                name=name,
                status=status.value,
                link=link,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_ci_job_view(row)

    # Stats

    def count_by_status(self) -> dict[str, dict[str, int]]:
        """Status histograms for branches, bindings and CI jobs."""

        with Session(self.engine) as session:
            histograms = {
                "branches": session.exec(select(PredictiveBranch.status)).all(),
                "merge_requests": session.exec(select(PredictiveMergeRequest.status)).all(),
                "ci_jobs": session.exec(select(CiJobsStatus.status)).all(),
            }
        counts: dict[str, dict[str, int]] = {}
        for name, statuses in histograms.items():
            bucket: dict[str, int] = {}
            for status in statuses:
                bucket[status] = bucket.get(status, 0) + 1
            counts[name] = bucket
        return counts


def _to_build_view(row: PredictiveBuild) -> PredictiveBuildView:
    return PredictiveBuildView(
        build_id=row.build_id,
        pipeline_id=row.pipeline_id,
        branch=row.branch,
        mode=row.mode,
        status=row.status,
        build_message=row.build_message,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_branch_view(row: PredictiveBranch) -> PredictiveBranchView:
    return PredictiveBranchView(
        branch_id=row.branch_id,
        build_id=row.build_id,
        stack_id=row.stack_id,
        branch=row.branch,
        commit_sha=row.commit_sha,
        status=BranchStatus(row.status),
        lock_version=row.lock_version,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        finished_at=optional_utc(row.finished_at),
    )


def _to_merge_request_view(row: MergeRequest) -> MergeRequestView:
    return MergeRequestView(
        merge_request_id=row.merge_request_id,
        stack_id=row.stack_id,
        number=row.number,
        branch=row.branch,
        status=row.status,
        rejection_reason=row.rejection_reason,
        parent_id=row.parent_id,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_pmr_view(row: PredictiveMergeRequest) -> PredictiveMergeRequestView:
    return PredictiveMergeRequestView(
        pmr_id=row.id,
        branch_id=row.branch_id,
        merge_request_id=row.merge_request_id,
        head_sha=row.head_sha,
        status=PredictiveMergeRequestStatus(row.status),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_ci_job_view(row: CiJobsStatus) -> CiJobStatusView:
    return CiJobStatusView(
        job_id=row.id or 0,
        branch_id=row.branch_id,
        build_id=row.build_id,
        name=row.name,
        status=CiJobState(row.status),
        link=row.link,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
