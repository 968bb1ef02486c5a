"""Per-branch CI job status records, upserted from parsed CI summaries."""

from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError

from shipflow.predictive.models import CiJob, CiJobState
from shipflow.predictive.repository import PredictiveRepository

logger = logging.getLogger(__name__)

_EXTERNAL_SUCCESS = "success"


def normalize_job_state(value: str) -> CiJobState:
    """Map an external job status onto the tracked states.

    Matching is case-insensitive and the external ``SUCCESS`` becomes
    ``completed``. Unknown values raise ``ValueError``.
    """

    normalized = value.strip().lower()
    if normalized == _EXTERNAL_SUCCESS:
        return CiJobState.COMPLETED
    return CiJobState(normalized)


class CiJobStatusTracker:
    def __init__(self, repository: PredictiveRepository) -> None:
        self.repository = repository

    def upsert(
        self,
        branch_id: str,
        jobs: dict[str, CiJob],
        *,
        build_id: str | None = None,
    ) -> None:
        """Update known jobs by name and create the ones seen for the first time.

        A job that cannot be stored is logged and skipped so the rest of the
        summary still lands.
        """

        incoming = dict(jobs)
        for existing in self.repository.list_ci_jobs(branch_id):
            job = incoming.pop(existing.name, None)
            if job is None:
                continue
            try:
                state = normalize_job_state(job.status)
            except ValueError:
                logger.warning(
                    "CI job %s of branch %s reported unknown status %r",
                    existing.name,
                    branch_id,
                    job.status,
                )
                continue
            if state != existing.status:
                self.repository.update_ci_job_status(existing.job_id, state)

        for name, job in incoming.items():
            try:
                self.repository.create_ci_job(
                    branch_id=branch_id,
                    build_id=build_id,
                    name=name,
                    status=normalize_job_state(job.status),
                    link=job.link,
                )
            except (ValueError, SQLAlchemyError) as error:
                logger.error(
                    "Failed to create CI job status for branch %s: name=%s status=%s link=%s: %s",
                    branch_id,
                    name,
                    job.status,
                    job.link,
                    error,
                )
