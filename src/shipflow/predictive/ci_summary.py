"""Parse CI summaries that CI steps print into task output.

A summary is one line of the form::

    ##[ci-summary] {"status": "running", "jobs": {"lint": {"status": "RUNNING", "link": "..."}}}

The last summary line in the output wins. Output without a summary, or with a
summary that is not a JSON object of that shape, is a parse failure.
"""

from __future__ import annotations

import json
import logging

from shipflow.predictive.models import CiCoarseStatus, CiJob, CiSummary

logger = logging.getLogger(__name__)

SUMMARY_MARKER = "##[ci-summary]"

_COARSE_ALIASES = {
    "success": CiCoarseStatus.SUCCESS,
    "completed": CiCoarseStatus.SUCCESS,
    "pending": CiCoarseStatus.PENDING,
    "queued": CiCoarseStatus.PENDING,
    "running": CiCoarseStatus.RUNNING,
    "in_progress": CiCoarseStatus.RUNNING,
    "aborted": CiCoarseStatus.ABORTED,
    "canceled": CiCoarseStatus.ABORTED,
    "cancelled": CiCoarseStatus.ABORTED,
}


def parse_task_output(output: str) -> CiSummary:
    """Extract the CI summary from raw task output."""

    payload_text = _last_summary_payload(output)
    if payload_text is None:
        return CiSummary(status=CiCoarseStatus.OTHER, parse_failed=True)
    try:
        payload = json.loads(payload_text)
    except json.JSONDecodeError as error:
        logger.debug("CI summary is not valid JSON: %s", error)
        return CiSummary(status=CiCoarseStatus.OTHER, parse_failed=True)
    if not isinstance(payload, dict):
        return CiSummary(status=CiCoarseStatus.OTHER, parse_failed=True)

    jobs = _parse_jobs(payload.get("jobs", {}))
    if jobs is None:
        return CiSummary(status=CiCoarseStatus.OTHER, parse_failed=True)
    return CiSummary(status=coarse_status(payload.get("status")), jobs=jobs)


def coarse_status(value: object) -> CiCoarseStatus:
    if not isinstance(value, str):
        return CiCoarseStatus.OTHER
    return _COARSE_ALIASES.get(value.strip().lower(), CiCoarseStatus.OTHER)


def format_summary(status: str, jobs: dict[str, dict[str, str | None]]) -> str:
    """Render a summary line the way CI steps are expected to print it."""

    return f"{SUMMARY_MARKER} {json.dumps({'status': status, 'jobs': jobs}, sort_keys=True)}"


def _last_summary_payload(output: str) -> str | None:
    found: str | None = None
    for line in output.splitlines():
        stripped = line.strip()
        if stripped.startswith(SUMMARY_MARKER):
            found = stripped[len(SUMMARY_MARKER) :].strip()
    return found


def _parse_jobs(raw_jobs: object) -> dict[str, CiJob] | None:
    if not isinstance(raw_jobs, dict):
        return None
    jobs: dict[str, CiJob] = {}
    for name, raw in raw_jobs.items():
        if not isinstance(raw, dict):
            return None
        status = raw.get("status")
        if not isinstance(status, str) or not status.strip():
            return None
        link = raw.get("link")
        if not isinstance(link, str):
            link = None
        jobs[str(name)] = CiJob(status=status.strip(), link=link)
    return jobs
