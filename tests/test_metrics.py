from __future__ import annotations

import logging

import allure
import pytest

from shipflow.best_effort import best_effort
from shipflow.execution.engine import WorkerFatalError
from shipflow.metrics import (
    DEPLOYS,
    OperationsSnapshot,
    build_application_metrics,
    render_stats_lines,
)

pytestmark = [
    allure.epic("Operations"),
    allure.feature("Metrics & Stats"),
]


def test_increment_counter_accumulates_per_label_set() -> None:
    metrics = build_application_metrics()

    metrics.increment_counter(DEPLOYS, {"final_result": "success", "repository": "acme/api"})
    metrics.increment_counter(DEPLOYS, {"repository": "acme/api", "final_result": "success"}, 2)
    metrics.increment_counter(DEPLOYS, {"final_result": "failed", "repository": "acme/api"})

    assert metrics.value(DEPLOYS, {"final_result": "success", "repository": "acme/api"}) == 3
    assert len(metrics.series(DEPLOYS)) == 2


def test_unknown_counter_or_label_mismatch_raises_key_error() -> None:
    metrics = build_application_metrics()

    with pytest.raises(KeyError, match="Unknown counter"):
        metrics.increment_counter("nope", {})
    with pytest.raises(KeyError, match="expects labels"):
        metrics.increment_counter(DEPLOYS, {"final_result": "success"})


def test_best_effort_logs_and_swallows_errors(caplog: pytest.LogCaptureFixture) -> None:
    metrics = build_application_metrics()

    with caplog.at_level(logging.ERROR, logger="shipflow.best_effort"):
        with best_effort("bogus metric"):
            metrics.increment_counter("nope", {})

    assert "Best-effort action failed: bogus metric" in caplog.text


def test_best_effort_lets_fatal_errors_through() -> None:
    with pytest.raises(WorkerFatalError):
        with best_effort("fatal"):
            raise WorkerFatalError("stop")


def test_render_stats_lines() -> None:
    lines = render_stats_lines(
        snapshot=OperationsSnapshot(
            task_status_counts={"success": 2, "pending": 1},
            branch_status_counts={"completed": 1},
        ),
    )

    assert lines == [
        "Shipflow queue health",
        "Tasks: pending=1 success=2",
        "Predictive branches: completed=1",
        "Predictive merge requests: none",
        "CI jobs: none",
    ]
