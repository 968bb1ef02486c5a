"""Application counters and operator-facing stats rendering."""

from __future__ import annotations

import threading
from collections import defaultdict
from dataclasses import dataclass, field

PREDICTIVE_BRANCH_COUNT = "predictive_branch_count"
PREDICTIVE_BRANCH_DURATION_SECONDS_SUM = "predictive_branch_duration_seconds_sum"
DEPLOYS = "deploys"
MERGE_REQUESTS = "merge_requests"

LabelKey = tuple[tuple[str, str], ...]


@dataclass(slots=True)
class CounterDefinition:
    """Declared counter: name, help text and the label names it accepts."""

    name: str
    docstring: str
    labels: tuple[str, ...]


class ApplicationMetrics:
    """In-process counter registry.

    Counters must be declared before use. Incrementing an unknown counter or
    passing labels that do not match the declaration raises ``KeyError``,
    so call sites wrap emission in :func:`shipflow.best_effort.best_effort`.
    """

    def __init__(self) -> None:
        self._definitions: dict[str, CounterDefinition] = {}
        self._values: dict[str, dict[LabelKey, float]] = defaultdict(dict)
        self._lock = threading.Lock()

    def counter(self, name: str, *, docstring: str, labels: tuple[str, ...]) -> None:
        with self._lock:
            self._definitions[name] = CounterDefinition(
                name=name,
                docstring=docstring,
                labels=tuple(sorted(labels)),
            )

    def increment_counter(
        self,
        name: str,
        labels: dict[str, str],
        value: float = 1,
    ) -> None:
        definition = self._definitions.get(name)
        if definition is None:
            raise KeyError(f"Unknown counter: {name}")
        if tuple(sorted(labels)) != definition.labels:
            raise KeyError(
                f"Counter {name} expects labels {definition.labels}, got {tuple(sorted(labels))}",
            )
        key: LabelKey = tuple(sorted((label, str(labels[label])) for label in labels))
        with self._lock:
            series = self._values[name]
            series[key] = series.get(key, 0) + value

    def value(self, name: str, labels: dict[str, str]) -> float:
        key: LabelKey = tuple(sorted((label, str(labels[label])) for label in labels))
        with self._lock:
            return self._values.get(name, {}).get(key, 0)

    def series(self, name: str) -> dict[LabelKey, float]:
        with self._lock:
            return dict(self._values.get(name, {}))


def build_application_metrics() -> ApplicationMetrics:
    """Registry with every counter the orchestrator emits."""

    metrics = ApplicationMetrics()
    metrics.counter(
        PREDICTIVE_BRANCH_COUNT,
        docstring="Stack - Predictive Branch terminal outcomes",
        labels=("pipeline", "repository", "status"),
    )
    metrics.counter(
        PREDICTIVE_BRANCH_DURATION_SECONDS_SUM,
        docstring="Stack - Predictive Branch duration until terminal state",
        labels=("pipeline", "repository", "status"),
    )
    metrics.counter(
        DEPLOYS,
        docstring="Deploys",
        labels=("final_result", "repository"),
    )
    metrics.counter(
        MERGE_REQUESTS,
        docstring="Merge Requests",
        labels=("final_result", "repository"),
    )
    return metrics


@dataclass(slots=True)
class OperationsSnapshot:
    """Aggregated queue and branch state used by the stats command."""

    task_status_counts: dict[str, int] = field(default_factory=dict)
    branch_status_counts: dict[str, int] = field(default_factory=dict)
    merge_request_status_counts: dict[str, int] = field(default_factory=dict)
    ci_job_status_counts: dict[str, int] = field(default_factory=dict)


def render_stats_lines(*, snapshot: OperationsSnapshot) -> list[str]:
    """Render operator-facing stats lines for CLI output."""

    return [
        "Shipflow queue health",
        "Tasks: " + (_fmt_key_value(snapshot.task_status_counts) or "none"),
        "Predictive branches: " + (_fmt_key_value(snapshot.branch_status_counts) or "none"),
        (
            "Predictive merge requests: "
            + (_fmt_key_value(snapshot.merge_request_status_counts) or "none")
        ),
        "CI jobs: " + (_fmt_key_value(snapshot.ci_job_status_counts) or "none"),
    ]


def _fmt_key_value(values: dict[str, int]) -> str:
    if not values:
        return ""
    return " ".join(f"{key}={values[key]}" for key in sorted(values))
