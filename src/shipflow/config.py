"""Runtime configuration for task execution and predictive branches."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(slots=True)
class ExecutionSettings:
    """Task execution engine settings."""

    work_root: Path = Path(".shipflow/work")
    git_cache_root: Path = Path(".shipflow/git-cache")
    git_cache_lock_timeout_seconds: float = 15.0
    lock_poll_seconds: float = 0.1
    command_timeout_seconds: float = 3_600.0
    tick_seconds: float = 1.0


@dataclass(slots=True)
class WorkerSettings:
    """Queue worker loop settings."""

    poll_interval_seconds: float = 2.0
    stale_task_seconds: int = 1_800


@dataclass(slots=True)
class PredictiveSettings:
    """Predictive branch controller settings."""

    parse_failure_threshold: int = 3
    task_creation_retries: int = 5


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".shipflow.db")
    execution: ExecutionSettings = field(default_factory=ExecutionSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    predictive: PredictiveSettings = field(default_factory=PredictiveSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("SHIPFLOW_DB_PATH", ".shipflow.db")),
            execution=ExecutionSettings(
                work_root=Path(os.getenv("SHIPFLOW_WORK_ROOT", ".shipflow/work")),
                git_cache_root=Path(os.getenv("SHIPFLOW_GIT_CACHE_ROOT", ".shipflow/git-cache")),
                git_cache_lock_timeout_seconds=_env_float(
                    "SHIPFLOW_GIT_CACHE_LOCK_TIMEOUT_SECONDS",
                    "15",
                ),
                lock_poll_seconds=_env_float("SHIPFLOW_LOCK_POLL_SECONDS", "0.1"),
                command_timeout_seconds=_env_float("SHIPFLOW_COMMAND_TIMEOUT_SECONDS", "3600"),
                tick_seconds=_env_float("SHIPFLOW_TICK_SECONDS", "1.0"),
            ),
            worker=WorkerSettings(
                poll_interval_seconds=_env_float("SHIPFLOW_WORKER_POLL_INTERVAL_SECONDS", "2.0"),
                stale_task_seconds=_env_int("SHIPFLOW_STALE_TASK_SECONDS", "1800"),
            ),
            predictive=PredictiveSettings(
                parse_failure_threshold=_env_int("SHIPFLOW_PARSE_FAILURE_THRESHOLD", "3"),
                task_creation_retries=_env_int("SHIPFLOW_TASK_CREATION_RETRIES", "5"),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the engine cannot work with."""

        if self.execution.git_cache_lock_timeout_seconds <= 0:
            raise ValueError("SHIPFLOW_GIT_CACHE_LOCK_TIMEOUT_SECONDS must be > 0.")
        if self.execution.lock_poll_seconds <= 0:
            raise ValueError("SHIPFLOW_LOCK_POLL_SECONDS must be > 0.")
        if self.execution.command_timeout_seconds <= 0:
            raise ValueError("SHIPFLOW_COMMAND_TIMEOUT_SECONDS must be > 0.")
        if self.execution.tick_seconds <= 0:
            raise ValueError("SHIPFLOW_TICK_SECONDS must be > 0.")
        if self.worker.poll_interval_seconds < 0:
            raise ValueError("SHIPFLOW_WORKER_POLL_INTERVAL_SECONDS must be >= 0.")
        if self.worker.stale_task_seconds < 0:
            raise ValueError("SHIPFLOW_STALE_TASK_SECONDS must be >= 0.")
        if self.predictive.parse_failure_threshold < 0:
            raise ValueError("SHIPFLOW_PARSE_FAILURE_THRESHOLD must be >= 0.")
        if self.predictive.task_creation_retries <= 0:
            raise ValueError("SHIPFLOW_TASK_CREATION_RETRIES must be a positive integer.")


def _env_int(name: str, default: str) -> int:
    raw = os.getenv(name, default)
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}.") from None


def _env_float(name: str, default: str) -> float:
    raw = os.getenv(name, default)
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}.") from None
