from __future__ import annotations

from datetime import timedelta

import allure
import pytest
from conftest import Stores, add_stack, complete_task

from shipflow.execution.models import HEALTHY_EVENT, TaskCreate, TaskStatus, TaskView
from shipflow.jobs import DeployJobs, describe_delay

pytestmark = [
    allure.epic("Task Execution"),
    allure.feature("Deploy Health"),
]


def _finished_deploy(
    stores: Stores,
    *,
    delay: int = 300,
    status: TaskStatus = TaskStatus.SUCCESS,
) -> TaskView:
    add_stack(stores.tasks, release_status_delay_seconds=delay, deploy_steps=("true",))
    task = stores.tasks.enqueue_deploy(
        TaskCreate(stack_id="acme/api/production", until_commit_sha="abc123"),
    )
    return complete_task(stores.tasks, task, status=status)


def _healthy_events(stores: Stores, task_id: str) -> list[dict[str, object]]:
    details = stores.tasks.get_task_details(task_id=task_id)
    assert details is not None
    return [event.details for event in details.events if event.event_type == HEALTHY_EVENT]


def test_validating_deploy_is_reported_healthy_after_release_delay(stores: Stores) -> None:
    task = _finished_deploy(stores)
    assert task.finished_at is not None
    jobs = DeployJobs(stores.tasks)

    assert not jobs.mark_deploy_healthy(task.task_id, now=task.finished_at)
    assert _healthy_events(stores, task.task_id) == []

    later = task.finished_at + timedelta(seconds=301)
    assert jobs.mark_deploy_healthy(task.task_id, now=later)
    assert _healthy_events(stores, task.task_id) == [
        {"description": "No issues were signalled after 5 minutes"},
    ]
    assert stores.tasks.is_deploy_healthy(task_id=task.task_id)

    assert not jobs.mark_deploy_healthy(task.task_id, now=later)
    assert len(_healthy_events(stores, task.task_id)) == 1


@pytest.mark.parametrize(
    ("delay", "status"),
    [
        (0, TaskStatus.SUCCESS),
        (300, TaskStatus.FAILED),
        (300, TaskStatus.ABORTED),
    ],
)
def test_deploy_that_is_not_validating_is_left_alone(
    stores: Stores,
    delay: int,
    status: TaskStatus,
) -> None:
    task = _finished_deploy(stores, delay=delay, status=status)
    assert task.finished_at is not None

    recorded = DeployJobs(stores.tasks).mark_deploy_healthy(
        task.task_id,
        now=task.finished_at + timedelta(days=1),
    )

    assert not recorded
    assert _healthy_events(stores, task.task_id) == []


def test_pending_deploy_is_not_validating(stores: Stores) -> None:
    add_stack(stores.tasks, release_status_delay_seconds=60)
    task = stores.tasks.enqueue_deploy(
        TaskCreate(stack_id="acme/api/production", until_commit_sha="abc123"),
    )

    assert not DeployJobs(stores.tasks).mark_deploy_healthy(task.task_id)


def test_mark_deploy_healthy_requires_known_task(stores: Stores) -> None:
    with pytest.raises(RuntimeError, match="Task not found: missing"):
        DeployJobs(stores.tasks).mark_deploy_healthy("missing")


@pytest.mark.parametrize(
    ("seconds", "text"),
    [
        (1, "1 second"),
        (90, "90 seconds"),
        (60, "1 minute"),
        (900, "15 minutes"),
        (7200, "2 hours"),
    ],
)
def test_describe_delay(seconds: int, text: str) -> None:
    assert describe_delay(seconds) == text
