from __future__ import annotations

from dataclasses import dataclass

import allure
from conftest import Stores, add_stack, complete_task

from shipflow.execution.models import PredictiveTaskType, TaskStatus, TaskView
from shipflow.jobs import RefreshJobs
from shipflow.metrics import (
    MERGE_REQUESTS,
    PREDICTIVE_BRANCH_COUNT,
    ApplicationMetrics,
)
from shipflow.predictive.ci_summary import format_summary
from shipflow.predictive.controller import CI_FAILURE_MESSAGE, PredictiveBranchController
from shipflow.predictive.counters import parse_failure_key
from shipflow.predictive.models import (
    BranchStatus,
    CiJobState,
    MergeRequestCreate,
    MergeRequestStatus,
    PredictiveBranchCreate,
    PredictiveBuildCreate,
    PredictiveMergeRequestStatus,
    RejectReason,
)

pytestmark = [
    allure.epic("Predictive Branches"),
    allure.feature("Branch Controller"),
]


@dataclass(slots=True)
class Batch:
    branch_id: str
    build_id: str
    merge_request_ids: list[str]


def _open_batch(
    stores: Stores,
    *numbers: int,
    stack_id: str = "acme/api/production",
    build_message: str = "Build #12",
) -> Batch:
    merge_request_ids = [
        stores.predictive.create_merge_request(
            MergeRequestCreate(stack_id=stack_id, number=number, branch=f"feature/{number}"),
        ).merge_request_id
        for number in numbers
    ]
    build = stores.predictive.create_build(
        PredictiveBuildCreate(
            pipeline_id="main-pipeline",
            branch="pb",
            build_message=build_message,
        ),
    )
    branch = stores.predictive.create_branch(
        PredictiveBranchCreate(
            build_id=build.build_id,
            stack_id=stack_id,
            branch=f"predictive/{build.build_id}",
            merge_request_ids=tuple(merge_request_ids),
        ),
    )
    return Batch(branch.branch_id, build.build_id, merge_request_ids)


def _move(stores: Stores, branch_id: str, *path: BranchStatus) -> None:
    current = stores.predictive.get_branch(branch_id).status
    for target in path:
        assert stores.predictive.transition_branch(
            branch_id=branch_id,
            current=current,
            target=target,
        )
        current = target


def _new_task(stores: Stores, branch_id: str, task_type: PredictiveTaskType) -> TaskView:
    task = stores.predictive.create_branch_task(
        branch=stores.predictive.get_branch(branch_id),
        task_type=task_type,
    )
    assert task is not None
    return task


def _status(stores: Stores, branch_id: str) -> BranchStatus:
    return stores.predictive.get_branch(branch_id).status


def _pmr_statuses(stores: Stores, branch_id: str) -> dict[str, PredictiveMergeRequestStatus]:
    return {
        pmr.merge_request_id: pmr.status
        for pmr in stores.predictive.list_predictive_merge_requests(branch_id)
    }


def test_trigger_task_queues_run_task_for_pending_branch(
    stores: Stores,
    controller: PredictiveBranchController,
) -> None:
    add_stack(stores.tasks)
    batch = _open_batch(stores, 1)

    task = controller.trigger_task(batch.branch_id)

    assert task is not None
    assert task.predictive_task_type == PredictiveTaskType.RUN
    assert _status(stores, batch.branch_id) == BranchStatus.TASKS_RUNNING
    assert controller.trigger_task(batch.branch_id) is None
    assert len(stores.tasks.list_tasks(predictive_branch_id=batch.branch_id)) == 1


def test_parse_failures_fail_branch_only_after_threshold(
    stores: Stores,
    controller: PredictiveBranchController,
) -> None:
    add_stack(stores.tasks)
    batch = _open_batch(stores, 1)
    _move(stores, batch.branch_id, BranchStatus.TASKS_RUNNING, BranchStatus.TASKS_VERIFYING)
    task = _new_task(stores, batch.branch_id, PredictiveTaskType.VERIFY)
    key = parse_failure_key(batch.branch_id)

    for expected_failures in (1, 2, 3):
        assert controller.update_status(task) == BranchStatus.TASKS_VERIFYING
        assert stores.counters.get(key) == expected_failures

    assert controller.update_status(task) == BranchStatus.FAILED
    assert _pmr_statuses(stores, batch.branch_id) == {
        batch.merge_request_ids[0]: PredictiveMergeRequestStatus.REJECTED,
    }


def test_parsed_summary_resets_failure_counter(
    stores: Stores,
    controller: PredictiveBranchController,
) -> None:
    add_stack(stores.tasks)
    batch = _open_batch(stores, 1)
    _move(stores, batch.branch_id, BranchStatus.TASKS_RUNNING, BranchStatus.TASKS_VERIFYING)
    key = parse_failure_key(batch.branch_id)
    stores.counters.increment(key)
    stores.counters.increment(key)
    task = complete_task(
        stores.tasks,
        _new_task(stores, batch.branch_id, PredictiveTaskType.VERIFY),
        output=format_summary("running", {"lint": {"status": "RUNNING"}}) + "\n",
    )

    assert controller.update_status(task) == BranchStatus.TASKS_VERIFYING
    assert stores.counters.get(key) == 0


def test_task_failed_rejects_requests_and_their_stacked_dependents(
    stores: Stores,
    controller: PredictiveBranchController,
    metrics: ApplicationMetrics,
) -> None:
    add_stack(stores.tasks)
    batch = _open_batch(stores, 1)
    root = batch.merge_request_ids[0]
    child = stores.predictive.create_merge_request(
        MergeRequestCreate(
            stack_id="acme/api/production",
            number=2,
            branch="feature/2",
            parent_id=root,
        ),
    ).merge_request_id
    grandchild = stores.predictive.create_merge_request(
        MergeRequestCreate(
            stack_id="acme/api/production",
            number=3,
            branch="feature/3",
            parent_id=child,
        ),
    ).merge_request_id
    _move(stores, batch.branch_id, BranchStatus.TASKS_RUNNING)

    controller.task_failed(batch.branch_id)

    assert _status(stores, batch.branch_id) == BranchStatus.FAILED
    assert _pmr_statuses(stores, batch.branch_id) == {root: PredictiveMergeRequestStatus.REJECTED}
    for merge_request_id in (root, child, grandchild):
        assert stores.predictive.get_merge_request(merge_request_id).status == (
            MergeRequestStatus.REJECTED
        )
    assert stores.predictive.list_comments(root) == [CI_FAILURE_MESSAGE]
    assert metrics.value(
        MERGE_REQUESTS,
        {"final_result": "rejected", "repository": "acme/api"},
    ) == 1
    assert metrics.value(
        PREDICTIVE_BRANCH_COUNT,
        {"pipeline": "main-pipeline", "repository": "acme/api", "status": "failed"},
    ) == 1


def test_failed_run_with_merge_conflict_comments_about_conflicts(
    stores: Stores,
    controller: PredictiveBranchController,
) -> None:
    add_stack(stores.tasks)
    batch = _open_batch(stores, 1)
    task = controller.trigger_task(batch.branch_id)
    assert task is not None
    finished = complete_task(
        stores.tasks,
        task,
        status=TaskStatus.FAILED,
        output="git merge feature/1 terminated with exit status 128\n",
    )

    assert controller.update_status(finished) == BranchStatus.FAILED

    (comment,) = stores.predictive.list_comments(batch.merge_request_ids[0])
    assert comment.startswith("Failed to process your request due to merge conflicts")
    assert "branch main" in comment


def test_completed_branch_merges_pending_and_rejects_blocked_requests(
    stores: Stores,
    controller: PredictiveBranchController,
    metrics: ApplicationMetrics,
) -> None:
    add_stack(stores.tasks)
    batch = _open_batch(stores, 1, 2, 3)
    first, second, blocked = batch.merge_request_ids
    blocked_pmr = next(
        pmr
        for pmr in stores.predictive.list_predictive_merge_requests(batch.branch_id)
        if pmr.merge_request_id == blocked
    )
    stores.predictive.transition_predictive_merge_request(
        blocked_pmr.pmr_id,
        PredictiveMergeRequestStatus.REJECTED,
    )
    _move(stores, batch.branch_id, BranchStatus.TASKS_RUNNING, BranchStatus.TASKS_VERIFYING)
    task = complete_task(
        stores.tasks,
        _new_task(stores, batch.branch_id, PredictiveTaskType.VERIFY),
        output=format_summary("success", {"unit": {"status": "SUCCESS"}}) + "\n",
    )

    assert controller.update_status(task) == BranchStatus.COMPLETED

    assert _pmr_statuses(stores, batch.branch_id) == {
        first: PredictiveMergeRequestStatus.MERGED,
        second: PredictiveMergeRequestStatus.MERGED,
        blocked: PredictiveMergeRequestStatus.REJECTED,
    }
    for merge_request_id in (first, second):
        assert stores.predictive.get_merge_request(merge_request_id).status == (
            MergeRequestStatus.COMPLETED
        )
        assert stores.predictive.list_comments(merge_request_id) == [
            "Pull request merged to branch main.\nBuild #12",
        ]
    blocked_request = stores.predictive.get_merge_request(blocked)
    assert blocked_request.status == MergeRequestStatus.REJECTED
    assert blocked_request.rejection_reason == "merge_conflict"
    assert stores.predictive.list_comments(blocked) == [
        "Failed to merge predictive branch to main",
    ]
    assert metrics.value(MERGE_REQUESTS, {"final_result": "merged", "repository": "acme/api"}) == 2
    assert stores.predictive.get_branch(batch.branch_id).finished_at is not None


def test_verify_with_aborted_ci_fails_branch(
    stores: Stores,
    controller: PredictiveBranchController,
) -> None:
    add_stack(stores.tasks)
    batch = _open_batch(stores, 1)
    _move(stores, batch.branch_id, BranchStatus.TASKS_RUNNING, BranchStatus.TASKS_VERIFYING)
    task = complete_task(
        stores.tasks,
        _new_task(stores, batch.branch_id, PredictiveTaskType.VERIFY),
        output=format_summary("aborted", {"unit": {"status": "ABORTED"}}) + "\n",
    )

    assert controller.update_status(task) == BranchStatus.FAILED
    (job,) = stores.predictive.list_ci_jobs(batch.branch_id)
    assert job.status == CiJobState.ABORTED


def test_cancel_branch_runs_abort_task_and_keeps_requests_pending(
    stores: Stores,
    controller: PredictiveBranchController,
) -> None:
    add_stack(stores.tasks)
    batch = _open_batch(stores, 1, 2)
    _move(stores, batch.branch_id, BranchStatus.TASKS_RUNNING)

    assert controller.start_canceling(batch.branch_id)
    assert not controller.start_canceling(batch.branch_id)
    abort_task = controller.trigger_task(batch.branch_id)

    assert abort_task is not None
    assert abort_task.predictive_task_type == PredictiveTaskType.ABORT
    assert _status(stores, batch.branch_id) == BranchStatus.TASKS_CANCELING

    finished = complete_task(stores.tasks, abort_task)
    assert controller.update_status(finished) == BranchStatus.TASKS_CANCELED
    assert set(_pmr_statuses(stores, batch.branch_id).values()) == {
        PredictiveMergeRequestStatus.PENDING,
    }

    canceled = controller.cancel_predictive_merge_requests(
        batch.branch_id,
        RejectReason.MR_STOPPED,
    )

    assert canceled == 2
    assert set(_pmr_statuses(stores, batch.branch_id).values()) == {
        PredictiveMergeRequestStatus.CANCELED,
    }
    for merge_request_id in batch.merge_request_ids:
        assert stores.predictive.list_comments(merge_request_id) == [
            "The pipeline process was stopped",
        ]


def test_terminal_branch_ignores_late_task_updates(
    stores: Stores,
    controller: PredictiveBranchController,
) -> None:
    add_stack(stores.tasks)
    batch = _open_batch(stores, 1)
    task = controller.trigger_task(batch.branch_id)
    assert task is not None
    controller.task_failed(batch.branch_id)

    finished = complete_task(stores.tasks, task)

    assert controller.update_status(finished) == BranchStatus.FAILED
    assert controller.trigger_task(batch.branch_id) is None


def test_repeated_refresh_leaves_queued_task_alone(
    stores: Stores,
    controller: PredictiveBranchController,
) -> None:
    add_stack(stores.tasks)
    batch = _open_batch(stores, 1, 2)
    assert controller.trigger_task(batch.branch_id) is not None
    jobs = RefreshJobs(controller)

    for _ in range(5):
        assert jobs.refresh_branch(batch.branch_id) == BranchStatus.TASKS_RUNNING

    assert set(_pmr_statuses(stores, batch.branch_id).values()) == {
        PredictiveMergeRequestStatus.PENDING,
    }
    (task,) = stores.tasks.list_tasks(predictive_branch_id=batch.branch_id)
    assert task.status == TaskStatus.PENDING
    assert task.predictive_task_type == PredictiveTaskType.RUN


def test_finished_build_task_moves_no_branch(
    stores: Stores,
    controller: PredictiveBranchController,
) -> None:
    add_stack(stores.tasks)
    batch = _open_batch(stores, 1)
    task = stores.predictive.create_build_task(
        build_id=batch.build_id,
        stack_id="acme/api/production",
    )
    finished = complete_task(stores.tasks, task, status=TaskStatus.FAILED)

    RefreshJobs(controller).on_task_finished(finished)

    assert _status(stores, batch.branch_id) == BranchStatus.PENDING
    assert stores.tasks.list_tasks(predictive_branch_id=batch.branch_id) == []


def test_verify_finishing_after_cancel_does_not_complete_branch(
    stores: Stores,
    controller: PredictiveBranchController,
) -> None:
    add_stack(stores.tasks)
    batch = _open_batch(stores, 1, 2)
    _move(stores, batch.branch_id, BranchStatus.TASKS_RUNNING, BranchStatus.TASKS_VERIFYING)
    verify_task = _new_task(stores, batch.branch_id, PredictiveTaskType.VERIFY)

    assert controller.start_canceling(batch.branch_id)
    finished = complete_task(
        stores.tasks,
        verify_task,
        output=format_summary("success", {"unit": {"status": "SUCCESS"}}) + "\n",
    )

    assert controller.update_status(finished) == BranchStatus.TASKS_CANCELING
    assert set(_pmr_statuses(stores, batch.branch_id).values()) == {
        PredictiveMergeRequestStatus.PENDING,
    }
    for merge_request_id in batch.merge_request_ids:
        assert stores.predictive.get_merge_request(merge_request_id).status != (
            MergeRequestStatus.COMPLETED
        )


def test_comment_msg_lists_failed_sibling_branches(
    stores: Stores,
    controller: PredictiveBranchController,
) -> None:
    add_stack(stores.tasks)
    add_stack(
        stores.tasks,
        stack_id="acme/web/production",
        repo_full_name="acme/web",
        repo_url="https://example.com/acme/web.git",
    )
    failing = _open_batch(stores, 7)
    sibling_request = stores.predictive.create_merge_request(
        MergeRequestCreate(stack_id="acme/web/production", number=8, branch="feature/8"),
    )
    sibling = stores.predictive.create_branch(
        PredictiveBranchCreate(
            build_id=failing.build_id,
            stack_id="acme/web/production",
            branch="predictive/web",
            merge_request_ids=(sibling_request.merge_request_id,),
        ),
    )
    sibling_view = stores.predictive.get_branch(sibling.branch_id)

    assert controller.comment_msg(sibling_view, RejectReason.PIPELINE_TASKS_FAILED) == (
        "Something went wrong, please start over."
    )

    _move(stores, failing.branch_id, BranchStatus.FAILED)
    message = controller.comment_msg(sibling_view, RejectReason.PIPELINE_TASKS_FAILED)

    assert message is not None
    assert message.startswith("We had to start over")
    assert "**acme/api**" in message
    assert "* /acme/api/pull/7" in message
    assert "acme/web" not in message
    assert controller.comment_msg(sibling_view, "not-a-reason") is None


def test_comment_msg_texts_for_fixed_reasons(
    stores: Stores,
    controller: PredictiveBranchController,
) -> None:
    add_stack(stores.tasks)
    branch = stores.predictive.get_branch(_open_batch(stores, 1).branch_id)

    assert controller.comment_msg(branch, RejectReason.MERGE_MR_TO_PREDICTIVE_FAILED) == (
        "Failed to merge pull request to predictive branch"
    )
    assert controller.comment_msg(branch, RejectReason.COMMIT_VALIDATION_FAILED) == (
        "Someone pushed changes directly to main branch, we had to stop what we're doing, "
        "please try again later."
    )
    emergency = controller.comment_msg(branch, RejectReason.CANCELED_DUE_TO_EMERGENCY)
    assert emergency is not None
    assert f"branch '{branch.branch}'" in emergency


def test_related_comment_goes_to_every_request_of_branch(
    stores: Stores,
    controller: PredictiveBranchController,
) -> None:
    add_stack(stores.tasks)
    batch = _open_batch(stores, 1, 2)

    controller.set_comment_to_related_merge_requests(batch.branch_id, "Build restarted")

    for merge_request_id in batch.merge_request_ids:
        assert stores.predictive.list_comments(merge_request_id) == ["Build restarted"]


def test_end_to_end_batch_goes_from_run_to_completed(
    stores: Stores,
    controller: PredictiveBranchController,
) -> None:
    add_stack(stores.tasks)
    batch = _open_batch(stores, 1, 2)
    jobs = RefreshJobs(controller)

    run_task = controller.trigger_task(batch.branch_id)
    assert run_task is not None
    jobs.on_task_finished(complete_task(stores.tasks, run_task, output="merged 2 requests\n"))

    verify_task = stores.tasks.latest_branch_task(branch_id=batch.branch_id)
    assert verify_task is not None
    assert verify_task.predictive_task_type == PredictiveTaskType.VERIFY
    assert _status(stores, batch.branch_id) == BranchStatus.TASKS_VERIFYING

    jobs.on_task_finished(
        complete_task(
            stores.tasks,
            verify_task,
            output=format_summary(
                "running",
                {"A": {"status": "RUNNING"}, "B": {"status": "RUNNING"}},
            )
            + "\n",
        ),
    )
    assert _status(stores, batch.branch_id) == BranchStatus.TASKS_VERIFYING
    assert {job.name: job.status for job in stores.predictive.list_ci_jobs(batch.branch_id)} == {
        "A": CiJobState.RUNNING,
        "B": CiJobState.RUNNING,
    }

    second_verify = stores.tasks.latest_branch_task(branch_id=batch.branch_id)
    assert second_verify is not None
    assert second_verify.task_id != verify_task.task_id
    jobs.on_task_finished(
        complete_task(
            stores.tasks,
            second_verify,
            output=format_summary(
                "success",
                {"A": {"status": "SUCCESS"}, "B": {"status": "SUCCESS"}},
            )
            + "\n",
        ),
    )

    assert _status(stores, batch.branch_id) == BranchStatus.COMPLETED
    assert {job.name: job.status for job in stores.predictive.list_ci_jobs(batch.branch_id)} == {
        "A": CiJobState.COMPLETED,
        "B": CiJobState.COMPLETED,
    }
    assert set(_pmr_statuses(stores, batch.branch_id).values()) == {
        PredictiveMergeRequestStatus.MERGED,
    }
    assert len(stores.tasks.list_tasks(predictive_branch_id=batch.branch_id)) == 3


def test_refresh_merge_request_refreshes_branches_of_stacked_children(
    stores: Stores,
    controller: PredictiveBranchController,
) -> None:
    add_stack(stores.tasks)
    parent_batch = _open_batch(stores, 1)
    parent = parent_batch.merge_request_ids[0]
    child = stores.predictive.create_merge_request(
        MergeRequestCreate(
            stack_id="acme/api/production",
            number=2,
            branch="feature/2",
            parent_id=parent,
        ),
    )
    build = stores.predictive.create_build(PredictiveBuildCreate(pipeline_id="p", branch="pb"))
    child_branch = stores.predictive.create_branch(
        PredictiveBranchCreate(
            build_id=build.build_id,
            stack_id="acme/api/production",
            branch="predictive/child",
            merge_request_ids=(child.merge_request_id,),
        ),
    )

    refreshed = RefreshJobs(controller).refresh_merge_request(parent)

    assert refreshed == sorted([parent_batch.branch_id, child_branch.branch_id])
    assert _status(stores, parent_batch.branch_id) == BranchStatus.TASKS_RUNNING
    assert _status(stores, child_branch.branch_id) == BranchStatus.TASKS_RUNNING
