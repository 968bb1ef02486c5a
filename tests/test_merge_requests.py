from __future__ import annotations

import allure
from conftest import Stores, add_stack

from shipflow.predictive.merge_requests import PredictiveMergeRequestTracker
from shipflow.predictive.models import (
    MergeRequestCreate,
    MergeRequestStatus,
    PredictiveBranchCreate,
    PredictiveBuildCreate,
    PredictiveMergeRequestStatus,
    PredictiveMergeRequestView,
)

pytestmark = [
    allure.epic("Predictive Branches"),
    allure.feature("Merge Request Tracking"),
]


class RecordingComments:
    def __init__(self) -> None:
        self.posted: list[tuple[str, str]] = []

    def post_comment(self, merge_request_id: str, body: str) -> None:
        self.posted.append((merge_request_id, body))


def _binding(stores: Stores) -> PredictiveMergeRequestView:
    add_stack(stores.tasks)
    merge_request = stores.predictive.create_merge_request(
        MergeRequestCreate(
            stack_id="acme/api/production",
            number=1,
            branch="feature/1",
        ),
    )
    build = stores.predictive.create_build(PredictiveBuildCreate(pipeline_id="p", branch="pb"))
    branch = stores.predictive.create_branch(
        PredictiveBranchCreate(
            build_id=build.build_id,
            stack_id="acme/api/production",
            branch="pb",
            merge_request_ids=(merge_request.merge_request_id,),
        ),
    )
    (pmr,) = stores.predictive.list_predictive_merge_requests(branch.branch_id)
    return pmr


def test_merge_transitions_once_and_comments(stores: Stores) -> None:
    comments = RecordingComments()
    tracker = PredictiveMergeRequestTracker(stores.predictive, comments)
    pmr = _binding(stores)

    assert tracker.merge(pmr, "merged!")
    assert not tracker.merge(pmr, "merged again")
    assert not tracker.cancel(pmr, "too late")

    assert comments.posted == [(pmr.merge_request_id, "merged!")]


def test_cancel_without_message_posts_nothing(stores: Stores) -> None:
    comments = RecordingComments()
    tracker = PredictiveMergeRequestTracker(stores.predictive, comments)
    pmr = _binding(stores)

    assert tracker.cancel(pmr, None)

    (after,) = stores.predictive.list_predictive_merge_requests(pmr.branch_id)
    assert after.status == PredictiveMergeRequestStatus.CANCELED
    assert comments.posted == []


def test_reject_cascades_to_stacked_requests(stores: Stores) -> None:
    pmr = _binding(stores)
    child = stores.predictive.create_merge_request(
        MergeRequestCreate(
            stack_id="acme/api/production",
            number=2,
            branch="feature/2",
            parent_id=pmr.merge_request_id,
        ),
    )
    tracker = PredictiveMergeRequestTracker(stores.predictive)

    assert tracker.reject(pmr, "rejected")

    assert stores.predictive.get_merge_request(child.merge_request_id).status == (
        MergeRequestStatus.REJECTED
    )
    assert stores.predictive.list_comments(pmr.merge_request_id) == ["rejected"]


def test_reject_of_blocked_binding_still_cascades(stores: Stores) -> None:
    pmr = _binding(stores)
    stores.predictive.transition_predictive_merge_request(
        pmr.pmr_id,
        PredictiveMergeRequestStatus.REJECTED,
    )
    blocked = stores.predictive.list_predictive_merge_requests(pmr.branch_id)[0]
    comments = RecordingComments()

    assert PredictiveMergeRequestTracker(stores.predictive, comments).reject(blocked, "blocked")

    assert stores.predictive.get_merge_request(pmr.merge_request_id).status == (
        MergeRequestStatus.REJECTED
    )
    assert comments.posted == [(pmr.merge_request_id, "blocked")]


def test_reject_of_merged_binding_is_ignored(stores: Stores) -> None:
    pmr = _binding(stores)
    tracker = PredictiveMergeRequestTracker(stores.predictive)
    tracker.merge(pmr, None)
    merged = stores.predictive.list_predictive_merge_requests(pmr.branch_id)[0]

    assert not tracker.reject(merged, "nope")

    assert stores.predictive.get_merge_request(pmr.merge_request_id).status == (
        MergeRequestStatus.PENDING
    )
