"""One merge request's life inside a predictive branch."""

from __future__ import annotations

import logging
from typing import Protocol

from shipflow.predictive.models import (
    MergeRequestStatus,
    PredictiveMergeRequestStatus,
    PredictiveMergeRequestView,
)
from shipflow.predictive.repository import PredictiveRepository

logger = logging.getLogger(__name__)


class CommentSink(Protocol):
    def post_comment(self, merge_request_id: str, body: str) -> None: ...


class PredictiveMergeRequestTracker:
    """Transitions a binding out of ``pending`` and tells the merge request why.

    Every transition is one-shot: a binding that already left ``pending`` is
    logged and left alone.
    """

    def __init__(
        self,
        repository: PredictiveRepository,
        comments: CommentSink | None = None,
    ) -> None:
        self.repository = repository
        self.comments: CommentSink = comments or repository

    def reject(self, pmr: PredictiveMergeRequestView, msg: str | None) -> bool:
        """Reject the binding, its merge request and every request stacked on it.

        A binding already rejected downstream (blocked) keeps its status, but
        the cascade and the comment still apply.
        """

        blocked = pmr.status == PredictiveMergeRequestStatus.REJECTED
        if not blocked and not self._transition(pmr, PredictiveMergeRequestStatus.REJECTED):
            return False
        self.repository.set_merge_request_status(
            pmr.merge_request_id,
            MergeRequestStatus.REJECTED,
        )
        for dependent in self.repository.dependent_merge_requests(pmr.merge_request_id):
            self.repository.set_merge_request_status(
                dependent.merge_request_id,
                MergeRequestStatus.REJECTED,
            )
        self.add_comment(pmr, msg)
        return True

    def cancel(self, pmr: PredictiveMergeRequestView, msg: str | None) -> bool:
        if not self._transition(pmr, PredictiveMergeRequestStatus.CANCELED):
            return False
        self.add_comment(pmr, msg)
        return True

    def merge(self, pmr: PredictiveMergeRequestView, msg: str | None) -> bool:
        """Mark the binding merged; the merge itself must already have happened."""

        if not self._transition(pmr, PredictiveMergeRequestStatus.MERGED):
            return False
        self.add_comment(pmr, msg)
        return True

    def add_comment(self, pmr: PredictiveMergeRequestView, msg: str | None) -> None:
        if msg:
            self.comments.post_comment(pmr.merge_request_id, msg)

    def _transition(
        self,
        pmr: PredictiveMergeRequestView,
        target: PredictiveMergeRequestStatus,
    ) -> bool:
        if self.repository.transition_predictive_merge_request(pmr.pmr_id, target):
            return True
        logger.warning(
            "Predictive merge request %s is no longer pending, skipping %s",
            pmr.pmr_id,
            target.value,
        )
        return False
