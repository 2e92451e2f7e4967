"""
Merge stage.

Before merging, the review request is re-validated against the host:

    (a) the source branch still exists      -> not recoverable
    (b) the target branch exists            -> not recoverable
    (c) the latest verdict is not failed    -> recoverable
    (d) no merge conflicts are reported     -> recoverable
    (e) a final security scan passes        -> recoverable

Branch identity mismatches cannot be fixed by recovery; the other checks
may pass on a later run. A failed precondition never reaches the host's
merge call, so the review request keeps its state.
"""

import logging
from dataclasses import replace
from typing import Any, Optional

from gitorch.compensation import CompensatingAction
from gitorch.errors import ClassifiedError
from gitorch.schemas.resources import MergeOutcome, ReviewStatus
from gitorch.schemas.validation import Verdict
from gitorch.stages.base import Attempt, RunScope, Stage
from gitorch.state_machine import PipelineState

logger = logging.getLogger(__name__)


class MergeStage(Stage):
    name = "merge"
    requires = ("process_validation",)
    target_state = PipelineState.MERGED

    def check_preconditions(self, scope: RunScope) -> None:
        """
        Raises:
            ClassifiedError: GITOPS_ERROR for the first unmet precondition
        """
        host = scope.clients.host
        repo = scope.repository
        review = host.get_review_request(repo, scope.review_request.id)

        def unmet(precondition: str, message: str, recoverable: bool) -> ClassifiedError:
            return self.error(
                message,
                recoverable=recoverable,
                repository=repo.name,
                review_id=review.id,
                precondition=precondition,
            )

        if review.status != ReviewStatus.OPEN:
            raise unmet("review_open", f"Review request #{review.id} is {review.status.value}, not open", False)

        if host.get_branch(repo, review.source_branch) is None:
            raise unmet("source_branch", f"Source branch {review.source_branch} no longer exists", False)

        if host.get_branch(repo, review.target_branch) is None:
            raise unmet("target_branch", f"Target branch {review.target_branch} does not exist", False)

        validation = scope.validation
        if validation is None or validation.verdict == Verdict.FAILED:
            raise unmet("validation", f"Latest validation verdict for #{review.id} is failed", True)

        if host.has_conflicts(repo, review):
            raise unmet("conflicts", f"Review request #{review.id} has merge conflicts", True)

        scan = scope.clients.validation.security_scan(repo, review.source_branch)
        if not scan.passed:
            raise unmet(
                "security_scan",
                f"Final security scan found {scan.errors} blocking issue(s) in {review.source_branch}",
                True,
            )

    def run(self, scope: RunScope, attempt: Attempt) -> MergeOutcome:
        host = scope.clients.host
        repo = scope.repository

        self.check_preconditions(scope)

        review = scope.review_request
        merge_commit = host.merge_review_request(repo, review)
        merged = host.get_review_request(repo, review.id)
        if merged.status != ReviewStatus.MERGED:
            raise self.error(
                f"Host did not mark review request #{review.id} merged (status {merged.status.value})",
                repository=repo.name,
                review_id=review.id,
            )
        merged = merged.with_status(ReviewStatus.MERGED, merge_commit)
        if review.impact is not None and merged.impact is None:
            merged = replace(merged, impact=review.impact)

        deleted = False
        try:
            host.delete_branch(repo, review.source_branch)
            deleted = True
        except Exception as e:
            logger.warning(f"Could not delete merged branch {review.source_branch}: {e}")

        logger.info(f"Merged review request #{review.id} into {review.target_branch}: {merge_commit}",
                    extra={"stage": self.name})
        return MergeOutcome(review_request=merged, merge_commit=merge_commit, source_branch_deleted=deleted)

    def error_details(self, scope: RunScope, attempt: Attempt) -> dict[str, Any]:
        details = super().error_details(scope, attempt)
        if scope.review_request is not None:
            details["review_id"] = scope.review_request.id
        return details

    def compensation(self, scope: RunScope, output: MergeOutcome) -> Optional[CompensatingAction]:
        host = scope.clients.host
        repo = scope.repository
        return CompensatingAction(
            action_id=f"{self.name}:{output.merge_commit}",
            description=f"Revert merge {output.merge_commit} in {repo.name}",
            execute=lambda: host.revert_commit(repo, output.merge_commit),
            can_execute=lambda: host.repository_exists(repo),
            stage=self.name,
        )
