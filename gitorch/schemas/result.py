"""
Pipeline result - the tagged outcome returned by Orchestrator.run().

RunStatus distinguishes a full success from a degraded (recovered or
partially completed) success. Terminal failures are raised as
ClassifiedError; Orchestrator.execute() folds them into a FAILED result.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from gitorch.compensation import CompensationRecord
from gitorch.errors import ClassifiedError
from gitorch.schemas.resources import DeploymentResult, Repository, ReviewRequest
from gitorch.schemas.validation import ValidationResults
from gitorch.state_machine import PipelineState


class RunStatus(str, Enum):
    SUCCESS = "success"
    DEGRADED = "degraded"
    FAILED = "failed"


@dataclass
class PipelineResult:
    """
    Result of one pipeline run.

    Attributes:
        status: success, degraded or failed
        operation_id: Id of the run's operation context
        final_state: Last pipeline state reached
        repository: Repository created by the run
        commit_id: Commit holding the artifact files
        review_request: Review request (status merged on full success)
        validation: Aggregated validation results
        deployment: Deployment result from the deployment target
        verified: Whether post-deploy verification passed
        registered: Whether the catalog entry was written
        registration_pending: Registration failed and needs a retry
        fallback: Substitute value supplied by a recovery strategy
        recovered_errors: Errors a recovery strategy handled (audit trail)
        error: Terminal or degrading error
        stages_completed: Stages that recorded a success checkpoint
        compensation: Compensating actions run for a terminal failure
        duration_ms: Wall time of the run
    """
    status: RunStatus
    operation_id: str
    final_state: PipelineState
    repository: Optional[Repository] = None
    commit_id: Optional[str] = None
    review_request: Optional[ReviewRequest] = None
    validation: Optional[ValidationResults] = None
    deployment: Optional[DeploymentResult] = None
    verified: bool = False
    registered: bool = False
    registration_pending: bool = False
    fallback: Any = None
    recovered_errors: list[ClassifiedError] = field(default_factory=list)
    error: Optional[ClassifiedError] = None
    stages_completed: list[str] = field(default_factory=list)
    compensation: list[CompensationRecord] = field(default_factory=list)
    duration_ms: int = 0

    @property
    def success(self) -> bool:
        return self.status == RunStatus.SUCCESS

    @property
    def degraded(self) -> bool:
        return self.status == RunStatus.DEGRADED

    @property
    def messages(self) -> list[str]:
        """Messages of the errors attached to this result, for audit."""
        msgs = [e.message for e in self.recovered_errors]
        if self.error is not None:
            msgs.append(self.error.message)
        return msgs

    def to_dict(self) -> dict[str, Any]:
        fallback = self.fallback
        if hasattr(fallback, "to_dict"):
            fallback = fallback.to_dict()
        elif fallback is not None and not isinstance(fallback, (str, int, float, bool, dict, list)):
            fallback = repr(fallback)
        return {
            "status": self.status.value,
            "operation_id": self.operation_id,
            "final_state": self.final_state.value,
            "repository": self.repository.to_dict() if self.repository else None,
            "commit_id": self.commit_id,
            "review_request": self.review_request.to_dict() if self.review_request else None,
            "validation": self.validation.to_dict() if self.validation else None,
            "deployment": self.deployment.to_dict() if self.deployment else None,
            "verified": self.verified,
            "registered": self.registered,
            "registration_pending": self.registration_pending,
            "fallback": fallback,
            "recovered_errors": [e.to_dict() for e in self.recovered_errors],
            "error": self.error.to_dict() if self.error else None,
            "stages_completed": list(self.stages_completed),
            "compensation": [c.to_dict() for c in self.compensation],
            "duration_ms": self.duration_ms,
        }
