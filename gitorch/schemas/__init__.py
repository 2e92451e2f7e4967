"""Value types shared across gitorch stages, clients and the orchestrator."""

from gitorch.schemas.context import Checkpoint, OperationContext, generate_operation_id
from gitorch.schemas.resources import (
    Branch,
    DeploymentPlan,
    DeploymentRecord,
    DeploymentResult,
    ImpactAnalysis,
    MergeOutcome,
    Repository,
    ReviewRequest,
    ReviewStatus,
    RiskLevel,
)
from gitorch.schemas.result import PipelineResult, RunStatus
from gitorch.schemas.validation import (
    CheckStatus,
    Finding,
    QualityGate,
    RunState,
    SecurityScan,
    Severity,
    ValidationCheck,
    ValidationReport,
    ValidationResults,
    Verdict,
    aggregate_verdict,
)

__all__ = [
    "Branch",
    "Checkpoint",
    "CheckStatus",
    "DeploymentPlan",
    "DeploymentRecord",
    "DeploymentResult",
    "Finding",
    "ImpactAnalysis",
    "MergeOutcome",
    "OperationContext",
    "PipelineResult",
    "QualityGate",
    "Repository",
    "ReviewRequest",
    "ReviewStatus",
    "RiskLevel",
    "RunState",
    "RunStatus",
    "SecurityScan",
    "Severity",
    "ValidationCheck",
    "ValidationReport",
    "ValidationResults",
    "Verdict",
    "aggregate_verdict",
    "generate_operation_id",
]
