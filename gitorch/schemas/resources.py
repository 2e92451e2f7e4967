"""
External-system resources returned by the client contracts.

The engine treats these as values. It owns them only for the duration of
one pipeline run; the catalog keeps the durable DeploymentRecord.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class ReviewStatus(str, Enum):
    """State of a review (pull/merge) request."""
    OPEN = "open"
    MERGED = "merged"
    CLOSED = "closed"


class RiskLevel(str, Enum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class Repository:
    id: str
    name: str
    url: str
    owner: str
    default_branch: str = "main"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "url": self.url,
            "owner": self.owner,
            "default_branch": self.default_branch,
        }


@dataclass(frozen=True)
class Branch:
    name: str
    commit_id: str


@dataclass(frozen=True)
class ImpactAnalysis:
    """
    Change impact of a review request.

    Attributes:
        files_changed: Number of files in the delta
        lines_added: Lines added across all files
        lines_removed: Lines removed across all files
        affected_components: Component labels touched (ci-cd, dependencies, ...)
        security_impact: Risk level of security/auth-sensitive paths touched
        risk_level: Overall risk classification
        breaking_changes: Whether contract files changed
        dependency_changes: Whether dependency manifests changed
        required_reviewers: Reviewer count scaled by risk
        estimated_review_minutes: Review duration scaled by delta size and risk
        sensitive_paths: Paths that triggered the security classification
    """
    files_changed: int
    lines_added: int
    lines_removed: int
    affected_components: tuple[str, ...]
    security_impact: RiskLevel
    risk_level: RiskLevel
    breaking_changes: bool
    dependency_changes: bool
    required_reviewers: int
    estimated_review_minutes: int
    sensitive_paths: tuple[str, ...] = ()

    @property
    def lines_changed(self) -> int:
        return self.lines_added + self.lines_removed

    def to_dict(self) -> dict[str, Any]:
        return {
            "files_changed": self.files_changed,
            "lines_added": self.lines_added,
            "lines_removed": self.lines_removed,
            "affected_components": list(self.affected_components),
            "security_impact": self.security_impact.value,
            "risk_level": self.risk_level.value,
            "breaking_changes": self.breaking_changes,
            "dependency_changes": self.dependency_changes,
            "required_reviewers": self.required_reviewers,
            "estimated_review_minutes": self.estimated_review_minutes,
            "sensitive_paths": list(self.sensitive_paths),
        }


@dataclass(frozen=True)
class ReviewRequest:
    """A review request from a feature branch to the default branch."""
    id: str
    title: str
    description: str
    repository: str
    source_branch: str
    target_branch: str
    status: ReviewStatus = ReviewStatus.OPEN
    base_commit: Optional[str] = None
    merge_commit: Optional[str] = None
    impact: Optional[ImpactAnalysis] = None

    def with_status(self, status: ReviewStatus, merge_commit: Optional[str] = None) -> "ReviewRequest":
        return replace(self, status=status, merge_commit=merge_commit or self.merge_commit)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "repository": self.repository,
            "source_branch": self.source_branch,
            "target_branch": self.target_branch,
            "status": self.status.value,
            "base_commit": self.base_commit,
            "merge_commit": self.merge_commit,
            "impact": self.impact.to_dict() if self.impact else None,
        }


@dataclass(frozen=True)
class MergeOutcome:
    review_request: ReviewRequest
    merge_commit: str
    source_branch_deleted: bool = False


@dataclass(frozen=True)
class DeploymentResult:
    """
    Outcome of the Deploy stage.

    Attributes:
        deployment_id: Opaque id assigned by the deployment target
        success: Whether the target reported the deployment successful
        timestamp: When the deployment finished
        artifact_name: Name of the deployed artifact
        serving_path: Where the artifact is served from
        environment: Target environment
        errors: Messages collected during deployment
    """
    deployment_id: str
    success: bool
    timestamp: datetime
    artifact_name: str
    serving_path: str = ""
    environment: str = "production"
    errors: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "deployment_id": self.deployment_id,
            "success": self.success,
            "timestamp": self.timestamp.isoformat(),
            "artifact_name": self.artifact_name,
            "serving_path": self.serving_path,
            "environment": self.environment,
            "errors": list(self.errors),
        }


@dataclass(frozen=True)
class DeploymentRecord:
    """Catalog entry for a merged, deployed and verified artifact."""
    name: str
    owner: str
    description: str
    version: str
    repository_url: str
    deployment_id: str
    environment: str
    registered_at: datetime
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "owner": self.owner,
            "description": self.description,
            "version": self.version,
            "repository_url": self.repository_url,
            "deployment_id": self.deployment_id,
            "environment": self.environment,
            "registered_at": self.registered_at.isoformat(),
            "metadata": dict(self.metadata),
        }


@dataclass(frozen=True)
class DeploymentPlan:
    """
    Prepared deployment configuration for one artifact.

    Attributes:
        deployment_id: Id assigned by the deployment target
        artifact_name: Artifact (and repository) name
        repository_url: Source repository
        commit_id: Commit being deployed
        environment: Target environment
        serving_path: Where the artifact files are served from
        catalog_path: Catalog descriptor location within the serving path
        files: Files to copy, by relative path
    """
    deployment_id: str
    artifact_name: str
    repository_url: str
    commit_id: str
    environment: str
    serving_path: str
    catalog_path: str
    files: tuple[tuple[str, str], ...] = ()

    @property
    def file_map(self) -> dict[str, str]:
        return dict(self.files)
