"""
Collaborator contracts the orchestration engine calls.

The engine depends only on these protocols. Production wiring plugs in
real clients (local git, portal HTTP API); tests plug in the deterministic
fakes from gitorch.clients.memory. Stage logic must not care which.

Failure contract for every method:
- TransientError (or TimeoutError/ConnectionError) for retry-safe failures
- PermanentError for failures a retry cannot fix
- builtin PermissionError for authorization failures
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Protocol, runtime_checkable

from gitorch.providers import ProviderKind
from gitorch.schemas.resources import (
    Branch,
    DeploymentPlan,
    DeploymentRecord,
    DeploymentResult,
    Repository,
    ReviewRequest,
)
from gitorch.schemas.validation import RunState, SecurityScan, ValidationReport

logger = logging.getLogger(__name__)


@runtime_checkable
class VersionControlHost(Protocol):
    """Repository, branch and review-request operations of a git host."""

    def create_repository(self, name: str, owner: str) -> Repository: ...

    def delete_repository(self, repo: Repository) -> None: ...

    def repository_exists(self, repo: Repository) -> bool: ...

    def commit(self, repo: Repository, files: Mapping[str, str], message: str, branch: Optional[str] = None) -> str:
        """Write files to branch (default branch if None) in one commit; return the commit id."""
        ...

    def revert_commit(self, repo: Repository, commit_id: str, branch: Optional[str] = None) -> str:
        """Add a commit undoing commit_id; return the new commit id."""
        ...

    def get_branch(self, repo: Repository, name: str) -> Optional[Branch]: ...

    def create_branch(self, repo: Repository, name: str, from_ref: Optional[str] = None) -> Branch: ...

    def delete_branch(self, repo: Repository, name: str) -> None: ...

    def list_files(self, repo: Repository, ref: str) -> dict[str, str]: ...

    def open_review_request(
        self,
        repo: Repository,
        source_branch: str,
        target_branch: str,
        title: str,
        description: str,
    ) -> ReviewRequest: ...

    def get_review_request(self, repo: Repository, review_id: str) -> ReviewRequest: ...

    def close_review_request(self, repo: Repository, review: ReviewRequest) -> ReviewRequest: ...

    def has_conflicts(self, repo: Repository, review: ReviewRequest) -> bool: ...

    def merge_branches(
        self,
        repo: Repository,
        source_branch: str,
        target_branch: str,
        message: Optional[str] = None,
    ) -> str:
        """
        Merge source_branch into target_branch; return the merge commit id.

        Raises:
            PermanentError: If either branch is missing or the merge conflicts
        """
        ...

    def merge_review_request(self, repo: Repository, review: ReviewRequest) -> str:
        """Merge the review's branches via merge_branches, mark it merged; return the merge commit id."""
        ...


@runtime_checkable
class ValidationProvider(Protocol):
    """CI provider running template validation for a repository ref."""

    def supports(self, kind: ProviderKind) -> bool: ...

    def trigger(self, repo: Repository, kind: ProviderKind, ref: str) -> str:
        """Start a validation run; return its opaque run id."""
        ...

    def get_status(self, run_id: str) -> RunState: ...

    def get_report(self, run_id: str) -> ValidationReport: ...

    def security_scan(self, repo: Repository, ref: str) -> SecurityScan: ...


@runtime_checkable
class DeploymentTarget(Protocol):
    """
    Hosting platform the artifact is deployed to.

    deploy() of the contract is the sequence prepare -> copy_files ->
    update_config -> restart_services -> is_ready, driven by the Deploy
    stage. verify() is the set of probes driven by the Verify stage.
    """

    def prepare(self, artifact_name: str, repository: Repository, commit_id: str,
                files: Mapping[str, str], environment: str) -> DeploymentPlan: ...

    def copy_files(self, plan: DeploymentPlan) -> None: ...

    def update_config(self, plan: DeploymentPlan) -> None: ...

    def restart_services(self, plan: DeploymentPlan) -> list[str]: ...

    def is_ready(self, plan: DeploymentPlan) -> bool: ...

    def undeploy(self, deployment_id: str) -> None: ...

    def deployment_exists(self, deployment_id: str) -> bool: ...

    def fetch_artifact(self, deployment: DeploymentResult, path: str) -> Optional[str]: ...

    def config_registered(self, deployment: DeploymentResult) -> bool: ...

    def api_reachable(self) -> bool: ...

    def dry_run(self, deployment: DeploymentResult, parameters: Mapping[str, Any]) -> bool: ...


@runtime_checkable
class CapabilityCatalog(Protocol):
    def register(self, record: DeploymentRecord) -> str:
        """Upsert the record; return the catalog entry id."""
        ...

    def unregister(self, name: str) -> None: ...


@runtime_checkable
class Notifier(Protocol):
    def notify(self, event: str, message: str, payload: Optional[Mapping[str, Any]] = None) -> None: ...


class LoggingNotifier:
    """Notifier that writes notifications to the log."""

    def notify(self, event: str, message: str, payload: Optional[Mapping[str, Any]] = None) -> None:
        logger.info(f"[notify:{event}] {message}", extra={"event": event, "metadata": dict(payload or {})})


@dataclass
class Clients:
    """One implementation of every collaborator contract."""
    host: VersionControlHost
    validation: ValidationProvider
    deployment: DeploymentTarget
    catalog: CapabilityCatalog
    notifier: Notifier = field(default_factory=LoggingNotifier)
