"""
Deterministic in-memory implementations of the collaborator contracts.

Used by the test-suite and by `gitorch run --dry-run`. Every client records
its calls and supports failure injection:

    host = InMemoryHost()
    host.fail("commit", TransientError("connection reset"))
    host.calls  # [("create_repository", "my-repo"), ...]

Queued failures are raised by successive calls to that method, one per call.
"""

import hashlib
import itertools
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from gitorch.errors import PermanentError
from gitorch.providers import ProviderKind
from gitorch.schemas.resources import (
    Branch,
    DeploymentPlan,
    DeploymentRecord,
    DeploymentResult,
    Repository,
    ReviewRequest,
    ReviewStatus,
)
from gitorch.schemas.validation import (
    REQUIRED_CHECKS,
    CheckStatus,
    QualityGate,
    RunState,
    SecurityScan,
    ValidationCheck,
    ValidationReport,
)


class _FailureInjection:
    """Mixin: per-method failure queues and a call log."""

    def _init_injection(self) -> None:
        self.calls: list[tuple[Any, ...]] = []
        self._failures: dict[str, deque[BaseException]] = defaultdict(deque)

    def fail(self, method: str, *errors: BaseException) -> None:
        """Queue errors raised by the next calls to method."""
        self._failures[method].extend(errors)

    def _enter(self, method: str, *args: Any) -> None:
        self.calls.append((method, *args))
        queue = self._failures.get(method)
        if queue:
            raise queue.popleft()

    def called(self, method: str) -> list[tuple[Any, ...]]:
        return [c for c in self.calls if c[0] == method]


def _commit_id(*parts: Any) -> str:
    return hashlib.sha1("/".join(str(p) for p in parts).encode()).hexdigest()[:12]


@dataclass
class _Commit:
    id: str
    message: str
    files: dict[str, str]
    parent: Optional[str] = None


@dataclass
class _RepoState:
    repo: Repository
    commits: dict[str, _Commit] = field(default_factory=dict)
    branches: dict[str, Optional[str]] = field(default_factory=dict)
    reviews: dict[str, ReviewRequest] = field(default_factory=dict)


class InMemoryHost(_FailureInjection):
    """In-memory version-control host."""

    def __init__(self, base_url: str = "https://git.example.test", default_branch: str = "main"):
        self._init_injection()
        self.base_url = base_url
        self.default_branch = default_branch
        self._repos: dict[str, _RepoState] = {}
        self._ids = itertools.count(1)
        self.conflicting_reviews: set[str] = set()
        self.conflicting_branches: set[tuple[str, str]] = set()

    def _state(self, repo: Repository) -> _RepoState:
        if repo.id not in self._repos:
            raise PermanentError(f"Repository not found: {repo.name}")
        return self._repos[repo.id]

    def _head_files(self, state: _RepoState, ref: str) -> dict[str, str]:
        commit_id = state.branches.get(ref, ref)
        if commit_id is None:
            return {}
        if commit_id not in state.commits:
            raise PermanentError(f"Unknown ref {ref} in {state.repo.name}")
        return dict(state.commits[commit_id].files)

    def _add_commit(self, state: _RepoState, branch: str, files: dict[str, str], message: str) -> str:
        parent = state.branches.get(branch)
        commit_id = _commit_id(state.repo.id, branch, next(self._ids), message)
        state.commits[commit_id] = _Commit(commit_id, message, files, parent)
        state.branches[branch] = commit_id
        return commit_id

    def create_repository(self, name: str, owner: str) -> Repository:
        self._enter("create_repository", name)
        if any(s.repo.name == name for s in self._repos.values()):
            raise PermanentError(f"Repository already exists: {name}")
        repo = Repository(
            id=f"repo-{next(self._ids)}",
            name=name,
            url=f"{self.base_url}/{owner}/{name}",
            owner=owner,
            default_branch=self.default_branch,
        )
        self._repos[repo.id] = _RepoState(repo=repo, branches={self.default_branch: None})
        return repo

    def delete_repository(self, repo: Repository) -> None:
        self._enter("delete_repository", repo.name)
        self._repos.pop(repo.id, None)

    def repository_exists(self, repo: Repository) -> bool:
        return repo.id in self._repos

    def commit(self, repo: Repository, files: Mapping[str, str], message: str, branch: Optional[str] = None) -> str:
        self._enter("commit", repo.name, message)
        state = self._state(repo)
        branch = branch or repo.default_branch
        if branch not in state.branches:
            raise PermanentError(f"Branch not found: {branch}")
        snapshot = self._head_files(state, branch)
        snapshot.update(files)
        return self._add_commit(state, branch, snapshot, message)

    def revert_commit(self, repo: Repository, commit_id: str, branch: Optional[str] = None) -> str:
        self._enter("revert_commit", repo.name, commit_id)
        state = self._state(repo)
        branch = branch or repo.default_branch
        target = state.commits.get(commit_id)
        if target is None:
            raise PermanentError(f"Commit not found: {commit_id}")
        parent_files = dict(state.commits[target.parent].files) if target.parent else {}
        return self._add_commit(state, branch, parent_files, f"Revert {commit_id}")

    def get_branch(self, repo: Repository, name: str) -> Optional[Branch]:
        self._enter("get_branch", repo.name, name)
        state = self._state(repo)
        if name not in state.branches:
            return None
        return Branch(name=name, commit_id=state.branches[name] or "")

    def create_branch(self, repo: Repository, name: str, from_ref: Optional[str] = None) -> Branch:
        self._enter("create_branch", repo.name, name)
        state = self._state(repo)
        if name in state.branches:
            raise PermanentError(f"Branch already exists: {name}")
        source = from_ref or repo.default_branch
        state.branches[name] = state.branches.get(source, source)
        return Branch(name=name, commit_id=state.branches[name] or "")

    def delete_branch(self, repo: Repository, name: str) -> None:
        self._enter("delete_branch", repo.name, name)
        self._state(repo).branches.pop(name, None)

    def list_files(self, repo: Repository, ref: str) -> dict[str, str]:
        return self._head_files(self._state(repo), ref)

    def open_review_request(self, repo: Repository, source_branch: str, target_branch: str,
                            title: str, description: str) -> ReviewRequest:
        self._enter("open_review_request", repo.name, source_branch)
        state = self._state(repo)
        review = ReviewRequest(
            id=str(len(state.reviews) + 1),
            title=title,
            description=description,
            repository=repo.name,
            source_branch=source_branch,
            target_branch=target_branch,
            base_commit=state.branches.get(target_branch),
        )
        state.reviews[review.id] = review
        return review

    def get_review_request(self, repo: Repository, review_id: str) -> ReviewRequest:
        state = self._state(repo)
        if review_id not in state.reviews:
            raise PermanentError(f"Review request not found: {review_id}")
        return state.reviews[review_id]

    def close_review_request(self, repo: Repository, review: ReviewRequest) -> ReviewRequest:
        self._enter("close_review_request", repo.name, review.id)
        state = self._state(repo)
        closed = state.reviews[review.id].with_status(ReviewStatus.CLOSED)
        state.reviews[review.id] = closed
        return closed

    def has_conflicts(self, repo: Repository, review: ReviewRequest) -> bool:
        self._enter("has_conflicts", repo.name, review.id)
        return review.id in self.conflicting_reviews

    def merge_branches(self, repo: Repository, source_branch: str, target_branch: str,
                       message: Optional[str] = None) -> str:
        self._enter("merge_branches", repo.name, source_branch, target_branch)
        state = self._state(repo)
        for branch in (source_branch, target_branch):
            if branch not in state.branches:
                raise PermanentError(f"Branch not found: {branch}")
        if (source_branch, target_branch) in self.conflicting_branches:
            raise PermanentError(f"Merge conflicts detected between {source_branch} and {target_branch}")
        merged_files = self._head_files(state, target_branch)
        merged_files.update(self._head_files(state, source_branch))
        return self._add_commit(
            state, target_branch, merged_files,
            message or f"Merge {source_branch} into {target_branch}",
        )

    def merge_review_request(self, repo: Repository, review: ReviewRequest) -> str:
        self._enter("merge_review_request", repo.name, review.id)
        state = self._state(repo)
        merge_commit = self.merge_branches(repo, review.source_branch, review.target_branch)
        state.reviews[review.id] = state.reviews[review.id].with_status(ReviewStatus.MERGED, merge_commit)
        return merge_commit


def passing_report(run_id: str) -> ValidationReport:
    return ValidationReport(
        run_id=run_id,
        state=RunState.COMPLETED,
        checks=tuple(ValidationCheck(name, CheckStatus.PASSED) for name in REQUIRED_CHECKS),
        security_scan=SecurityScan(),
        quality_gate=QualityGate(coverage=90.0),
    )


class InMemoryValidationProvider(_FailureInjection):
    """
    In-memory CI provider.

    Each run walks through status_script (the last status repeats once the
    script is exhausted) and reports report_factory(run_id).
    """

    def __init__(
        self,
        supported: Optional[set[ProviderKind]] = None,
        status_script: tuple[RunState, ...] = (RunState.RUNNING, RunState.COMPLETED),
        report_factory=passing_report,
        final_scan: Optional[SecurityScan] = None,
    ):
        self._init_injection()
        self.supported = set(ProviderKind) if supported is None else set(supported)
        self.status_script = status_script
        self.report_factory = report_factory
        self.final_scan = final_scan or SecurityScan()
        self._runs: dict[str, deque[RunState]] = {}
        self._ids = itertools.count(1)

    def supports(self, kind: ProviderKind) -> bool:
        return kind in self.supported

    def trigger(self, repo: Repository, kind: ProviderKind, ref: str) -> str:
        self._enter("trigger", repo.name, kind.value, ref)
        run_id = f"{kind.value}-run-{next(self._ids)}"
        self._runs[run_id] = deque(self.status_script)
        return run_id

    def get_status(self, run_id: str) -> RunState:
        self._enter("get_status", run_id)
        script = self._runs.get(run_id)
        if script is None:
            raise PermanentError(f"Unknown run: {run_id}")
        if len(script) > 1:
            return script.popleft()
        return script[0]

    def get_report(self, run_id: str) -> ValidationReport:
        self._enter("get_report", run_id)
        return self.report_factory(run_id)

    def security_scan(self, repo: Repository, ref: str) -> SecurityScan:
        self._enter("security_scan", repo.name, ref)
        return self.final_scan


class InMemoryDeploymentTarget(_FailureInjection):
    """
    In-memory hosting platform.

    Attributes:
        ready_after: Number of is_ready() polls returning False first
        api_up: Result of api_reachable()
        dry_run_ok: Result of dry_run()
    """

    def __init__(self, serving_root: str = "/srv/portal/templates", ready_after: int = 0):
        self._init_injection()
        self.serving_root = serving_root
        self.ready_after = ready_after
        self.api_up = True
        self.dry_run_ok = True
        self.served: dict[str, dict[str, str]] = {}
        self.config_entries: set[str] = set()
        self.plans: dict[str, DeploymentPlan] = {}
        self.undeployed: list[str] = []
        self._ready_polls = 0
        self._ids = itertools.count(1)

    def prepare(self, artifact_name: str, repository: Repository, commit_id: str,
                files: Mapping[str, str], environment: str) -> DeploymentPlan:
        self._enter("prepare", artifact_name)
        deployment_id = f"deploy-{next(self._ids):04d}"
        serving_path = f"{self.serving_root}/{artifact_name}"
        plan = DeploymentPlan(
            deployment_id=deployment_id,
            artifact_name=artifact_name,
            repository_url=repository.url,
            commit_id=commit_id,
            environment=environment,
            serving_path=serving_path,
            catalog_path=f"{serving_path}/catalog-info.yaml",
            files=tuple(sorted(files.items())),
        )
        self.plans[deployment_id] = plan
        return plan

    def copy_files(self, plan: DeploymentPlan) -> None:
        self._enter("copy_files", plan.deployment_id)
        self.served[plan.deployment_id] = plan.file_map

    def update_config(self, plan: DeploymentPlan) -> None:
        self._enter("update_config", plan.deployment_id)
        self.config_entries.add(plan.artifact_name)

    def restart_services(self, plan: DeploymentPlan) -> list[str]:
        self._enter("restart_services", plan.deployment_id)
        return ["portal-frontend", "portal-backend", "catalog-processor"]

    def is_ready(self, plan: DeploymentPlan) -> bool:
        self._enter("is_ready", plan.deployment_id)
        self._ready_polls += 1
        return self._ready_polls > self.ready_after

    def undeploy(self, deployment_id: str) -> None:
        self._enter("undeploy", deployment_id)
        self.undeployed.append(deployment_id)
        self.served.pop(deployment_id, None)
        plan = self.plans.pop(deployment_id, None)
        if plan is not None:
            self.config_entries.discard(plan.artifact_name)

    def deployment_exists(self, deployment_id: str) -> bool:
        return deployment_id in self.plans

    def fetch_artifact(self, deployment: DeploymentResult, path: str) -> Optional[str]:
        self._enter("fetch_artifact", deployment.deployment_id, path)
        return self.served.get(deployment.deployment_id, {}).get(path)

    def config_registered(self, deployment: DeploymentResult) -> bool:
        return deployment.artifact_name in self.config_entries

    def api_reachable(self) -> bool:
        self._enter("api_reachable")
        return self.api_up

    def dry_run(self, deployment: DeploymentResult, parameters: Mapping[str, Any]) -> bool:
        self._enter("dry_run", deployment.deployment_id)
        return self.dry_run_ok


class InMemoryCatalog(_FailureInjection):
    """In-memory capability catalog."""

    def __init__(self):
        self._init_injection()
        self.records: dict[str, DeploymentRecord] = {}

    def register(self, record: DeploymentRecord) -> str:
        self._enter("register", record.name)
        self.records[record.name] = record
        return f"catalog:{record.name}"

    def unregister(self, name: str) -> None:
        self._enter("unregister", name)
        self.records.pop(name, None)


class RecordingNotifier:
    """Notifier that keeps every notification."""

    def __init__(self):
        self.events: list[tuple[str, str, dict[str, Any]]] = []

    def notify(self, event: str, message: str, payload: Optional[Mapping[str, Any]] = None) -> None:
        self.events.append((event, message, dict(payload or {})))

    def names(self) -> list[str]:
        return [e[0] for e in self.events]