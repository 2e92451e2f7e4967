"""
Repository stages: generate artifacts, create the repository, commit.
"""

import logging
import re
from typing import Any, Optional, Sequence

from gitorch.bundle import ArtifactFile, ArtifactGenerator, generate_bundle
from gitorch.compensation import CompensatingAction
from gitorch.errors import ErrorKind
from gitorch.providers import resolve_provider, workflow_content, workflow_file
from gitorch.schemas.resources import Repository
from gitorch.stages.base import Attempt, RunScope, Stage
from gitorch.state_machine import PipelineState

logger = logging.getLogger(__name__)

# Longest repository name most git hosts accept
MAX_REPOSITORY_NAME = 63


def sanitize_repository_name(name: str) -> str:
    """
    Turn an artifact name into a host-legal repository name.

    Lower-cases, collapses runs of non-alphanumerics to one "-", strips
    leading/trailing "-" and truncates to MAX_REPOSITORY_NAME characters.

    >>> sanitize_repository_name("My Service With Spaces & Special!")
    'my-service-with-spaces-special'
    """
    sanitized = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    return sanitized[:MAX_REPOSITORY_NAME].rstrip("-")


class GenerateArtifactsStage(Stage):
    """Produce the artifact bundle from a specification when none was given."""

    name = "generate_artifacts"
    component = "template-generator"
    error_kind = ErrorKind.TEMPLATE_GENERATION_ERROR

    def __init__(self, generators: Sequence[ArtifactGenerator]):
        self.generators = tuple(generators)

    def run(self, scope: RunScope, attempt: Attempt) -> Any:
        if scope.specification is None:
            raise ValueError("No specification to generate artifacts from")
        bundle = generate_bundle(scope.specification, self.generators)
        if not bundle.files:
            raise ValueError(f"Generators produced no files for {bundle.name}")
        return bundle

    def apply(self, scope: RunScope, output: Any) -> None:
        super().apply(scope, output)
        scope.bundle = output

    def error_details(self, scope: RunScope, attempt: Attempt) -> dict[str, Any]:
        return {"specification": dict(scope.specification or {})}


class CreateRepositoryStage(Stage):
    name = "create_repository"
    target_state = PipelineState.CREATED

    def run(self, scope: RunScope, attempt: Attempt) -> Repository:
        bundle = scope.bundle
        repo_name = sanitize_repository_name(bundle.name)
        if not repo_name:
            raise self.error(
                f"Artifact name {bundle.name!r} has no characters usable in a repository name",
                recoverable=False,
                kind=ErrorKind.VALIDATION_ERROR,
                artifact_name=bundle.name,
            )
        owner = bundle.owner or scope.config.git.owner
        repo = scope.clients.host.create_repository(repo_name, owner)
        logger.info(f"Created repository {repo.name} ({repo.url})", extra={"stage": self.name})
        return repo

    def error_details(self, scope: RunScope, attempt: Attempt) -> dict[str, Any]:
        return {"repository": sanitize_repository_name(scope.bundle.name) if scope.bundle else None}

    def compensation(self, scope: RunScope, output: Repository) -> Optional[CompensatingAction]:
        host = scope.clients.host
        return CompensatingAction(
            action_id=f"{self.name}:{output.id}",
            description=f"Delete repository {output.name}",
            execute=lambda: host.delete_repository(output),
            can_execute=lambda: host.repository_exists(output),
            stage=self.name,
        )


class CommitArtifactsStage(Stage):
    """Write every bundle file, plus the CI workflow, to the default branch."""

    name = "commit_artifacts"
    requires = ("create_repository",)
    target_state = PipelineState.COMMITTED

    def files(self, scope: RunScope) -> dict[str, str]:
        repo = scope.repository
        kind = resolve_provider(scope.config.validation.provider, component=self.component, operation=self.name)
        bundle = scope.bundle.with_files([
            ArtifactFile(workflow_file(kind), workflow_content(kind, repo.default_branch)),
        ])
        return bundle.as_mapping()

    def run(self, scope: RunScope, attempt: Attempt) -> str:
        repo = scope.repository
        files = self.files(scope)
        message = scope.commit_message or f"Add {scope.bundle.name} artifacts ({len(files)} files)"
        commit_id = scope.clients.host.commit(repo, files, message)
        logger.info(f"Committed {len(files)} files to {repo.name}@{repo.default_branch}: {commit_id}",
                    extra={"stage": self.name})
        return commit_id

    def compensation(self, scope: RunScope, output: str) -> Optional[CompensatingAction]:
        host = scope.clients.host
        repo = scope.repository
        return CompensatingAction(
            action_id=f"{self.name}:{output}",
            description=f"Revert commit {output} in {repo.name}",
            execute=lambda: host.revert_commit(repo, output),
            can_execute=lambda: host.repository_exists(repo),
            stage=self.name,
        )
