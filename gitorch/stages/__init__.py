"""
Pipeline stages in execution order.

    create_repository -> commit_artifacts -> open_review -> trigger_validation
      -> process_validation -> merge -> deploy -> verify -> register

generate_artifacts runs first when the run starts from a specification
instead of a ready bundle.
"""

from gitorch.stages.base import Attempt, CancelToken, RunScope, Stage
from gitorch.stages.deploy import DeployStage, VerifyStage
from gitorch.stages.merge import MergeStage
from gitorch.stages.register import RegisterStage
from gitorch.stages.repository import (
    CommitArtifactsStage,
    CreateRepositoryStage,
    GenerateArtifactsStage,
    sanitize_repository_name,
)
from gitorch.stages.review import OpenReviewStage, analyze_impact
from gitorch.stages.validation import ProcessValidationStage, TriggerValidationStage


def default_stages() -> list[Stage]:
    return [
        CreateRepositoryStage(),
        CommitArtifactsStage(),
        OpenReviewStage(),
        TriggerValidationStage(),
        ProcessValidationStage(),
        MergeStage(),
        DeployStage(),
        VerifyStage(),
        RegisterStage(),
    ]


__all__ = [
    "Attempt",
    "CancelToken",
    "CommitArtifactsStage",
    "CreateRepositoryStage",
    "DeployStage",
    "GenerateArtifactsStage",
    "MergeStage",
    "OpenReviewStage",
    "ProcessValidationStage",
    "RegisterStage",
    "RunScope",
    "Stage",
    "TriggerValidationStage",
    "VerifyStage",
    "analyze_impact",
    "default_stages",
    "sanitize_repository_name",
]
