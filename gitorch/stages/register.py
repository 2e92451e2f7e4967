"""
Register stage: upsert the deployment record into the capability catalog.

Runs only after Deploy and Verify both succeeded. A failure here leaves
the (working) deployment in place and is reported for a later retry.
"""

import logging

from gitorch.errors import ErrorKind
from gitorch.schemas.resources import DeploymentRecord
from gitorch.stages.base import Attempt, RunScope, Stage

logger = logging.getLogger(__name__)


class RegisterStage(Stage):
    name = "register"
    component = "registry"
    error_kind = ErrorKind.REGISTRY_ERROR
    requires = ("deploy", "verify")
    compensate_on_failure = False

    def build_record(self, scope: RunScope) -> DeploymentRecord:
        bundle = scope.bundle
        deployment = scope.deployment
        review = scope.review_request
        return DeploymentRecord(
            name=scope.repository.name,
            owner=bundle.owner,
            description=bundle.description,
            version=bundle.version,
            repository_url=scope.repository.url,
            deployment_id=deployment.deployment_id,
            environment=deployment.environment,
            registered_at=scope.context.clock(),
            metadata={
                "artifact_name": bundle.name,
                "serving_path": deployment.serving_path,
                "merge_commit": scope.merge.merge_commit,
                "review_id": review.id,
                "risk_level": review.impact.risk_level.value if review.impact else None,
                "operation_id": scope.context.operation_id,
                **dict(bundle.metadata),
            },
        )

    def run(self, scope: RunScope, attempt: Attempt) -> str:
        deployment = scope.deployment
        if deployment is None or not deployment.success or not scope.outputs.get("verify"):
            raise self.error(
                "Only verified deployments are registered",
                recoverable=False,
                deployment_id=deployment.deployment_id if deployment else None,
            )
        entry_id = scope.clients.catalog.register(self.build_record(scope))
        logger.info(f"Registered {scope.repository.name} in the capability catalog as {entry_id}",
                    extra={"stage": self.name})
        return entry_id

    def error_details(self, scope: RunScope, attempt: Attempt) -> dict:
        details = super().error_details(scope, attempt)
        if scope.deployment is not None:
            details["deployment_id"] = scope.deployment.deployment_id
        return details
