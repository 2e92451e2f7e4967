"""
Deploy and Verify stages.

Deploy runs idempotent sub-steps against the deployment target:

    prepare -> copy files -> update platform config -> restart services
      -> wait for readiness (bounded poll)

Verify re-checks the deployment independently of Deploy's own report and
never raises: a soft failure is logged and the stage returns False.
"""

import logging
from typing import Any, Callable, Optional

from gitorch.compensation import CompensatingAction
from gitorch.errors import ErrorKind, PermanentError
from gitorch.schemas.resources import DeploymentPlan, DeploymentResult, ReviewStatus
from gitorch.stages.base import Attempt, RunScope, Stage
from gitorch.state_machine import PipelineState

logger = logging.getLogger(__name__)

# Paths in the merged tree that are pipeline bookkeeping, not artifact files
INTERNAL_PREFIXES = (".gitorch/",)

DRY_RUN_PARAMETERS = {"name": "gitorch-verification", "owner": "gitorch", "dryRun": True}


class DeployStage(Stage):
    name = "deploy"
    component = "deployment"
    error_kind = ErrorKind.DEPLOYMENT_ERROR
    requires = ("merge",)
    target_state = PipelineState.DEPLOYED

    def run(self, scope: RunScope, attempt: Attempt) -> DeploymentResult:
        target = scope.clients.deployment
        repo = scope.repository
        merge = scope.merge

        if merge.review_request.status != ReviewStatus.MERGED:
            raise self.error(
                f"Review request #{merge.review_request.id} is {merge.review_request.status.value}; "
                "only merged changes are deployed",
                recoverable=False,
                repository=repo.name,
            )

        stale = scope.notes.pop("partial_deployment", None)
        if stale and not attempt.hints.get("cleanup_attempted"):
            logger.info(f"Removing partial deployment {stale} before retrying")
            target.undeploy(stale)

        files = {
            path: content
            for path, content in scope.clients.host.list_files(repo, merge.merge_commit).items()
            if not path.startswith(INTERNAL_PREFIXES)
        }
        plan = target.prepare(repo.name, repo, merge.merge_commit, files, scope.config.deploy.environment)
        scope.notes["partial_deployment"] = plan.deployment_id
        logger.info(f"Deploying {repo.name} as {plan.deployment_id} to {plan.serving_path}",
                    extra={"stage": self.name})

        target.copy_files(plan)
        target.update_config(plan)
        restarted = target.restart_services(plan)
        logger.debug(f"Restarted services: {', '.join(restarted)}")
        self.wait_until_ready(scope, plan)

        scope.notes.pop("partial_deployment", None)
        return DeploymentResult(
            deployment_id=plan.deployment_id,
            success=True,
            timestamp=scope.context.clock(),
            artifact_name=plan.artifact_name,
            serving_path=plan.serving_path,
            environment=plan.environment,
        )

    def wait_until_ready(self, scope: RunScope, plan: DeploymentPlan) -> None:
        """
        Poll the target until services are ready.

        Raises:
            PermanentError: If services are not ready within the readiness timeout
        """
        settings = scope.config.deploy
        started = scope.clock()
        while True:
            if scope.clients.deployment.is_ready(plan):
                return
            elapsed = scope.clock() - started
            if elapsed >= settings.readiness_timeout_seconds:
                raise PermanentError(
                    f"Services for {plan.deployment_id} not ready after {settings.readiness_timeout_seconds}s"
                )
            scope.sleep(min(settings.readiness_interval_seconds, settings.readiness_timeout_seconds - elapsed))

    def error_details(self, scope: RunScope, attempt: Attempt) -> dict[str, Any]:
        details = super().error_details(scope, attempt)
        details["deployment_id"] = scope.notes.get("partial_deployment")
        details["cleanup_attempted"] = bool(attempt.hints.get("cleanup_attempted"))
        return details

    def compensation(self, scope: RunScope, output: DeploymentResult) -> Optional[CompensatingAction]:
        target = scope.clients.deployment
        return CompensatingAction(
            action_id=f"{self.name}:{output.deployment_id}",
            description=f"Undeploy {output.deployment_id} ({output.artifact_name})",
            execute=lambda: target.undeploy(output.deployment_id),
            can_execute=lambda: output.success and target.deployment_exists(output.deployment_id),
            stage=self.name,
        )

    def failure_cleanup(self, scope: RunScope) -> Optional[CompensatingAction]:
        deployment_id = scope.notes.pop("partial_deployment", None)
        if deployment_id is None:
            return None
        target = scope.clients.deployment
        return CompensatingAction(
            action_id=f"{self.name}:partial:{deployment_id}",
            description=f"Remove partial deployment {deployment_id}",
            execute=lambda: target.undeploy(deployment_id),
            can_execute=lambda: target.deployment_exists(deployment_id),
            stage=self.name,
        )


class VerifyStage(Stage):
    """
    Independent post-deploy checks.

    - artifacts: every artifact file is fetchable from the target
    - configuration: the platform configuration references the artifact
    - api: the platform API answers
    - dry_run: a dry-run instantiation of the artifact succeeds
    """

    name = "verify"
    component = "deployment"
    error_kind = ErrorKind.DEPLOYMENT_ERROR
    requires = ("deploy",)

    def next_state(self, output: bool) -> PipelineState:
        return PipelineState.VERIFIED if output else PipelineState.VERIFICATION_FAILED

    def _probe(self, name: str, check: Callable[[], bool]) -> bool:
        try:
            ok = bool(check())
        except Exception as e:
            logger.warning(f"Verification check {name} raised: {e}", extra={"stage": self.name})
            return False
        if not ok:
            logger.warning(f"Verification check {name} failed", extra={"stage": self.name})
        return ok

    def run(self, scope: RunScope, attempt: Attempt) -> bool:
        target = scope.clients.deployment
        deployment = scope.deployment
        paths = scope.bundle.paths

        def artifacts_fetchable() -> bool:
            return all(target.fetch_artifact(deployment, path) is not None for path in paths)

        checks = {
            "artifacts": self._probe("artifacts", artifacts_fetchable),
            "configuration": self._probe("configuration", lambda: target.config_registered(deployment)),
            "api": self._probe("api", target.api_reachable),
            "dry_run": self._probe("dry_run", lambda: target.dry_run(deployment, DRY_RUN_PARAMETERS)),
        }
        scope.notes["verification"] = checks

        verified = all(checks.values())
        if verified:
            logger.info(f"Verified deployment {deployment.deployment_id}", extra={"stage": self.name})
        else:
            failed = [name for name, ok in checks.items() if not ok]
            logger.warning(f"Deployment {deployment.deployment_id} failed verification: {', '.join(failed)}")
        return verified
