"""
Orchestrator - sequences the pipeline for one artifact bundle.

Per run:
1. Create a fresh OperationContext and RunScope
2. For each stage: check cancellation and prerequisites, execute, then
   record a checkpoint, register the stage's compensating action and
   advance the state machine
3. On a stage failure: if the error is recoverable and recovery is
   enabled, dispatch to the recovery registry (at most once per error).
   A recovered stage either resumes the pipeline with the substitute
   output or ends the run with it; both give a DEGRADED result.
4. Without recovery: clean up what the failed stage left behind, unwind the
   compensation stack in reverse order (when rollback is enabled) and
   propagate the original ClassifiedError

Two outcomes end the run early without rollback: a deployment that fails
verification, and a catalog registration failure. Both return DEGRADED
with the error attached.

The context and scope live on the call stack of run(); the orchestrator
itself keeps no per-run state, so independent runs may execute
concurrently on one instance.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional, Sequence

from gitorch.bundle import ArtifactBundle, ArtifactGenerator
from gitorch.clients.base import Clients
from gitorch.config import GitorchConfig
from gitorch.errors import ClassifiedError, ErrorKind
from gitorch.poller import StatusObserver
from gitorch.recovery import Recovery, RecoveryRegistry
from gitorch.schemas.context import OperationContext
from gitorch.schemas.result import PipelineResult, RunStatus
from gitorch.stages import GenerateArtifactsStage, VerifyStage, default_stages
from gitorch.stages.base import Attempt, CancelToken, RunScope, Stage
from gitorch.state_machine import PipelineState

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class PipelineInput:
    """
    Input of one pipeline run.

    Attributes:
        bundle: Ready artifact bundle
        specification: Specification to generate the bundle from (when no bundle)
        commit_message: Message for the artifact commit (generated when empty)
        parameters: Extra parameters recorded in the operation context
    """
    bundle: Optional[ArtifactBundle] = None
    specification: Optional[Mapping[str, Any]] = None
    commit_message: str = ""
    parameters: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.bundle is None and self.specification is None:
            raise ValueError("PipelineInput needs a bundle or a specification")

    def snapshot(self) -> dict[str, Any]:
        snapshot: dict[str, Any] = dict(self.parameters)
        if self.bundle is not None:
            snapshot["bundle"] = self.bundle.to_dict()
        if self.specification is not None:
            snapshot["specification"] = dict(self.specification)
        snapshot["commit_message"] = self.commit_message
        return snapshot


class Orchestrator:
    """
    Runs the deployment pipeline.

    Usage:
        orchestrator = Orchestrator(clients, config)
        result = orchestrator.run(PipelineInput(bundle=bundle))
        if result.degraded:
            ...

    Args:
        clients: Collaborator implementations
        config: gitorch configuration
        registry: Recovery registry (default: RecoveryRegistry.create_default)
        stages: Stage sequence (default: default_stages())
        generators: Artifact generators used when a run starts from a specification
        clock: Monotonic clock in seconds (polling, durations)
        sleep: Sleep function (polling, retry delays)
        now: Wall clock for timestamps
    """

    component = "orchestrator"

    def __init__(
        self,
        clients: Clients,
        config: GitorchConfig,
        registry: Optional[RecoveryRegistry] = None,
        stages: Optional[Sequence[Stage]] = None,
        generators: Sequence[ArtifactGenerator] = (),
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        now: Callable[[], datetime] = _utcnow,
    ):
        self.clients = clients
        self.config = config
        self.registry = registry or RecoveryRegistry.create_default(
            config.error_handling, clients.deployment, sleep=sleep,
        )
        self.stages = tuple(stages) if stages is not None else tuple(default_stages())
        self.generators = tuple(generators)
        self.clock = clock
        self.sleep = sleep
        self.now = now

    def run(
        self,
        pipeline_input: PipelineInput,
        cancel_token: Optional[CancelToken] = None,
        observer: Optional[StatusObserver] = None,
    ) -> PipelineResult:
        """
        Run the pipeline.

        Returns:
            SUCCESS or DEGRADED result

        Raises:
            ClassifiedError: The original error of a terminal failure, after compensation
        """
        result = self._run(pipeline_input, cancel_token, observer)
        if result.status == RunStatus.FAILED:
            raise result.error
        return result

    def execute(
        self,
        pipeline_input: PipelineInput,
        cancel_token: Optional[CancelToken] = None,
        observer: Optional[StatusObserver] = None,
    ) -> PipelineResult:
        """Like run(), but a terminal failure is returned as a FAILED result."""
        return self._run(pipeline_input, cancel_token, observer)

    def _stages_for(self, pipeline_input: PipelineInput) -> list[Stage]:
        stages = list(self.stages)
        if pipeline_input.bundle is None:
            stages.insert(0, GenerateArtifactsStage(self.generators))
        return stages

    def _run(
        self,
        pipeline_input: PipelineInput,
        cancel_token: Optional[CancelToken],
        observer: Optional[StatusObserver],
    ) -> PipelineResult:
        started = self.clock()
        scope = RunScope(
            context=OperationContext(
                component=self.component,
                parameters=pipeline_input.snapshot(),
                clock=self.now,
            ),
            config=self.config,
            clients=self.clients,
            bundle=pipeline_input.bundle,
            specification=pipeline_input.specification,
            commit_message=pipeline_input.commit_message,
            cancel_token=cancel_token or CancelToken(),
            observer=observer,
            clock=self.clock,
            sleep=self.sleep,
        )
        stages = self._stages_for(pipeline_input)
        by_name = {stage.name: stage for stage in stages}
        recovered: list[ClassifiedError] = []
        fallback: Any = None

        def reinvoke(operation: str, retry_count: int, **hints: Any) -> Any:
            return by_name[operation].execute(scope, Attempt(retry_count=retry_count, hints=hints))

        scope.context.bind_reinvoke(reinvoke)
        logger.info(
            f"Starting pipeline {scope.context.operation_id}",
            extra={"event": "pipeline_started", "metadata": {"stages": [s.name for s in stages]}},
        )

        try:
            for stage in stages:
                try:
                    self._check_cancelled(scope, stage)
                    self._check_prerequisites(scope, stage)
                except ClassifiedError as error:
                    return self._fail(scope, stage, error, started)

                scope.context.operation = stage.name
                logger.info(f"Stage {stage.name} started", extra={"stage": stage.name, "event": "stage_started"})

                try:
                    output = stage.execute(scope, Attempt())
                except ClassifiedError as error:
                    recovery = self._recover(scope, error)
                    if recovery is None:
                        if not stage.compensate_on_failure:
                            return self._keep_deployment(scope, stage, error, recovered, started)
                        return self._fail(scope, stage, error, started)

                    recovered.append(error)
                    fallback = recovery.value
                    if not recovery.resume:
                        scope.state.transition(PipelineState.CLOSED)
                        logger.warning(
                            f"Run {scope.context.operation_id} ended early by {recovery.strategy}: {error.message}"
                        )
                        return self._result(scope, RunStatus.DEGRADED, started,
                                            fallback=fallback, recovered_errors=recovered)
                    output = recovery.value

                self._record_success(scope, stage, output)

                if isinstance(stage, VerifyStage) and not output:
                    return self._verification_failed(scope, stage, recovered, fallback, started)

            scope.compensation.clear()
            status = RunStatus.DEGRADED if recovered else RunStatus.SUCCESS
            logger.info(
                f"Pipeline {scope.context.operation_id} finished: {status.value}",
                extra={"event": "pipeline_finished"},
            )
            return self._result(scope, status, started, fallback=fallback, recovered_errors=recovered)
        finally:
            scope.context.bind_reinvoke(None)

    def _check_cancelled(self, scope: RunScope, stage: Stage) -> None:
        if scope.cancel_token.cancelled:
            raise ClassifiedError(
                kind=ErrorKind.RESOURCE_ERROR,
                component=self.component,
                operation=stage.name,
                message=f"Run cancelled before {stage.name}: {scope.cancel_token.reason}",
                details={"cancelled": True, "reason": scope.cancel_token.reason},
                recoverable=False,
            )

    def _check_prerequisites(self, scope: RunScope, stage: Stage) -> None:
        missing = [name for name in stage.requires if not scope.context.has_checkpoint(name)]
        if missing:
            raise ClassifiedError(
                kind=ErrorKind.CONFIGURATION_ERROR,
                component=self.component,
                operation=stage.name,
                message=f"Stage {stage.name} requires {', '.join(missing)} to succeed first",
                details={"missing": ", ".join(missing)},
                recoverable=False,
            )

    def _recover(self, scope: RunScope, error: ClassifiedError) -> Optional[Recovery]:
        if not error.recoverable or not self.config.error_handling.enable_recovery:
            return None
        attempted: list[ClassifiedError] = scope.notes.setdefault("recovery_attempted", [])
        if any(e is error for e in attempted):
            return None
        attempted.append(error)
        return self.registry.dispatch(error, scope.context)

    def _record_success(self, scope: RunScope, stage: Stage, output: Any) -> None:
        stage.apply(scope, output)
        scope.context.add_checkpoint(stage.name, output)
        action = stage.compensation(scope, output)
        if action is not None:
            scope.compensation.push(action)
        target = stage.next_state(output)
        if target is not None:
            scope.state.transition(target)
        logger.info(f"Stage {stage.name} completed", extra={"stage": stage.name, "event": "stage_completed"})

    def _fail(self, scope: RunScope, stage: Stage, error: ClassifiedError, started: float) -> PipelineResult:
        logger.error(
            f"Stage {stage.name} failed: {error}",
            extra={"stage": stage.name, "event": "stage_failed", "metadata": error.to_dict()},
        )
        if (
            stage.failure_state is not None
            and error.kind == stage.error_kind
            and scope.state.can_transition(stage.failure_state)
        ):
            scope.state.transition(stage.failure_state)

        records = []
        if self.config.error_handling.enable_rollback:
            cleanup = stage.failure_cleanup(scope)
            if cleanup is not None:
                scope.compensation.push(cleanup)
            logger.info(f"Rolling back {len(scope.compensation)} compensating action(s)")
            records = scope.compensation.unwind()
            if scope.state.can_transition(PipelineState.ROLLED_BACK):
                scope.state.transition(PipelineState.ROLLED_BACK)
        else:
            logger.warning(f"Rollback disabled; leaving {len(scope.compensation)} completed stage(s) in place")
            scope.compensation.clear()

        return self._result(scope, RunStatus.FAILED, started, error=error, compensation=records)

    def _keep_deployment(self, scope: RunScope, stage: Stage, error: ClassifiedError,
                         recovered: list[ClassifiedError], started: float) -> PipelineResult:
        logger.error(
            f"Stage {stage.name} failed after a successful deployment; deployment kept: {error}",
            extra={"stage": stage.name, "event": "registration_pending", "metadata": error.to_dict()},
        )
        scope.compensation.clear()
        return self._result(scope, RunStatus.DEGRADED, started, error=error,
                            recovered_errors=recovered, registration_pending=True)

    def _verification_failed(self, scope: RunScope, stage: Stage, recovered: list[ClassifiedError],
                             fallback: Any, started: float) -> PipelineResult:
        failed = [name for name, ok in scope.notes.get("verification", {}).items() if not ok]
        deployment = scope.deployment
        error = ClassifiedError(
            kind=ErrorKind.DEPLOYMENT_ERROR,
            component=stage.component,
            operation=stage.name,
            message=f"Deployment {deployment.deployment_id} failed verification: {', '.join(failed) or 'unknown'}",
            details={"deployment_id": deployment.deployment_id, "failed_checks": ", ".join(failed)},
            recoverable=False,
        )
        logger.warning(f"{error.message}; skipping catalog registration")
        scope.compensation.clear()
        return self._result(scope, RunStatus.DEGRADED, started, error=error,
                            fallback=fallback, recovered_errors=recovered)

    def _result(self, scope: RunScope, status: RunStatus, started: float, **kwargs: Any) -> PipelineResult:
        return PipelineResult(
            status=status,
            operation_id=scope.context.operation_id,
            final_state=scope.state.state,
            repository=scope.repository,
            commit_id=scope.commit_id,
            review_request=scope.review_request,
            validation=scope.validation,
            deployment=scope.deployment,
            verified=scope.outputs.get("verify") is True,
            registered="register" in scope.outputs,
            stages_completed=[cp.name for cp in scope.context.checkpoints],
            duration_ms=int((self.clock() - started) * 1000),
            **kwargs,
        )
