"""
Pipeline stage base class and the run-scoped value passed to every stage.

A stage is one unit of work with an explicit success/failure outcome.
Stage.execute() runs the stage body and converts any underlying failure
into a ClassifiedError carrying the stage's component, operation name and
error kind. Checkpoints, compensation and state transitions are the
orchestrator's job; stages only do their work and describe how to undo it.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional, TYPE_CHECKING

from gitorch.bundle import ArtifactBundle
from gitorch.compensation import CompensatingAction, CompensationStack
from gitorch.errors import ClassifiedError, ErrorKind, classify
from gitorch.schemas.context import OperationContext
from gitorch.schemas.resources import DeploymentResult, MergeOutcome, Repository, ReviewRequest
from gitorch.schemas.validation import ValidationResults
from gitorch.state_machine import PipelineState, PipelineStateMachine

if TYPE_CHECKING:
    from gitorch.clients.base import Clients
    from gitorch.config import GitorchConfig
    from gitorch.poller import StatusObserver

logger = logging.getLogger(__name__)


class CancelToken:
    """Cooperative cancellation flag, observed between stages."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass(frozen=True)
class Attempt:
    """
    How a stage is being invoked.

    Attributes:
        retry_count: Retries of this stage already made in this run
        hints: Flags set by recovery strategies (e.g. cleanup_attempted)
    """
    retry_count: int = 0
    hints: Mapping[str, Any] = field(default_factory=dict)


@dataclass
class RunScope:
    """
    Everything one run owns, passed explicitly through every stage.

    Nothing here is shared between runs.
    """
    context: OperationContext
    config: "GitorchConfig"
    clients: "Clients"
    bundle: Optional[ArtifactBundle] = None
    specification: Optional[Mapping[str, Any]] = None
    commit_message: str = ""
    compensation: CompensationStack = field(default_factory=CompensationStack)
    state: PipelineStateMachine = field(default_factory=PipelineStateMachine)
    cancel_token: CancelToken = field(default_factory=CancelToken)
    observer: Optional["StatusObserver"] = None
    outputs: dict[str, Any] = field(default_factory=dict)
    notes: dict[str, Any] = field(default_factory=dict)
    clock: Callable[[], float] = time.monotonic
    sleep: Callable[[float], None] = time.sleep

    @property
    def repository(self) -> Optional[Repository]:
        return self.outputs.get("create_repository")

    @property
    def commit_id(self) -> Optional[str]:
        return self.outputs.get("commit_artifacts")

    @property
    def review_request(self) -> Optional[ReviewRequest]:
        merged: Optional[MergeOutcome] = self.outputs.get("merge")
        if merged is not None:
            return merged.review_request
        return self.outputs.get("open_review")

    @property
    def run_id(self) -> Optional[str]:
        return self.outputs.get("trigger_validation")

    @property
    def validation(self) -> Optional[ValidationResults]:
        return self.outputs.get("process_validation")

    @property
    def merge(self) -> Optional[MergeOutcome]:
        return self.outputs.get("merge")

    @property
    def deployment(self) -> Optional[DeploymentResult]:
        return self.outputs.get("deploy")

    def require(self, key: str) -> Any:
        if key not in self.outputs:
            raise RuntimeError(f"Stage output '{key}' is not available in this run")
        return self.outputs[key]


class Stage(ABC):
    """
    One pipeline stage.

    Subclasses set:
        name: Stage identifier (checkpoint name and error operation)
        component: Component name used in classified errors
        error_kind: Kind for failures that are not network or permission errors
        requires: Stages that must have a success checkpoint first
        target_state: State entered on success (None for no transition)
        failure_state: State entered when the stage fails terminally
        compensate_on_failure: False when a failure here must not roll back
    """

    name: str = "stage"
    component: str = "gitops"
    error_kind: ErrorKind = ErrorKind.GITOPS_ERROR
    requires: tuple[str, ...] = ()
    target_state: Optional[PipelineState] = None
    failure_state: Optional[PipelineState] = None
    compensate_on_failure: bool = True
    recoverable: bool = True

    def execute(self, scope: RunScope, attempt: Attempt) -> Any:
        """
        Run the stage, classifying any failure.

        Raises:
            ClassifiedError: On any failure
        """
        try:
            return self.run(scope, attempt)
        except ClassifiedError:
            raise
        except Exception as e:
            raise classify(
                e,
                kind=self.error_kind,
                component=self.component,
                operation=self.name,
                details=self.error_details(scope, attempt),
                recoverable=self.recoverable,
                retry_count=attempt.retry_count,
                max_retries=scope.config.error_handling.max_retries,
            ) from e

    @abstractmethod
    def run(self, scope: RunScope, attempt: Attempt) -> Any:
        ...

    def error_details(self, scope: RunScope, attempt: Attempt) -> dict[str, Any]:
        """Context added to the detail bag of classified failures."""
        details: dict[str, Any] = {}
        if scope.repository is not None:
            details["repository"] = scope.repository.name
        return details

    def apply(self, scope: RunScope, output: Any) -> None:
        """Publish the stage output to the run scope."""
        scope.outputs[self.name] = output

    def compensation(self, scope: RunScope, output: Any) -> Optional[CompensatingAction]:
        return None

    def failure_cleanup(self, scope: RunScope) -> Optional[CompensatingAction]:
        """Undo what a terminally failed attempt of this stage left behind."""
        return None

    def next_state(self, output: Any) -> Optional[PipelineState]:
        return self.target_state

    def error(self, message: str, recoverable: bool = True, kind: Optional[ErrorKind] = None,
              **details: Any) -> ClassifiedError:
        """Build a ClassifiedError originating from this stage."""
        return ClassifiedError(
            kind=kind or self.error_kind,
            component=self.component,
            operation=self.name,
            message=message,
            details=details,
            recoverable=recoverable,
        )

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name})"
