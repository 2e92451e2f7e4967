"""
Recovery dispatch - kind-keyed registry of recovery strategies.

The registry maps each ErrorKind to an ordered list of strategies sharing
one interface (applicable / recover). Dispatch walks the list in
registration order; the first strategy that accepts the error and whose
recover() completes without raising supplies the substitute result.

The registry is built once per process and frozen; runs only read it.
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Optional, TYPE_CHECKING

from gitorch.bundle import minimal_bundle
from gitorch.errors import ClassifiedError, ErrorKind
from gitorch.schemas.context import OperationContext

if TYPE_CHECKING:
    from gitorch.clients.base import DeploymentTarget
    from gitorch.config import ErrorHandlingConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Recovery:
    """
    Substitute result produced by a strategy.

    Attributes:
        value: Substitute for the failed stage's output
        strategy: Name of the strategy that produced it
        resume: True to continue the pipeline with value as the stage's
            output; False to end the run with value as the fallback
    """
    value: Any
    strategy: str
    resume: bool = True


class RecoveryStrategy(ABC):
    """Recovery procedure bound to exactly one error kind."""

    kind: ErrorKind
    name: str = "strategy"
    description: str = ""

    @abstractmethod
    def applicable(self, error: ClassifiedError) -> bool:
        """Whether this strategy can handle the error."""
        ...

    @abstractmethod
    def recover(self, error: ClassifiedError, context: OperationContext) -> Recovery:
        """
        Produce a substitute result.

        Raises:
            Exception: Any failure means this strategy did not recover
        """
        ...


class NetworkRetryStrategy(RecoveryStrategy):
    """Re-invoke the failed operation after a linear backoff."""

    kind = ErrorKind.NETWORK_ERROR
    name = "network-retry"

    def __init__(self, max_retries: int = 3, retry_delay: float = 1.0, sleep: Callable[[float], None] = time.sleep):
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.sleep = sleep
        self.description = f"Retry network operations up to {max_retries} times with linear backoff"

    def applicable(self, error: ClassifiedError) -> bool:
        return error.retry_count < self.max_retries

    def recover(self, error: ClassifiedError, context: OperationContext) -> Recovery:
        """
        Retry until the operation succeeds or fails in a way retrying cannot fix.

        Each retry raises its own NETWORK_ERROR with retry_count + 1; once
        that error is no longer recoverable (the cap is reached) or a
        different kind of error appears, it propagates out of recover().
        """
        attempt = error.retry_count + 1
        while True:
            delay = self.retry_delay * attempt
            logger.info(f"Retrying {error.operation} in {delay}s (attempt {attempt}/{self.max_retries})")
            self.sleep(delay)
            try:
                value = context.reinvoke(error.operation, attempt)
            except ClassifiedError as retry_error:
                if retry_error.kind != ErrorKind.NETWORK_ERROR or not retry_error.recoverable:
                    raise
                logger.warning(f"Retry {attempt} of {error.operation} failed: {retry_error.message}")
                attempt = retry_error.retry_count + 1
                continue
            return Recovery(value=value, strategy=self.name)


class MinimalBundleStrategy(RecoveryStrategy):
    """Substitute a minimal artifact bundle when generation fails."""

    kind = ErrorKind.TEMPLATE_GENERATION_ERROR
    name = "minimal-bundle"
    description = "Generate a minimal artifact bundle from the specification"

    def applicable(self, error: ClassifiedError) -> bool:
        return error.details.get("specification") is not None

    def recover(self, error: ClassifiedError, context: OperationContext) -> Recovery:
        bundle = minimal_bundle(error.details["specification"])
        logger.info(f"Substituted minimal bundle for {bundle.name} ({len(bundle.files)} files)")
        return Recovery(value=bundle, strategy=self.name)


class GitOpsCheckpointStrategy(RecoveryStrategy):
    """
    End the run at the last known good repository/commit checkpoint.

    The repository is left as it was at that checkpoint rather than
    compensated, so the run can be resumed by hand.
    """

    kind = ErrorKind.GITOPS_ERROR
    name = "gitops-checkpoint"
    description = "Stop at the last repository or commit checkpoint"

    CHECKPOINT_MARKERS = ("repository", "commit")

    def applicable(self, error: ClassifiedError) -> bool:
        return error.details.get("repository") is not None

    def recover(self, error: ClassifiedError, context: OperationContext) -> Recovery:
        checkpoint = context.last_checkpoint(
            lambda cp: any(marker in cp.name for marker in self.CHECKPOINT_MARKERS)
        )
        if checkpoint is None:
            raise RuntimeError(f"No repository checkpoint to fall back to for {error.details['repository']}")
        logger.info(f"Falling back to checkpoint {checkpoint.name} ({checkpoint.timestamp.isoformat()})")
        return Recovery(value=checkpoint.data, strategy=self.name, resume=False)


class DeploymentCleanupRetryStrategy(RecoveryStrategy):
    """Remove a partial deployment and run the Deploy stage once more."""

    kind = ErrorKind.DEPLOYMENT_ERROR
    name = "deployment-cleanup-retry"
    description = "Clean up the failed deployment and retry once"

    def __init__(self, target: "DeploymentTarget"):
        self.target = target

    def applicable(self, error: ClassifiedError) -> bool:
        return bool(error.details.get("deployment_id")) and not error.details.get("cleanup_attempted")

    def recover(self, error: ClassifiedError, context: OperationContext) -> Recovery:
        deployment_id = error.details["deployment_id"]
        logger.info(f"Cleaning up failed deployment {deployment_id}")
        self.target.undeploy(deployment_id)
        value = context.reinvoke(error.operation, error.retry_count, cleanup_attempted=True)
        return Recovery(value=value, strategy=self.name)


class RecoveryRegistry:
    """
    Registry of recovery strategies keyed by error kind.

    Usage:
        registry = RecoveryRegistry()
        registry.register(NetworkRetryStrategy(max_retries=3))
        registry.freeze()

        recovery = registry.dispatch(error, context)

        # Or use factory with defaults
        registry = RecoveryRegistry.create_default(config.error_handling, target)
    """

    def __init__(self) -> None:
        self._strategies: dict[ErrorKind, list[RecoveryStrategy]] = {}
        self._frozen = False

    def register(self, strategy: RecoveryStrategy) -> None:
        """
        Append a strategy for its error kind.

        Raises:
            RuntimeError: If the registry is frozen
        """
        if self._frozen:
            raise RuntimeError("RecoveryRegistry is frozen; register strategies before the first run")
        self._strategies.setdefault(strategy.kind, []).append(strategy)

    def freeze(self) -> "RecoveryRegistry":
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def strategies_for(self, kind: ErrorKind) -> tuple[RecoveryStrategy, ...]:
        return tuple(self._strategies.get(kind, ()))

    def has(self, kind: ErrorKind) -> bool:
        return bool(self._strategies.get(kind))

    def list_kinds(self) -> list[ErrorKind]:
        return [k for k, v in self._strategies.items() if v]

    def dispatch(self, error: ClassifiedError, context: OperationContext) -> Optional[Recovery]:
        """
        Try each strategy registered for the error's kind, in order.

        Args:
            error: The classified failure
            context: Live operation context of the run

        Returns:
            The first successful Recovery, or None if nothing recovered
        """
        for strategy in self.strategies_for(error.kind):
            if not strategy.applicable(error):
                continue
            logger.info(
                f"Attempting recovery of {error.kind.value} with {strategy.name}",
                extra={"event": "recovery_attempt", "stage": error.operation},
            )
            try:
                recovery = strategy.recover(error, context)
            except Exception as e:
                logger.warning(f"Recovery strategy {strategy.name} failed: {e}")
                continue
            logger.info(f"Recovered {error.operation} with {strategy.name}")
            return recovery
        return None

    @classmethod
    def create_default(
        cls,
        error_handling: "ErrorHandlingConfig",
        target: "DeploymentTarget",
        sleep: Callable[[float], None] = time.sleep,
    ) -> "RecoveryRegistry":
        """Registry with the built-in strategies, frozen."""
        registry = cls()
        registry.register(NetworkRetryStrategy(
            max_retries=error_handling.max_retries,
            retry_delay=error_handling.retry_delay_seconds,
            sleep=sleep,
        ))
        registry.register(MinimalBundleStrategy())
        registry.register(GitOpsCheckpointStrategy())
        registry.register(DeploymentCleanupRetryStrategy(target))
        return registry.freeze()
