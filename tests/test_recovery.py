"""Tests for the recovery registry and built-in strategies."""

import pytest

from gitorch.bundle import ArtifactBundle
from gitorch.clients.memory import InMemoryDeploymentTarget
from gitorch.config import ErrorHandlingConfig
from gitorch.errors import ClassifiedError, ErrorKind, TransientError, classify
from gitorch.recovery import (
    DeploymentCleanupRetryStrategy,
    GitOpsCheckpointStrategy,
    MinimalBundleStrategy,
    NetworkRetryStrategy,
    Recovery,
    RecoveryRegistry,
    RecoveryStrategy,
)
from gitorch.schemas.context import OperationContext


def _error(kind, operation="commit_artifacts", recoverable=True, **details):
    return ClassifiedError(
        kind=kind,
        component="gitops",
        operation=operation,
        message=f"{operation} failed",
        details=details,
        recoverable=recoverable,
    )


def _network_error(retry_count=0, max_retries=3, operation="commit_artifacts"):
    return classify(TransientError("connection reset"), ErrorKind.GITOPS_ERROR, "gitops", operation,
                    retry_count=retry_count, max_retries=max_retries)


class FixedStrategy(RecoveryStrategy):
    def __init__(self, kind, value=None, fails=False, applies=True):
        self.kind = kind
        self.name = f"fixed-{value}"
        self.value = value
        self.fails = fails
        self.applies = applies
        self.calls = 0

    def applicable(self, error):
        return self.applies

    def recover(self, error, context):
        self.calls += 1
        if self.fails:
            raise RuntimeError("strategy failed")
        return Recovery(value=self.value, strategy=self.name)


# =============================================================================
# RecoveryRegistry
# =============================================================================


class TestRecoveryRegistry:
    """Tests for registry ordering and dispatch."""

    def test_dispatch_returns_first_success(self):
        registry = RecoveryRegistry()
        first = FixedStrategy(ErrorKind.GITOPS_ERROR, value="first")
        second = FixedStrategy(ErrorKind.GITOPS_ERROR, value="second")
        registry.register(first)
        registry.register(second)

        recovery = registry.dispatch(_error(ErrorKind.GITOPS_ERROR), OperationContext(component="test"))

        assert recovery.value == "first"
        assert second.calls == 0

    def test_failed_strategy_falls_through(self):
        registry = RecoveryRegistry()
        registry.register(FixedStrategy(ErrorKind.GITOPS_ERROR, value="broken", fails=True))
        registry.register(FixedStrategy(ErrorKind.GITOPS_ERROR, value="works"))

        recovery = registry.dispatch(_error(ErrorKind.GITOPS_ERROR), OperationContext(component="test"))

        assert recovery.value == "works"

    def test_inapplicable_strategy_skipped(self):
        registry = RecoveryRegistry()
        skipped = FixedStrategy(ErrorKind.GITOPS_ERROR, value="skipped", applies=False)
        registry.register(skipped)

        assert registry.dispatch(_error(ErrorKind.GITOPS_ERROR), OperationContext(component="test")) is None
        assert skipped.calls == 0

    def test_no_strategy_for_kind(self):
        registry = RecoveryRegistry()
        registry.register(FixedStrategy(ErrorKind.GITOPS_ERROR, value="x"))
        assert registry.dispatch(_error(ErrorKind.REGISTRY_ERROR), OperationContext(component="test")) is None

    def test_frozen_registry_rejects_registration(self):
        registry = RecoveryRegistry().freeze()
        with pytest.raises(RuntimeError, match="frozen"):
            registry.register(FixedStrategy(ErrorKind.GITOPS_ERROR))

    def test_create_default(self):
        registry = RecoveryRegistry.create_default(ErrorHandlingConfig(), InMemoryDeploymentTarget())
        assert registry.frozen
        assert set(registry.list_kinds()) == {
            ErrorKind.NETWORK_ERROR,
            ErrorKind.TEMPLATE_GENERATION_ERROR,
            ErrorKind.GITOPS_ERROR,
            ErrorKind.DEPLOYMENT_ERROR,
        }
        assert not registry.has(ErrorKind.VALIDATION_ERROR)


# =============================================================================
# NetworkRetryStrategy
# =============================================================================


class TestNetworkRetryStrategy:
    """Tests for retry-with-linear-backoff."""

    def _context(self, outcomes, calls):
        context = OperationContext(component="test")

        def hook(operation, retry_count, **hints):
            calls.append((operation, retry_count))
            outcome = outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        context.bind_reinvoke(hook)
        return context

    def test_succeeds_on_first_retry(self):
        sleeps, calls = [], []
        strategy = NetworkRetryStrategy(max_retries=3, retry_delay=2.0, sleep=sleeps.append)
        context = self._context(["abc123"], calls)

        recovery = strategy.recover(_network_error(), context)

        assert recovery.value == "abc123"
        assert recovery.resume is True
        assert calls == [("commit_artifacts", 1)]
        assert sleeps == [2.0]

    def test_linear_backoff_until_success(self):
        sleeps, calls = [], []
        strategy = NetworkRetryStrategy(max_retries=3, retry_delay=1.0, sleep=sleeps.append)
        context = self._context([_network_error(1), _network_error(2), "abc123"], calls)

        recovery = strategy.recover(_network_error(), context)

        assert recovery.value == "abc123"
        assert [c[1] for c in calls] == [1, 2, 3]
        assert sleeps == [1.0, 2.0, 3.0]

    def test_gives_up_at_cap(self):
        calls = []
        strategy = NetworkRetryStrategy(max_retries=3, retry_delay=0, sleep=lambda s: None)
        context = self._context([_network_error(1), _network_error(2), _network_error(3)], calls)

        with pytest.raises(ClassifiedError) as exc_info:
            strategy.recover(_network_error(), context)

        assert exc_info.value.recoverable is False
        assert len(calls) == 3

    def test_other_error_kind_propagates(self):
        strategy = NetworkRetryStrategy(max_retries=3, retry_delay=0, sleep=lambda s: None)
        other = _error(ErrorKind.GITOPS_ERROR)
        context = self._context([other], [])

        with pytest.raises(ClassifiedError) as exc_info:
            strategy.recover(_network_error(), context)
        assert exc_info.value is other

    def test_not_applicable_at_cap(self):
        strategy = NetworkRetryStrategy(max_retries=3)
        assert strategy.applicable(_network_error(retry_count=2))
        assert not strategy.applicable(_network_error(retry_count=3))

    def test_requires_bound_hook(self):
        strategy = NetworkRetryStrategy(max_retries=3, retry_delay=0, sleep=lambda s: None)
        with pytest.raises(RuntimeError, match="no run is active"):
            strategy.recover(_network_error(), OperationContext(component="test"))


# =============================================================================
# Kind-specific strategies
# =============================================================================


class TestMinimalBundleStrategy:
    def test_builds_minimal_bundle(self):
        error = _error(ErrorKind.TEMPLATE_GENERATION_ERROR, operation="generate_artifacts",
                       specification={"name": "my-service", "owner": "team-a"})
        strategy = MinimalBundleStrategy()

        assert strategy.applicable(error)
        recovery = strategy.recover(error, OperationContext(component="test"))

        assert isinstance(recovery.value, ArtifactBundle)
        assert recovery.value.name == "my-service"
        assert recovery.value.metadata["minimal"] is True
        assert set(recovery.value.paths) == {"template.yaml", "catalog-info.yaml", "README.md"}

    def test_needs_specification(self):
        assert not MinimalBundleStrategy().applicable(_error(ErrorKind.TEMPLATE_GENERATION_ERROR))


class TestGitOpsCheckpointStrategy:
    def test_returns_last_repository_checkpoint(self):
        context = OperationContext(component="test")
        context.add_checkpoint("create_repository", "repo")
        context.add_checkpoint("commit_artifacts", "abc123")
        context.add_checkpoint("open_review", "review")
        error = _error(ErrorKind.GITOPS_ERROR, operation="merge", repository="my-service")

        recovery = GitOpsCheckpointStrategy().recover(error, context)

        assert recovery.value == "abc123"
        assert recovery.resume is False

    def test_fails_without_checkpoint(self):
        error = _error(ErrorKind.GITOPS_ERROR, repository="my-service")
        with pytest.raises(RuntimeError, match="No repository checkpoint"):
            GitOpsCheckpointStrategy().recover(error, OperationContext(component="test"))

    def test_needs_repository_detail(self):
        assert not GitOpsCheckpointStrategy().applicable(_error(ErrorKind.GITOPS_ERROR))


class TestDeploymentCleanupRetryStrategy:
    def test_undeploys_then_retries_with_hint(self):
        target = InMemoryDeploymentTarget()
        context = OperationContext(component="test")
        seen = []
        context.bind_reinvoke(lambda op, retry_count, **hints: seen.append((op, hints)) or "deployed")
        error = _error(ErrorKind.DEPLOYMENT_ERROR, operation="deploy", deployment_id="deploy-0001")

        recovery = DeploymentCleanupRetryStrategy(target).recover(error, context)

        assert target.undeployed == ["deploy-0001"]
        assert seen == [("deploy", {"cleanup_attempted": True})]
        assert recovery.value == "deployed"

    def test_only_once(self):
        strategy = DeploymentCleanupRetryStrategy(InMemoryDeploymentTarget())
        assert strategy.applicable(_error(ErrorKind.DEPLOYMENT_ERROR, deployment_id="d1"))
        assert not strategy.applicable(_error(ErrorKind.DEPLOYMENT_ERROR, deployment_id="d1", cleanup_attempted=True))
        assert not strategy.applicable(_error(ErrorKind.DEPLOYMENT_ERROR, deployment_id=None))
