"""
Validation stages: trigger a CI run and turn its outcome into a verdict.
"""

import logging
from typing import Any

from gitorch.errors import ErrorKind
from gitorch.poller import PipelineStatusPoller
from gitorch.providers import resolve_provider
from gitorch.schemas.validation import (
    RunState,
    ValidationResults,
    Verdict,
    aggregate_verdict,
)
from gitorch.stages.base import Attempt, RunScope, Stage
from gitorch.state_machine import PipelineState

logger = logging.getLogger(__name__)

NOTIFY_EVENTS = {
    Verdict.PASSED: "validation_passed",
    Verdict.WARNING: "validation_warning",
    Verdict.FAILED: "validation_failed",
}


class TriggerValidationStage(Stage):
    """Submit the review branch to the configured validation provider."""

    name = "trigger_validation"
    component = "validation"
    error_kind = ErrorKind.VALIDATION_ERROR
    requires = ("open_review",)
    target_state = PipelineState.VALIDATION_RUNNING
    recoverable = False

    def run(self, scope: RunScope, attempt: Attempt) -> str:
        provider = scope.clients.validation
        kind = resolve_provider(scope.config.validation.provider, component=self.component, operation=self.name)
        if not provider.supports(kind):
            raise self.error(
                f"Validation provider client does not support {kind.value}",
                recoverable=False,
                kind=ErrorKind.CONFIGURATION_ERROR,
                provider=kind.value,
            )
        review = scope.review_request
        run_id = provider.trigger(scope.repository, kind, review.source_branch)
        logger.info(f"Triggered {kind.value} validation run {run_id} for {review.source_branch}",
                    extra={"stage": self.name})
        return run_id


class ProcessValidationStage(Stage):
    """
    Wait for the validation run and aggregate its results.

    A run still non-terminal at the poll timeout, a failed or cancelled run,
    and a failed verdict all raise a non-recoverable VALIDATION_ERROR; the
    caller decides whether to re-run after fixes.
    """

    name = "process_validation"
    component = "validation"
    error_kind = ErrorKind.VALIDATION_ERROR
    requires = ("trigger_validation",)
    failure_state = PipelineState.VALIDATION_FAILED
    recoverable = False

    def next_state(self, output: ValidationResults) -> PipelineState:
        if output.verdict == Verdict.FAILED:
            return PipelineState.VALIDATION_FAILED
        return PipelineState.VALIDATION_PASSED

    def run(self, scope: RunScope, attempt: Attempt) -> ValidationResults:
        provider = scope.clients.validation
        settings = scope.config.validation
        run_id = scope.run_id

        poller = PipelineStatusPoller(
            provider.get_status,
            interval=settings.poll_interval_seconds,
            timeout=settings.poll_timeout_seconds,
            backoff=settings.backoff,
            clock=scope.clock,
            sleep=scope.sleep,
        )
        polled = poller.poll(run_id, scope.observer)

        if not polled.terminal:
            state = polled.state.value if polled.state else "unknown"
            raise self.error(
                f"Validation run {run_id} did not finish within "
                f"{settings.poll_timeout_seconds}s (last status: {state})",
                recoverable=False,
                run_id=run_id,
                last_status=state,
                repository=scope.repository.name,
            )

        if polled.state == RunState.COMPLETED:
            report = provider.get_report(run_id)
            verdict, errors, warnings = aggregate_verdict(report.checks, report.security_scan, report.quality_gate)
        else:
            report = None
            verdict, errors, warnings = Verdict.FAILED, (f"validation run {polled.state.value}",), ()

        results = ValidationResults(
            run_id=run_id,
            state=polled.state,
            verdict=verdict,
            report=report,
            errors=errors,
            warnings=warnings,
        )
        self._notify(scope, results)

        if verdict == Verdict.FAILED:
            raise self.error(
                f"Validation failed for {scope.repository.name}: {'; '.join(errors)}",
                recoverable=False,
                run_id=run_id,
                errors="; ".join(errors),
                repository=scope.repository.name,
                results=results,
            )

        logger.info(f"Validation {verdict.value} for run {run_id}", extra={"stage": self.name})
        return results

    def _notify(self, scope: RunScope, results: ValidationResults) -> None:
        message = f"Validation {results.verdict.value} for {scope.repository.name} (run {results.run_id})"
        try:
            scope.clients.notifier.notify(
                NOTIFY_EVENTS[results.verdict],
                message,
                {"run_id": results.run_id, "errors": list(results.errors), "warnings": list(results.warnings)},
            )
        except Exception as e:
            logger.warning(f"Validation notification failed for run {results.run_id}: {e}")

    def error_details(self, scope: RunScope, attempt: Attempt) -> dict[str, Any]:
        details = super().error_details(scope, attempt)
        details["run_id"] = scope.run_id
        return details
