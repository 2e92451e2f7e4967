"""
Pipeline state machine.

States advance in stage order:

    PENDING -> CREATED -> COMMITTED -> REVIEW_OPEN -> VALIDATION_RUNNING
      -> VALIDATION_PASSED | VALIDATION_FAILED*
      -> MERGED -> DEPLOYED -> VERIFIED* | VERIFICATION_FAILED*

CLOSED* (run ended early on a recovered substitute) and ROLLED_BACK*
(compensation ran) are reachable from any non-terminal state.
"""

import logging
from enum import Enum

from gitorch.errors import InvalidTransitionError

logger = logging.getLogger(__name__)


class PipelineState(str, Enum):
    PENDING = "pending"
    CREATED = "created"
    COMMITTED = "committed"
    REVIEW_OPEN = "review_open"
    VALIDATION_RUNNING = "validation_running"
    VALIDATION_PASSED = "validation_passed"
    VALIDATION_FAILED = "validation_failed"
    MERGED = "merged"
    DEPLOYED = "deployed"
    VERIFIED = "verified"
    VERIFICATION_FAILED = "verification_failed"
    CLOSED = "closed"
    ROLLED_BACK = "rolled_back"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({
    PipelineState.VALIDATION_FAILED,
    PipelineState.VERIFIED,
    PipelineState.VERIFICATION_FAILED,
    PipelineState.CLOSED,
    PipelineState.ROLLED_BACK,
})

TRANSITIONS: dict[PipelineState, frozenset[PipelineState]] = {
    PipelineState.PENDING: frozenset({PipelineState.CREATED}),
    PipelineState.CREATED: frozenset({PipelineState.COMMITTED}),
    PipelineState.COMMITTED: frozenset({PipelineState.REVIEW_OPEN}),
    PipelineState.REVIEW_OPEN: frozenset({PipelineState.VALIDATION_RUNNING}),
    PipelineState.VALIDATION_RUNNING: frozenset({
        PipelineState.VALIDATION_PASSED,
        PipelineState.VALIDATION_FAILED,
    }),
    PipelineState.VALIDATION_PASSED: frozenset({PipelineState.MERGED}),
    PipelineState.MERGED: frozenset({PipelineState.DEPLOYED}),
    PipelineState.DEPLOYED: frozenset({
        PipelineState.VERIFIED,
        PipelineState.VERIFICATION_FAILED,
    }),
}

# Reachable from every non-terminal state
ESCAPE_STATES = frozenset({PipelineState.CLOSED, PipelineState.ROLLED_BACK})


class PipelineStateMachine:
    """Tracks the state of one run and rejects illegal transitions."""

    def __init__(self, initial: PipelineState = PipelineState.PENDING):
        self._state = initial
        self._history: list[PipelineState] = [initial]

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def history(self) -> tuple[PipelineState, ...]:
        return tuple(self._history)

    def can_transition(self, target: PipelineState) -> bool:
        if self._state.is_terminal:
            return False
        if target in ESCAPE_STATES:
            return True
        return target in TRANSITIONS.get(self._state, frozenset())

    def transition(self, target: PipelineState) -> PipelineState:
        """
        Move to target.

        Raises:
            InvalidTransitionError: If target is not reachable from the current state
        """
        if not self.can_transition(target):
            raise InvalidTransitionError(
                f"Cannot move pipeline from {self._state.value} to {target.value}"
            )
        logger.debug(f"Pipeline state {self._state.value} -> {target.value}")
        self._state = target
        self._history.append(target)
        return target
