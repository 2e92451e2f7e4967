"""Tests for the pipeline state machine."""

import pytest

from gitorch.errors import InvalidTransitionError
from gitorch.state_machine import PipelineState, PipelineStateMachine

HAPPY_PATH = (
    PipelineState.CREATED,
    PipelineState.COMMITTED,
    PipelineState.REVIEW_OPEN,
    PipelineState.VALIDATION_RUNNING,
    PipelineState.VALIDATION_PASSED,
    PipelineState.MERGED,
    PipelineState.DEPLOYED,
    PipelineState.VERIFIED,
)


class TestPipelineStateMachine:
    def test_starts_pending(self):
        assert PipelineStateMachine().state == PipelineState.PENDING

    def test_happy_path(self):
        machine = PipelineStateMachine()
        for state in HAPPY_PATH:
            machine.transition(state)
        assert machine.state == PipelineState.VERIFIED
        assert machine.history == (PipelineState.PENDING, *HAPPY_PATH)

    def test_cannot_skip_states(self):
        machine = PipelineStateMachine()
        with pytest.raises(InvalidTransitionError, match="pending to merged"):
            machine.transition(PipelineState.MERGED)
        assert machine.state == PipelineState.PENDING

    def test_rolled_back_reachable_from_any_non_terminal_state(self):
        for steps in range(len(HAPPY_PATH) - 1):
            machine = PipelineStateMachine()
            for state in HAPPY_PATH[:steps]:
                machine.transition(state)
            assert machine.can_transition(PipelineState.ROLLED_BACK)

    def test_closed_reachable_from_non_terminal_state(self):
        machine = PipelineStateMachine()
        machine.transition(PipelineState.CREATED)
        machine.transition(PipelineState.CLOSED)
        assert machine.state.is_terminal

    @pytest.mark.parametrize("terminal", [
        PipelineState.VALIDATION_FAILED,
        PipelineState.VERIFIED,
        PipelineState.VERIFICATION_FAILED,
        PipelineState.CLOSED,
        PipelineState.ROLLED_BACK,
    ])
    def test_terminal_states_accept_nothing(self, terminal):
        machine = PipelineStateMachine(initial=terminal)
        assert not machine.can_transition(PipelineState.ROLLED_BACK)
        with pytest.raises(InvalidTransitionError):
            machine.transition(PipelineState.CLOSED)

    def test_validation_can_fail(self):
        machine = PipelineStateMachine(initial=PipelineState.VALIDATION_RUNNING)
        machine.transition(PipelineState.VALIDATION_FAILED)
        assert machine.state.is_terminal
