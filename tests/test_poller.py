"""Tests for the pipeline status poller."""

import pytest

from gitorch.poller import MAX_BACKOFF_FACTOR, Backoff, PipelineStatusPoller
from gitorch.schemas.validation import RunState


class FakeClock:
    """Monotonic clock advanced by the fake sleep."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


def _script(*states):
    remaining = list(states)

    def fetch(run_id):
        return remaining.pop(0) if len(remaining) > 1 else remaining[0]

    return fetch


class TestPipelineStatusPoller:
    def test_returns_terminal_status(self):
        clock = FakeClock()
        poller = PipelineStatusPoller(
            _script(RunState.QUEUED, RunState.RUNNING, RunState.COMPLETED),
            interval=5, timeout=300, clock=clock, sleep=clock.sleep,
        )

        result = poller.poll("run-1")

        assert result.state == RunState.COMPLETED
        assert result.terminal
        assert not result.timed_out
        assert result.polls == 3
        assert clock.sleeps == [5, 5]

    def test_observer_called_once_per_change(self):
        clock = FakeClock()
        seen = []
        poller = PipelineStatusPoller(
            _script(RunState.RUNNING, RunState.RUNNING, RunState.RUNNING, RunState.FAILED),
            interval=1, timeout=60, clock=clock, sleep=clock.sleep,
        )

        result = poller.poll("run-1", observer=lambda run_id, state: seen.append((run_id, state)))

        assert seen == [("run-1", RunState.RUNNING), ("run-1", RunState.FAILED)]
        assert result.history == (RunState.RUNNING, RunState.FAILED)

    def test_observer_failure_does_not_stop_polling(self):
        clock = FakeClock()

        def broken(run_id, state):
            raise RuntimeError("observer down")

        poller = PipelineStatusPoller(
            _script(RunState.RUNNING, RunState.COMPLETED),
            interval=1, timeout=60, clock=clock, sleep=clock.sleep,
        )
        assert poller.poll("run-1", observer=broken).state == RunState.COMPLETED

    def test_timeout_returns_last_status(self):
        clock = FakeClock()
        poller = PipelineStatusPoller(
            _script(RunState.RUNNING), interval=10, timeout=25, clock=clock, sleep=clock.sleep,
        )

        result = poller.poll("run-1")

        assert result.timed_out
        assert result.state == RunState.RUNNING
        assert not result.terminal
        assert sum(clock.sleeps) == 25
        assert clock.sleeps[-1] == 5

    def test_linear_backoff_is_capped(self):
        clock = FakeClock()
        poller = PipelineStatusPoller(
            _script(RunState.RUNNING), interval=1, timeout=1000,
            backoff=Backoff.LINEAR, clock=clock, sleep=clock.sleep,
        )

        poller.poll("run-1")

        assert clock.sleeps[:3] == [1, 2, 3]
        assert max(clock.sleeps) == MAX_BACKOFF_FACTOR

    def test_negative_interval_rejected(self):
        with pytest.raises(ValueError):
            PipelineStatusPoller(_script(RunState.RUNNING), interval=-1)
