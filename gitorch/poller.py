"""
Pipeline status poller.

Watches a validation run until it reaches a terminal state or a bounded
timeout elapses, sleeping between polls. The observer is called once per
observed status change. A timeout is not an error here: the last observed
status is returned and the caller decides what a non-terminal status means.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from gitorch.schemas.validation import RunState

logger = logging.getLogger(__name__)

StatusObserver = Callable[[str, RunState], None]


class Backoff(str, Enum):
    FIXED = "fixed"
    LINEAR = "linear"


# Linear backoff never waits longer than this many intervals
MAX_BACKOFF_FACTOR = 6


@dataclass(frozen=True)
class PollResult:
    run_id: str
    state: Optional[RunState]
    timed_out: bool
    polls: int
    history: tuple[RunState, ...] = field(default_factory=tuple)

    @property
    def terminal(self) -> bool:
        return self.state is not None and self.state.is_terminal


class PipelineStatusPoller:
    """
    Poll a status function until the run is terminal.

    Args:
        fetch_status: Callable returning the RunState for a run id
        interval: Base seconds between polls
        timeout: Upper bound on total wait, measured with clock
        backoff: fixed (constant interval) or linear (interval * poll count)
        clock: Monotonic clock in seconds
        sleep: Sleep function
    """

    def __init__(
        self,
        fetch_status: Callable[[str], RunState],
        interval: float = 5.0,
        timeout: float = 300.0,
        backoff: Backoff | str = Backoff.FIXED,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if interval < 0 or timeout < 0:
            raise ValueError("interval and timeout must be non-negative")
        self.fetch_status = fetch_status
        self.interval = interval
        self.timeout = timeout
        self.backoff = Backoff(backoff)
        self.clock = clock
        self.sleep = sleep

    def _delay(self, polls: int) -> float:
        if self.backoff == Backoff.LINEAR:
            return self.interval * min(polls, MAX_BACKOFF_FACTOR)
        return self.interval

    def poll(self, run_id: str, observer: Optional[StatusObserver] = None) -> PollResult:
        started = self.clock()
        last: Optional[RunState] = None
        history: list[RunState] = []
        polls = 0

        while True:
            state = RunState(self.fetch_status(run_id))
            polls += 1

            if state != last:
                history.append(state)
                logger.debug(f"Run {run_id} status: {state.value}")
                if observer is not None:
                    try:
                        observer(run_id, state)
                    except Exception as e:
                        logger.warning(f"Status observer failed for run {run_id}: {e}")
                last = state

            if state.is_terminal:
                return PollResult(run_id, state, False, polls, tuple(history))

            elapsed = self.clock() - started
            if elapsed >= self.timeout:
                logger.warning(f"Run {run_id} still {state.value} after {elapsed:.1f}s; giving up")
                return PollResult(run_id, state, True, polls, tuple(history))

            self.sleep(min(self._delay(polls), self.timeout - elapsed))
