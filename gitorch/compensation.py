"""
Compensation stack - reverse-order teardown of a run's side effects.

Each stage that creates an external effect registers a CompensatingAction
right after it succeeds. On terminal failure the stack is replayed in
reverse registration order. Replay is best-effort: individual failures are
logged and recorded, never raised, and never retried. Every action runs at
most once and the stack is empty after a replay.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


def _always() -> bool:
    return True


@dataclass(frozen=True)
class CompensatingAction:
    """
    A reversal procedure for one succeeded stage.

    Attributes:
        action_id: Identity, unique within one stack
        description: Human-readable description for logs
        execute: Reversal procedure
        can_execute: Guard; False means "not reversible right now" (e.g. the
            resource was already cleaned up independently)
        stage: Stage whose effect this undoes
    """
    action_id: str
    description: str
    execute: Callable[[], Any]
    can_execute: Callable[[], bool] = _always
    stage: str = ""


class CompensationStatus(str, Enum):
    EXECUTED = "executed"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class CompensationRecord:
    action_id: str
    description: str
    status: CompensationStatus
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "action_id": self.action_id,
            "description": self.description,
            "status": self.status.value,
            "error": self.error,
        }


@dataclass
class CompensationStack:
    """Per-run LIFO of compensating actions."""
    _actions: list[CompensatingAction] = field(default_factory=list)
    _seen: set[str] = field(default_factory=set)

    def __len__(self) -> int:
        return len(self._actions)

    @property
    def actions(self) -> tuple[CompensatingAction, ...]:
        return tuple(self._actions)

    def push(self, action: CompensatingAction) -> None:
        """
        Register an action.

        Raises:
            ValueError: If an action with the same id was already registered
        """
        if action.action_id in self._seen:
            raise ValueError(f"Compensating action already registered: {action.action_id}")
        self._seen.add(action.action_id)
        self._actions.append(action)
        logger.debug(f"Registered compensating action {action.action_id}: {action.description}")

    def clear(self) -> None:
        self._actions.clear()

    def unwind(self) -> list[CompensationRecord]:
        """
        Execute every registered action in reverse order, then clear the stack.

        Returns:
            One record per action, in execution order
        """
        records: list[CompensationRecord] = []
        while self._actions:
            action = self._actions.pop()
            records.append(self._run_one(action))
        return records

    def _run_one(self, action: CompensatingAction) -> CompensationRecord:
        try:
            if not action.can_execute():
                logger.warning(f"Skipping compensation {action.action_id}: not reversible ({action.description})")
                return CompensationRecord(action.action_id, action.description, CompensationStatus.SKIPPED)

            logger.info(f"Compensating: {action.description}")
            action.execute()
            return CompensationRecord(action.action_id, action.description, CompensationStatus.EXECUTED)

        except Exception as e:
            logger.error(
                f"Compensation {action.action_id} failed: {e}",
                extra={"event": "compensation_failed", "metadata": {"action_id": action.action_id}},
            )
            return CompensationRecord(action.action_id, action.description, CompensationStatus.FAILED, error=str(e))
