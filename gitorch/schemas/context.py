"""
Operation context - per-run identity and checkpoint log.

An OperationContext is created at the start of Orchestrator.run(), owned
exclusively by that call, and discarded when the run ends. Checkpoints are
append-only and never reordered or removed.
"""

import copy
import random
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Callable, Mapping, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_operation_id() -> str:
    """
    Generate a ULID-style operation id.

    26 characters: 10 of millisecond timestamp followed by 16 random,
    both in Crockford's Base32 so ids sort by creation time.
    """
    ALPHABET = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"

    timestamp_ms = int(time.time() * 1000)
    timestamp_chars = []
    for _ in range(10):
        timestamp_chars.append(ALPHABET[timestamp_ms & 0x1F])
        timestamp_ms >>= 5
    timestamp_part = "".join(reversed(timestamp_chars))

    random_part = "".join(random.choice(ALPHABET) for _ in range(16))

    return timestamp_part + random_part


@dataclass(frozen=True)
class Checkpoint:
    """
    Immutable, timestamped snapshot of one stage's output.

    Attributes:
        name: Stage identifier (e.g. "create_repository")
        timestamp: When the checkpoint was recorded
        data: The stage's output value
    """
    name: str
    timestamp: datetime
    data: Any = None

    def to_dict(self) -> dict[str, Any]:
        data = self.data.to_dict() if hasattr(self.data, "to_dict") else self.data
        return {"name": self.name, "timestamp": self.timestamp.isoformat(), "data": data}


ReinvokeHook = Callable[..., Any]


@dataclass
class OperationContext:
    """
    Identity, inputs and checkpoint log of one pipeline run.

    Attributes:
        operation_id: Opaque token unique per run
        component: Owning component name
        operation: Stage currently executing
        started_at: When the run started
        parameters: Read-only deep copy of the run's input parameters
        checkpoints: Append-only checkpoint log (use add_checkpoint)
    """
    component: str
    operation: str = "pending"
    parameters: Mapping[str, Any] = field(default_factory=dict)
    operation_id: str = field(default_factory=generate_operation_id)
    started_at: datetime = field(default_factory=_utcnow)
    clock: Callable[[], datetime] = field(default=_utcnow, repr=False)
    _checkpoints: list[Checkpoint] = field(default_factory=list, repr=False)
    _reinvoke: Optional[ReinvokeHook] = field(default=None, repr=False)

    def __post_init__(self):
        self.parameters = MappingProxyType(copy.deepcopy(dict(self.parameters)))

    @property
    def checkpoints(self) -> tuple[Checkpoint, ...]:
        return tuple(self._checkpoints)

    def add_checkpoint(self, name: str, data: Any = None) -> Checkpoint:
        """Append a checkpoint. Timestamps never go backwards."""
        timestamp = self.clock()
        if self._checkpoints and timestamp < self._checkpoints[-1].timestamp:
            timestamp = self._checkpoints[-1].timestamp
        checkpoint = Checkpoint(name=name, timestamp=timestamp, data=data)
        self._checkpoints.append(checkpoint)
        return checkpoint

    def has_checkpoint(self, name: str) -> bool:
        return any(cp.name == name for cp in self._checkpoints)

    def checkpoint(self, name: str) -> Optional[Checkpoint]:
        """Most recent checkpoint with the given name, or None."""
        for cp in reversed(self._checkpoints):
            if cp.name == name:
                return cp
        return None

    def last_checkpoint(self, predicate: Optional[Callable[[Checkpoint], bool]] = None) -> Optional[Checkpoint]:
        for cp in reversed(self._checkpoints):
            if predicate is None or predicate(cp):
                return cp
        return None

    def bind_reinvoke(self, hook: Optional[ReinvokeHook]) -> None:
        """Install (or clear) the hook used by strategies to re-run a stage."""
        self._reinvoke = hook

    def reinvoke(self, operation: str, retry_count: int, **hints: Any) -> Any:
        """
        Re-run a stage of this operation.

        Args:
            operation: Stage name
            retry_count: Retry number recorded on errors raised by the re-run
            **hints: Flags passed to the stage (e.g. cleanup_attempted=True)

        Raises:
            RuntimeError: If no orchestrator hook is bound
        """
        if self._reinvoke is None:
            raise RuntimeError(f"Operation {self.operation_id} cannot re-invoke {operation!r}: no run is active")
        return self._reinvoke(operation, retry_count, **hints)
