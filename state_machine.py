"""
Runtime lifecycle state machine.

One StateMachine instance owns the authoritative lifecycle state for the whole
process. State changes only happen through transition(), which checks a static
adjacency table. Subscribers are notified synchronously in registration order;
a failing subscriber is logged and never breaks the transition.
"""

import itertools
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, List, Optional

from errors import StateGuardError
from modes import ASK, CapabilityMode

logger = logging.getLogger(__name__)


class RuntimeState(str, Enum):
    IDLE = "idle"
    READY = "ready"
    ANALYZING = "analyzing"
    STREAMING = "streaming"
    PROPOSING_ACTIONS = "proposing_actions"
    AWAITING_APPROVAL = "awaiting_approval"
    RUNNING_TOOL = "running_tool"
    VERIFYING = "verifying"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"


S = RuntimeState

TRANSITIONS: Dict[RuntimeState, FrozenSet[RuntimeState]] = {
    S.IDLE: frozenset({S.READY}),
    S.READY: frozenset({S.ANALYZING, S.STREAMING, S.PROPOSING_ACTIONS, S.RUNNING_TOOL}),
    S.ANALYZING: frozenset({S.STREAMING, S.PROPOSING_ACTIONS, S.COMPLETED, S.ERROR}),
    S.STREAMING: frozenset({S.COMPLETED, S.ERROR, S.CANCELLED}),
    S.PROPOSING_ACTIONS: frozenset({S.AWAITING_APPROVAL, S.RUNNING_TOOL, S.COMPLETED, S.ERROR}),
    S.AWAITING_APPROVAL: frozenset({S.RUNNING_TOOL, S.COMPLETED, S.CANCELLED, S.ERROR}),
    S.RUNNING_TOOL: frozenset({S.AWAITING_APPROVAL, S.VERIFYING, S.COMPLETED, S.ERROR, S.CANCELLED}),
    S.VERIFYING: frozenset({S.COMPLETED, S.ERROR}),
    # Terminal-ish states only re-enter through Ready
    S.COMPLETED: frozenset({S.READY}),
    S.ERROR: frozenset({S.READY}),
    S.CANCELLED: frozenset({S.READY}),
}

TERMINAL_STATES = frozenset({S.COMPLETED, S.ERROR, S.CANCELLED})

# States in which a task or tool run is underway
BUSY_STATES = frozenset({S.PROPOSING_ACTIONS, S.AWAITING_APPROVAL, S.RUNNING_TOOL, S.VERIFYING})


def can_transition(current: RuntimeState, new_state: RuntimeState) -> bool:
    """Pure adjacency check."""
    return new_state in TRANSITIONS.get(current, frozenset())


@dataclass(frozen=True)
class TransitionRecord:
    from_state: RuntimeState
    to_state: RuntimeState
    reason: str
    timestamp: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from": self.from_state.value,
            "to": self.to_state.value,
            "reason": self.reason,
            "timestamp": self.timestamp.isoformat(),
            "metadata": dict(self.metadata),
        }


@dataclass(frozen=True)
class StateSnapshot:
    """Read-only view handed to subscribers and callers"""
    state: RuntimeState
    mode: CapabilityMode
    task: Optional[Any] = None
    progress: Optional[int] = None
    last_error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        task = self.task
        return {
            "state": self.state.value,
            "mode": self.mode.name,
            "task": task.to_dict() if task is not None and hasattr(task, "to_dict") else None,
            "progress": self.progress,
            "last_error": self.last_error,
            "metadata": dict(self.metadata),
        }


Subscriber = Callable[[StateSnapshot], None]


class StateMachine:
    """Single authoritative lifecycle state, guarded by one lock."""

    def __init__(self, mode: CapabilityMode = ASK):
        self._lock = threading.RLock()
        self._initial_mode = mode
        self._state = S.IDLE
        self._mode = mode
        self._task: Optional[Any] = None
        self._progress: Optional[int] = None
        self._last_error: Optional[str] = None
        self._metadata: Dict[str, Any] = {}
        self._log: List[TransitionRecord] = []
        self._subscribers: Dict[int, Subscriber] = {}
        self._tokens = itertools.count(1)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def state(self) -> RuntimeState:
        with self._lock:
            return self._state

    @property
    def mode(self) -> CapabilityMode:
        with self._lock:
            return self._mode

    @property
    def current_task(self) -> Optional[Any]:
        with self._lock:
            return self._task

    def snapshot(self) -> StateSnapshot:
        with self._lock:
            return StateSnapshot(
                state=self._state,
                mode=self._mode,
                task=self._task,
                progress=self._progress,
                last_error=self._last_error,
                metadata=dict(self._metadata),
            )

    def history(self) -> List[TransitionRecord]:
        with self._lock:
            return list(self._log)

    def can_transition_to(self, new_state: RuntimeState) -> bool:
        with self._lock:
            return can_transition(self._state, new_state)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def transition(self, new_state: RuntimeState, reason: str,
                   metadata: Optional[Dict[str, Any]] = None) -> bool:
        """Move to new_state if the adjacency table allows it."""
        new_state = RuntimeState(new_state)
        with self._lock:
            current = self._state
            if not can_transition(current, new_state):
                self._last_error = f"Invalid state transition: {current.value} -> {new_state.value}"
                logger.warning(f"{self._last_error} ({reason})")
                return False
            record = TransitionRecord(
                from_state=current,
                to_state=new_state,
                reason=reason,
                timestamp=datetime.now(timezone.utc),
                metadata=dict(metadata or {}),
            )
            self._log.append(record)
            self._state = new_state
            self._last_error = None
            logger.info(f"State transition: {current.value} -> {new_state.value} ({reason})")
            self._notify()
            return True

    def require(self, *states: RuntimeState, action: str = "operation") -> RuntimeState:
        """Raise StateGuardError unless the current state is one of states."""
        with self._lock:
            current = self._state
            if current not in states:
                raise StateGuardError(
                    f"Cannot run {action} in {current.value} state",
                    last_good_state=current.value,
                )
            return current

    # ------------------------------------------------------------------
    # Auxiliary fields
    # ------------------------------------------------------------------

    def set_mode(self, mode: CapabilityMode) -> None:
        """Switch capability mode. Rejected while a task is active."""
        if not isinstance(mode, CapabilityMode):
            raise TypeError(f"Expected CapabilityMode, got {type(mode).__name__}")
        with self._lock:
            task = self._task
            if task is not None and getattr(task, "is_active", False):
                raise StateGuardError(
                    "Cannot change mode while a task is active",
                    last_good_state=self._state.value,
                )
            if self._state in BUSY_STATES:
                raise StateGuardError(
                    f"Cannot change mode in {self._state.value} state",
                    last_good_state=self._state.value,
                )
            self._mode = mode
            logger.info(f"Mode set to {mode.name}")
            self._notify()

    def set_current_task(self, task: Optional[Any]) -> None:
        with self._lock:
            self._task = task
            self._notify()

    def set_progress(self, progress: Optional[int]) -> None:
        if progress is not None and not 0 <= progress <= 100:
            raise ValueError(f"Progress must be between 0 and 100, got: {progress}")
        with self._lock:
            self._progress = progress
            self._notify()

    def set_last_error(self, error: Optional[str]) -> None:
        with self._lock:
            self._last_error = error
            self._notify()

    def set_metadata(self, **metadata: Any) -> None:
        with self._lock:
            self._metadata.update(metadata)
            self._notify()

    def reset(self) -> None:
        """Back to Idle with the initial mode and an empty log."""
        with self._lock:
            self._state = S.IDLE
            self._mode = self._initial_mode
            self._task = None
            self._progress = None
            self._last_error = None
            self._metadata = {}
            self._log = []
            self._notify()

    # ------------------------------------------------------------------
    # Subscribers
    # ------------------------------------------------------------------

    def subscribe(self, callback: Subscriber) -> int:
        """Register a listener. Returns a token for unsubscribe()."""
        with self._lock:
            token = next(self._tokens)
            self._subscribers[token] = callback
            return token

    def unsubscribe(self, token: int) -> bool:
        with self._lock:
            return self._subscribers.pop(token, None) is not None

    def _notify(self) -> None:
        # Called with the lock held; dicts keep registration order
        snapshot = self.snapshot()
        for token, callback in list(self._subscribers.items()):
            try:
                callback(snapshot)
            except Exception as e:
                logger.error(f"State subscriber {token} failed: {e}")


_state_machine: Optional[StateMachine] = None
_singleton_lock = threading.Lock()


def get_state_machine() -> StateMachine:
    """Process-wide state machine instance."""
    global _state_machine
    with _singleton_lock:
        if _state_machine is None:
            _state_machine = StateMachine()
        return _state_machine
