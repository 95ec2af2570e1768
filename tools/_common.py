"""Shared types for the tools package."""

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from backend import Backend


@dataclass(frozen=True)
class ToolParameter:
    name: str
    type: str  # string | integer | number | boolean | object | array
    required: bool = False
    description: str = ""
    default: Any = None


@dataclass(frozen=True)
class ToolDefinition:
    """Static description of a tool. Immutable once registered."""
    name: str
    description: str
    effect: str
    parameters: tuple = ()
    requires_approval: bool = False
    rollbackable: bool = False
    # Non-blocking tools return as soon as their work is dispatched
    blocking: bool = True

    @property
    def required_parameters(self) -> List[str]:
        return [p.name for p in self.parameters if p.required]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "effect": self.effect,
            "parameters": [
                {"name": p.name, "type": p.type, "required": p.required, "description": p.description}
                for p in self.parameters
            ],
            "requires_approval": self.requires_approval,
            "rollbackable": self.rollbackable,
            "blocking": self.blocking,
        }


@dataclass
class ToolResult:
    """Result from executing a tool"""
    success: bool
    data: Any = None
    error: Optional[str] = None
    duration: float = 0.0
    rollback_attempted: bool = False
    rollback_succeeded: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"success": self.success, "duration": round(self.duration, 4)}
        if self.success:
            out["data"] = self.data
        else:
            out["error"] = self.error
            out["rollback_attempted"] = self.rollback_attempted
            out["rollback_succeeded"] = self.rollback_succeeded
        return out


@dataclass
class ToolContext:
    """Per-call execution context handed to executors"""
    backend: Backend
    approved: bool = False
    cancel_event: threading.Event = field(default_factory=threading.Event)
    on_progress: Optional[Callable[[int, str], None]] = None
    step_id: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def progress(self, percent: int, message: str = "") -> None:
        if self.on_progress is not None:
            self.on_progress(percent, message)


@dataclass
class RollbackSpec:
    """How a tool undoes itself.

    capture(params, ctx) snapshots the world before the executor runs.
    build(params, result_data, snapshot) returns rollback data, or None when
    there is nothing to undo; result_data is None when the executor failed.
    undo(rollback_data, ctx) replays the inverse and must be idempotent.
    """
    build: Callable[[Dict[str, Any], Any, Any], Optional[Dict[str, Any]]]
    undo: Callable[[Dict[str, Any], ToolContext], None]
    capture: Optional[Callable[[Dict[str, Any], ToolContext], Any]] = None


@dataclass
class RollbackEntry:
    tool_name: str
    rollback_data: Dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    step_id: Optional[str] = None
    rolled_back: bool = False
    # Position in the registry's append order, used by stack markers
    seq: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tool_name": self.tool_name,
            "rollback_data": dict(self.rollback_data),
            "timestamp": self.timestamp.isoformat(),
            "step_id": self.step_id,
            "rolled_back": self.rolled_back,
        }


Executor = Callable[[Dict[str, Any], ToolContext], ToolResult]
