"""Task and Step records owned by the orchestrator."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskStatus(str, Enum):
    PLANNING = "planning"
    EXECUTING = "executing"
    VERIFYING = "verifying"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_TASK_STATUSES = frozenset({TaskStatus.PLANNING, TaskStatus.EXECUTING, TaskStatus.VERIFYING})


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Step:
    id: str
    description: str
    tool_name: str
    parameters: Dict[str, Any] = field(default_factory=dict)
    requires_approval: bool = False
    critical: bool = True
    depends_on: List[str] = field(default_factory=list)
    status: StepStatus = StepStatus.PENDING
    approved: bool = False
    result: Any = None
    error: Optional[str] = None
    duration: Optional[float] = None
    rolled_back: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "tool": self.tool_name,
            "parameters": dict(self.parameters),
            "requires_approval": self.requires_approval,
            "critical": self.critical,
            "depends_on": list(self.depends_on),
            "status": self.status.value,
            "approved": self.approved,
            "result": self.result,
            "error": self.error,
            "duration": self.duration,
            "rolled_back": self.rolled_back,
        }


@dataclass
class Task:
    description: str
    mode: str
    id: str = field(default_factory=lambda: f"task_{uuid.uuid4().hex[:12]}")
    steps: List[Step] = field(default_factory=list)
    status: TaskStatus = TaskStatus.PLANNING
    progress: int = 0
    start_time: datetime = field(default_factory=_now)
    end_time: Optional[datetime] = None
    error: Optional[str] = None
    awaiting_step_id: Optional[str] = None
    # clock() value when the current approval pause began
    awaiting_since: Optional[float] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_TASK_STATUSES

    def get_step(self, step_id: str) -> Optional[Step]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    @property
    def awaiting_step(self) -> Optional[Step]:
        return self.get_step(self.awaiting_step_id) if self.awaiting_step_id else None

    def compute_progress(self) -> int:
        if not self.steps:
            return 0
        done = sum(1 for s in self.steps if s.status == StepStatus.COMPLETED)
        return round(done / len(self.steps) * 100)

    def failed_steps(self) -> List[Step]:
        return [s for s in self.steps if s.status == StepStatus.FAILED]

    def finish(self, status: TaskStatus, error: Optional[str] = None) -> None:
        self.status = status
        self.end_time = _now()
        self.awaiting_step_id = None
        self.awaiting_since = None
        if error is not None:
            self.error = error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "mode": self.mode,
            "status": self.status.value,
            "progress": self.progress,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "error": self.error,
            "awaiting_step": self.awaiting_step_id,
            "steps": [s.to_dict() for s in self.steps],
        }
