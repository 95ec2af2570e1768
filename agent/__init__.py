"""
Agent package - task orchestration on top of the tool registry and router.

Modules:
- events: AgentEvent data type
- models: Task and Step records
- prompts: Decomposition prompt templates
- plan: Strict plan parsing, validation and dependency ordering
- orchestrator: AgentOrchestrator (plan, approve, execute, roll back, verify)
"""

from .events import AgentEvent
from .models import ACTIVE_TASK_STATUSES, Step, StepStatus, Task, TaskStatus
from .plan import order_steps, parse_plan, validate_plan
from .prompts import DECOMPOSE_SYSTEM, build_decomposition_prompt, build_task_message
from .orchestrator import AgentOrchestrator

__all__ = [
    "AgentOrchestrator",

    # Data types
    "AgentEvent",
    "Step",
    "StepStatus",
    "Task",
    "TaskStatus",
    "ACTIVE_TASK_STATUSES",

    # Plan utilities
    "parse_plan",
    "validate_plan",
    "order_steps",

    # Prompt system
    "DECOMPOSE_SYSTEM",
    "build_decomposition_prompt",
    "build_task_message",
]
