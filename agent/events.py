"""
Agent event data type.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass
class AgentEvent:
    """Event emitted during agent execution"""
    type: str  # phase_start, plan_ready, step_start, step_result, approval_required, rollback, done, error
    content: str = ""
    data: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "content": self.content, "data": self.data or {}}
