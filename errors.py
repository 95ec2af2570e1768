"""
Error taxonomy shared by the state machine, tool registry, orchestrator and router.

Every error carries its taxonomy kind and the last lifecycle state that was
known to be good, so collaborators can render a failure without guessing.
"""

from typing import Any, Dict, List, Optional


class AgentError(Exception):
    """Base class for runtime errors surfaced to callers"""

    kind = "agent_error"

    def __init__(self, message: str, last_good_state: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.last_good_state = last_good_state

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "last_good_state": self.last_good_state,
        }


class StateGuardError(AgentError):
    """Operation attempted from the wrong lifecycle state. Never retried."""
    kind = "state_guard"


class CapabilityError(AgentError):
    """Tool or effect not permitted by the active capability mode."""
    kind = "capability"


class ApprovalRequiredError(AgentError):
    """A step needs human sign-off before it may run."""
    kind = "approval_required"

    def __init__(self, message: str, last_good_state: Optional[str] = None,
                 step_id: Optional[str] = None, tool_name: Optional[str] = None):
        super().__init__(message, last_good_state)
        self.step_id = step_id
        self.tool_name = tool_name

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({"step_id": self.step_id, "tool_name": self.tool_name})
        return data


class ValidationError(AgentError):
    """Malformed parameters or malformed decomposition output."""
    kind = "validation"


class ExecutionError(AgentError):
    """A tool executor failed. Carries what rollback was attempted."""
    kind = "execution"

    def __init__(self, message: str, last_good_state: Optional[str] = None,
                 tool_name: Optional[str] = None,
                 rollback_attempted: bool = False,
                 rollback_succeeded: Optional[bool] = None,
                 rolled_back_steps: Optional[List[str]] = None):
        super().__init__(message, last_good_state)
        self.tool_name = tool_name
        self.rollback_attempted = rollback_attempted
        self.rollback_succeeded = rollback_succeeded
        self.rolled_back_steps = list(rolled_back_steps or [])

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({
            "tool_name": self.tool_name,
            "rollback_attempted": self.rollback_attempted,
            "rollback_succeeded": self.rollback_succeeded,
            "rolled_back_steps": self.rolled_back_steps,
        })
        return data


class BackendError(AgentError):
    """Every backend in the fallback chain failed or was skipped."""
    kind = "backend"

    def __init__(self, message: str, last_good_state: Optional[str] = None,
                 failures: Optional[Dict[str, str]] = None,
                 partial_content: str = ""):
        super().__init__(message, last_good_state)
        self.failures = dict(failures or {})
        self.partial_content = partial_content

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["failures"] = self.failures
        if self.partial_content:
            data["partial_content"] = self.partial_content
        return data
