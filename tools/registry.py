"""
Capability-gated tool registry.

Tools are registered once at startup and frozen. execute() enforces, in order:
lifecycle state, the Ready -> RunningTool transition, tool existence, mode
capability, approval, and parameter shape. Executors run in a worker thread.
Successful mutating calls push a RollbackEntry; failed calls get a single-step
rollback and report its outcome without masking the original error.
"""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from backend import Backend
from errors import ApprovalRequiredError, CapabilityError, StateGuardError, ValidationError
from state_machine import RuntimeState, StateMachine
from tools._common import (
    Executor, RollbackEntry, RollbackSpec, ToolContext, ToolDefinition, ToolResult,
)

logger = logging.getLogger(__name__)

_PARAM_TYPES = {
    "string": (str,),
    "integer": (int,),
    "number": (int, float),
    "boolean": (bool,),
    "object": (dict,),
    "array": (list, tuple),
}


def _type_matches(value: Any, type_name: str) -> bool:
    expected = _PARAM_TYPES.get(type_name)
    if expected is None:
        return True
    # bool is an int subclass; keep them apart
    if isinstance(value, bool) and type_name in ("integer", "number"):
        return False
    return isinstance(value, expected)


@dataclass(frozen=True)
class _RegisteredTool:
    definition: ToolDefinition
    executor: Executor
    rollback: Optional[RollbackSpec]


class ToolRegistry:
    """Name -> (definition, executor, rollback) table plus the rollback stack."""

    def __init__(self, state_machine: StateMachine, backend: Backend):
        self._sm = state_machine
        self._backend = backend
        self._tools: Dict[str, _RegisteredTool] = {}
        self._frozen = False
        self._stack: List[RollbackEntry] = []
        self._seq = 0
        self._lock = threading.Lock()

    @property
    def backend(self) -> Backend:
        return self._backend

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, definition: ToolDefinition, executor: Executor,
                 rollback: Optional[RollbackSpec] = None) -> None:
        if self._frozen:
            raise RuntimeError(f"Registry is frozen; cannot register {definition.name}")
        if definition.name in self._tools:
            raise ValueError(f"Tool already registered: {definition.name}")
        if definition.rollbackable and rollback is None:
            raise ValueError(f"Rollbackable tool {definition.name} needs a rollback spec")
        self._tools[definition.name] = _RegisteredTool(definition, executor, rollback)
        logger.debug(f"Registered tool {definition.name} ({definition.effect})")

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get(self, name: str) -> Optional[ToolDefinition]:
        entry = self._tools.get(name)
        return entry.definition if entry else None

    def has(self, name: str) -> bool:
        return name in self._tools

    def names(self) -> List[str]:
        return list(self._tools)

    def definitions(self) -> List[ToolDefinition]:
        return [t.definition for t in self._tools.values()]

    def make_context(self, approved: bool = False,
                     cancel_event: Optional[threading.Event] = None,
                     on_progress=None, step_id: Optional[str] = None) -> ToolContext:
        ctx = ToolContext(backend=self._backend, approved=approved,
                          on_progress=on_progress, step_id=step_id)
        if cancel_event is not None:
            ctx.cancel_event = cancel_event
        return ctx

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_parameters(self, definition: ToolDefinition, params: Dict[str, Any]) -> None:
        """Raise ValidationError for missing required or mistyped parameters."""
        if not isinstance(params, dict):
            raise ValidationError(f"Parameters for {definition.name} must be an object")
        for param in definition.parameters:
            value = params.get(param.name)
            if value is None:
                if param.required:
                    raise ValidationError(f"Required parameter missing: {param.name}")
                continue
            if not _type_matches(value, param.type):
                raise ValidationError(
                    f"Parameter {param.name} of {definition.name} must be {param.type}, "
                    f"got {type(value).__name__}"
                )

    def check_capability(self, definition: ToolDefinition) -> None:
        mode = self._sm.mode
        if not mode.allows_tool(definition.name):
            raise CapabilityError(
                f"Tool {definition.name} not allowed in {mode.name} mode "
                f"(allowed: {mode.describe_tools()})",
                last_good_state=self._sm.state.value,
            )
        if not mode.allows_effect(definition.effect):
            raise CapabilityError(
                f"Effect {definition.effect} of {definition.name} not allowed in {mode.name} mode "
                f"(allowed: {mode.describe_effects()})",
                last_good_state=self._sm.state.value,
            )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(self, name: str, params: Dict[str, Any], ctx: ToolContext) -> ToolResult:
        current = self._sm.require(RuntimeState.READY, RuntimeState.RUNNING_TOOL,
                                   action=f"tool {name}")
        if current == RuntimeState.READY:
            if not self._sm.transition(RuntimeState.RUNNING_TOOL, f"Tool {name} execution started"):
                raise StateGuardError(
                    "Failed to transition to tool execution state",
                    last_good_state=self._sm.state.value,
                )

        tool = self._tools.get(name)
        if tool is None:
            raise ValidationError(f"Tool not found: {name}", last_good_state=self._sm.state.value)
        definition = tool.definition
        self.check_capability(definition)
        if definition.requires_approval and not ctx.approved:
            raise ApprovalRequiredError(
                f"Tool {name} requires explicit approval before execution",
                last_good_state=self._sm.state.value,
                step_id=ctx.step_id,
                tool_name=name,
            )
        self.validate_parameters(definition, params)

        params = self._with_defaults(definition, params)
        start = time.monotonic()
        if ctx.cancelled:
            return ToolResult(success=False, error=f"Tool {name} cancelled before start")

        snapshot = None
        try:
            if tool.rollback is not None and tool.rollback.capture is not None:
                snapshot = await asyncio.to_thread(tool.rollback.capture, params, ctx)
            result = await asyncio.to_thread(tool.executor, params, ctx)
        except Exception as e:
            logger.error(f"Tool {name} raised: {e}")
            result = ToolResult(success=False, error=str(e) or type(e).__name__)
        result.duration = time.monotonic() - start

        if result.success:
            if tool.rollback is not None:
                self._record(tool, params, result.data, snapshot, ctx.step_id)
            logger.info(f"Tool {name} completed in {result.duration:.2f}s")
            return result

        logger.warning(f"Tool {name} failed: {result.error}")
        if tool.rollback is not None:
            await self._rollback_failed(tool, params, snapshot, result, ctx)
        return result

    @staticmethod
    def _with_defaults(definition: ToolDefinition, params: Dict[str, Any]) -> Dict[str, Any]:
        merged = dict(params)
        for param in definition.parameters:
            if merged.get(param.name) is None and param.default is not None:
                merged[param.name] = param.default
        return merged

    def _record(self, tool: _RegisteredTool, params: Dict[str, Any], data: Any,
                snapshot: Any, step_id: Optional[str]) -> None:
        try:
            rollback_data = tool.rollback.build(params, data, snapshot)
        except Exception as e:
            logger.error(f"Could not build rollback data for {tool.definition.name}: {e}")
            return
        if not rollback_data:
            return
        with self._lock:
            self._seq += 1
            self._stack.append(RollbackEntry(
                tool_name=tool.definition.name,
                rollback_data=rollback_data,
                step_id=step_id,
                seq=self._seq,
            ))

    async def _rollback_failed(self, tool: _RegisteredTool, params: Dict[str, Any],
                               snapshot: Any, result: ToolResult, ctx: ToolContext) -> None:
        name = tool.definition.name
        try:
            rollback_data = tool.rollback.build(params, None, snapshot)
        except Exception as e:
            logger.error(f"Rollback data for failed {name} unavailable: {e}")
            result.rollback_attempted = True
            result.rollback_succeeded = False
            return
        if not rollback_data:
            return
        result.rollback_attempted = True
        try:
            await asyncio.to_thread(tool.rollback.undo, rollback_data, ctx)
            result.rollback_succeeded = True
            logger.info(f"Rolled back failed {name} operation")
        except Exception as e:
            result.rollback_succeeded = False
            logger.error(f"Rollback failed for {name}: {e}")

    # ------------------------------------------------------------------
    # Rollback stack
    # ------------------------------------------------------------------

    def marker(self) -> int:
        """Stack position to pass to entries_since() later."""
        with self._lock:
            return self._seq

    def entries_since(self, marker: int) -> List[RollbackEntry]:
        """Entries appended after marker that are still on the stack, oldest first."""
        with self._lock:
            return [e for e in self._stack if e.seq > marker]

    def entries(self) -> List[RollbackEntry]:
        with self._lock:
            return list(self._stack)

    async def rollback_entry(self, entry: RollbackEntry) -> bool:
        """Replay one entry's inverse. Already rolled-back entries are a no-op."""
        if entry.rolled_back:
            return True
        tool = self._tools.get(entry.tool_name)
        if tool is None or tool.rollback is None:
            logger.error(f"No rollback registered for {entry.tool_name}")
            return False
        ctx = self.make_context(approved=True, step_id=entry.step_id)
        try:
            await asyncio.to_thread(tool.rollback.undo, entry.rollback_data, ctx)
        except Exception as e:
            logger.error(f"Rollback failed for {entry.tool_name}: {e}")
            return False
        entry.rolled_back = True
        with self._lock:
            self._stack = [e for e in self._stack if e is not entry]
        logger.info(f"Rolled back {entry.tool_name}" + (f" (step {entry.step_id})" if entry.step_id else ""))
        return True

    async def rollback_last_step(self) -> bool:
        """Pop the newest entry and replay its inverse. False if the stack is empty."""
        with self._lock:
            if not self._stack:
                return False
            entry = self._stack.pop()
        ok = await self.rollback_entry(entry)
        if not ok:
            # Keep it so a later undo can retry
            with self._lock:
                self._stack.append(entry)
                self._stack.sort(key=lambda e: e.seq)
        return ok
