"""
AgentOrchestrator: turns a free-text goal into a validated plan and runs it.

Flow:
1. start_agent() checks preconditions, moves to ProposingActions and asks the
   router for a decomposition
2. The plan is validated and dependency-ordered, then the state moves to RunningTool
3. Steps run one at a time through the tool registry. An unapproved step that
   needs approval pauses the run in AwaitingApproval and start_agent() returns
4. approve_step() + resume() continue from the paused step
5. A failed critical step rolls back every earlier step of the task in reverse
   order and ends in Error. A failed non-critical step lets the run continue,
   but verification then fails the task
"""

import asyncio
import logging
import threading
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from config import app_config
from errors import (
    AgentError, ApprovalRequiredError, CapabilityError, ExecutionError,
    StateGuardError, ValidationError,
)
from modes import CapabilityMode, get_mode
from providers import ChatOptions, RequestRouter
from state_machine import TERMINAL_STATES, RuntimeState, StateMachine
from tools import ToolRegistry, ToolResult

from .events import AgentEvent
from .models import Step, StepStatus, Task, TaskStatus
from .plan import validate_plan
from .prompts import build_decomposition_prompt, build_task_message

logger = logging.getLogger(__name__)

S = RuntimeState
EventCallback = Callable[[AgentEvent], Awaitable[None]]


class AgentOrchestrator:
    """Runs at most one Task at a time; the state machine is the exclusion mechanism."""

    def __init__(
        self,
        state_machine: StateMachine,
        registry: ToolRegistry,
        router: RequestRouter,
        mode_store: Any = None,
        on_event: Optional[EventCallback] = None,
        auto_approve: bool = False,
        inter_step_delay: Optional[float] = None,
        approval_timeout: Optional[float] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._sm = state_machine
        self._registry = registry
        self._router = router
        self._mode_store = mode_store
        self.on_event = on_event
        self.auto_approve = auto_approve
        self.inter_step_delay = app_config.inter_step_delay if inter_step_delay is None else inter_step_delay
        self.approval_timeout = app_config.approval_timeout if approval_timeout is None else approval_timeout
        self._sleep = sleep
        self._clock = clock
        self._task: Optional[Task] = None
        self._cancel_event = threading.Event()
        self._rollback_marker = 0

    @property
    def current_task(self) -> Optional[Task]:
        return self._task

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def _emit(self, type: str, content: str = "", data: Optional[Dict[str, Any]] = None) -> None:
        if self.on_event is None:
            return
        try:
            await self.on_event(AgentEvent(type=type, content=content, data=data))
        except Exception as e:
            logger.error(f"Event callback failed for {type}: {e}")

    def _publish_progress(self, task: Task) -> None:
        task.progress = task.compute_progress()
        self._sm.set_progress(task.progress)

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    async def start_agent(self, description: str, mode: Union[str, CapabilityMode, None] = None) -> Task:
        """Plan and run a task. Returns when the task finishes or pauses for approval."""
        if isinstance(mode, str):
            mode = get_mode(mode)
        mode = mode or self._sm.mode
        if self._task is not None and self._task.is_active:
            raise StateGuardError("Agent is already running a task", last_good_state=self._sm.state.value)
        self._sm.require(S.READY, action="agent task")
        if not mode.autonomous:
            raise CapabilityError(
                f"Agent execution only allowed in 'agent' mode. Current mode: {mode.name}",
                last_good_state=self._sm.state.value,
            )
        if not (description or "").strip():
            raise ValidationError("Task description is required", last_good_state=self._sm.state.value)

        if self._sm.mode != mode:
            self._sm.set_mode(mode)
        if not self._sm.transition(S.PROPOSING_ACTIONS, "Agent task started"):
            raise StateGuardError("Failed to transition to agent execution state",
                                  last_good_state=self._sm.state.value)

        task = Task(description=description.strip(), mode=mode.name)
        self._task = task
        self._cancel_event = threading.Event()
        self._rollback_marker = self._registry.marker()
        self._sm.set_current_task(task)
        self._sm.set_progress(0)
        logger.info(f"Agent task {task.id} started: {task.description}")

        try:
            await self._emit("phase_start", "plan", {"task_id": task.id})
            task.steps = await self._decompose(task, mode)
            if self.auto_approve:
                for step in task.steps:
                    step.approved = True
            task.status = TaskStatus.EXECUTING
            await self._emit("plan_ready", f"{len(task.steps)} steps",
                             {"steps": [s.to_dict() for s in task.steps]})
            self._sm.transition(S.RUNNING_TOOL, "Agent steps executing")
            await self._run_steps(task)
        except Exception as e:
            await self._fail(task, e)
            raise
        return task

    async def _decompose(self, task: Task, mode: CapabilityMode) -> List[Step]:
        options = ChatOptions(
            model=app_config.plan_model,
            temperature=app_config.plan_temperature,
            max_tokens=app_config.plan_max_tokens,
            system_prompt=build_decomposition_prompt(mode, self._registry.definitions()),
        )
        messages = [{"role": "user", "content": build_task_message(task.description, mode)}]
        response = await self._router.chat(messages, options)
        logger.debug(f"Decomposition from {response.provider}: {response.content[:500]}")
        return validate_plan(response.content, mode, self._registry)

    # ------------------------------------------------------------------
    # Step loop
    # ------------------------------------------------------------------

    async def _run_steps(self, task: Task) -> None:
        total = len(task.steps)
        for index, step in enumerate(task.steps):
            if step.status != StepStatus.PENDING:
                continue
            if self._cancel_event.is_set():
                await self._finish_cancelled(task, "Agent execution cancelled")
                return

            failed_ids = {s.id for s in task.steps if s.status == StepStatus.FAILED}
            blocked_by = [d for d in step.depends_on if d in failed_ids]
            if blocked_by:
                step.status = StepStatus.FAILED
                step.error = f"Skipped: dependency {', '.join(blocked_by)} failed"
                await self._emit("step_result", step.error, step.to_dict())
                if step.critical:
                    await self._abort_with_rollback(task, step, ToolResult(success=False, error=step.error))
                continue

            if step.requires_approval and not step.approved:
                task.awaiting_step_id = step.id
                task.awaiting_since = self._clock()
                self._sm.transition(S.AWAITING_APPROVAL, f"Waiting for approval on step: {step.description}")
                self._sm.set_current_task(task)
                await self._emit("approval_required", step.description, step.to_dict())
                return

            result = await self._execute_step(task, step)
            self._publish_progress(task)
            await self._emit("step_result", step.error or "", step.to_dict())
            if self._cancel_event.is_set():
                await self._finish_cancelled(task, "Agent execution cancelled")
                return

            if not result.success:
                if step.critical:
                    await self._abort_with_rollback(task, step, result)
                logger.warning(f"Non-critical step {step.id} failed; continuing: {step.error}")
                continue

            if self.inter_step_delay > 0 and index < total - 1:
                await self._sleep(self.inter_step_delay)

        if self._cancel_event.is_set():
            await self._finish_cancelled(task, "Agent execution cancelled")
            return
        await self._verify(task)

    async def _execute_step(self, task: Task, step: Step) -> ToolResult:
        step.status = StepStatus.RUNNING
        self._sm.set_current_task(task)
        await self._emit("step_start", step.description, {"id": step.id, "tool": step.tool_name})

        def on_progress(percent: int, message: str) -> None:
            logger.debug(f"[{step.id}] {percent}%: {message}")

        ctx = self._registry.make_context(
            approved=step.approved,
            cancel_event=self._cancel_event,
            on_progress=on_progress,
            step_id=step.id,
        )
        try:
            result = await self._registry.execute(step.tool_name, step.parameters, ctx)
        except ApprovalRequiredError:
            step.status = StepStatus.PENDING
            raise
        except AgentError as e:
            result = ToolResult(success=False, error=e.message)

        step.duration = result.duration
        if result.success:
            step.status = StepStatus.COMPLETED
            step.result = result.data
            step.error = None
        else:
            step.status = StepStatus.FAILED
            step.error = result.error
            step.result = result.data
        return result

    async def _abort_with_rollback(self, task: Task, step: Step, result: ToolResult) -> None:
        attempted, succeeded, rolled_back = await self._rollback_task(task)
        outcomes = []
        if result.rollback_attempted:
            outcomes.append(bool(result.rollback_succeeded))
        if attempted:
            outcomes.append(bool(succeeded))
        raise ExecutionError(
            f"Step {step.id} ({step.tool_name}) failed: {step.error}",
            last_good_state=S.RUNNING_TOOL.value,
            tool_name=step.tool_name,
            rollback_attempted=bool(outcomes),
            rollback_succeeded=all(outcomes) if outcomes else None,
            rolled_back_steps=rolled_back,
        )

    async def _rollback_task(self, task: Task) -> Tuple[bool, Optional[bool], List[str]]:
        """Replay this task's rollback entries newest first."""
        entries = self._registry.entries_since(self._rollback_marker)
        if not entries:
            return False, None, []
        all_ok = True
        rolled_back: List[str] = []
        for entry in reversed(entries):
            ok = await self._registry.rollback_entry(entry)
            step = task.get_step(entry.step_id) if entry.step_id else None
            if ok:
                if step is not None:
                    step.rolled_back = True
                    rolled_back.append(step.id)
            else:
                all_ok = False
        logger.info(f"Task {task.id} rollback: {len(rolled_back)}/{len(entries)} entries undone")
        await self._emit("rollback", f"Rolled back {len(rolled_back)} steps",
                         {"steps": rolled_back, "succeeded": all_ok})
        return True, all_ok, rolled_back

    async def _verify(self, task: Task) -> None:
        task.status = TaskStatus.VERIFYING
        self._sm.transition(S.VERIFYING, "Agent results verifying")
        # Non-critical failures let the run continue but still fail the task
        failed = task.failed_steps()
        if failed:
            raise ExecutionError(
                f"{len(failed)} steps failed during execution: "
                + ", ".join(s.id for s in failed),
                last_good_state=S.VERIFYING.value,
                tool_name=failed[0].tool_name,
            )
        task.finish(TaskStatus.COMPLETED)
        task.progress = 100
        self._sm.set_progress(100)
        self._sm.transition(S.COMPLETED, "Agent task completed")
        self._sm.set_current_task(task)
        logger.info(f"Agent task {task.id} completed")
        await self._emit("done", "completed", task.to_dict())

    async def _fail(self, task: Task, error: Exception) -> None:
        message = error.message if isinstance(error, AgentError) else str(error) or type(error).__name__
        if task.status != TaskStatus.CANCELLED:
            task.finish(TaskStatus.FAILED, message)
        if self._sm.state not in TERMINAL_STATES:
            self._sm.transition(S.ERROR, f"Agent task failed: {message}")
        self._sm.set_last_error(message)
        self._sm.set_current_task(task)
        logger.error(f"Agent task {task.id} failed: {message}")
        await self._emit("error", message, error.to_dict() if isinstance(error, AgentError) else None)

    async def _finish_cancelled(self, task: Task, reason: str) -> None:
        if task.status != TaskStatus.CANCELLED:
            task.finish(TaskStatus.CANCELLED, reason)
        self._sm.transition(S.CANCELLED, reason)
        self._sm.set_current_task(task)
        logger.info(f"Agent task {task.id} cancelled: {reason}")
        await self._emit("done", "cancelled", task.to_dict())

    # ------------------------------------------------------------------
    # Approval
    # ------------------------------------------------------------------

    async def _check_expiry(self) -> bool:
        """Cancel the task if its approval pause outlived approval_timeout."""
        task = self._task
        if (task is None or task.awaiting_since is None or self.approval_timeout <= 0
                or self._sm.state != S.AWAITING_APPROVAL):
            return False
        if self._clock() - task.awaiting_since <= self.approval_timeout:
            return False
        step_id = task.awaiting_step_id
        await self._finish_cancelled(task, f"Approval for step {step_id} timed out")
        return True

    async def _require_paused(self, action: str) -> Task:
        if await self._check_expiry():
            raise StateGuardError(f"Approval expired; task cancelled before {action}",
                                  last_good_state=self._sm.state.value)
        self._sm.require(S.AWAITING_APPROVAL, action=action)
        if self._task is None:
            raise StateGuardError("No task is awaiting approval", last_good_state=self._sm.state.value)
        return self._task

    def _find_step(self, task: Task, step_id: str) -> Step:
        step = task.get_step(step_id)
        if step is None:
            raise ValidationError(f"Unknown step: {step_id}", last_good_state=self._sm.state.value)
        return step

    async def approve_step(self, step_id: str) -> Step:
        task = await self._require_paused("approve step")
        step = self._find_step(task, step_id)
        if step.status != StepStatus.PENDING:
            raise ValidationError(f"Step {step_id} is already {step.status.value}",
                                  last_good_state=self._sm.state.value)
        step.approved = True
        self._sm.set_current_task(task)
        logger.info(f"Step {step_id} approved")
        return step

    async def reject_step(self, step_id: str, reason: str = "") -> Task:
        task = await self._require_paused("reject step")
        step = self._find_step(task, step_id)
        step.error = f"Rejected: {reason}" if reason else "Rejected"
        await self._finish_cancelled(task, f"Step {step_id} rejected" + (f": {reason}" if reason else ""))
        return task

    async def resume(self) -> Task:
        """Continue a paused task from its awaiting step."""
        task = await self._require_paused("resume")
        step = task.awaiting_step
        if step is not None and step.requires_approval and not step.approved:
            raise ApprovalRequiredError(
                f"Step {step.id} requires explicit approval before execution",
                last_good_state=self._sm.state.value,
                step_id=step.id,
                tool_name=step.tool_name,
            )
        task.awaiting_step_id = None
        task.awaiting_since = None
        if not self._sm.transition(S.RUNNING_TOOL, "Agent execution resumed"):
            raise StateGuardError("Failed to resume agent execution", last_good_state=self._sm.state.value)
        try:
            await self._run_steps(task)
        except Exception as e:
            await self._fail(task, e)
            raise
        return task

    async def approve_and_resume(self, step_id: str) -> Task:
        await self.approve_step(step_id)
        return await self.resume()

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    async def cancel_agent(self) -> Task:
        """Cooperative cancel. Immediate when paused, otherwise at the next step boundary."""
        task = self._task
        if task is None or not task.is_active:
            raise StateGuardError("No active task to cancel", last_good_state=self._sm.state.value)
        self._cancel_event.set()
        self._registry.backend.cancel_running_command()
        if self._sm.state == S.AWAITING_APPROVAL:
            await self._finish_cancelled(task, "Cancelled by user")
        # Otherwise the step loop moves task and state to Cancelled together
        # once the running step returns
        logger.info(f"Cancellation requested for task {task.id}")
        return task

    def acknowledge(self) -> Optional[Task]:
        """Leave Completed/Error/Cancelled for Ready and drop the finished task."""
        state = self._sm.require(*TERMINAL_STATES, action="acknowledge")
        task = self._task
        if not self._sm.transition(S.READY, f"Acknowledged {state.value}"):
            raise StateGuardError("Failed to return to ready state", last_good_state=state.value)
        self._task = None
        self._sm.set_current_task(None)
        self._sm.set_progress(None)
        return task

    async def execute_tool(self, name: str, params: Dict[str, Any], approved: bool = False) -> ToolResult:
        """Run one tool outside any task and return to Ready afterwards."""
        if self._task is not None and self._task.is_active:
            raise StateGuardError("Cannot run a tool while a task is active",
                                  last_good_state=self._sm.state.value)
        self._sm.require(S.READY, action=f"tool {name}")
        ctx = self._registry.make_context(approved=approved)
        try:
            result = await self._registry.execute(name, params or {}, ctx)
        except AgentError as e:
            if self._sm.state == S.RUNNING_TOOL:
                self._sm.transition(S.ERROR, f"Tool {name} rejected: {e.message}")
                self._sm.transition(S.READY, "Tool run finished")
                self._sm.set_last_error(e.message)
            raise
        if result.success:
            self._sm.transition(S.COMPLETED, f"Tool {name} completed")
            self._sm.transition(S.READY, "Tool run finished")
        else:
            self._sm.transition(S.ERROR, f"Tool {name} failed")
            self._sm.transition(S.READY, "Tool run finished")
            self._sm.set_last_error(result.error)
        return result

    async def undo(self) -> bool:
        """Roll back the most recent recorded step."""
        if self._task is not None and self._task.is_active:
            raise StateGuardError("Cannot undo while a task is active", last_good_state=self._sm.state.value)
        self._sm.require(S.READY, action="undo")
        return await self._registry.rollback_last_step()

    def switch_mode(self, name: str) -> CapabilityMode:
        mode = get_mode(name)
        self._sm.set_mode(mode)
        if self._mode_store is not None:
            self._mode_store.save(mode.name)
        return mode

    async def status(self) -> Dict[str, Any]:
        await self._check_expiry()
        task = self._task
        awaiting = task.awaiting_step if task is not None else None
        return {
            "is_running": task is not None and task.is_active,
            "task": task.to_dict() if task is not None else None,
            "awaiting_step": awaiting.to_dict() if awaiting is not None else None,
        }
