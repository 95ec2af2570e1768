"""Task orchestrator: planning, approval pauses, rollback, control operations."""

import asyncio
import threading

import pytest

from agent import AgentOrchestrator, StepStatus, TaskStatus
from conftest import plan_json, planning_router
from errors import (
    ApprovalRequiredError, BackendError, CapabilityError, ExecutionError, StateGuardError, ValidationError,
)
from mode_store import ModeStore
from modes import AGENT
from providers import ProviderError
from state_machine import RuntimeState, StateMachine
from tools import ToolDefinition, ToolRegistry, ToolResult, register_core_tools

S = RuntimeState


def _create(id, path, content="x", **extra):
    step = {"id": id, "description": f"create {path}", "tool": "createFile",
            "parameters": {"path": path, "content": content}}
    step.update(extra)
    return step


def _read(id, path, **extra):
    step = {"id": id, "description": f"read {path}", "tool": "readFile", "parameters": {"path": path}}
    step.update(extra)
    return step


class Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def _orchestrator(sm, registry, *replies, **kwargs):
    events = []

    async def on_event(event):
        events.append(event)

    kwargs.setdefault("inter_step_delay", 0)
    kwargs.setdefault("approval_timeout", 0)
    orch = AgentOrchestrator(sm, registry, planning_router(*replies), on_event=on_event, **kwargs)
    return orch, events


# ------------------------------------------------------------------
# Preconditions
# ------------------------------------------------------------------

@pytest.mark.asyncio
async def test_non_agent_mode_is_rejected_without_side_effects(sm, registry):
    orch, events = _orchestrator(sm, registry, plan_json(_read("s1", "a.txt")))
    with pytest.raises(CapabilityError):
        await orch.start_agent("look around", "code")
    assert sm.state == S.READY
    assert sm.current_task is None
    assert sm.history()[-1].to_state == S.READY
    assert events == []


@pytest.mark.asyncio
async def test_requires_ready_state(registry):
    machine = StateMachine(mode=AGENT)
    orch = AgentOrchestrator(machine, registry, planning_router())
    with pytest.raises(StateGuardError):
        await orch.start_agent("anything", "agent")
    assert machine.state == S.IDLE


@pytest.mark.asyncio
async def test_empty_description_rejected(sm, registry):
    orch, _ = _orchestrator(sm, registry)
    with pytest.raises(ValidationError):
        await orch.start_agent("   ", "agent")
    assert sm.state == S.READY


# ------------------------------------------------------------------
# Happy path
# ------------------------------------------------------------------

@pytest.mark.asyncio
async def test_auto_approved_task_completes(sm, registry, tmp_path):
    (tmp_path / "readme.md").write_text("# hi\n")
    plan = plan_json(
        {"id": "dir", "description": "make src", "tool": "createFolder", "parameters": {"path": "src"}},
        _create("file", "src/main.py", "print('hi')\n", dependsOn=["dir"]),
        _read("read", "readme.md"),
    )
    orch, events = _orchestrator(sm, registry, plan, auto_approve=True)
    progress = []
    sm.subscribe(lambda snap: progress.append(snap.progress))

    task = await orch.start_agent("scaffold the project", "agent")

    assert task.status == TaskStatus.COMPLETED
    assert task.progress == 100
    assert task.end_time is not None
    assert sm.state == S.COMPLETED
    assert sm.mode is AGENT
    assert (tmp_path / "src" / "main.py").read_text() == "print('hi')\n"
    assert [s.status for s in task.steps] == [StepStatus.COMPLETED] * 3
    assert [e.type for e in events][:2] == ["phase_start", "plan_ready"]
    assert events[-1].type == "done"
    assert 33 in progress and 67 in progress and progress[-1] == 100

    visited = [r.to_state for r in sm.history()]
    assert visited[-4:] == [S.PROPOSING_ACTIONS, S.RUNNING_TOOL, S.VERIFYING, S.COMPLETED]


@pytest.mark.asyncio
async def test_acknowledge_returns_to_ready(sm, registry, tmp_path):
    (tmp_path / "notes.txt").write_text("notes\n")
    orch, _ = _orchestrator(sm, registry, plan_json(_read("s1", "notes.txt")))
    task = await orch.start_agent("read", "agent")
    assert task.status == TaskStatus.COMPLETED
    with pytest.raises(StateGuardError):
        await orch.start_agent("again", "agent")
    assert orch.acknowledge() is task
    assert sm.state == S.READY
    assert sm.current_task is None
    assert orch.current_task is None
    with pytest.raises(StateGuardError):
        orch.acknowledge()


@pytest.mark.asyncio
async def test_inter_step_delay_between_steps(sm, registry, tmp_path):
    for name in ("x", "y", "z"):
        (tmp_path / name).write_text(name)
    delays = []

    async def fake_sleep(seconds):
        delays.append(seconds)

    plan = plan_json(_read("a", "x"), _read("b", "y"), _read("c", "z"))
    orch, _ = _orchestrator(sm, registry, plan, inter_step_delay=0.5, sleep=fake_sleep)
    task = await orch.start_agent("read three", "agent")
    assert task.status == TaskStatus.COMPLETED
    assert delays == [0.5, 0.5]


# ------------------------------------------------------------------
# Approval
# ------------------------------------------------------------------

@pytest.mark.asyncio
async def test_pauses_for_approval_then_resumes(sm, registry, tmp_path):
    (tmp_path / "notes.txt").write_text("notes\n")
    plan = plan_json(_read("look", "notes.txt"), _create("write", "out.txt", "done"))
    orch, events = _orchestrator(sm, registry, plan)

    task = await orch.start_agent("write output", "agent")
    assert sm.state == S.AWAITING_APPROVAL
    assert task.status == TaskStatus.EXECUTING
    assert task.awaiting_step_id == "write"
    assert events[-1].type == "approval_required"
    assert not (tmp_path / "out.txt").exists()

    with pytest.raises(ApprovalRequiredError):
        await orch.resume()
    assert sm.state == S.AWAITING_APPROVAL

    status = await orch.status()
    assert status["is_running"]
    assert status["awaiting_step"]["id"] == "write"

    task = await orch.approve_and_resume("write")
    assert task.status == TaskStatus.COMPLETED
    assert sm.state == S.COMPLETED
    assert (tmp_path / "out.txt").read_text() == "done"


@pytest.mark.asyncio
async def test_approve_unknown_step(sm, registry):
    orch, _ = _orchestrator(sm, registry, plan_json(_create("write", "out.txt")))
    await orch.start_agent("write", "agent")
    with pytest.raises(ValidationError):
        await orch.approve_step("ghost")


@pytest.mark.asyncio
async def test_approve_outside_pause_is_state_error(sm, registry):
    orch, _ = _orchestrator(sm, registry)
    with pytest.raises(StateGuardError):
        await orch.approve_step("s1")


@pytest.mark.asyncio
async def test_reject_cancels_task(sm, registry, tmp_path):
    orch, events = _orchestrator(sm, registry, plan_json(_create("write", "out.txt")))
    await orch.start_agent("write", "agent")
    task = await orch.reject_step("write", "not today")
    assert task.status == TaskStatus.CANCELLED
    assert sm.state == S.CANCELLED
    assert not (tmp_path / "out.txt").exists()
    assert events[-1].type == "done"
    orch.acknowledge()
    assert sm.state == S.READY


@pytest.mark.asyncio
async def test_expired_approval_cancels_task(sm, registry):
    clock = Clock()
    orch, _ = _orchestrator(sm, registry, plan_json(_create("write", "out.txt")),
                            approval_timeout=30, clock=clock)
    await orch.start_agent("write", "agent")
    clock.now += 10
    assert (await orch.status())["is_running"]

    clock.now += 25
    status = await orch.status()
    assert not status["is_running"]
    assert status["task"]["status"] == "cancelled"
    assert sm.state == S.CANCELLED
    with pytest.raises(StateGuardError):
        await orch.approve_step("write")


@pytest.mark.asyncio
async def test_second_start_while_paused_is_rejected(sm, registry):
    orch, _ = _orchestrator(sm, registry, plan_json(_create("write", "out.txt")))
    await orch.start_agent("write", "agent")
    with pytest.raises(StateGuardError):
        await orch.start_agent("another", "agent")
    assert sm.state == S.AWAITING_APPROVAL


@pytest.mark.asyncio
async def test_unapproved_step_is_never_seen_running(sm, registry, tmp_path):
    (tmp_path / "notes.txt").write_text("notes\n")
    plan = plan_json(_read("look", "notes.txt"), _create("write", "out.txt"))
    orch, _ = _orchestrator(sm, registry, plan)
    seen = []

    def record(snapshot):
        task = snapshot.task
        if task is not None and task.get_step("write") is not None:
            seen.append((snapshot.state, task.get_step("write").status))

    sm.subscribe(record)
    await orch.start_agent("write output", "agent")

    assert seen
    assert all(status != StepStatus.RUNNING for _, status in seen)
    assert seen[-1] == (S.AWAITING_APPROVAL, StepStatus.PENDING)
    assert not (tmp_path / "out.txt").exists()


@pytest.mark.asyncio
async def test_cancel_while_paused(sm, registry):
    orch, _ = _orchestrator(sm, registry, plan_json(_create("write", "out.txt")))
    await orch.start_agent("write", "agent")
    task = await orch.cancel_agent()
    assert task.status == TaskStatus.CANCELLED
    assert sm.state == S.CANCELLED
    with pytest.raises(StateGuardError):
        await orch.cancel_agent()


def _gated_registry(sm, backend, started, release):
    reg = ToolRegistry(sm, backend)
    register_core_tools(reg)

    def wait_for_release(params, ctx):
        started.set()
        release.wait(5)
        return ToolResult(success=True, data="released")

    reg.register(ToolDefinition(name="waitForRelease", description="Block until released", effect="read"),
                 wait_for_release)
    reg.freeze()
    return reg


@pytest.mark.asyncio
async def test_cancel_during_running_step_takes_effect_at_step_boundary(sm, backend, tmp_path):
    started, release = threading.Event(), threading.Event()
    reg = _gated_registry(sm, backend, started, release)
    plan = plan_json(
        {"id": "wait", "description": "wait", "tool": "waitForRelease", "parameters": {}},
        _create("write", "out.txt"),
    )
    orch, events = _orchestrator(sm, reg, plan, auto_approve=True)
    run = asyncio.ensure_future(orch.start_agent("slow work", "agent"))
    assert await asyncio.to_thread(started.wait, 5)

    task = await orch.cancel_agent()
    assert task.status == TaskStatus.EXECUTING
    assert sm.state == S.RUNNING_TOOL
    with pytest.raises(StateGuardError):
        orch.switch_mode("ask")
    assert sm.mode is AGENT

    release.set()
    task = await run
    assert task.status == TaskStatus.CANCELLED
    assert sm.state == S.CANCELLED
    assert task.get_step("wait").status == StepStatus.COMPLETED
    assert task.get_step("write").status == StepStatus.PENDING
    assert not (tmp_path / "out.txt").exists()
    assert events[-1].type == "done"


# ------------------------------------------------------------------
# Failure and rollback
# ------------------------------------------------------------------

@pytest.mark.asyncio
async def test_critical_failure_rolls_back_earlier_steps(sm, registry, tmp_path):
    plan = plan_json(
        _create("one", "a.txt", "alpha"),
        _create("two", "b.txt", "beta"),
        {"id": "three", "description": "edit b", "tool": "editFile",
         "parameters": {"path": "b.txt", "old_string": "missing", "new_string": "x"}},
        _create("four", "c.txt"),
    )
    orch, events = _orchestrator(sm, registry, plan, auto_approve=True)

    with pytest.raises(ExecutionError) as exc_info:
        await orch.start_agent("break things", "agent")

    error = exc_info.value
    assert error.tool_name == "editFile"
    assert error.rollback_attempted
    assert error.rollback_succeeded
    assert error.rolled_back_steps == ["two", "one"]
    assert not (tmp_path / "a.txt").exists()
    assert not (tmp_path / "b.txt").exists()
    assert not (tmp_path / "c.txt").exists()

    task = orch.current_task
    assert task.status == TaskStatus.FAILED
    assert task.get_step("one").rolled_back and task.get_step("two").rolled_back
    assert task.get_step("three").status == StepStatus.FAILED
    assert task.get_step("four").status == StepStatus.PENDING
    assert sm.state == S.ERROR
    assert "three" in sm.snapshot().last_error
    assert registry.entries() == []
    assert "rollback" in [e.type for e in events]
    assert events[-1].type == "error"


@pytest.mark.asyncio
async def test_rollback_leaves_entries_from_before_the_task(sm, registry, tmp_path):
    sm.set_mode(AGENT)
    ctx = registry.make_context(approved=True)
    await registry.execute("createFile", {"path": "before.txt"}, ctx)
    sm.transition(S.COMPLETED, "setup")
    sm.transition(S.READY, "setup")

    plan = plan_json(_create("one", "a.txt"), _read("two", "missing.txt"))
    orch, _ = _orchestrator(sm, registry, plan, auto_approve=True)
    with pytest.raises(ExecutionError):
        await orch.start_agent("fail", "agent")
    assert (tmp_path / "before.txt").exists()
    assert not (tmp_path / "a.txt").exists()
    assert [e.rollback_data["path"] for e in registry.entries()] == ["before.txt"]


@pytest.mark.asyncio
async def test_non_critical_failure_continues_but_fails_task(sm, registry, tmp_path):
    plan = plan_json(_read("look", "missing.txt", critical=False), _create("write", "out.txt"))
    orch, events = _orchestrator(sm, registry, plan, auto_approve=True)
    with pytest.raises(ExecutionError) as exc_info:
        await orch.start_agent("best effort", "agent")
    assert "look" in exc_info.value.message
    task = orch.current_task
    assert task.status == TaskStatus.FAILED
    assert task.get_step("look").status == StepStatus.FAILED
    assert task.get_step("write").status == StepStatus.COMPLETED
    assert (tmp_path / "out.txt").exists()
    assert task.progress == 50
    assert sm.state == S.ERROR
    assert [r.to_state for r in sm.history()][-2:] == [S.VERIFYING, S.ERROR]
    assert events[-1].type == "error"


@pytest.mark.asyncio
async def test_dependents_of_failed_step_are_skipped(sm, registry):
    plan = plan_json(
        _read("look", "missing.txt", critical=False),
        _read("after", "also-missing.txt", critical=False, dependsOn=["look"]),
    )
    orch, _ = _orchestrator(sm, registry, plan)
    with pytest.raises(ExecutionError):
        await orch.start_agent("chain", "agent")
    after = orch.current_task.get_step("after")
    assert after.status == StepStatus.FAILED
    assert after.error.startswith("Skipped")


@pytest.mark.asyncio
async def test_invalid_plan_fails_task(sm, registry):
    orch, events = _orchestrator(sm, registry, plan_json(_read("s1", "a", tool="teleport")))
    with pytest.raises(ValidationError):
        await orch.start_agent("bad plan", "agent")
    assert sm.state == S.ERROR
    assert orch.current_task.status == TaskStatus.FAILED
    assert events[-1].type == "error"


@pytest.mark.asyncio
async def test_backend_failure_fails_task(sm, registry):
    orch, _ = _orchestrator(sm, registry, ProviderError("down", retryable=False))
    with pytest.raises(BackendError):
        await orch.start_agent("anything", "agent")
    assert sm.state == S.ERROR
    assert orch.current_task.status == TaskStatus.FAILED


# ------------------------------------------------------------------
# Standalone operations
# ------------------------------------------------------------------

@pytest.mark.asyncio
async def test_execute_tool_returns_to_ready(sm, registry, tmp_path):
    (tmp_path / "a.txt").write_text("content\n")
    orch, _ = _orchestrator(sm, registry)
    result = await orch.execute_tool("readFile", {"path": "a.txt"})
    assert result.success
    assert sm.state == S.READY
    visited = [r.to_state for r in sm.history()][-3:]
    assert visited == [S.RUNNING_TOOL, S.COMPLETED, S.READY]

    failed = await orch.execute_tool("readFile", {"path": "nope.txt"})
    assert not failed.success
    assert sm.state == S.READY
    assert "not found" in sm.snapshot().last_error


@pytest.mark.asyncio
async def test_execute_tool_rejection_restores_ready(sm, registry):
    sm.set_mode(AGENT)
    orch, _ = _orchestrator(sm, registry)
    with pytest.raises(ApprovalRequiredError):
        await orch.execute_tool("createFile", {"path": "x.txt"})
    assert sm.state == S.READY
    assert "approval" in sm.snapshot().last_error


@pytest.mark.asyncio
async def test_undo_after_tool(sm, registry, tmp_path):
    sm.set_mode(AGENT)
    orch, _ = _orchestrator(sm, registry)
    await orch.execute_tool("createFile", {"path": "x.txt"}, approved=True)
    assert (tmp_path / "x.txt").exists()
    assert await orch.undo()
    assert not (tmp_path / "x.txt").exists()
    assert not await orch.undo()


@pytest.mark.asyncio
async def test_switch_mode_persists_and_is_blocked_during_task(sm, registry, tmp_path):
    store = ModeStore(base_dir=str(tmp_path / ".state"), working_directory=str(tmp_path))
    orch, _ = _orchestrator(sm, registry, plan_json(_create("write", "out.txt")), mode_store=store)
    assert orch.switch_mode("code").name == "code"
    assert store.load() == "code"

    await orch.start_agent("write", "agent")
    with pytest.raises(StateGuardError):
        orch.switch_mode("ask")
    assert store.load() == "code"
    with pytest.raises(ValidationError):
        orch.switch_mode("warp")
