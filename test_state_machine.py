"""Lifecycle state machine: adjacency, guards, subscribers."""

import pytest

from agent import Task, TaskStatus
from errors import StateGuardError
from modes import AGENT, ASK, CODE
from state_machine import (
    TERMINAL_STATES, TRANSITIONS, RuntimeState, StateMachine, can_transition, get_state_machine,
)

S = RuntimeState


def test_starts_idle_in_initial_mode():
    machine = StateMachine(mode=CODE)
    assert machine.state == S.IDLE
    assert machine.mode is CODE
    assert machine.current_task is None


def test_every_state_has_an_entry():
    assert set(TRANSITIONS) == set(RuntimeState)


def test_terminal_states_only_lead_to_ready():
    for state in TERMINAL_STATES:
        assert TRANSITIONS[state] == frozenset({S.READY})


def test_can_transition_table():
    assert can_transition(S.IDLE, S.READY)
    assert can_transition(S.RUNNING_TOOL, S.AWAITING_APPROVAL)
    assert not can_transition(S.IDLE, S.RUNNING_TOOL)
    assert not can_transition(S.COMPLETED, S.RUNNING_TOOL)
    assert not can_transition(S.VERIFYING, S.CANCELLED)


def _path_to(target):
    """Shortest chain of legal transitions from Idle to target."""
    paths = {S.IDLE: []}
    frontier = [S.IDLE]
    while frontier:
        current = frontier.pop(0)
        for nxt in sorted(TRANSITIONS[current], key=lambda s: s.value):
            if nxt not in paths:
                paths[nxt] = paths[current] + [nxt]
                frontier.append(nxt)
    return paths[target]


def _machine_in(state):
    machine = StateMachine()
    for step in _path_to(state):
        assert machine.transition(step, "setup")
    return machine


@pytest.mark.parametrize("source", list(RuntimeState))
@pytest.mark.parametrize("target", list(RuntimeState))
def test_transition_matches_table_for_every_pair(source, target):
    machine = _machine_in(source)
    before = len(machine.history())
    allowed = target in TRANSITIONS[source]

    assert machine.transition(target, "check") is allowed
    if allowed:
        assert machine.state == target
        assert len(machine.history()) == before + 1
    else:
        assert machine.state == source
        assert len(machine.history()) == before


def test_valid_transition_is_logged():
    machine = StateMachine()
    assert machine.transition(S.READY, "boot", {"source": "test"})
    assert machine.state == S.READY
    record = machine.history()[-1]
    assert record.from_state == S.IDLE
    assert record.to_state == S.READY
    assert record.reason == "boot"
    assert record.to_dict()["metadata"] == {"source": "test"}


def test_invalid_transition_leaves_state_and_records_error():
    machine = StateMachine()
    assert not machine.transition(S.COMPLETED, "skip ahead")
    assert machine.state == S.IDLE
    assert machine.history() == []
    assert "idle -> completed" in machine.snapshot().last_error


def test_successful_transition_clears_last_error():
    machine = StateMachine()
    machine.transition(S.COMPLETED, "bad")
    machine.transition(S.READY, "good")
    assert machine.snapshot().last_error is None


def test_require_raises_state_guard_error():
    machine = StateMachine()
    with pytest.raises(StateGuardError) as exc_info:
        machine.require(S.READY, action="agent task")
    assert exc_info.value.last_good_state == "idle"
    assert exc_info.value.kind == "state_guard"
    machine.transition(S.READY, "boot")
    assert machine.require(S.READY) == S.READY


def test_set_mode_rejected_while_task_active():
    machine = StateMachine()
    task = Task(description="x", mode="agent")
    machine.set_current_task(task)
    with pytest.raises(StateGuardError):
        machine.set_mode(CODE)
    assert machine.mode is ASK
    task.finish(TaskStatus.COMPLETED)
    machine.set_mode(AGENT)
    assert machine.mode is AGENT


def test_set_mode_rejected_mid_run_without_task():
    machine = _machine_in(S.RUNNING_TOOL)
    with pytest.raises(StateGuardError):
        machine.set_mode(CODE)
    assert machine.mode is ASK
    machine.transition(S.COMPLETED, "done")
    machine.set_mode(CODE)
    assert machine.mode is CODE


def test_set_mode_requires_capability_mode():
    with pytest.raises(TypeError):
        StateMachine().set_mode("code")


def test_progress_bounds():
    machine = StateMachine()
    machine.set_progress(0)
    machine.set_progress(100)
    machine.set_progress(None)
    with pytest.raises(ValueError):
        machine.set_progress(101)
    with pytest.raises(ValueError):
        machine.set_progress(-1)


def test_subscribers_run_in_order_and_survive_failures():
    machine = StateMachine()
    calls = []

    def first(snapshot):
        calls.append(("first", snapshot.state))

    def broken(snapshot):
        raise RuntimeError("boom")

    def last(snapshot):
        calls.append(("last", snapshot.state))

    machine.subscribe(first)
    machine.subscribe(broken)
    token = machine.subscribe(last)

    assert machine.transition(S.READY, "boot")
    assert calls == [("first", S.READY), ("last", S.READY)]
    assert machine.state == S.READY

    assert machine.unsubscribe(token)
    assert not machine.unsubscribe(token)
    machine.set_progress(5)
    assert calls[-1] == ("first", S.READY)


def test_snapshot_is_serializable():
    machine = StateMachine()
    task = Task(description="write docs", mode="agent")
    machine.set_current_task(task)
    machine.set_metadata(backend="fake")
    data = machine.snapshot().to_dict()
    assert data["state"] == "idle"
    assert data["mode"] == "ask"
    assert data["task"]["id"] == task.id
    assert data["metadata"] == {"backend": "fake"}


def test_reset_returns_to_idle():
    machine = StateMachine(mode=CODE)
    machine.transition(S.READY, "boot")
    machine.set_mode(AGENT)
    machine.set_progress(40)
    machine.reset()
    assert machine.state == S.IDLE
    assert machine.mode is CODE
    assert machine.history() == []
    assert machine.snapshot().progress is None


def test_get_state_machine_is_a_singleton():
    assert get_state_machine() is get_state_machine()
