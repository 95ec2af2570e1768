"""Decomposition parsing, validation and ordering."""

import json

import pytest

from agent import Step, order_steps, parse_plan, validate_plan
from agent.prompts import build_decomposition_prompt
from conftest import plan_json
from errors import CapabilityError, ValidationError
from modes import AGENT, ASK


def _step(id, tool="readFile", **extra):
    step = {"id": id, "description": f"step {id}", "tool": tool, "parameters": {"path": "a.txt"}}
    step.update(extra)
    return step


def test_parse_plan_is_strict():
    assert parse_plan(plan_json(_step("s1"))) == [_step("s1")]
    with pytest.raises(ValidationError):
        parse_plan("```json\n" + plan_json(_step("s1")) + "\n```")
    with pytest.raises(ValidationError):
        parse_plan("Here is the plan: " + plan_json(_step("s1")))
    with pytest.raises(ValidationError):
        parse_plan(json.dumps([_step("s1")]))
    with pytest.raises(ValidationError):
        parse_plan(plan_json())


def test_validate_builds_steps(registry):
    steps = validate_plan(plan_json(
        _step("s1"),
        _step("s2", tool="createFile", parameters={"path": "b.txt", "content": "x"},
              requiresApproval=False, critical=False),
    ), AGENT, registry)
    assert [s.id for s in steps] == ["s1", "s2"]
    first, second = steps
    assert first.critical
    assert not first.requires_approval
    # Registry policy wins over the plan's requiresApproval=false
    assert second.requires_approval
    assert not second.critical


def test_plan_can_add_approval(registry):
    steps = validate_plan([_step("s1", requiresApproval=True)], AGENT, registry)
    assert steps[0].requires_approval


def test_unknown_tool_is_validation_error(registry):
    with pytest.raises(ValidationError):
        validate_plan(plan_json(_step("s1", tool="teleport")), AGENT, registry)


def test_disallowed_tool_is_capability_error(registry):
    plan = plan_json(_step("s1"), _step("s2", tool="deleteFile"))
    with pytest.raises(CapabilityError):
        validate_plan(plan, ASK, registry)


@pytest.mark.parametrize("bad", [
    {"description": "no id", "tool": "readFile", "parameters": {"path": "a"}},
    {"id": "s1", "tool": "readFile", "parameters": {"path": "a"}},
    {"id": "s1", "description": "no tool"},
    {"id": "s1", "description": "bad params", "tool": "readFile", "parameters": []},
    {"id": "s1", "description": "missing path", "tool": "readFile", "parameters": {}},
    {"id": "s1", "description": "bad critical", "tool": "readFile", "parameters": {"path": "a"}, "critical": "yes"},
    {"id": "s1", "description": "bad deps", "tool": "readFile", "parameters": {"path": "a"}, "dependsOn": "s0"},
    "not an object",
])
def test_malformed_steps_rejected(registry, bad):
    with pytest.raises(ValidationError):
        validate_plan([bad], AGENT, registry)


def test_duplicate_ids_rejected(registry):
    with pytest.raises(ValidationError):
        validate_plan([_step("s1"), _step("s1")], AGENT, registry)


def test_dependency_errors(registry):
    with pytest.raises(ValidationError):
        validate_plan([_step("s1", dependsOn=["ghost"])], AGENT, registry)
    with pytest.raises(ValidationError):
        validate_plan([_step("s1", dependsOn=["s1"])], AGENT, registry)
    with pytest.raises(ValidationError) as exc_info:
        validate_plan([_step("a", dependsOn=["b"]), _step("b", dependsOn=["a"]), _step("c")], AGENT, registry)
    assert "a, b" in exc_info.value.message


def test_order_is_stable_topological():
    steps = [
        Step(id="test", description="", tool_name="runTests", depends_on=["write"]),
        Step(id="read", description="", tool_name="readFile"),
        Step(id="write", description="", tool_name="createFile", depends_on=["mkdir"]),
        Step(id="mkdir", description="", tool_name="createFolder"),
    ]
    assert [s.id for s in order_steps(steps)] == ["read", "mkdir", "write", "test"]


def test_order_keeps_plan_order_without_dependencies():
    steps = [Step(id=i, description="", tool_name="readFile") for i in ("c", "a", "b")]
    assert [s.id for s in order_steps(steps)] == ["c", "a", "b"]


def test_prompt_lists_only_allowed_tools(registry):
    prompt = build_decomposition_prompt(ASK, registry.definitions())
    assert "readFile" in prompt
    assert "createFile" not in prompt
    assert "Mode: ask" in prompt
