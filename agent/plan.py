"""
Plan parsing and validation.

The model's decomposition is untrusted: it must be a strict JSON object with a
non-empty "steps" array, every step must name a registered tool the mode
permits, and dependencies must form a DAG. Nothing is repaired or guessed.
"""

import heapq
import json
import logging
from typing import Any, Dict, List, Union

from errors import CapabilityError, ValidationError
from modes import CapabilityMode
from agent.models import Step

logger = logging.getLogger(__name__)


def parse_plan(raw: str) -> List[Dict[str, Any]]:
    """Strict-parse the decomposition response into raw step dicts."""
    try:
        data = json.loads((raw or "").strip())
    except json.JSONDecodeError as e:
        raise ValidationError(f"Decomposition is not valid JSON: {e}")
    if not isinstance(data, dict) or not isinstance(data.get("steps"), list):
        raise ValidationError("Decomposition must be a JSON object with a \"steps\" array")
    if not data["steps"]:
        raise ValidationError("Decomposition contains no steps")
    return data["steps"]


def _require_str(raw: Dict[str, Any], key: str, index: int) -> str:
    value = raw.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"Step {index + 1} is missing a non-empty \"{key}\"")
    return value.strip()


def _build_step(raw: Any, index: int, mode: CapabilityMode, registry) -> Step:
    if not isinstance(raw, dict):
        raise ValidationError(f"Step {index + 1} is not an object")
    step_id = _require_str(raw, "id", index)
    description = _require_str(raw, "description", index)
    tool_name = _require_str(raw, "tool", index)

    definition = registry.get(tool_name)
    if definition is None:
        raise ValidationError(f"Step {step_id} uses unknown tool {tool_name!r}")
    if not mode.allows_tool(tool_name) or not mode.allows_effect(definition.effect):
        raise CapabilityError(f"Step {step_id} uses tool {tool_name} which {mode.name} mode does not allow")

    parameters = raw.get("parameters", {})
    if parameters is None:
        parameters = {}
    if not isinstance(parameters, dict):
        raise ValidationError(f"Step {step_id} parameters must be an object")
    registry.validate_parameters(definition, parameters)

    depends_on = raw.get("dependsOn", [])
    if depends_on is None:
        depends_on = []
    if not isinstance(depends_on, list) or not all(isinstance(d, str) for d in depends_on):
        raise ValidationError(f"Step {step_id} dependsOn must be an array of step ids")

    critical = raw.get("critical", True)
    if not isinstance(critical, bool):
        raise ValidationError(f"Step {step_id} critical must be a boolean")

    return Step(
        id=step_id,
        description=description,
        tool_name=tool_name,
        parameters=dict(parameters),
        # Registry policy wins; the plan can only add approval requirements
        requires_approval=definition.requires_approval or raw.get("requiresApproval") is True,
        critical=critical,
        depends_on=list(dict.fromkeys(depends_on)),
    )


def order_steps(steps: List[Step]) -> List[Step]:
    """Stable topological sort: among ready steps the earliest in plan order goes first."""
    index = {s.id: i for i, s in enumerate(steps)}
    for step in steps:
        for dep in step.depends_on:
            if dep not in index:
                raise ValidationError(f"Step {step.id} depends on unknown step {dep!r}")
            if dep == step.id:
                raise ValidationError(f"Step {step.id} depends on itself")

    remaining = {s.id: len(s.depends_on) for s in steps}
    dependents: Dict[str, List[str]] = {s.id: [] for s in steps}
    for step in steps:
        for dep in step.depends_on:
            dependents[dep].append(step.id)

    ready = [index[sid] for sid, n in remaining.items() if n == 0]
    heapq.heapify(ready)
    ordered: List[Step] = []
    while ready:
        step = steps[heapq.heappop(ready)]
        ordered.append(step)
        for child in dependents[step.id]:
            remaining[child] -= 1
            if remaining[child] == 0:
                heapq.heappush(ready, index[child])

    if len(ordered) != len(steps):
        cyclic = sorted(sid for sid, n in remaining.items() if n > 0)
        raise ValidationError(f"Plan has a dependency cycle involving: {', '.join(cyclic)}")
    return ordered


def validate_plan(raw: Union[str, List[Dict[str, Any]]], mode: CapabilityMode, registry) -> List[Step]:
    """Turn a decomposition (JSON text or parsed steps) into ordered Steps.

    Unknown tools and malformed steps raise ValidationError; tools the mode
    does not permit raise CapabilityError.
    """
    raw_steps = parse_plan(raw) if isinstance(raw, str) else raw
    if not raw_steps:
        raise ValidationError("Decomposition contains no steps")

    steps: List[Step] = []
    seen = set()
    for i, raw_step in enumerate(raw_steps):
        step = _build_step(raw_step, i, mode, registry)
        if step.id in seen:
            raise ValidationError(f"Duplicate step id {step.id!r}")
        seen.add(step.id)
        steps.append(step)

    ordered = order_steps(steps)
    logger.info(f"Validated plan with {len(ordered)} steps: {', '.join(s.tool_name for s in ordered)}")
    return ordered
