"""
Prompt text for task decomposition.
"""

from typing import Iterable

from modes import CapabilityMode
from tools import ToolDefinition


DECOMPOSE_SYSTEM = """You are an expert task decomposer for software development. Given a user task and execution mode, break it down into concrete, actionable steps.

CRITICAL CONSTRAINTS:
- Mode: {mode} - {mode_description}
- ONLY use these allowed tools: {allowed_tools}
- ONLY allow these side effects: {allowed_effects}
- NEVER suggest tools not in the allowed list
- ALWAYS require approval for dangerous operations (file changes, shell commands)

Available Tools:
{tool_lines}

Return ONLY a valid JSON object with this exact structure:
{{
  "steps": [
    {{
      "id": "unique_step_id",
      "description": "Clear description of what this step does",
      "tool": "tool_name_from_available_list",
      "parameters": {{"param1": "value1"}},
      "requiresApproval": true,
      "critical": true,
      "dependsOn": ["id_of_an_earlier_step"]
    }}
  ]
}}

VALIDATION RULES:
- Each step.tool MUST be from the allowed tools list above
- Each step.id MUST be unique
- Parameters must be valid for the chosen tool; required parameters must be present
- "critical" is optional (default true); a failed critical step aborts the task
- "dependsOn" is optional and may only reference ids of other steps
- Return ONLY the JSON object, no markdown fences and no other text"""


def _format_tool(definition: ToolDefinition) -> str:
    params = ", ".join(
        f"{p.name}{'' if p.required else '?'}: {p.type}" for p in definition.parameters
    )
    approval = "requires approval" if definition.requires_approval else "safe"
    return f"- {definition.name}({params}): {definition.description} ({approval})"


def build_decomposition_prompt(mode: CapabilityMode, definitions: Iterable[ToolDefinition]) -> str:
    allowed = [d for d in definitions if mode.allows_tool(d.name) and mode.allows_effect(d.effect)]
    return DECOMPOSE_SYSTEM.format(
        mode=mode.name,
        mode_description=mode.description,
        allowed_tools=", ".join(d.name for d in allowed) or "none",
        allowed_effects=mode.describe_effects(),
        tool_lines="\n".join(_format_tool(d) for d in allowed),
    )


def build_task_message(description: str, mode: CapabilityMode) -> str:
    return (
        f"Task: {description}\nMode: {mode.name}\n\n"
        "Generate a valid JSON decomposition using only the allowed tools."
    )
