"""
Capability modes: static policies restricting which tools and effects a task may use.
"""

from dataclasses import dataclass
from typing import Dict, FrozenSet, List, Union

from errors import ValidationError

ALL = "all"

# Effect tags declared by tool definitions
EFFECT_READ = "read"
EFFECT_FILE_CREATE = "file_create"
EFFECT_FILE_WRITE = "file_write"
EFFECT_FILE_DELETE = "file_delete"
EFFECT_TERMINAL = "terminal"


@dataclass(frozen=True)
class CapabilityMode:
    """Immutable tool/effect policy"""
    name: str
    description: str
    allowed_tools: Union[FrozenSet[str], str]
    allowed_effects: Union[FrozenSet[str], str]
    autonomous: bool = False

    def allows_tool(self, tool_name: str) -> bool:
        return self.allowed_tools == ALL or tool_name in self.allowed_tools

    def allows_effect(self, effect: str) -> bool:
        return self.allowed_effects == ALL or effect in self.allowed_effects

    def describe_tools(self) -> str:
        if self.allowed_tools == ALL:
            return ALL
        return ", ".join(sorted(self.allowed_tools))

    def describe_effects(self) -> str:
        if self.allowed_effects == ALL:
            return ALL
        return ", ".join(sorted(self.allowed_effects)) or "none"

    def to_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "description": self.description,
            "allowed_tools": self.allowed_tools if self.allowed_tools == ALL else sorted(self.allowed_tools),
            "allowed_effects": self.allowed_effects if self.allowed_effects == ALL else sorted(self.allowed_effects),
            "autonomous": self.autonomous,
        }


_READ_TOOLS = frozenset({"readFile", "searchCodebase", "analyzeProject"})

ASK = CapabilityMode(
    name="ask",
    description="Read-only Q&A and analysis",
    allowed_tools=_READ_TOOLS,
    allowed_effects=frozenset({EFFECT_READ}),
)

CODE = CapabilityMode(
    name="code",
    description="Full coding with file operations",
    allowed_tools=_READ_TOOLS | {
        "createFile", "editFile", "deleteFile", "createFolder",
        "runShellCommand", "runTests",
    },
    allowed_effects=frozenset({
        EFFECT_READ, EFFECT_FILE_CREATE, EFFECT_FILE_WRITE,
        EFFECT_FILE_DELETE, EFFECT_TERMINAL,
    }),
)

DEBUG = CapabilityMode(
    name="debug",
    description="Error analysis and debugging",
    allowed_tools=_READ_TOOLS | {"runTests", "runShellCommand"},
    allowed_effects=frozenset({EFFECT_READ, EFFECT_TERMINAL}),
)

ARCHITECT = CapabilityMode(
    name="architect",
    description="System design and planning",
    allowed_tools=_READ_TOOLS,
    allowed_effects=frozenset({EFFECT_READ}),
)

AGENT = CapabilityMode(
    name="agent",
    description="Autonomous multi-step execution",
    allowed_tools=ALL,
    allowed_effects=ALL,
    autonomous=True,
)

SHELL = CapabilityMode(
    name="shell",
    description="Terminal and file operations only",
    allowed_tools=frozenset({"runShellCommand", "createFile", "createFolder", "readFile"}),
    allowed_effects=frozenset({EFFECT_READ, EFFECT_TERMINAL, EFFECT_FILE_CREATE}),
)

MODES: Dict[str, CapabilityMode] = {m.name: m for m in (ASK, CODE, DEBUG, ARCHITECT, AGENT, SHELL)}


def get_mode(name: str) -> CapabilityMode:
    """Look up a mode by name; unknown names are a validation failure."""
    mode = MODES.get((name or "").strip().lower())
    if mode is None:
        raise ValidationError(f"Invalid execution mode: {name!r}. Expected one of: {', '.join(MODES)}")
    return mode


def mode_names() -> List[str]:
    return list(MODES)
