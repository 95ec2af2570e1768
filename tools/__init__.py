"""
Side-effecting tools for the agent runtime.
Each tool has a static ToolDefinition, an executor and, if it mutates the
workspace, a RollbackSpec. Tools use the Backend abstraction for file and
command operations.
"""

from tools._common import (  # noqa: F401
    RollbackEntry,
    RollbackSpec,
    ToolContext,
    ToolDefinition,
    ToolParameter,
    ToolResult,
)
from tools.gitignore import invalidate_gitignore_cache, iter_project_files  # noqa: F401
from tools.external_ops import generate_undo_command  # noqa: F401
from tools.schemas import CORE_TOOLS, register_core_tools  # noqa: F401
from tools.registry import ToolRegistry  # noqa: F401
