"""Core tool definitions and their registration."""

from typing import List, TYPE_CHECKING

from modes import (
    EFFECT_FILE_CREATE, EFFECT_FILE_DELETE, EFFECT_FILE_WRITE,
    EFFECT_READ, EFFECT_TERMINAL,
)
from tools._common import ToolDefinition, ToolParameter
from tools.external_ops import SHELL_ROLLBACK, run_shell_command, run_tests
from tools.file_ops import (
    CREATE_FILE_ROLLBACK, CREATE_FOLDER_ROLLBACK, DELETE_FILE_ROLLBACK, EDIT_FILE_ROLLBACK,
    create_file, create_folder, delete_file, edit_file, read_file,
)
from tools.search_ops import analyze_project, search_codebase

if TYPE_CHECKING:
    from tools.registry import ToolRegistry


CREATE_FILE = ToolDefinition(
    name="createFile",
    description="Create a new file with optional content",
    effect=EFFECT_FILE_CREATE,
    parameters=(
        ToolParameter("path", "string", required=True, description="File path relative to the working directory"),
        ToolParameter("content", "string", description="File content to write", default=""),
        ToolParameter("overwrite", "boolean", description="Overwrite if the file exists", default=False),
    ),
    requires_approval=True,
    rollbackable=True,
)

EDIT_FILE = ToolDefinition(
    name="editFile",
    description="Replace one exact occurrence of old_string with new_string in a file",
    effect=EFFECT_FILE_WRITE,
    parameters=(
        ToolParameter("path", "string", required=True, description="File path relative to the working directory"),
        ToolParameter("old_string", "string", required=True, description="Exact text to replace"),
        ToolParameter("new_string", "string", required=True, description="Replacement text"),
    ),
    requires_approval=True,
    rollbackable=True,
)

DELETE_FILE = ToolDefinition(
    name="deleteFile",
    description="Delete a file",
    effect=EFFECT_FILE_DELETE,
    parameters=(
        ToolParameter("path", "string", required=True, description="File path relative to the working directory"),
    ),
    requires_approval=True,
    rollbackable=True,
)

CREATE_FOLDER = ToolDefinition(
    name="createFolder",
    description="Create a new directory",
    effect=EFFECT_FILE_CREATE,
    parameters=(
        ToolParameter("path", "string", required=True, description="Folder path relative to the working directory"),
    ),
    requires_approval=True,
    rollbackable=True,
)

READ_FILE = ToolDefinition(
    name="readFile",
    description="Read a file with line numbers; offset/limit select a range",
    effect=EFFECT_READ,
    parameters=(
        ToolParameter("path", "string", required=True, description="File path relative to the working directory"),
        ToolParameter("offset", "integer", description="1-based first line"),
        ToolParameter("limit", "integer", description="Number of lines"),
    ),
)

SEARCH_CODEBASE = ToolDefinition(
    name="searchCodebase",
    description="Search for text in the codebase, honouring .gitignore",
    effect=EFFECT_READ,
    parameters=(
        ToolParameter("query", "string", required=True, description="Text to search for (case-insensitive)"),
        ToolParameter("include", "string", description="Glob of files to include, e.g. *.py"),
    ),
)

ANALYZE_PROJECT = ToolDefinition(
    name="analyzeProject",
    description="Analyze project structure and provide insights",
    effect=EFFECT_READ,
    parameters=(
        ToolParameter("focus", "string", description="Specific aspect to analyze", default="general"),
    ),
)

RUN_SHELL_COMMAND = ToolDefinition(
    name="runShellCommand",
    description="Execute a shell command in the working directory",
    effect=EFFECT_TERMINAL,
    parameters=(
        ToolParameter("command", "string", required=True, description="Shell command to execute"),
        ToolParameter("timeout", "integer", description="Seconds before the command is killed"),
        ToolParameter("background", "boolean", description="Dispatch without waiting for completion", default=False),
    ),
    requires_approval=True,
    rollbackable=True,
)

RUN_TESTS = ToolDefinition(
    name="runTests",
    description="Execute the project's test suite",
    effect=EFFECT_TERMINAL,
    parameters=(
        ToolParameter("command", "string", description="Test command to run", default="auto-detect"),
    ),
    requires_approval=True,
)

CORE_TOOLS: List[ToolDefinition] = [
    CREATE_FILE, EDIT_FILE, DELETE_FILE, CREATE_FOLDER,
    READ_FILE, SEARCH_CODEBASE, ANALYZE_PROJECT,
    RUN_SHELL_COMMAND, RUN_TESTS,
]


def register_core_tools(registry: "ToolRegistry") -> None:
    registry.register(CREATE_FILE, create_file, CREATE_FILE_ROLLBACK)
    registry.register(EDIT_FILE, edit_file, EDIT_FILE_ROLLBACK)
    registry.register(DELETE_FILE, delete_file, DELETE_FILE_ROLLBACK)
    registry.register(CREATE_FOLDER, create_folder, CREATE_FOLDER_ROLLBACK)
    registry.register(READ_FILE, read_file)
    registry.register(SEARCH_CODEBASE, search_codebase)
    registry.register(ANALYZE_PROJECT, analyze_project)
    registry.register(RUN_SHELL_COMMAND, run_shell_command, SHELL_ROLLBACK)
    registry.register(RUN_TESTS, run_tests)
