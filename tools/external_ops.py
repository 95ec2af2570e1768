"""Terminal tools: runShellCommand, runTests."""

import json
import logging
import shlex
from typing import Any, Dict, Optional

from config import app_config
from tools._common import RollbackSpec, ToolContext, ToolResult

logger = logging.getLogger(__name__)

_MAX_OUTPUT_CHARS = 20000


def _truncate(output: str) -> str:
    if len(output) <= _MAX_OUTPUT_CHARS:
        return output
    lines_out = output.split("\n")
    if len(lines_out) > 200:
        return "\n".join(lines_out[:100]) + f"\n\n... [{len(lines_out) - 150} lines truncated] ...\n\n" + "\n".join(lines_out[-50:])
    return output[:10000] + "\n\n... [truncated] ...\n\n" + output[-5000:]


def _format_output(stdout: str, stderr: str, rc: int) -> str:
    parts = []
    if stdout:
        parts.append(stdout)
    if stderr:
        parts.append(f"[stderr]\n{stderr}")
    output = "\n".join(parts) if parts else "(no output)"
    if rc != 0:
        output = f"[exit code: {rc}]\n{output}"
    return _truncate(output)


def _run_blocking(command: str, timeout: int, ctx: ToolContext) -> ToolResult:
    if ctx.cancelled:
        return ToolResult(success=False, error="Command cancelled before start")
    stdout, stderr, rc = ctx.backend.run_command(command, cwd=".", timeout=timeout)
    output = _format_output(stdout, stderr, rc)
    data = {"status": "completed", "command": command, "exit_code": rc, "output": output}
    if rc != 0:
        return ToolResult(success=False, data=data, error=f"Command exited with code {rc}\n{output}")
    return ToolResult(success=True, data=data)


def run_shell_command(params: Dict[str, Any], ctx: ToolContext) -> ToolResult:
    """Execute a shell command in the working directory.

    With background=true the command is dispatched and the call returns
    immediately with the process id.
    """
    command = str(params.get("command") or "").strip()
    if not command:
        return ToolResult(success=False, error="command is required")
    if params.get("background"):
        pid = ctx.backend.spawn_command(command, cwd=".")
        return ToolResult(success=True, data={"status": "dispatched", "command": command, "pid": pid})
    timeout = int(params.get("timeout") or app_config.command_timeout)
    return _run_blocking(command, timeout, ctx)


def generate_undo_command(command: str) -> Optional[str]:
    """Best-effort inverse for a handful of common commands. None when unknown."""
    try:
        tokens = shlex.split(command)
    except ValueError:
        return None
    if not tokens:
        return None
    # Compound commands have no reliable inverse
    if any(c in command for c in ";|&"):
        return None
    if tokens[:2] in (["npm", "install"], ["npm", "i"]):
        packages = [t for t in tokens[2:] if not t.startswith("-")]
        if packages:
            return "npm uninstall " + " ".join(shlex.quote(p) for p in packages)
        return None
    if tokens[:2] == ["git", "add"]:
        return "git reset"
    if tokens[0] == "mkdir":
        dirs = [t for t in tokens[1:] if not t.startswith("-")]
        if dirs:
            return "rmdir " + " ".join(shlex.quote(d) for d in reversed(dirs))
    return None


def _build_shell_rollback(params: Dict[str, Any], result: Any,
                          snapshot: Any) -> Optional[Dict[str, Any]]:
    # A failed command left nothing we know how to invert
    if result is None:
        return None
    original = str(params.get("command") or "")
    undo_command = generate_undo_command(original)
    if undo_command is None:
        return None
    return {"undo_command": undo_command, "original_command": original}


def _run_undo_command(data: Dict[str, Any], ctx: ToolContext) -> None:
    command = data["undo_command"]
    stdout, stderr, rc = ctx.backend.run_command(command, cwd=".", timeout=app_config.command_timeout)
    if rc != 0:
        raise RuntimeError(f"Undo command {command!r} exited with code {rc}: {stderr.strip()}")
    logger.info(f"Rolled back shell command with: {command}")


SHELL_ROLLBACK = RollbackSpec(build=_build_shell_rollback, undo=_run_undo_command)


def detect_test_command(ctx: ToolContext) -> str:
    """Guess the project's test command from its manifests."""
    b = ctx.backend
    if b.file_exists("package.json"):
        try:
            package = json.loads(b.read_file("package.json"))
            if (package.get("scripts") or {}).get("test"):
                return "npm test"
        except (ValueError, AttributeError):
            logger.debug("package.json is not valid JSON")
    for marker in ("pytest.ini", "pyproject.toml", "setup.cfg", "tox.ini", "conftest.py"):
        if b.file_exists(marker):
            return "pytest"
    if b.file_exists("Cargo.toml"):
        return "cargo test"
    if b.file_exists("go.mod"):
        return "go test ./..."
    return "npm test"


def run_tests(params: Dict[str, Any], ctx: ToolContext) -> ToolResult:
    """Run the project's test suite."""
    command = str(params.get("command") or "").strip()
    if not command or command == "auto-detect":
        command = detect_test_command(ctx)
    ctx.progress(10, f"Running {command}")
    return _run_blocking(command, app_config.command_timeout, ctx)
