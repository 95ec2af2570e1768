"""File operation tools: create, edit, delete, read, createFolder.

Every mutating tool comes with a RollbackSpec. capture() snapshots the target
before the executor touches it; undo() restores that snapshot and is safe to
replay twice.
"""

import difflib
import logging
from typing import Any, Dict, List, Optional

from tools._common import RollbackSpec, ToolContext, ToolResult

logger = logging.getLogger(__name__)

_MAX_FULL_READ_LINES = 500


def _extract_structure(lines: List[str]) -> str:
    """Extract a structural summary from source code: imports, classes, functions."""
    structure = []
    for i, line in enumerate(lines):
        stripped = line.strip()
        if stripped.startswith(("import ", "from ")) and i < 50:
            structure.append(f"{i+1:6}|{line.rstrip()}")
        elif stripped.startswith(("class ", "def ", "async def ", "function ", "export ")):
            structure.append(f"{i+1:6}|{line.rstrip()}")
    return "\n".join(structure)


def _compact_diff(old_content: str, new_content: str, path: str, max_lines: int = 60) -> str:
    """Generate a compact unified diff for display."""
    old_lines = old_content.splitlines(keepends=True)
    new_lines = new_content.splitlines(keepends=True)
    diff = list(difflib.unified_diff(old_lines, new_lines, fromfile=path, tofile=path, lineterm=""))
    if not diff:
        return ""
    if len(diff) > max_lines:
        diff = diff[:max_lines] + [f"... ({len(diff) - max_lines} more diff lines)"]
    return "\n".join(line.rstrip() for line in diff)


def _require_path(params: Dict[str, Any], name: str = "path") -> Optional[ToolResult]:
    """Return an error ToolResult if the path is empty/whitespace; else None."""
    if not str(params.get(name) or "").strip():
        return ToolResult(success=False, error=f"{name} is required")
    return None


# ------------------------------------------------------------------
# Snapshots
# ------------------------------------------------------------------

def _snapshot_file(params: Dict[str, Any], ctx: ToolContext) -> Dict[str, Any]:
    """Record whether the target exists and its content before a write."""
    path = params.get("path", "")
    b = ctx.backend
    try:
        if b.file_exists(path) and not b.is_dir(path):
            return {"existed": True, "content": b.read_file(path)}
    except (OSError, ValueError) as e:
        logger.debug(f"Snapshot of {path} failed: {e}")
        return {"existed": None, "content": None}
    return {"existed": False, "content": None}


def _snapshot_folder(params: Dict[str, Any], ctx: ToolContext) -> Dict[str, Any]:
    path = params.get("path", "")
    try:
        return {"existed": ctx.backend.file_exists(path)}
    except ValueError:
        return {"existed": None}


def _restore_file(data: Dict[str, Any], ctx: ToolContext) -> None:
    """Put a file back the way the snapshot saw it."""
    b = ctx.backend
    path = data["path"]
    if data.get("existed"):
        original = data.get("content") or ""
        if b.file_exists(path) and b.read_file(path) == original:
            return
        b.write_file(path, original)
        logger.info(f"Restored original content of {path}")
    elif b.file_exists(path):
        b.remove_file(path)
        logger.info(f"Removed {path}")


# ------------------------------------------------------------------
# createFile
# ------------------------------------------------------------------

def create_file(params: Dict[str, Any], ctx: ToolContext) -> ToolResult:
    """Create a new file with optional content."""
    err = _require_path(params)
    if err:
        return err
    path = params["path"]
    content = params.get("content") or ""
    b = ctx.backend
    if b.file_exists(path):
        if b.is_dir(path):
            return ToolResult(success=False, error=f"Path is a directory: {path}")
        if not params.get("overwrite"):
            return ToolResult(success=False,
                              error=f"File already exists: {path}. Set overwrite=true to replace it.")
    b.write_file(path, content)
    line_count = content.count("\n") + (1 if content and not content.endswith("\n") else 0)
    return ToolResult(success=True, data=f"Created {path} ({line_count} lines)")


def _build_file_rollback(params: Dict[str, Any], result: Any,
                         snapshot: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not snapshot or snapshot.get("existed") is None:
        return None
    return {"path": params["path"], "existed": snapshot["existed"], "content": snapshot["content"]}


CREATE_FILE_ROLLBACK = RollbackSpec(capture=_snapshot_file, build=_build_file_rollback, undo=_restore_file)


# ------------------------------------------------------------------
# editFile
# ------------------------------------------------------------------

def edit_file(params: Dict[str, Any], ctx: ToolContext) -> ToolResult:
    """Replace an exact string in a file. Must match exactly one location."""
    err = _require_path(params)
    if err:
        return err
    path = params["path"]
    old_string = params["old_string"]
    new_string = params["new_string"]
    b = ctx.backend
    if not b.file_exists(path):
        return ToolResult(success=False, error=f"File not found: {path}")
    if not old_string:
        return ToolResult(success=False, error="old_string must not be empty")
    content = b.read_file(path)
    count = content.count(old_string)
    if count == 0:
        return ToolResult(success=False,
                          error=f"old_string not found in {path}. Ensure it matches exactly, including whitespace.")
    if count > 1:
        return ToolResult(success=False,
                          error=f"Found {count} occurrences of old_string in {path}. Add surrounding context to make it unique.")
    new_content = content.replace(old_string, new_string, 1)
    b.write_file(path, new_content)
    diff_text = _compact_diff(content, new_content, path)
    summary = f"Applied edit to {path}"
    return ToolResult(success=True, data=f"{summary}\n{diff_text}" if diff_text else summary)


def _build_edit_rollback(params: Dict[str, Any], result: Any,
                         snapshot: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    # Nothing to restore if the file was never there
    if not snapshot or not snapshot.get("existed"):
        return None
    return {"path": params["path"], "existed": True, "content": snapshot["content"]}


EDIT_FILE_ROLLBACK = RollbackSpec(capture=_snapshot_file, build=_build_edit_rollback, undo=_restore_file)


# ------------------------------------------------------------------
# deleteFile
# ------------------------------------------------------------------

def delete_file(params: Dict[str, Any], ctx: ToolContext) -> ToolResult:
    """Delete a single file."""
    err = _require_path(params)
    if err:
        return err
    path = params["path"]
    b = ctx.backend
    if not b.file_exists(path):
        return ToolResult(success=False, error=f"File not found: {path}")
    if b.is_dir(path):
        return ToolResult(success=False, error=f"Path is a directory: {path}")
    b.remove_file(path)
    return ToolResult(success=True, data=f"Deleted {path}")


def _restore_deleted(data: Dict[str, Any], ctx: ToolContext) -> None:
    b = ctx.backend
    path = data["path"]
    if not b.file_exists(path):
        b.write_file(path, data.get("content") or "")
        logger.info(f"Restored deleted file {path}")


def _build_delete_rollback(params: Dict[str, Any], result: Any,
                           snapshot: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not snapshot or not snapshot.get("existed"):
        return None
    return {"path": params["path"], "content": snapshot["content"]}


DELETE_FILE_ROLLBACK = RollbackSpec(capture=_snapshot_file, build=_build_delete_rollback, undo=_restore_deleted)


# ------------------------------------------------------------------
# createFolder
# ------------------------------------------------------------------

def create_folder(params: Dict[str, Any], ctx: ToolContext) -> ToolResult:
    """Create a directory (and parents)."""
    err = _require_path(params)
    if err:
        return err
    path = params["path"]
    b = ctx.backend
    if b.file_exists(path) and not b.is_dir(path):
        return ToolResult(success=False, error=f"A file already exists at {path}")
    b.make_dir(path)
    return ToolResult(success=True, data=f"Created folder {path}")


def _build_folder_rollback(params: Dict[str, Any], result: Any,
                           snapshot: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    # Pre-existing folders are left alone
    if not snapshot or snapshot.get("existed") is not False:
        return None
    return {"path": params["path"]}


def _remove_folder(data: Dict[str, Any], ctx: ToolContext) -> None:
    b = ctx.backend
    path = data["path"]
    if b.file_exists(path) and b.is_dir(path):
        b.remove_dir(path)
        logger.info(f"Removed folder {path}")


CREATE_FOLDER_ROLLBACK = RollbackSpec(capture=_snapshot_folder, build=_build_folder_rollback, undo=_remove_folder)


# ------------------------------------------------------------------
# readFile
# ------------------------------------------------------------------

def read_file(params: Dict[str, Any], ctx: ToolContext) -> ToolResult:
    """Read the contents of a file. Returns line-numbered content."""
    err = _require_path(params)
    if err:
        return err
    path = params["path"]
    offset = params.get("offset")
    limit = params.get("limit")
    b = ctx.backend
    if not b.file_exists(path) or b.is_dir(path):
        return ToolResult(success=False, error=f"File not found: {path}")

    lines = b.read_file(path).splitlines(keepends=True)
    total_lines = len(lines)

    if offset is not None or limit is not None:
        start = max((offset or 1) - 1, 0)
        end = start + (limit or total_lines)
        selected = lines[start:end]
        line_start = start + 1
        numbered = [f"{line_start + i:6}|{line.rstrip()}" for i, line in enumerate(selected)]
        header = f"[{total_lines} lines total] (showing lines {line_start}-{line_start + len(selected) - 1})"
        return ToolResult(success=True, data=header + "\n" + "\n".join(numbered))

    if total_lines <= _MAX_FULL_READ_LINES:
        numbered = [f"{i+1:6}|{line.rstrip()}" for i, line in enumerate(lines)]
        return ToolResult(success=True, data=f"[{total_lines} lines total]\n" + "\n".join(numbered))

    # Large file: structure plus head and tail
    head_n, tail_n = 80, 40
    head = [f"{i+1:6}|{lines[i].rstrip()}" for i in range(head_n)]
    tail = [f"{total_lines - tail_n + i + 1:6}|{lines[total_lines - tail_n + i].rstrip()}" for i in range(tail_n)]
    parts = [
        f"[{total_lines} lines total, showing overview + head + tail]",
        "[Use offset/limit to read specific sections]", "",
        "-- structure --", _extract_structure(lines), "",
        f"-- first {head_n} lines --", "\n".join(head),
        f"\n  ... ({total_lines - head_n - tail_n} lines omitted) ...\n",
        f"-- last {tail_n} lines --", "\n".join(tail),
    ]
    return ToolResult(success=True, data="\n".join(parts))
