"""Search and discovery tools: searchCodebase, analyzeProject."""

import os
import logging
from collections import Counter
from typing import Any, Dict, List

from tools._common import ToolContext, ToolResult
from tools.gitignore import iter_project_files

logger = logging.getLogger(__name__)

_MAX_SEARCH_FILES = 500
_MAX_MATCHES_PER_FILE = 5
_MAX_TOTAL_MATCHES = 200
_MAX_ANALYZE_FILES = 2000

_MANIFESTS = {
    "package.json": "node",
    "pyproject.toml": "python",
    "setup.py": "python",
    "requirements.txt": "python",
    "Cargo.toml": "rust",
    "go.mod": "go",
    "pom.xml": "java",
    "build.gradle": "java",
    "Gemfile": "ruby",
}


def search_codebase(params: Dict[str, Any], ctx: ToolContext) -> ToolResult:
    """Case-insensitive substring search over non-ignored project files."""
    query = str(params.get("query") or "")
    if not query.strip():
        return ToolResult(success=False, error="query is required")
    needle = query.lower()
    b = ctx.backend

    lines: List[str] = []
    match_count = 0
    files_scanned = 0
    for rel in iter_project_files(b, include=params.get("include"), limit=_MAX_SEARCH_FILES):
        if ctx.cancelled:
            return ToolResult(success=False, error="Search cancelled")
        files_scanned += 1
        try:
            text = b.read_file(rel)
        except (OSError, ValueError) as e:
            logger.debug(f"Skipping unreadable file {rel}: {e}")
            continue
        hits = [
            f"  {i}: {line.strip()}"
            for i, line in enumerate(text.splitlines(), 1)
            if needle in line.lower()
        ]
        if not hits:
            continue
        match_count += len(hits)
        lines.append(f"{rel}:")
        lines.extend(hits[:_MAX_MATCHES_PER_FILE])
        if len(hits) > _MAX_MATCHES_PER_FILE:
            lines.append(f"  ... ({len(hits) - _MAX_MATCHES_PER_FILE} more)")
        if match_count >= _MAX_TOTAL_MATCHES:
            lines.append(f"... [stopped after {match_count} matches]")
            break

    if not match_count:
        return ToolResult(success=True, data=f"No matches found for {query!r} ({files_scanned} files scanned).")
    header = f"Found {match_count} matches for {query!r} ({files_scanned} files scanned)"
    return ToolResult(success=True, data=header + "\n" + "\n".join(lines))


def analyze_project(params: Dict[str, Any], ctx: ToolContext) -> ToolResult:
    """Summarise project layout: file counts by extension, top-level entries, manifests."""
    focus = str(params.get("focus") or "general")
    b = ctx.backend

    extensions: Counter = Counter()
    top_level: Counter = Counter()
    total = 0
    for rel in iter_project_files(b, limit=_MAX_ANALYZE_FILES):
        total += 1
        _, ext = os.path.splitext(rel)
        extensions[ext.lstrip(".") or "no-ext"] += 1
        top_level[rel.split(os.sep, 1)[0]] += 1
    ctx.progress(70, "Counted files")

    ecosystems = sorted({
        eco for name, eco in _MANIFESTS.items() if b.file_exists(name)
    })

    parts = [f"# Project Analysis ({focus})", "", f"Total files: {total}"]
    if total >= _MAX_ANALYZE_FILES:
        parts.append(f"(scan stopped at {_MAX_ANALYZE_FILES} files)")
    if ecosystems:
        parts.append(f"Detected ecosystems: {', '.join(ecosystems)}")
    parts.extend(["", "File types:"])
    parts.extend(f"- {ext}: {count} files" for ext, count in extensions.most_common(10))
    parts.extend(["", "Top-level entries:"])
    parts.extend(f"- {name}: {count} files" for name, count in top_level.most_common(15))
    return ToolResult(success=True, data="\n".join(parts))
