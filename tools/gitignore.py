""".gitignore-aware file walking for the search and analysis tools."""

import os
import logging
from typing import Dict, Iterator, Optional, Set

import pathspec

from backend import Backend

logger = logging.getLogger(__name__)

_ALWAYS_SKIP_DIRS: Set[str] = {
    ".git", "node_modules", "__pycache__", ".venv", "venv", "env",
    ".mypy_cache", ".pytest_cache", ".tox", ".eggs",
    "dist", "build", ".next", ".nuxt", ".cache",
    "coverage", ".coverage", "htmlcov", ".vibe-runtime",
}

_ALWAYS_SKIP_EXTENSIONS: Set[str] = {
    ".pyc", ".pyo", ".so", ".dylib", ".o", ".a", ".class",
    ".map", ".lock", ".png", ".jpg", ".jpeg", ".gif", ".ico",
    ".pdf", ".zip", ".gz", ".woff", ".woff2",
}

_gitignore_cache: Dict[str, Optional[pathspec.PathSpec]] = {}


def load_gitignore(backend: Backend) -> Optional[pathspec.PathSpec]:
    """Load and cache the .gitignore matcher for the backend's working directory.

    Returns None if the project has no .gitignore.
    """
    key = backend.working_directory
    if key in _gitignore_cache:
        return _gitignore_cache[key]

    spec = None
    try:
        if backend.file_exists(".gitignore"):
            content = backend.read_file(".gitignore")
            spec = pathspec.PathSpec.from_lines("gitwildmatch", content.splitlines())
    except (OSError, ValueError) as e:
        logger.debug(f"Failed to parse .gitignore: {e}")

    _gitignore_cache[key] = spec
    return spec


def is_ignored(rel_path: str, name: str, is_dir: bool,
               gitignore_spec: Optional[pathspec.PathSpec]) -> bool:
    """Check if a path should be ignored based on .gitignore + hardcoded skips."""
    if is_dir and name in _ALWAYS_SKIP_DIRS:
        return True
    if not is_dir:
        _, ext = os.path.splitext(name)
        if ext.lower() in _ALWAYS_SKIP_EXTENSIONS:
            return True
    if gitignore_spec:
        check_path = rel_path.replace(os.sep, "/")
        if is_dir:
            check_path += "/"
        if gitignore_spec.match_file(check_path):
            return True
    return False


def iter_project_files(backend: Backend, include: Optional[str] = None,
                       limit: Optional[int] = None) -> Iterator[str]:
    """Yield relative paths of non-ignored files, optionally filtered by a glob.

    include uses gitwildmatch syntax ("*.py", "src/**/*.ts").
    """
    gi = load_gitignore(backend)
    include_spec = pathspec.PathSpec.from_lines("gitwildmatch", [include]) if include else None

    def skip_dir(rel: str, name: str) -> bool:
        return is_ignored(rel, name, True, gi)

    count = 0
    for rel, is_dir in backend.walk_files(".", skip_dir=skip_dir):
        if is_dir:
            continue
        name = os.path.basename(rel)
        if is_ignored(rel, name, False, gi):
            continue
        if include_spec is not None and not include_spec.match_file(rel.replace(os.sep, "/")):
            continue
        yield rel
        count += 1
        if limit is not None and count >= limit:
            return


def invalidate_gitignore_cache(working_directory: Optional[str] = None) -> None:
    """Clear cached .gitignore specs. Call when .gitignore changes."""
    if working_directory:
        _gitignore_cache.pop(working_directory, None)
    else:
        _gitignore_cache.clear()
