"""
Workspace backend for file and command operations.
All paths are resolved against, and confined to, the working directory.
"""

import logging
import os
import shutil
import signal
import subprocess
from abc import ABC, abstractmethod
from typing import Callable, Iterator, List, Optional, Tuple

logger = logging.getLogger(__name__)


class Backend(ABC):
    """Abstract backend for file system and command operations."""

    @property
    @abstractmethod
    def working_directory(self) -> str:
        """Return the working directory path."""

    @abstractmethod
    def read_file(self, path: str) -> str:
        """Read file content as text."""

    @abstractmethod
    def write_file(self, path: str, content: str) -> None:
        """Write content to a file (create dirs as needed)."""

    @abstractmethod
    def file_exists(self, path: str) -> bool:
        """Check if a file or directory exists."""

    @abstractmethod
    def is_dir(self, path: str) -> bool:
        """Check if a path is a directory."""

    @abstractmethod
    def remove_file(self, path: str) -> None:
        """Delete a file."""

    @abstractmethod
    def make_dir(self, path: str) -> None:
        """Create a directory (and parents)."""

    @abstractmethod
    def remove_dir(self, path: str) -> None:
        """Delete a directory tree."""

    @abstractmethod
    def run_command(self, command: str, cwd: str = ".", timeout: int = 30) -> Tuple[str, str, int]:
        """Run a shell command. Returns (stdout, stderr, returncode)."""

    @abstractmethod
    def spawn_command(self, command: str, cwd: str = ".") -> int:
        """Start a command without waiting for it. Returns the process id."""

    def cancel_running_command(self) -> bool:
        """Kill the currently running command, if any. Returns True if killed."""
        return False

    def reap_background(self) -> int:
        """Collect finished background commands. Returns how many still run."""
        return 0

    @abstractmethod
    def walk_files(self, path: str = ".",
                   skip_dir: Optional[Callable[[str, str], bool]] = None) -> Iterator[Tuple[str, bool]]:
        """Yield (relative_path, is_dir) for every entry under path.
        skip_dir(rel_path, name) prunes a directory and everything below it."""

    def resolve_path(self, path: str) -> str:
        """Resolve a path relative to the working directory."""
        if os.path.isabs(path):
            return os.path.normpath(path)
        return os.path.normpath(os.path.join(self.working_directory, path))


# ============================================================
# Local Backend
# ============================================================

class LocalBackend(Backend):
    """Backend that operates on the local filesystem."""

    def __init__(self, working_directory: str = "."):
        self._working_directory = os.path.abspath(working_directory)
        self._active_process: Optional[subprocess.Popen] = None
        self._background: List[subprocess.Popen] = []

    @property
    def working_directory(self) -> str:
        return self._working_directory

    def _ensure_under_working(self, resolved: str) -> str:
        real = os.path.abspath(resolved)
        wd = self._working_directory
        if real != wd and not real.startswith(wd + os.sep):
            raise ValueError(f"Path escapes working directory: {resolved!r}")
        return real

    def _full(self, path: str) -> str:
        return self._ensure_under_working(self.resolve_path(path))

    def read_file(self, path: str) -> str:
        with open(self._full(path), "r", encoding="utf-8", errors="replace") as f:
            return f.read()

    def write_file(self, path: str, content: str) -> None:
        full = self._full(path)
        os.makedirs(os.path.dirname(full), exist_ok=True)
        with open(full, "w", encoding="utf-8") as f:
            f.write(content)

    def file_exists(self, path: str) -> bool:
        return os.path.exists(self._full(path))

    def is_dir(self, path: str) -> bool:
        return os.path.isdir(self._full(path))

    def remove_file(self, path: str) -> None:
        os.remove(self._full(path))

    def make_dir(self, path: str) -> None:
        os.makedirs(self._full(path), exist_ok=True)

    def remove_dir(self, path: str) -> None:
        full = self._full(path)
        if full == self._working_directory:
            raise ValueError("Refusing to remove the working directory")
        shutil.rmtree(full)

    def run_command(self, command: str, cwd: str = ".", timeout: int = 30) -> Tuple[str, str, int]:
        self.reap_background()
        full_cwd = self._full(cwd) if cwd != "." else self._working_directory
        proc = subprocess.Popen(
            command, shell=True, cwd=full_cwd,
            stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True,
            start_new_session=True,  # process group for clean kill
        )
        # Track the process so it can be killed on cancel
        self._active_process = proc
        try:
            stdout, stderr = proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            self._kill_process(proc)
            stdout, stderr = proc.communicate(timeout=5)
            return stdout or "", f"Command timed out after {timeout}s\n{stderr or ''}", -1
        finally:
            self._active_process = None
        return stdout or "", stderr or "", proc.returncode

    def spawn_command(self, command: str, cwd: str = ".") -> int:
        full_cwd = self._full(cwd) if cwd != "." else self._working_directory
        proc = subprocess.Popen(
            command, shell=True, cwd=full_cwd,
            stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
        self.reap_background()
        self._background.append(proc)
        logger.info(f"Dispatched background command (pid {proc.pid}): {command}")
        return proc.pid

    def reap_background(self) -> int:
        """Collect exit statuses of finished background commands. Returns how many still run."""
        self._background = [p for p in self._background if p.poll() is None]
        return len(self._background)

    def cancel_running_command(self) -> bool:
        """Kill the currently running subprocess, if any. Returns True if killed."""
        proc = self._active_process
        if proc and proc.poll() is None:
            self._kill_process(proc)
            return True
        return False

    @staticmethod
    def _kill_process(proc: subprocess.Popen) -> None:
        """Kill a process and its entire process group."""
        try:
            os.killpg(os.getpgid(proc.pid), signal.SIGTERM)
        except (ProcessLookupError, OSError):
            pass
        try:
            proc.kill()
        except (ProcessLookupError, OSError):
            pass

    def walk_files(self, path: str = ".",
                   skip_dir: Optional[Callable[[str, str], bool]] = None) -> Iterator[Tuple[str, bool]]:
        base = self._full(path)
        for root, dirs, files in os.walk(base):
            kept = []
            for name in sorted(dirs):
                rel = os.path.relpath(os.path.join(root, name), self._working_directory)
                if skip_dir and skip_dir(rel, name):
                    continue
                kept.append(name)
                yield rel, True
            dirs[:] = kept
            for name in sorted(files):
                yield os.path.relpath(os.path.join(root, name), self._working_directory), False
