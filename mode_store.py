"""
Capability mode persistence.
Remembers the last explicitly selected mode per working directory so the
runtime starts in it next time. Task and Step data are never written here.
"""

import hashlib
import json
import logging
import os
from datetime import datetime, timezone
from typing import Optional

from config import app_config

logger = logging.getLogger(__name__)

STORE_VERSION = 1


def _dir_hash(working_directory: str) -> str:
    """Deterministic short hash of a working directory path."""
    return hashlib.sha256(os.path.abspath(working_directory).encode()).hexdigest()[:12]


class ModeStore:
    """
    One small JSON file per project.

    File layout:  {base_dir}/{dir_hash}_mode.json
    """

    def __init__(self, base_dir: Optional[str] = None, working_directory: Optional[str] = None):
        self.base_dir = base_dir or app_config.state_dir
        self.working_directory = os.path.abspath(working_directory or app_config.working_directory)
        os.makedirs(self.base_dir, exist_ok=True)

    @property
    def path(self) -> str:
        return os.path.join(self.base_dir, f"{_dir_hash(self.working_directory)}_mode.json")

    def load(self) -> Optional[str]:
        """Last saved mode name, or None if nothing usable is stored."""
        path = self.path
        if not os.path.exists(path):
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Failed to read mode file {path}: {e}")
            return None
        mode = data.get("mode") if isinstance(data, dict) else None
        return mode if isinstance(mode, str) and mode else None

    def save(self, mode_name: str) -> str:
        """Write the mode atomically. Returns the file path."""
        path = self.path
        data = {
            "version": STORE_VERSION,
            "working_directory": self.working_directory,
            "mode": mode_name,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }

        tmp_path = path + ".tmp"
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, path)
            logger.info(f"Mode saved: {mode_name} -> {path}")
        except Exception:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise
        return path
