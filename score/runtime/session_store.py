"""
session_store.py - Durable persona session map.

The only state that outlives a run: persona session key -> provider session
id. Loaded when an engine is constructed and flushed on every update, so a
later run can resume mid-piece even after an interruption.
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Dict, Optional, Union

from ._fileio import atomic_write_json

logger = logging.getLogger(__name__)

SESSION_FILE_NAME = "persona_sessions.json"


class SessionStore:
    """JSON-backed key-value store of persona sessions.

    One store is owned by one engine run at a time. Writes are serialized
    with a lock so a flush never interleaves with another.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._lock = threading.Lock()
        self._sessions: Dict[str, str] = {}
        self._loaded = False

    @classmethod
    def for_project(cls, project_dir: Union[str, Path]) -> "SessionStore":
        return cls(Path(project_dir) / ".score" / SESSION_FILE_NAME)

    def load(self) -> Dict[str, str]:
        """Read sessions from disk; a missing or corrupt file loads as empty."""
        with self._lock:
            self._sessions = self._read()
            self._loaded = True
            return dict(self._sessions)

    def _read(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Could not read session file %s: %s; starting fresh", self.path, e)
            return {}
        sessions = data.get("sessions") if isinstance(data, dict) else None
        if not isinstance(sessions, dict):
            logger.warning("Session file %s has unexpected shape; starting fresh", self.path)
            return {}
        return {str(k): str(v) for k, v in sessions.items() if v}

    def update(self, key: str, session_id: Optional[str]) -> None:
        """Record a session id for a key and flush to disk.

        A None session id leaves the stored value untouched.
        """
        if not session_id:
            return
        with self._lock:
            if not self._loaded:
                self._sessions = self._read()
                self._loaded = True
            if self._sessions.get(key) == session_id:
                return
            self._sessions[key] = session_id
            atomic_write_json(self.path, {"sessions": self._sessions})
        logger.debug("Persisted session for %s", key)

    def clear(self) -> None:
        with self._lock:
            self._sessions = {}
            self._loaded = True
            if self.path.exists():
                self.path.unlink()
