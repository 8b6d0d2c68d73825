"""
Session persistence for the execution engine.
Stores context window snapshots and task history as JSON files keyed by
session id, so a session can be resumed after the process exits.
"""

import copy
import hashlib
import json
import logging
import os
import re
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional

from config import app_config

logger = logging.getLogger(__name__)

DEFAULT_BASE_DIR = app_config.session_dir

SESSION_VERSION = 1

_SAFE_ID_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


def _slugify(name: str) -> str:
    """Turn a session name into a safe filename component."""
    s = name.lower().strip()
    s = re.sub(r"[^a-z0-9]+", "-", s)
    s = s.strip("-")[:50]
    return s or "default"


def _dir_hash(working_directory: str) -> str:
    """Deterministic short hash of a working directory path."""
    return hashlib.sha256(os.path.abspath(working_directory).encode()).hexdigest()[:12]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def make_session_id(working_directory: str, name: str = "default") -> str:
    """Stable session id for a (working directory, session name) pair."""
    return f"{_dir_hash(working_directory)}_{_slugify(name)}"


class SessionStore:
    """
    Manages session files on disk.

    File layout:  {base_dir}/{session_id}.json
    Each file holds {session_id, version, created_at, updated_at, snapshot}.
    """

    def __init__(self, base_dir: str = DEFAULT_BASE_DIR):
        self.base_dir = base_dir
        os.makedirs(self.base_dir, exist_ok=True)

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    def save(self, session_id: str, snapshot: Dict[str, Any]) -> str:
        """Save a snapshot to disk atomically. Returns the file path."""
        path = self._path_for(session_id)
        existing = self._read_file(path) if os.path.exists(path) else None
        now = _now_iso()
        data = {
            "session_id": session_id,
            "version": SESSION_VERSION,
            "created_at": (existing or {}).get("created_at") or now,
            "updated_at": now,
            "snapshot": snapshot,
        }

        tmp_path = path + ".tmp"
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False, default=str)
            os.replace(tmp_path, path)
            logger.info(f"Session saved: {path}")
        except Exception:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

        return path

    def load(self, session_id: str) -> Optional[Dict[str, Any]]:
        """Load the snapshot for a session id, or None if there is none."""
        path = self._path_for(session_id)
        if not os.path.exists(path):
            return None
        data = self._read_file(path)
        if data is None:
            return None
        return data.get("snapshot")

    def delete(self, session_id: str) -> bool:
        """Delete a session file. Returns True if deleted."""
        path = self._path_for(session_id)
        if os.path.exists(path):
            os.remove(path)
            logger.info(f"Session deleted: {path}")
            return True
        return False

    def list_ids(self) -> List[str]:
        """Session ids on disk, most recently updated first."""
        rows = []
        for fname in os.listdir(self.base_dir):
            if not fname.endswith(".json"):
                continue
            data = self._read_file(os.path.join(self.base_dir, fname))
            if data and data.get("session_id"):
                rows.append((data.get("updated_at") or "", data["session_id"]))
        rows.sort(reverse=True)
        return [sid for _, sid in rows]

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _path_for(self, session_id: str) -> str:
        if not session_id or not _SAFE_ID_RE.match(session_id):
            raise ValueError(f"Invalid session id: {session_id!r}")
        return os.path.join(self.base_dir, f"{session_id}.json")

    def _read_file(self, path: str) -> Optional[Dict[str, Any]]:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            if not isinstance(data, dict):
                return None
            return data
        except Exception as e:
            logger.warning(f"Failed to read session {path}: {e}")
            return None


class InMemorySessionStore:
    """Session store kept in process memory. Snapshots are deep-copied on
    save and load so callers cannot mutate stored state."""

    def __init__(self):
        self._snapshots: Dict[str, Dict[str, Any]] = {}

    def save(self, session_id: str, snapshot: Dict[str, Any]) -> str:
        self._snapshots[session_id] = copy.deepcopy(snapshot)
        return session_id

    def load(self, session_id: str) -> Optional[Dict[str, Any]]:
        snapshot = self._snapshots.get(session_id)
        return copy.deepcopy(snapshot) if snapshot is not None else None

    def delete(self, session_id: str) -> bool:
        return self._snapshots.pop(session_id, None) is not None

    def list_ids(self) -> List[str]:
        return list(self._snapshots)
