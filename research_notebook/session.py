"""
SessionManager: durable session snapshots and kernel namespace checkpoints.
"""

import copy
import json
import logging
import os
import tempfile
import threading
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

import dill

from research_notebook.exceptions import PersistenceError

if TYPE_CHECKING:
    from research_notebook.kernel import ResearchKernel

logger = logging.getLogger(__name__)


class SessionManager:
    """
    Maps a session id to a JSON snapshot of its cells and threads.

    Snapshots are written atomically to ``<sessions_dir>/<session_id>.json``
    and cached in memory, so ``load`` right after ``save`` returns an equal
    document without touching disk.

    Kernel namespaces are checkpointed separately with dill, which can
    handle functions, lambdas and most class instances.
    """

    def __init__(self, sessions_dir: Optional[Path] = None):
        """
        Initialize session manager.

        Args:
            sessions_dir: Directory to store session files
        """
        self.sessions_dir = Path(sessions_dir or Path.home() / ".research_notebook" / "sessions")
        self.sessions_dir.mkdir(parents=True, exist_ok=True)
        self._cache: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def get_session_path(self, session_id: str) -> Path:
        return self.sessions_dir / f"{session_id}.json"

    def save(self, session_id: str, snapshot: dict[str, Any]) -> Path:
        """
        Persist a snapshot document.

        Raises:
            PersistenceError: If the snapshot cannot be serialized or written
        """
        path = self.get_session_path(session_id)
        document = copy.deepcopy(snapshot)
        try:
            payload = json.dumps(document, indent=2)
        except (TypeError, ValueError) as e:
            raise PersistenceError(f"Failed to serialize session {session_id}: {e}") from e

        with self._lock:
            tmp_path = None
            try:
                fd, tmp_path = tempfile.mkstemp(dir=self.sessions_dir, suffix=".tmp")
                with os.fdopen(fd, "w") as f:
                    f.write(payload)
                os.replace(tmp_path, path)
            except OSError as e:
                if tmp_path and os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise PersistenceError(f"Failed to save session {session_id}: {e}") from e
            self._cache[session_id] = document

        logger.debug("Session %s saved to %s", session_id, path)
        return path

    def load(self, session_id: str) -> Optional[dict[str, Any]]:
        """
        Load a snapshot document.

        Returns:
            The snapshot, or None if the session was never saved

        Raises:
            PersistenceError: If the file exists but cannot be read or parsed
        """
        with self._lock:
            cached = self._cache.get(session_id)
            if cached is not None:
                return copy.deepcopy(cached)

            path = self.get_session_path(session_id)
            if not path.exists():
                return None
            try:
                with open(path, "r") as f:
                    document = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                raise PersistenceError(f"Failed to load session {session_id}: {e}") from e
            self._cache[session_id] = document
            return copy.deepcopy(document)

    def exists(self, session_id: str) -> bool:
        return session_id in self._cache or self.get_session_path(session_id).exists()

    def list_sessions(self) -> list[dict[str, Any]]:
        """
        List saved sessions.

        Returns:
            List of session info dictionaries, most recently updated first
        """
        sessions = []
        for path in self.sessions_dir.glob("*.json"):
            try:
                with open(path, "r") as f:
                    state = json.load(f)
                sessions.append({
                    "path": str(path),
                    "session_id": state.get("session_id", path.stem),
                    "goal": state.get("goal", ""),
                    "updated_at": state.get("updated_at", ""),
                    "cell_count": len(state.get("cells", [])),
                    "thread_count": len(state.get("threads", {})),
                })
            except (OSError, json.JSONDecodeError) as e:
                sessions.append({
                    "path": str(path),
                    "session_id": path.stem,
                    "error": str(e),
                })
        return sorted(sessions, key=lambda x: x.get("updated_at", ""), reverse=True)

    def delete_session(self, session_id: str) -> bool:
        """Delete a session file and its kernel checkpoint."""
        with self._lock:
            self._cache.pop(session_id, None)
        path = self.get_session_path(session_id)
        checkpoint = self.get_checkpoint_path(session_id)
        if checkpoint.exists():
            checkpoint.unlink()
        if path.exists():
            path.unlink()
            return True
        return False

    def get_checkpoint_path(self, session_id: str) -> Path:
        """Get the kernel checkpoint path for a session."""
        return self.sessions_dir / "checkpoints" / f"{session_id}.checkpoint"

    def save_checkpoint(self, kernel: "ResearchKernel", session_id: str) -> Path:
        """
        Save the kernel namespace of a session.

        Args:
            kernel: Kernel holding the session's namespace
            session_id: Session whose namespace is saved

        Returns:
            Path to checkpoint file
        """
        namespace = kernel.get_namespace(session_id)

        # Filter namespace for picklable items
        filtered_ns = {}
        unpicklable = []
        for key, value in namespace.items():
            try:
                dill.dumps(value)
                filtered_ns[key] = value
            except Exception:
                unpicklable.append(key)

        state = {
            "user_ns": filtered_ns,
            "saved_at": datetime.now().isoformat(),
            "unpicklable_vars": unpicklable,
        }

        path = self.get_checkpoint_path(session_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "wb") as f:
            dill.dump(state, f)
        return path

    def load_checkpoint(self, kernel: "ResearchKernel", session_id: str) -> Optional[dict[str, Any]]:
        """
        Restore a session's kernel namespace.

        Returns:
            Load info, or None if no checkpoint exists
        """
        path = self.get_checkpoint_path(session_id)
        if not path.exists():
            return None

        with open(path, "rb") as f:
            state = dill.load(f)

        kernel.restore_namespace(session_id, state["user_ns"])
        return {
            "restored_vars": list(state["user_ns"].keys()),
            "unpicklable_vars": state.get("unpicklable_vars", []),
            "saved_at": state.get("saved_at"),
        }
