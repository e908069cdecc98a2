"""
Tests for SessionManager.
"""

import json
from pathlib import Path
from tempfile import TemporaryDirectory
from unittest.mock import patch

import pytest

from research_notebook.cell import CellKind, CellStatus
from research_notebook.exceptions import PersistenceError
from research_notebook.kernel import ResearchKernel
from research_notebook.notebook import ResearchSession
from research_notebook.session import SessionManager
from research_notebook.threads import ExecutionThread, ThreadStatus


def _session(goal="Analyze X", session_id="s1"):
    session = ResearchSession.new(goal, session_id=session_id)
    code = session.add_cell(kind=CellKind.CODE, content="x = 1", status=CellStatus.COMPLETED)
    thread = ExecutionThread(cell_id=code.id, status=ThreadStatus.COMPLETED)
    session.threads[thread.id] = thread
    return session


class TestSessionManager:
    """Test cases for SessionManager."""

    def setup_method(self):
        """Set up a fresh session manager for each test."""
        self.temp_dir = TemporaryDirectory()
        self.session_manager = SessionManager(sessions_dir=Path(self.temp_dir.name))

    def teardown_method(self):
        """Clean up temp directory."""
        self.temp_dir.cleanup()

    def test_save_then_load_returns_equal_snapshot(self):
        snapshot = _session().to_dict()
        self.session_manager.save("s1", snapshot)

        assert self.session_manager.load("s1") == snapshot

    def test_load_from_disk_matches(self):
        snapshot = _session().to_dict()
        self.session_manager.save("s1", snapshot)

        fresh = SessionManager(sessions_dir=Path(self.temp_dir.name))
        loaded = fresh.load("s1")

        assert loaded == snapshot
        assert ResearchSession.from_dict(loaded) == ResearchSession.from_dict(snapshot)

    def test_save_writes_json_file(self):
        path = self.session_manager.save("s1", _session().to_dict())
        assert path == Path(self.temp_dir.name) / "s1.json"
        data = json.loads(path.read_text())
        assert data["session_id"] == "s1"

    def test_load_returns_copy(self):
        self.session_manager.save("s1", _session().to_dict())
        loaded = self.session_manager.load("s1")
        loaded["goal"] = "changed"
        assert self.session_manager.load("s1")["goal"] == "Analyze X"

    def test_load_missing_returns_none(self):
        assert self.session_manager.load("missing") is None

    def test_load_corrupt_file_raises(self):
        (Path(self.temp_dir.name) / "bad.json").write_text("{not json")
        with pytest.raises(PersistenceError):
            self.session_manager.load("bad")

    def test_unserializable_snapshot_raises(self):
        with pytest.raises(PersistenceError):
            self.session_manager.save("s1", {"value": object()})

    def test_write_failure_raises(self):
        with patch("research_notebook.session.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(PersistenceError):
                self.session_manager.save("s1", _session().to_dict())
        assert not self.session_manager.exists("s1")

    def test_list_sessions(self):
        self.session_manager.save("s1", _session("First", "s1").to_dict())
        self.session_manager.save("s2", _session("Second", "s2").to_dict())

        sessions = self.session_manager.list_sessions()
        assert {s["session_id"] for s in sessions} == {"s1", "s2"}
        assert sessions[0]["session_id"] == "s2"
        assert sessions[0]["cell_count"] == 2
        assert sessions[0]["thread_count"] == 1

    def test_delete_session(self):
        self.session_manager.save("s1", _session().to_dict())
        assert self.session_manager.delete_session("s1")
        assert self.session_manager.load("s1") is None
        assert not self.session_manager.delete_session("s1")


class TestKernelCheckpoints:
    """Kernel namespace checkpoints with dill."""

    def setup_method(self):
        self.temp_dir = TemporaryDirectory()
        self.session_manager = SessionManager(sessions_dir=Path(self.temp_dir.name))
        self.kernel = ResearchKernel()

    def teardown_method(self):
        self.kernel.reset_session("cp")
        self.temp_dir.cleanup()

    def test_checkpoint_round_trip(self):
        self.kernel.execute("x = 42\ndef add(a, b):\n    return a + b", "cp")
        path = self.session_manager.save_checkpoint(self.kernel, "cp")
        assert path.exists()

        self.kernel.reset_session("cp")
        assert self.kernel.get_variable("cp", "x") is None

        info = self.session_manager.load_checkpoint(self.kernel, "cp")
        assert "x" in info["restored_vars"]
        assert self.kernel.get_variable("cp", "x") == 42
        assert self.kernel.get_variable("cp", "add")(1, 2) == 3

    def test_missing_checkpoint(self):
        assert self.session_manager.load_checkpoint(self.kernel, "none") is None
