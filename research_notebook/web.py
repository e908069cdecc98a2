"""
Flask JSON API for research-notebook.
"""

import logging
import sys
from typing import Optional

from research_notebook.cell import Cell
from research_notebook.exceptions import (
    CellNotFoundError,
    OrchestratorError,
    RerunNotSupportedError,
    SessionBusyError,
    SessionNotFoundError,
    TransitionError,
    TransitionTimeoutError,
)
from research_notebook.orchestrator import ResearchOrchestrator

logger = logging.getLogger(__name__)

# most specific first
ERROR_STATUS = [
    (SessionNotFoundError, 404),
    (CellNotFoundError, 404),
    (SessionBusyError, 409),
    (RerunNotSupportedError, 422),
    (TransitionTimeoutError, 504),
    (TransitionError, 500),
]


def status_for(error: OrchestratorError) -> int:
    for error_type, status in ERROR_STATUS:
        if isinstance(error, error_type):
            return status
    return 400


def launch_web(
    orchestrator: Optional[ResearchOrchestrator] = None,
    host: str = "127.0.0.1",
    port: int = 7860,
):
    """
    Launch the Flask web API.

    Args:
        orchestrator: Orchestrator to serve (built from the environment if None)
        host: Interface to bind
        port: Port to listen on
    """
    from flask import Flask, request, jsonify

    if orchestrator is None:
        orchestrator = ResearchOrchestrator()

    app = Flask(__name__)

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #

    def _cell_payload(cell: Optional[Cell]):
        return cell.to_dict() if cell is not None else None

    @app.errorhandler(OrchestratorError)
    def handle_orchestrator_error(error: OrchestratorError):
        status = status_for(error)
        if status >= 500:
            logger.error("Request failed: %s", error.message)
        payload = {"ok": False, "error": error.message, "type": type(error).__name__}
        cell_id = getattr(error, "cell_id", None)
        if cell_id:
            payload["cell_id"] = cell_id
        return jsonify(payload), status

    # ------------------------------------------------------------------ #
    # Routes
    # ------------------------------------------------------------------ #

    @app.route("/")
    def index():
        return jsonify({"ok": True, "service": "research-notebook"})

    @app.route("/api/sessions", methods=["GET"])
    def api_sessions():
        return jsonify({"ok": True, "sessions": orchestrator.list_sessions()})

    @app.route("/api/sessions", methods=["POST"])
    def api_session_start():
        data = request.get_json(force=True, silent=True) or {}
        goal = data.get("goal", "")
        if not goal.strip():
            return jsonify({"ok": False, "error": "goal is required"}), 400
        session = orchestrator.start(
            goal,
            session_id=data.get("session_id"),
            project_id=data.get("project_id", "default"),
        )
        return jsonify({"ok": True, "session": session.to_dict()}), 201

    @app.route("/api/sessions/<session_id>", methods=["GET"])
    def api_session(session_id: str):
        session = orchestrator.load_session(session_id)
        return jsonify({
            "ok": True,
            "session": session.to_dict(),
            "busy": orchestrator.is_busy(session_id),
        })

    @app.route("/api/sessions/<session_id>", methods=["DELETE"])
    def api_session_delete(session_id: str):
        if not orchestrator.delete_session(session_id):
            return jsonify({"ok": False, "error": "session not found"}), 404
        return jsonify({"ok": True})

    @app.route("/api/sessions/<session_id>/advance", methods=["POST"])
    def api_advance(session_id: str):
        data = request.get_json(force=True, silent=True) or {}
        cell = orchestrator.advance(session_id, data.get("cell_id"))
        return jsonify({"ok": True, "cell": _cell_payload(cell)})

    @app.route("/api/sessions/<session_id>/cells/<cell_id>/execute", methods=["POST"])
    def api_execute(session_id: str, cell_id: str):
        data = request.get_json(force=True, silent=True) or {}
        future = orchestrator.execute(session_id, cell_id)
        if not data.get("wait", False):
            return jsonify({"ok": True, "status": "started", "cell_id": cell_id}), 202
        cell = future.result()
        return jsonify({"ok": True, "cell": _cell_payload(cell)})

    @app.route("/api/sessions/<session_id>/cells/<cell_id>/rerun", methods=["POST"])
    def api_rerun(session_id: str, cell_id: str):
        data = request.get_json(force=True, silent=True) or {}
        comment = data.get("comment", "")
        if not comment.strip():
            return jsonify({"ok": False, "error": "comment is required"}), 400
        cell = orchestrator.rerun(session_id, cell_id, comment)
        return jsonify({"ok": True, "cell": _cell_payload(cell)})

    @app.route("/api/sessions/<session_id>/cancel", methods=["POST"])
    def api_cancel(session_id: str):
        return jsonify({"ok": True, "cancelled": orchestrator.cancel(session_id)})

    @app.route("/api/sessions/<session_id>/reset", methods=["POST"])
    def api_reset(session_id: str):
        return jsonify({"ok": True, "was_busy": orchestrator.reset_loading(session_id)})

    @app.route("/api/sessions/<session_id>/threads", methods=["GET"])
    def api_threads(session_id: str):
        threads = orchestrator.threads(session_id)
        return jsonify({"ok": True, "threads": [t.model_dump(mode="json") for t in threads]})

    @app.route("/api/sessions/<session_id>/cells/<cell_id>/thread", methods=["GET"])
    def api_thread_status(session_id: str, cell_id: str):
        thread = orchestrator.thread_status(session_id, cell_id)
        return jsonify({"ok": True, "thread": thread.model_dump(mode="json") if thread else None})

    # ------------------------------------------------------------------ #
    # Launch
    # ------------------------------------------------------------------ #

    # Temporarily clear sys.ps1 so Flask doesn't think we're in an
    # interactive REPL (IPython's InteractiveShell sets sys.ps1).
    _ps1 = getattr(sys, "ps1", None)
    _had_ps1 = hasattr(sys, "ps1")
    if _had_ps1:
        del sys.ps1
    try:
        app.run(host=host, port=port, debug=False, threaded=True)
    finally:
        if _had_ps1:
            sys.ps1 = _ps1
