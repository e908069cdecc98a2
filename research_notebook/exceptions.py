"""
Exception hierarchy for the research orchestrator.

Callers (CLI, web API, MCP tools) catch OrchestratorError and turn it into a
user-visible message; nothing here is fatal to the process.
"""

from typing import Optional


class OrchestratorError(Exception):
    """Base exception for all orchestrator errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class SessionNotFoundError(OrchestratorError):
    """Raised when a session id has no in-memory or persisted state."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class CellNotFoundError(OrchestratorError):
    """Raised when a cell id is not part of the session."""

    def __init__(self, cell_id: str):
        self.cell_id = cell_id
        super().__init__(f"Cell not found: {cell_id}")


class SessionBusyError(OrchestratorError):
    """Raised when a transition is already in flight for the session."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session {session_id} is already processing, please wait")


class TransitionError(OrchestratorError):
    """Raised when a transition fails; the offending cell is marked as error."""

    def __init__(self, message: str, cell_id: Optional[str] = None):
        self.cell_id = cell_id
        super().__init__(message)


class TransitionTimeoutError(TransitionError):
    """Raised when a transition holds the single-flight guard too long."""


class TransitionCancelledError(TransitionError):
    """Raised inside a transition whose cancellation token was set."""


class CollaboratorError(OrchestratorError):
    """Raised when the language model or code executor fails."""

    def __init__(
        self,
        message: str,
        collaborator: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        self.collaborator = collaborator
        self.original_error = original_error
        super().__init__(message)


class RerunNotSupportedError(OrchestratorError):
    """Raised when a cell kind cannot be regenerated with a comment."""

    def __init__(self, kind: str):
        self.kind = kind
        super().__init__(f"Comment functionality not available for {kind} cells")


class PersistenceError(OrchestratorError):
    """Raised when a session snapshot cannot be written or read."""
