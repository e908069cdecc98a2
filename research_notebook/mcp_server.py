"""
MCP server for research-notebook using FastMCP.

This module exposes the orchestrator as MCP tools:
- Sessions: start_session, get_session, list_sessions
- Transitions: advance_session, execute_cell, rerun_cell
- Control: cancel_session, reset_session_loading, list_threads
"""

from typing import Optional

from mcp.server.fastmcp import FastMCP
from pydantic import BaseModel, Field

from research_notebook.cell import Cell
from research_notebook.notebook import ResearchSession
from research_notebook.orchestrator import ResearchOrchestrator
from research_notebook.utils import truncate_text


# Pydantic models for structured output
class CellSummary(BaseModel):
    """One cell of a research session."""
    index: int = Field(description="Position of the cell in the session")
    id: str = Field(description="Unique cell identifier")
    kind: str = Field(description="Workflow stage of the cell")
    status: str = Field(description="pending, active, completed or error")
    content: str = Field(description="Cell content (possibly truncated)")
    error: Optional[str] = Field(default=None, description="Error message, if any")
    requires_user_action: bool = Field(default=False, description="Whether the cell waits for the user")


class SessionSummary(BaseModel):
    """A research session and its cells."""
    session_id: str = Field(description="Session identifier")
    goal: str = Field(description="Research goal")
    project_id: str = Field(description="Project receiving routed results")
    cell_count: int = Field(description="Number of cells")
    running_threads: int = Field(description="Execution threads still running")
    cells: list[CellSummary] = Field(default_factory=list, description="Cells in order")


# Global state
_orchestrator: Optional[ResearchOrchestrator] = None

mcp = FastMCP("research-notebook")


def get_orchestrator() -> ResearchOrchestrator:
    """Get or create the orchestrator, configured from RESEARCH_NB_* variables."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = ResearchOrchestrator()
    return _orchestrator


def set_orchestrator(orchestrator: ResearchOrchestrator) -> None:
    """Serve an existing orchestrator."""
    global _orchestrator
    _orchestrator = orchestrator


def _cell_summary(cell: Cell, index: int, max_length: int = 2000) -> CellSummary:
    return CellSummary(
        index=index,
        id=cell.id,
        kind=cell.kind.value,
        status=cell.status.value,
        content=truncate_text(cell.content, max_length),
        error=cell.error,
        requires_user_action=cell.requires_user_action and not cell.can_proceed,
    )


def _session_summary(session: ResearchSession, include_cells: bool = True) -> SessionSummary:
    return SessionSummary(
        session_id=session.session_id,
        goal=session.goal,
        project_id=session.project_id,
        cell_count=len(session.cells),
        running_threads=sum(1 for t in session.threads.values() if t.status.value == "running"),
        cells=[_cell_summary(c, i) for i, c in enumerate(session.cells)] if include_cells else [],
    )


def _index_of(session_id: str, cell: Optional[Cell]) -> int:
    if cell is None:
        return -1
    session = get_orchestrator().get_session(session_id)
    return next((i for i, c in enumerate(session.cells) if c.id == cell.id), -1)


# =============================================================================
# Sessions
# =============================================================================

@mcp.tool()
def start_session(goal: str, project_id: str = "default") -> SessionSummary:
    """Start a research session for a goal.

    Args:
        goal: The research goal in plain language
        project_id: Project whose stores receive references, data and results

    Returns:
        The new session with its goal cell
    """
    session = get_orchestrator().start(goal, project_id=project_id)
    return _session_summary(session)


@mcp.tool()
def get_session(session_id: str) -> SessionSummary:
    """Get a session and its cells (loads it from disk if needed)."""
    return _session_summary(get_orchestrator().load_session(session_id))


@mcp.tool()
def list_sessions() -> list[dict]:
    """List saved sessions, most recently updated first."""
    return get_orchestrator().list_sessions()


# =============================================================================
# Transitions
# =============================================================================

@mcp.tool()
def advance_session(session_id: str, cell_id: Optional[str] = None) -> Optional[CellSummary]:
    """Run the next step of the research workflow.

    Args:
        session_id: Session to advance
        cell_id: Advance from this cell instead of the last one

    Returns:
        The produced cell, or None when the workflow is finished or waiting
    """
    cell = get_orchestrator().advance(session_id, cell_id)
    if cell is None:
        return None
    return _cell_summary(cell, _index_of(session_id, cell))


@mcp.tool()
def execute_cell(session_id: str, cell_id: str, wait: bool = True) -> dict:
    """Execute a code cell.

    Args:
        session_id: Session owning the cell
        cell_id: Code cell to execute
        wait: Block until the result cell exists

    Returns:
        Dict with the status and, when waiting, the result cell
    """
    future = get_orchestrator().execute(session_id, cell_id)
    if not wait:
        return {"status": "started", "cell_id": cell_id}
    cell = future.result()
    return {
        "status": "completed",
        "cell": _cell_summary(cell, _index_of(session_id, cell)).model_dump() if cell else None,
    }


@mcp.tool()
def rerun_cell(session_id: str, cell_id: str, comment: str) -> CellSummary:
    """Regenerate a cell in place, taking the comment into account.

    The cell keeps its id and position in the session.
    """
    cell = get_orchestrator().rerun(session_id, cell_id, comment)
    return _cell_summary(cell, _index_of(session_id, cell))


# =============================================================================
# Control
# =============================================================================

@mcp.tool()
def cancel_session(session_id: str) -> bool:
    """Cancel the step currently running in a session."""
    return get_orchestrator().cancel(session_id)


@mcp.tool()
def reset_session_loading(session_id: str) -> bool:
    """Force-reset a session whose loading state is stuck."""
    return get_orchestrator().reset_loading(session_id)


@mcp.tool()
def list_threads(session_id: str) -> list[dict]:
    """List the execution threads of a session, oldest first."""
    return [t.model_dump(mode="json") for t in get_orchestrator().threads(session_id)]


# =============================================================================
# Module Reset (for testing)
# =============================================================================

def _reset_orchestrator() -> None:
    """Reset the global orchestrator state. Useful for testing."""
    global _orchestrator
    _orchestrator = None


if __name__ == "__main__":
    mcp.run()
