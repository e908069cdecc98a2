"""
research-notebook: an LLM-driven research workflow with tracked code execution.

This package provides a research orchestrator where:
- A goal is expanded step by step into dependent cells (references, data,
  analysis plan, code, results, write-up)
- Code cells run in a persistent IPython kernel as tracked execution threads
- Sessions are persisted after every change and resume after a crash
"""

from research_notebook.cell import Cell, CellKind, CellStatus
from research_notebook.config import OrchestratorConfig
from research_notebook.kernel import ExecutionReport, ResearchKernel
from research_notebook.notebook import ResearchSession
from research_notebook.orchestrator import ResearchOrchestrator
from research_notebook.router import DataRouter, DataRouterResult
from research_notebook.session import SessionManager
from research_notebook.threads import ExecutionThread, ExecutionThreadTracker, ThreadStatus

__version__ = "0.1.0"
__all__ = [
    "Cell",
    "CellKind",
    "CellStatus",
    "OrchestratorConfig",
    "ExecutionReport",
    "ResearchKernel",
    "ResearchSession",
    "ResearchOrchestrator",
    "DataRouter",
    "DataRouterResult",
    "SessionManager",
    "ExecutionThread",
    "ExecutionThreadTracker",
    "ThreadStatus",
]
