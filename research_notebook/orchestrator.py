"""
ResearchOrchestrator: the operator-facing facade over sessions and transitions.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional

from research_notebook.cell import Cell, CellKind
from research_notebook.config import OrchestratorConfig
from research_notebook.engine import CellTransitionEngine, TransitionContext
from research_notebook.exceptions import (
    OrchestratorError,
    PersistenceError,
    RerunNotSupportedError,
    SessionBusyError,
    SessionNotFoundError,
    TransitionError,
    TransitionTimeoutError,
)
from research_notebook.kernel import CodeExecutor, ResearchKernel
from research_notebook.llm import CommandLineModel, LanguageModel
from research_notebook.notebook import ResearchSession
from research_notebook.rerun import RerunHandler
from research_notebook.router import DataRouter
from research_notebook.runtime import SessionRuntime, SingleFlight
from research_notebook.session import SessionManager
from research_notebook.stores import ProjectStores
from research_notebook.threads import ExecutionThread

logger = logging.getLogger(__name__)

Listener = Callable[[str, str, str], None]


@dataclass
class _LiveSession:
    runtime: SessionRuntime
    engine: CellTransitionEngine
    rerun: RerunHandler
    # one worker per session: a hung call only ever delays its own session
    pool: ThreadPoolExecutor


class ResearchOrchestrator:
    """
    Runs research sessions: one runtime per live session, one in-flight
    transition per session, sessions independent of each other.

    Persistence failures are logged and never fail a transition; the
    in-memory session stays authoritative.
    """

    def __init__(
        self,
        config: Optional[OrchestratorConfig] = None,
        llm: Optional[LanguageModel] = None,
        executor: Optional[CodeExecutor] = None,
        session_manager: Optional[SessionManager] = None,
        stores_factory: Optional[Callable[[str], ProjectStores]] = None,
        listener: Optional[Listener] = None,
    ):
        self.config = config or OrchestratorConfig.from_env()
        self.llm = llm or CommandLineModel(self.config.llm_command, timeout=self.config.llm_timeout)
        self._executor = executor
        self.session_manager = session_manager or SessionManager(self.config.sessions_dir)
        self.stores_factory = stores_factory or self._directory_stores
        self.listener = listener

        # transition bodies run on a per-session worker; this pool only runs
        # background execute() jobs
        self._background = ThreadPoolExecutor(
            max_workers=self.config.max_workers, thread_name_prefix="research-execute"
        )
        self._sessions: dict[str, _LiveSession] = {}
        self._stores: dict[str, ProjectStores] = {}
        self._lock = threading.RLock()

    # ------------------------------------------------------------------ #
    # Collaborators
    # ------------------------------------------------------------------ #

    @property
    def executor(self) -> CodeExecutor:
        """Code executor; the IPython kernel is started on first use."""
        if self._executor is None:
            self._executor = ResearchKernel()
        return self._executor

    def _directory_stores(self, project_id: str) -> ProjectStores:
        return ProjectStores.in_directory(Path(self.config.projects_dir) / project_id)

    def stores_for(self, project_id: str) -> ProjectStores:
        with self._lock:
            if project_id not in self._stores:
                self._stores[project_id] = self.stores_factory(project_id)
            return self._stores[project_id]

    def _persist(self, session: ResearchSession):
        try:
            self.session_manager.save(session.session_id, session.to_dict())
        except PersistenceError:
            logger.exception("Could not persist session %s", session.session_id)

    def _register(self, session: ResearchSession) -> _LiveSession:
        stores = self.stores_for(session.project_id)
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"research-{session.session_id}")
        runtime = SessionRuntime(
            session,
            SingleFlight(session.session_id, pool),
            persist=self._persist,
            stream_delay_ms=self.config.stream_delay_ms,
            listener=self.listener,
        )
        engine = CellTransitionEngine(
            self.llm,
            _LazyExecutor(self),
            DataRouter(stores, project_id=session.project_id),
            catalog=stores.catalog,
            stream_delay_ms=self.config.stream_delay_ms,
        )
        live = _LiveSession(runtime=runtime, engine=engine, rerun=RerunHandler(engine), pool=pool)
        self._sessions[session.session_id] = live
        return live

    # ------------------------------------------------------------------ #
    # Sessions
    # ------------------------------------------------------------------ #

    def start(self, goal: str, session_id: Optional[str] = None, project_id: str = "default") -> ResearchSession:
        """Create a session seeded with a completed goal cell."""
        if not goal or not goal.strip():
            raise OrchestratorError("Research goal must not be empty")
        session = ResearchSession.new(goal.strip(), session_id=session_id, project_id=project_id)
        with self._lock:
            if session.session_id in self._sessions or self.session_manager.exists(session.session_id):
                raise OrchestratorError(f"Session already exists: {session.session_id}")
            live = self._register(session)
        live.runtime.save()
        logger.info("Started session %s", session.session_id)
        return live.runtime.snapshot()

    def _live(self, session_id: str) -> _LiveSession:
        with self._lock:
            live = self._sessions.get(session_id)
        if live is None:
            self.load_session(session_id)
            with self._lock:
                live = self._sessions[session_id]
        return live

    def load_session(self, session_id: str) -> ResearchSession:
        """
        Return the session, loading it from disk when it is not live.

        Stuck cells are recovered and running threads without a live job are
        paused. A live session is only recovered while no transition is in
        flight.
        """
        with self._lock:
            live = self._sessions.get(session_id)
            if live is None:
                try:
                    data = self.session_manager.load(session_id)
                except PersistenceError as e:
                    raise SessionNotFoundError(session_id) from e
                if data is None:
                    raise SessionNotFoundError(session_id)
                live = self._register(ResearchSession.from_dict(data))
                logger.info("Loaded session %s from disk", session_id)

        runtime = live.runtime
        if not runtime.flight.busy:
            with runtime.lock:
                recovered = runtime.session.recover_stuck_cells(self.config.stuck_cell_threshold)
                paused = runtime.tracker.pause_orphans()
                if recovered or paused:
                    runtime.save()
        return runtime.snapshot()

    def get_session(self, session_id: str) -> ResearchSession:
        """Snapshot of a session without any recovery."""
        return self._live(session_id).runtime.snapshot()

    def list_sessions(self) -> list[dict[str, Any]]:
        return self.session_manager.list_sessions()

    def delete_session(self, session_id: str) -> bool:
        with self._lock:
            live = self._sessions.pop(session_id, None)
        if live is not None:
            live.runtime.flight.cancel("session deleted")
            live.pool.shutdown(wait=False)
        if isinstance(self._executor, ResearchKernel):
            self._executor.reset_session(session_id)
        return self.session_manager.delete_session(session_id)

    # ------------------------------------------------------------------ #
    # Transitions
    # ------------------------------------------------------------------ #

    def _timeout_for(self, cell: Cell) -> float:
        if cell.is_code or cell.kind == CellKind.RESULT:
            return self.config.execution_timeout
        return self.config.transition_timeout

    def _run(self, live: _LiveSession, fn: Callable, timeout: float):
        try:
            return live.runtime.flight.run(fn, timeout)
        except TransitionTimeoutError:
            live.runtime.tracker.cancel_running("timed out")
            raise

    def advance(self, session_id: str, cell_id: Optional[str] = None) -> Optional[Cell]:
        """
        Run one transition from ``cell_id`` (default: the last cell).

        Returns:
            The produced cell, or None when nothing follows

        Raises:
            SessionBusyError: If a transition is already in flight
            TransitionError: If a collaborator failed or the step timed out
        """
        live = self._live(session_id)
        runtime = live.runtime
        if cell_id is None:
            with runtime.lock:
                last = runtime.session.last_cell()
            if last is None:
                return None
            cell_id = last.id
        cell = runtime.get_cell(cell_id)

        def body(token):
            ctx = TransitionContext(runtime, token)
            return live.engine.next(ctx, runtime.get_cell(cell_id))

        return self._run(live, body, self._timeout_for(cell))

    def run_until_blocked(self, session_id: str, max_steps: int = 50) -> list[Cell]:
        """Advance repeatedly until no cell is produced; returns the produced cells."""
        produced = []
        for _ in range(max_steps):
            cell = self.advance(session_id)
            if cell is None:
                break
            produced.append(cell)
        return produced

    def execute(self, session_id: str, cell_id: str) -> "Future[Optional[Cell]]":
        """
        Execute a code cell in the background.

        Returns:
            Future resolving to the result cell
        """
        live = self._live(session_id)
        cell = live.runtime.get_cell(cell_id)
        if not cell.is_code:
            raise TransitionError(f"Cell {cell_id} is not a code cell", cell_id=cell_id)
        if live.runtime.flight.busy:
            raise SessionBusyError(session_id)
        future = self._background.submit(self.advance, session_id, cell_id)
        future.add_done_callback(_log_background_failure)
        return future

    def rerun(self, session_id: str, cell_id: str, comment: str) -> Cell:
        """Regenerate a cell in place with the user's comment."""
        live = self._live(session_id)
        runtime = live.runtime
        cell = runtime.get_cell(cell_id)
        if not live.rerun.supports(cell.kind):
            raise RerunNotSupportedError(cell.kind.value)

        def body(token):
            ctx = TransitionContext(runtime, token)
            return live.rerun.rerun(ctx, runtime.get_cell(cell_id), comment)

        return self._run(live, body, self._timeout_for(cell))

    def cancel(self, session_id: str) -> bool:
        """Cancel the in-flight transition and mark running threads cancelled."""
        live = self._live(session_id)
        cancelled = live.runtime.flight.cancel("cancelled")
        threads = live.runtime.tracker.cancel_running("cancelled")
        if cancelled or threads:
            logger.info("Cancelled session %s (%d thread(s))", session_id, len(threads))
        return cancelled or bool(threads)

    def reset_loading(self, session_id: str) -> bool:
        """Force-release a wedged single-flight guard."""
        live = self._live(session_id)
        was_busy = live.runtime.flight.reset()
        live.runtime.tracker.cancel_running("reset by operator")
        logger.warning("Loading state of session %s reset (was busy: %s)", session_id, was_busy)
        return was_busy

    def is_busy(self, session_id: str) -> bool:
        return self._live(session_id).runtime.flight.busy

    # ------------------------------------------------------------------ #
    # Threads
    # ------------------------------------------------------------------ #

    def threads(self, session_id: str) -> list[ExecutionThread]:
        runtime = self._live(session_id).runtime
        with runtime.lock:
            threads = [t.model_copy(deep=True) for t in runtime.session.threads.values()]
        return sorted(threads, key=lambda t: t.start_time)

    def thread_status(self, session_id: str, cell_id: str) -> Optional[ExecutionThread]:
        return self._live(session_id).runtime.tracker.status_of(cell_id)

    def wait_for_thread(
        self, session_id: str, thread_id: str, timeout: Optional[float] = None
    ) -> Optional[ExecutionThread]:
        return self._live(session_id).runtime.tracker.wait(thread_id, timeout)

    # ------------------------------------------------------------------ #
    # Kernel checkpoints
    # ------------------------------------------------------------------ #

    def _kernel(self) -> ResearchKernel:
        if not isinstance(self.executor, ResearchKernel):
            raise OrchestratorError("Checkpoints need the IPython kernel executor")
        return self.executor

    def save_checkpoint(self, session_id: str) -> Path:
        self._live(session_id)
        return self.session_manager.save_checkpoint(self._kernel(), session_id)

    def restore_checkpoint(self, session_id: str) -> Optional[dict[str, Any]]:
        self._live(session_id)
        return self.session_manager.load_checkpoint(self._kernel(), session_id)

    def close(self):
        """Stop accepting work; running transitions are left to finish."""
        self._background.shutdown(wait=False)
        with self._lock:
            sessions = list(self._sessions.values())
        for live in sessions:
            live.pool.shutdown(wait=False)


def _log_background_failure(future: Future):
    if future.cancelled():
        return
    error = future.exception()
    if error is not None:
        logger.warning("Background execution failed: %s", error)


class _LazyExecutor:
    """Defers kernel start-up until a session actually runs code."""

    def __init__(self, orchestrator: ResearchOrchestrator):
        self._orchestrator = orchestrator

    def execute(self, code: str, session_id: str):
        return self._orchestrator.executor.execute(code, session_id)
