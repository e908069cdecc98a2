"""
Per-session runtime: state lock, single-flight guard and cancellation.
"""

import logging
import threading
from concurrent.futures import Executor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Callable, Optional, TypeVar

from research_notebook.cell import Cell
from research_notebook.exceptions import (
    SessionBusyError,
    TransitionCancelledError,
    TransitionTimeoutError,
)
from research_notebook.notebook import ResearchSession
from research_notebook.streaming import StreamingReporter
from research_notebook.threads import ExecutionThreadTracker

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """Set when an in-flight transition must stop; checked before every commit."""

    def __init__(self):
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled"):
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; returns True early if cancelled."""
        return self._event.wait(seconds)

    def raise_if_cancelled(self):
        if self.cancelled:
            raise TransitionCancelledError(f"Transition {self.reason}")


class SingleFlight:
    """
    Allows one transition at a time for a session.

    The transition body runs on a worker thread and the caller waits at most
    ``timeout`` seconds. On timeout the guard is released anyway and the
    token is cancelled, so a late result from the hung call is discarded at
    commit time instead of being applied.
    """

    def __init__(self, session_id: str, pool: Executor):
        self.session_id = session_id
        self._pool = pool
        self._lock = threading.Lock()
        self._guard = threading.Lock()
        self._generation = 0
        self.token: Optional[CancellationToken] = None

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def _release(self, generation: int):
        with self._guard:
            if self._generation == generation and self._lock.locked():
                self._generation += 1
                self.token = None
                self._lock.release()

    def run(self, fn: Callable[[CancellationToken], T], timeout: Optional[float]) -> T:
        """
        Run ``fn(token)`` under the guard.

        Raises:
            SessionBusyError: If a transition is already in flight
            TransitionTimeoutError: If ``fn`` does not return within timeout
        """
        if not self._lock.acquire(blocking=False):
            raise SessionBusyError(self.session_id)

        with self._guard:
            generation = self._generation
            token = CancellationToken()
            self.token = token

        try:
            future = self._pool.submit(fn, token)
            try:
                return future.result(timeout=timeout)
            except FutureTimeoutError:
                token.cancel("timed out")
                logger.warning(
                    "Processing timeout for session %s after %ss - resetting loading state",
                    self.session_id, timeout,
                )
                raise TransitionTimeoutError(
                    f"Processing timeout after {timeout:g}s; the step was abandoned"
                ) from None
        finally:
            self._release(generation)

    def cancel(self, reason: str = "cancelled") -> bool:
        """Cancel the in-flight transition, if any."""
        with self._guard:
            token = self.token
        if token is None:
            return False
        token.cancel(reason)
        return True

    def reset(self) -> bool:
        """Force-release the guard (operator reset of a wedged loading state)."""
        with self._guard:
            generation = self._generation
            token = self.token
        if token is not None:
            token.cancel("reset by operator")
        was_busy = self.busy
        self._release(generation)
        return was_busy


class SessionRuntime:
    """
    Live state of one session: the session model plus its locks and helpers.

    Every mutation goes through this class under ``lock``; reads return deep
    copies so renderers never see a half-applied change.
    """

    def __init__(
        self,
        session: ResearchSession,
        flight: SingleFlight,
        persist: Callable[[ResearchSession], None],
        stream_delay_ms: int = 100,
        listener: Optional[Callable[[str, str, str], None]] = None,
    ):
        self.session = session
        self.flight = flight
        self.lock = threading.RLock()
        self._persist = persist
        self.tracker = ExecutionThreadTracker(session, lock=self.lock, on_change=self.save)
        self.reporter = StreamingReporter(
            self,
            default_delay_ms=stream_delay_ms,
            listener=(lambda cell_id, line: listener(session.session_id, cell_id, line)) if listener else None,
        )

    @property
    def session_id(self) -> str:
        return self.session.session_id

    @staticmethod
    def _check(token: Optional[CancellationToken]):
        if token is not None:
            token.raise_if_cancelled()

    def save(self):
        with self.lock:
            self._persist(self.session)

    def snapshot(self) -> ResearchSession:
        with self.lock:
            return self.session.snapshot()

    def get_cell(self, cell_id: str) -> Cell:
        with self.lock:
            return self.session.get_cell(cell_id).model_copy(deep=True)

    def cells_before(self, cell_id: str) -> list[Cell]:
        with self.lock:
            return [c.model_copy(deep=True) for c in self.session.cells_before(cell_id)]

    def all_cells(self) -> list[Cell]:
        with self.lock:
            return [c.model_copy(deep=True) for c in self.session.cells]

    def append_cell(self, cell: Cell, token: Optional[CancellationToken] = None) -> Cell:
        with self.lock:
            self._check(token)
            self.session.add_cell(cell)
            self.save()
            return cell.model_copy(deep=True)

    def replace_cell(self, cell_id: str, cell: Cell, token: Optional[CancellationToken] = None) -> Cell:
        with self.lock:
            self._check(token)
            replaced = self.session.replace_cell(cell_id, cell)
            self.save()
            return replaced.model_copy(deep=True)

    def update_cell(self, cell_id: str, token: Optional[CancellationToken] = None, **changes) -> Cell:
        with self.lock:
            self._check(token)
            cell = self.session.update_cell(cell_id, **changes)
            self.save()
            return cell.model_copy(deep=True)

    def mutate_cell(
        self,
        cell_id: str,
        fn: Callable[[Cell], None],
        token: Optional[CancellationToken] = None,
        persist: bool = False,
        touch: bool = True,
    ) -> None:
        """Apply ``fn`` to the live cell; ``touch=False`` keeps its timestamp."""
        with self.lock:
            self._check(token)
            cell = self.session.get_cell(cell_id)
            fn(cell)
            if touch:
                cell.touch()
            self.session.touch()
            if persist:
                self.save()
