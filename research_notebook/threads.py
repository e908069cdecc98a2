"""
Execution threads: bookkeeping for code runs, one running thread per cell.
"""

import logging
import threading
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from research_notebook.notebook import ResearchSession

logger = logging.getLogger(__name__)


class ThreadStatus(str, Enum):
    """Status of an execution thread."""
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    PAUSED = "paused"


class ThreadProgress(BaseModel):
    current_step: int = 0
    total_steps: int = 1
    step_results: list[dict[str, Any]] = Field(default_factory=list)


def new_thread_id() -> str:
    return f"thread_{datetime.now().strftime('%Y%m%d%H%M%S%f')}_{uuid4().hex[:9]}"


class ExecutionThread(BaseModel):
    """A tracked unit of execution for one code-running cell (not an OS thread)."""
    id: str = Field(default_factory=new_thread_id)
    cell_id: str
    status: ThreadStatus = ThreadStatus.RUNNING
    start_time: datetime = Field(default_factory=datetime.now)
    end_time: Optional[datetime] = None
    progress: ThreadProgress = Field(default_factory=ThreadProgress)
    error: Optional[str] = None


class ExecutionThreadTracker:
    """
    Registry of the execution threads of one session.

    The thread table lives on the session (so it is persisted with it); the
    tracker adds locking, the at-most-one-running-per-cell rule, and a
    completion event per thread so callers can wait instead of polling.
    """

    def __init__(
        self,
        session: "ResearchSession",
        lock: Optional[threading.RLock] = None,
        on_change: Optional[Callable[[], None]] = None,
    ):
        self.session = session
        self._lock = lock or threading.RLock()
        self._events: dict[str, threading.Event] = {}
        self._on_change = on_change

    def _changed(self):
        self.session.touch()
        if self._on_change is not None:
            self._on_change()

    def create(self, cell_id: str, total_steps: int = 1) -> Optional[str]:
        """
        Start tracking a run of ``cell_id``.

        Returns the new thread id, or None when a thread for the cell is
        already running.
        """
        with self._lock:
            for thread in self.session.threads.values():
                if thread.cell_id == cell_id and thread.status == ThreadStatus.RUNNING:
                    logger.warning(
                        "Execution already running for cell %s (thread %s)", cell_id, thread.id
                    )
                    return None

            thread = ExecutionThread(
                cell_id=cell_id,
                progress=ThreadProgress(total_steps=max(1, total_steps)),
            )
            self.session.threads[thread.id] = thread
            self.session.active_thread_id = thread.id
            self._events[thread.id] = threading.Event()
            logger.debug("Created thread %s for cell %s", thread.id, cell_id)
            self._changed()
            return thread.id

    def update(self, thread_id: str, **partial):
        """Apply a partial update; ``progress`` may be given as a dict of fields."""
        with self._lock:
            thread = self.session.threads.get(thread_id)
            if thread is None:
                logger.warning("Update for unknown thread %s ignored", thread_id)
                return
            progress = partial.pop("progress", None)
            if progress is not None:
                if isinstance(progress, ThreadProgress):
                    progress = progress.model_dump()
                thread.progress = thread.progress.model_copy(update=progress)
            for key, value in partial.items():
                if key in ("id", "cell_id"):
                    continue
                if hasattr(thread, key):
                    setattr(thread, key, value)
            self._changed()

    def complete(self, thread_id: str, results: list[dict[str, Any]], error: Optional[str] = None):
        """Finish a thread as completed, or as error when ``error`` is given."""
        with self._lock:
            thread = self.session.threads.get(thread_id)
            if thread is None:
                logger.warning("Completion for unknown thread %s ignored", thread_id)
                return
            thread.status = ThreadStatus.ERROR if error else ThreadStatus.COMPLETED
            thread.end_time = datetime.now()
            thread.progress = thread.progress.model_copy(update={"step_results": list(results)})
            thread.error = error
            if self.session.active_thread_id == thread_id:
                self.session.active_thread_id = None
            event = self._events.get(thread_id)
            self._changed()

        if event is not None:
            event.set()
        logger.info("Thread %s finished with status %s", thread_id, thread.status.value)

    def get(self, thread_id: str) -> Optional[ExecutionThread]:
        with self._lock:
            thread = self.session.threads.get(thread_id)
            return thread.model_copy(deep=True) if thread else None

    def status_of(self, cell_id: str) -> Optional[ExecutionThread]:
        """Most recent thread that ran ``cell_id``."""
        with self._lock:
            candidates = [t for t in self.session.threads.values() if t.cell_id == cell_id]
            if not candidates:
                return None
            latest = max(candidates, key=lambda t: t.start_time)
            return latest.model_copy(deep=True)

    def running(self) -> list[ExecutionThread]:
        with self._lock:
            return [
                t.model_copy(deep=True)
                for t in self.session.threads.values()
                if t.status == ThreadStatus.RUNNING
            ]

    def any_running(self) -> bool:
        with self._lock:
            return any(t.status == ThreadStatus.RUNNING for t in self.session.threads.values())

    def wait(self, thread_id: str, timeout: Optional[float] = None) -> Optional[ExecutionThread]:
        """Block until the thread leaves the running state (or timeout)."""
        with self._lock:
            event = self._events.get(thread_id)
        if event is not None:
            event.wait(timeout)
        return self.get(thread_id)

    def cancel_running(self, reason: str = "cancelled") -> list[str]:
        """Mark every running thread as error(reason); returns their ids."""
        cancelled = [t.id for t in self.running()]
        for thread_id in cancelled:
            self.complete(thread_id, [], error=reason)
        return cancelled

    def pause_orphans(self) -> list[str]:
        """
        Pause running threads that have no live job in this process.

        Used after loading a session from disk: the run that owned the
        thread died with the previous process.
        """
        paused = []
        with self._lock:
            for thread in self.session.threads.values():
                if thread.status == ThreadStatus.RUNNING and thread.id not in self._events:
                    thread.status = ThreadStatus.PAUSED
                    thread.error = "interrupted before completion"
                    paused.append(thread.id)
            if self.session.active_thread_id in paused:
                self.session.active_thread_id = None
            if paused:
                logger.info("Paused %d orphaned thread(s)", len(paused))
                self._changed()
        return paused
