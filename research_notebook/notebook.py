"""
ResearchSession: the persisted unit of one research run (cells + threads).
"""

import logging
from datetime import datetime, timedelta
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from research_notebook.cell import Cell, CellKind, CellStatus
from research_notebook.exceptions import CellNotFoundError
from research_notebook.threads import ExecutionThread

logger = logging.getLogger(__name__)

# Kinds that stream progress for a long time and are never reset on load.
LONG_RUNNING_KINDS = frozenset({CellKind.INITIALIZATION, CellKind.DATA_ASSESSMENT})


def new_session_id() -> str:
    return f"session_{datetime.now().strftime('%Y%m%d_%H%M%S')}_{uuid4().hex[:6]}"


class ResearchSession(BaseModel):
    """
    Ordered cells plus the execution thread table of one research run.

    Cells are append-only; the single in-place mutation besides streaming is
    ``replace_cell``, which swaps a cell by id (never by a cached index).
    """

    version: str = "1.0"
    session_id: str = Field(default_factory=new_session_id)
    project_id: str = "default"
    goal: str = ""
    cells: list[Cell] = Field(default_factory=list)
    threads: dict[str, ExecutionThread] = Field(default_factory=dict)
    active_thread_id: Optional[str] = None
    updated_at: datetime = Field(default_factory=datetime.now)

    @classmethod
    def new(cls, goal: str, session_id: Optional[str] = None, project_id: str = "default") -> "ResearchSession":
        """Create a session seeded with a completed goal cell."""
        session = cls(goal=goal, project_id=project_id)
        if session_id:
            session.session_id = session_id
        session.add_cell(
            kind=CellKind.GOAL,
            content=goal,
            status=CellStatus.COMPLETED,
            can_proceed=True,
        )
        return session

    def touch(self):
        """Update the last-updated timestamp."""
        self.updated_at = datetime.now()

    def add_cell(self, cell: Optional[Cell] = None, **kwargs) -> Cell:
        """
        Append a cell to the end of the session.

        Args:
            cell: Cell to append, or None to build one from kwargs
            **kwargs: Arguments for a new cell if cell not provided

        Returns:
            The appended cell
        """
        if cell is None:
            cell = Cell(**kwargs)
        if any(c.id == cell.id for c in self.cells):
            raise ValueError(f"Duplicate cell id: {cell.id}")
        self.cells.append(cell)
        self.touch()
        return cell

    def index_of(self, cell_id: str) -> int:
        for i, cell in enumerate(self.cells):
            if cell.id == cell_id:
                return i
        raise CellNotFoundError(cell_id)

    def get_cell(self, cell_id: str) -> Cell:
        return self.cells[self.index_of(cell_id)]

    def replace_cell(self, cell_id: str, new_cell: Cell) -> Cell:
        """
        Replace the cell with ``cell_id`` in place.

        The new cell keeps the id and the timestamp of the cell it replaces,
        so cells stay ordered by timestamp.
        """
        index = self.index_of(cell_id)
        old = self.cells[index]
        new_cell = new_cell.model_copy(update={"id": cell_id, "timestamp": old.timestamp})
        self.cells[index] = new_cell
        self.touch()
        return new_cell

    def update_cell(self, cell_id: str, **kwargs) -> Cell:
        """Update a cell's attributes and refresh its timestamp."""
        cell = self.get_cell(cell_id)
        for key, value in kwargs.items():
            if key != "id" and hasattr(cell, key):
                setattr(cell, key, value)
        cell.touch()
        self.touch()
        return cell

    def last_cell(self) -> Optional[Cell]:
        return self.cells[-1] if self.cells else None

    def cells_before(self, cell_id: str) -> list[Cell]:
        return self.cells[: self.index_of(cell_id)]

    def recover_stuck_cells(self, threshold_seconds: float, now: Optional[datetime] = None) -> list[str]:
        """
        Complete cells left active/pending for longer than the threshold.

        Initialization and data assessment cells are left alone since they
        legitimately stream for a long time. Completed goal cells are made
        proceedable. Timestamps of recovered cells are kept so that cell
        order by timestamp is preserved.

        Returns:
            Ids of the recovered cells
        """
        now = now or datetime.now()
        threshold = timedelta(seconds=threshold_seconds)
        recovered = []

        for cell in self.cells:
            if (
                cell.status in (CellStatus.ACTIVE, CellStatus.PENDING)
                and now - cell.timestamp > threshold
                and cell.kind not in LONG_RUNNING_KINDS
            ):
                logger.info("Resetting stuck cell %s from %s to completed", cell.id, cell.status.value)
                cell.status = CellStatus.COMPLETED
                cell.metadata.is_streaming = False
                recovered.append(cell.id)

            if cell.kind == CellKind.GOAL and cell.status == CellStatus.COMPLETED:
                cell.can_proceed = True

        if recovered:
            self.touch()
        return recovered

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: dict) -> "ResearchSession":
        """Create from dictionary."""
        return cls.model_validate(data)

    def snapshot(self) -> "ResearchSession":
        """Deep copy for readers that must not observe later mutations."""
        return self.model_copy(deep=True)
