"""
DataRouter: forwards the structured output of a cell to its downstream stores.
"""

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pydantic import BaseModel

from research_notebook.cell import Cell, CellKind
from research_notebook.stores import EntityStore, ProjectStores

logger = logging.getLogger(__name__)

# metadata field -> store attribute on ProjectStores
ROUTED_CATEGORIES = ("references", "data_files", "visualizations", "variables", "libraries")

WRITEUP_PREFIX = "research-writeup"


def writeup_filename(cell: Cell) -> str:
    """One file per write-up cell and revision; nothing is overwritten."""
    digest = hashlib.sha1(cell.content.encode("utf-8")).hexdigest()[:8]
    return f"{WRITEUP_PREFIX}-{cell.id}-{digest}.md"


@dataclass
class DataRouterResult:
    """
    Outcome of routing one cell.

    ``routed_items`` counts the items *attempted* per category; an item
    that failed is still counted, and listed in ``failures``.
    """
    success: bool = True
    message: str = "Data routing completed"
    routed_items: dict[str, int] = field(default_factory=dict)
    failures: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "success": self.success,
            "message": self.message,
            "routed_items": dict(self.routed_items),
            "failures": list(self.failures),
        }


class DataRouter:
    """Dispatches each recognized entity of a cell to the store that owns it."""

    def __init__(self, stores: ProjectStores, project_id: str = "default"):
        self.stores = stores
        self.project_id = project_id

    def _payload(self, cell: Cell, item: Any) -> dict[str, Any]:
        data = item.model_dump(mode="json") if isinstance(item, BaseModel) else dict(item)
        data["project_id"] = self.project_id
        data["source_cell_id"] = cell.id
        data["added_at"] = datetime.now().isoformat()
        return data

    def _dispatch(self, store: EntityStore, category: str, payload: dict, result: DataRouterResult):
        try:
            store.append(payload)
        except Exception as e:
            name = payload.get("name") or payload.get("title") or payload.get("filename") or "item"
            logger.error("Failed to route %s '%s': %s", category, name, e)
            result.failures.append(f"{category}: {name}: {e}")

    def route(self, cell: Cell) -> DataRouterResult:
        """
        Route every entity carried by ``cell``.

        A failing item is logged and counted; it never stops the remaining
        items or categories.
        """
        result = DataRouterResult()

        for category in ROUTED_CATEGORIES:
            items = getattr(cell.metadata, category, None) or []
            if not items:
                continue
            result.routed_items[category] = len(items)
            store = getattr(self.stores, category)
            for item in items:
                self._dispatch(store, category, self._payload(cell, item), result)

        if cell.kind == CellKind.WRITEUP and cell.content.strip():
            result.routed_items["write_ups"] = 1
            payload = self._payload(cell, {
                "filename": writeup_filename(cell),
                "content": cell.content,
                "file_type": "write_up",
            })
            self._dispatch(self.stores.write_ups, "write_ups", payload, result)

        if result.failures:
            result.success = False
            result.message = f"Data routing finished with {len(result.failures)} failure(s)"
            logger.warning("Routing of cell %s: %s", cell.id, result.message)
        elif result.routed_items:
            logger.info("Routed cell %s: %s", cell.id, result.routed_items)

        return result
