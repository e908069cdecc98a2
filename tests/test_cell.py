"""
Tests for the Cell model and its kind-specific metadata.
"""

import pytest
from pydantic import ValidationError

from research_notebook.cell import (
    Cell,
    CellKind,
    CellStatus,
    CodeMetadata,
    GoalMetadata,
    InitializationMetadata,
    Reference,
    ResultMetadata,
    new_cell_id,
)


class TestCellDefaults:
    """Default values and generated fields."""

    def test_id_is_generated_with_kind_prefix(self):
        cell = Cell(kind=CellKind.ABSTRACT)
        assert cell.id.startswith("abstract_")

    def test_ids_are_unique(self):
        ids = {new_cell_id(CellKind.CODE) for _ in range(50)}
        assert len(ids) == 50

    def test_missing_metadata_defaults_to_kind_shape(self):
        cell = Cell(kind=CellKind.INITIALIZATION)
        assert isinstance(cell.metadata, InitializationMetadata)
        assert cell.metadata.references == []
        assert cell.metadata.is_streaming is False

    def test_defaults(self):
        cell = Cell(kind=CellKind.GOAL, content="Analyze X")
        assert cell.status == CellStatus.PENDING
        assert cell.can_proceed is True
        assert cell.requires_user_action is False
        assert cell.routed is False
        assert cell.error is None

    def test_kind_accepts_string(self):
        cell = Cell(kind="result")
        assert cell.kind == CellKind.RESULT
        assert isinstance(cell.metadata, ResultMetadata)


class TestCellMetadata:
    """The metadata shape must match the cell kind."""

    def test_mismatched_metadata_rejected(self):
        with pytest.raises(ValidationError):
            Cell(kind=CellKind.CODE, metadata=GoalMetadata())

    def test_metadata_dict_gets_kind_of_cell(self):
        cell = Cell(kind=CellKind.CODE, metadata={"step_order": 2, "total_steps": 3})
        assert isinstance(cell.metadata, CodeMetadata)
        assert cell.metadata.step_order == 2

    def test_analysis_execution_uses_code_metadata(self):
        cell = Cell(kind=CellKind.ANALYSIS_EXECUTION)
        assert isinstance(cell.metadata, CodeMetadata)
        assert cell.metadata.kind == "analysis_execution"
        assert cell.is_code

    def test_references_validated(self):
        cell = Cell(
            kind=CellKind.INITIALIZATION,
            metadata={"references": [{"title": "Paper", "authors": ["A", "B"]}]},
        )
        ref = cell.metadata.references[0]
        assert isinstance(ref, Reference)
        assert ref.authors == ["A", "B"]
        assert ref.id.startswith("ref_")


class TestCellSerialization:
    """to_dict / from_dict."""

    def test_round_trip(self):
        cell = Cell(
            kind=CellKind.RESULT,
            content="Execution completed",
            status=CellStatus.COMPLETED,
            metadata={"execution_results": [{"success": True}], "step_order": 1, "total_steps": 2},
        )
        restored = Cell.from_dict(cell.to_dict())
        assert restored == cell

    def test_to_dict_is_json_ready(self):
        data = Cell(kind=CellKind.GOAL).to_dict()
        assert isinstance(data["timestamp"], str)
        assert data["kind"] == "goal"
        assert data["metadata"]["kind"] == "goal"

    def test_label(self):
        assert Cell(kind=CellKind.WRITEUP).label == "Research Write-up"

    def test_touch_moves_timestamp_forward(self):
        cell = Cell(kind=CellKind.GOAL)
        before = cell.timestamp
        cell.touch()
        assert cell.timestamp >= before
