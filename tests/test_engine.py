"""
Tests for CellTransitionEngine: the workflow state machine and its side effects.
"""

import pytest

from research_notebook.cell import CellKind, CellStatus
from research_notebook.engine import PROGRESS_LINES, CellTransitionEngine
from research_notebook.exceptions import CollaboratorError, TransitionError
from research_notebook.kernel import ExecutionReport
from research_notebook.notebook import ResearchSession
from research_notebook.session import SessionManager
from research_notebook.threads import ThreadStatus

from conftest import FakeExecutor, FakeLLM


class VariablesExecutor(FakeExecutor):
    """Successful executor reporting the given kernel variables."""

    def __init__(self, variables):
        super().__init__()
        self.variables = variables

    def execute(self, code, session_id):
        self.calls.append((code, session_id))
        return ExecutionReport(success=True, stdout="ok\n", logs=["ok"], variables=self.variables)


def _kinds(cells):
    return [c.kind for c in cells]


class TestWorkflow:
    """Full runs from the goal cell."""

    def test_full_run_without_data(self, orchestrator, fake_llm):
        session = orchestrator.start("Analyze X", session_id="s1")
        produced = orchestrator.run_until_blocked(session.session_id)

        assert _kinds(produced) == [
            CellKind.INITIALIZATION,
            CellKind.ABSTRACT,
            CellKind.DATA_ASSESSMENT,
            CellKind.DATA_COLLECTION,
            CellKind.ANALYSIS_PLAN,
            CellKind.CODE,
            CellKind.RESULT,
            CellKind.WRITEUP,
        ]
        assert fake_llm.steps() == [
            "initialization", "abstract", "data_assessment", "data_collection", "analysis_plan", "writeup",
        ]
        final = orchestrator.get_session("s1")
        assert len(final.cells) == 9
        assert all(c.status == CellStatus.COMPLETED for c in final.cells)
        assert final.cells[-1].content.startswith("# Report")

    def test_existing_data_skips_collection(self, orchestrator, fake_llm, stores):
        stores.data_files.append({"filename": "sales.csv", "file_type": "csv", "columns": ["region", "amount"]})

        session = orchestrator.start("Analyze X", session_id="s1")
        produced = orchestrator.run_until_blocked(session.session_id)

        assert _kinds(produced) == [
            CellKind.INITIALIZATION,
            CellKind.ABSTRACT,
            CellKind.DATA_ASSESSMENT,
            CellKind.ANALYSIS_PLAN,
            CellKind.CODE,
            CellKind.RESULT,
            CellKind.WRITEUP,
        ]
        assert "data_collection" not in fake_llm.steps()
        assessment = produced[2]
        assert [f.filename for f in assessment.metadata.existing_data_files] == ["sales.csv"]
        assert "sales.csv" in fake_llm.requests[2].prompt

    def test_timestamps_follow_cell_order(self, orchestrator):
        orchestrator.start("Analyze X", session_id="s1")
        orchestrator.run_until_blocked("s1")

        cells = orchestrator.get_session("s1").cells
        for earlier, later in zip(cells, cells[1:]):
            assert earlier.timestamp <= later.timestamp

    def test_routing_does_not_touch_input_cell(self, orchestrator):
        session = orchestrator.start("Analyze X", session_id="s1")
        goal_time = session.cells[0].timestamp

        orchestrator.advance("s1")

        goal = orchestrator.get_session("s1").cells[0]
        assert goal.routed is True
        assert goal.timestamp == goal_time

    def test_streamed_progress_kept(self, orchestrator):
        orchestrator.start("Analyze X", session_id="s1")
        init = orchestrator.advance("s1")

        assert init.metadata.stream_lines == PROGRESS_LINES[CellKind.INITIALIZATION]
        assert init.metadata.is_streaming is False
        assert init.content.startswith("## Initialization")
        assert [r.title for r in init.metadata.references] == ["Paper A", "Paper B"]

    def test_context_contains_previous_cells(self, orchestrator, fake_llm):
        orchestrator.start("Analyze X", session_id="s1")
        orchestrator.advance("s1")
        orchestrator.advance("s1")

        abstract_request = fake_llm.requests[1]
        assert abstract_request.step == "abstract"
        assert abstract_request.goal == "Analyze X"
        assert "### 1. Research Goal" in abstract_request.context
        assert "## Initialization" in abstract_request.context
        assert "**References Found:** 2 sources" in abstract_request.context

    def test_multi_step_plan(self, make_orchestrator):
        llm = FakeLLM(responses={
            "analysis_plan": {
                "plan": "Two steps",
                "steps": [
                    {"title": "Load", "description": "Load values", "code": "values = [1, 2, 3]"},
                    {"title": "Summarize", "description": "Summarize values"},
                ],
            },
        })
        orchestrator = make_orchestrator(llm=llm)
        orchestrator.start("Analyze X", session_id="s1")
        produced = orchestrator.run_until_blocked("s1")

        assert _kinds(produced)[-5:] == [
            CellKind.CODE, CellKind.RESULT, CellKind.CODE, CellKind.RESULT, CellKind.WRITEUP,
        ]
        second_code = produced[-3]
        assert second_code.metadata.step_order == 1
        assert second_code.metadata.total_steps == 2
        assert second_code.content == "print('generated step')"
        execution = [r for r in llm.requests if r.step == "analysis_execution"][0]
        assert execution.params["step_number"] == 2
        assert "Step 2 of 2: Summarize" in execution.prompt


class TestSideEffects:

    def test_entities_routed_to_stores(self, orchestrator, stores):
        orchestrator.start("Analyze X", session_id="s1")
        orchestrator.run_until_blocked("s1")

        assert [r["title"] for r in stores.references.all()] == ["Paper A", "Paper B"]
        assert [f["filename"] for f in stores.data_files.all()] == ["values.csv"]
        assert [v["name"] for v in stores.variables.all()] == ["values"]
        assert len(stores.visualizations) == 1
        assert stores.write_ups.all()[0]["content"].startswith("# Report")

    def test_cell_routed_at_most_once(self, orchestrator, stores):
        orchestrator.start("Analyze X", session_id="s1")
        init = orchestrator.advance("s1")
        orchestrator.advance("s1")
        orchestrator.advance("s1")

        assert orchestrator.get_session("s1").get_cell(init.id).routed is True
        assert len(stores.references) == 2

    def test_advance_from_cell_with_successor_is_refused(self, orchestrator):
        session = orchestrator.start("Analyze X", session_id="s1")
        init = orchestrator.advance("s1")
        orchestrator.run_until_blocked("s1")
        kinds = [c.kind for c in orchestrator.get_session("s1").cells]

        assert orchestrator.advance("s1", cell_id=session.cells[0].id) is None
        assert orchestrator.advance("s1", cell_id=init.id) is None
        assert [c.kind for c in orchestrator.get_session("s1").cells] == kinds
        assert kinds[-1] == CellKind.WRITEUP

    def test_code_cell_can_run_again_after_writeup(self, orchestrator, fake_executor):
        orchestrator.start("Analyze X", session_id="s1")
        produced = orchestrator.run_until_blocked("s1")
        code = produced[5]

        result = orchestrator.advance("s1", cell_id=code.id)

        cells = orchestrator.get_session("s1").cells
        assert result.kind == CellKind.RESULT
        assert cells[-1].id == result.id
        assert len(fake_executor.calls) == 2
        assert all(a.timestamp <= b.timestamp for a, b in zip(cells, cells[1:]))

    def test_result_cell_carries_execution(self, orchestrator, fake_executor):
        orchestrator.start("Analyze X", session_id="s1")
        produced = orchestrator.run_until_blocked("s1")
        code, result = produced[5], produced[6]

        assert code.status == CellStatus.PENDING
        assert fake_executor.calls == [(code.content, "s1")]
        assert orchestrator.get_session("s1").get_cell(code.id).status == CellStatus.COMPLETED
        assert result.metadata.code_cell_id == code.id
        assert result.metadata.code == code.content
        assert result.metadata.execution_results[0]["stdout"] == "2.0\n"
        assert result.metadata.visualizations[0].type == "image/png"
        assert "2.0" in result.metadata.stream_lines
        assert result.content.startswith("Execution completed in 5 ms")

        thread = orchestrator.thread_status("s1", code.id)
        assert thread.status == ThreadStatus.COMPLETED
        assert thread.id == result.metadata.thread_id

    def test_snapshot_persisted_after_each_transition(self, orchestrator, tmp_path):
        orchestrator.start("Analyze X", session_id="s1")
        orchestrator.run_until_blocked("s1")

        fresh = SessionManager(sessions_dir=tmp_path / "sessions")
        restored = ResearchSession.from_dict(fresh.load("s1"))
        assert restored == orchestrator.get_session("s1")


class TestFailures:

    def test_collaborator_failure_marks_cell_error(self, make_orchestrator, tmp_path):
        orchestrator = make_orchestrator(llm=FakeLLM(fail_on={"abstract"}))
        orchestrator.start("Analyze X", session_id="s1")
        orchestrator.advance("s1")

        with pytest.raises(TransitionError) as exc_info:
            orchestrator.advance("s1")

        failed = orchestrator.get_session("s1").cells[-1]
        assert failed.kind == CellKind.ABSTRACT
        assert failed.status == CellStatus.ERROR
        assert "model unavailable" in failed.error
        assert exc_info.value.cell_id == failed.id
        assert not orchestrator.is_busy("s1")

        saved = SessionManager(sessions_dir=tmp_path / "sessions").load("s1")
        assert saved["cells"][-1]["status"] == "error"

        assert orchestrator.advance("s1") is None

    def test_failed_execution_blocks_advance(self, make_orchestrator):
        orchestrator = make_orchestrator(executor=FakeExecutor(success=False))
        orchestrator.start("Analyze X", session_id="s1")
        produced = orchestrator.run_until_blocked("s1")

        result = produced[-1]
        code = orchestrator.get_session("s1").get_cell(produced[-2].id)
        assert result.kind == CellKind.RESULT
        assert code.status == CellStatus.ERROR
        assert result.requires_user_action is True
        assert result.can_proceed is False
        assert result.content.startswith("Execution failed: ZeroDivisionError")
        assert orchestrator.thread_status("s1", code.id).status == ThreadStatus.ERROR
        assert orchestrator.advance("s1") is None

    def test_executor_crash_is_collaborator_failure(self, make_orchestrator):
        orchestrator = make_orchestrator(executor=FakeExecutor(raises=RuntimeError("kernel died")))
        orchestrator.start("Analyze X", session_id="s1")

        with pytest.raises(TransitionError):
            orchestrator.run_until_blocked("s1")

        code = orchestrator.get_session("s1").cells[-1]
        assert code.kind == CellKind.CODE
        assert code.status == CellStatus.ERROR
        assert "kernel died" in code.error
        assert orchestrator.thread_status("s1", code.id).status == ThreadStatus.ERROR

    def test_malformed_report_marks_result_error(self, make_orchestrator):
        executor = VariablesExecutor([{"type": "int", "value": 3}])
        orchestrator = make_orchestrator(executor=executor)
        orchestrator.start("Analyze X", session_id="s1")

        with pytest.raises(TransitionError) as exc_info:
            orchestrator.run_until_blocked("s1")

        result = orchestrator.get_session("s1").cells[-1]
        assert result.kind == CellKind.RESULT
        assert result.status == CellStatus.ERROR
        assert result.metadata.is_streaming is False
        assert exc_info.value.cell_id == result.id
        assert not orchestrator.is_busy("s1")

    def test_numeric_variable_values_kept_as_text(self, make_orchestrator):
        executor = VariablesExecutor([{"name": "n", "type": "int", "value": 3}])
        orchestrator = make_orchestrator(executor=executor)
        orchestrator.start("Analyze X", session_id="s1")
        produced = orchestrator.run_until_blocked("s1")

        result = produced[6]
        assert result.status == CellStatus.COMPLETED
        assert result.metadata.variables[0].value == "3"

    def test_terminal_cells_do_not_advance(self, orchestrator):
        orchestrator.start("Analyze X", session_id="s1")
        orchestrator.run_until_blocked("s1")

        assert orchestrator.advance("s1") is None
        assert len(orchestrator.get_session("s1").cells) == 9


class TestCodeFrom:

    def test_code_key(self):
        assert CellTransitionEngine.code_from({"code": " x = 1 "}) == "x = 1"

    def test_fenced_text(self):
        assert CellTransitionEngine.code_from({"text": "Here:\n```python\nx = 1\n```"}) == "x = 1"

    def test_empty_raises(self):
        with pytest.raises(CollaboratorError):
            CellTransitionEngine.code_from({"text": ""})
