"""Pytest fixtures shared across all test modules."""

import threading
from pathlib import Path
from unittest.mock import patch

import pytest

from research_notebook.config import OrchestratorConfig
from research_notebook.exceptions import CollaboratorError
from research_notebook.kernel import ExecutionReport
from research_notebook.mcp_server import _reset_orchestrator
from research_notebook.orchestrator import ResearchOrchestrator
from research_notebook.stores import ProjectStores


DEFAULT_RESPONSES = {
    "initialization": {
        "text": "## Initialization\nSources and questions for the study.",
        "references": [
            {"title": "Paper A", "authors": ["Ada Author"], "url": "https://example.org/a", "year": 2020},
            {"title": "Paper B", "authors": "Bo Writer"},
        ],
        "questions": ["What drives the metric?"],
        "background_summary": "Prior work measured the metric on small samples.",
    },
    "abstract": {"abstract": "We study the metric on a larger sample."},
    "data_assessment": {"assessment": "The available data covers the metric."},
    "data_collection": {
        "data_needed": "A CSV of metric values",
        "collection_plan": "Collect the metric values into values.csv",
        "data_files": [
            {"filename": "values.csv", "content": "value\n1\n2\n3\n", "description": "Collected values"},
        ],
    },
    "analysis_plan": {
        "plan": "Compute the mean of the values",
        "steps": [
            {"title": "Mean", "description": "Average the values", "code": "values = [1, 2, 3]\nprint(sum(values) / len(values))"},
        ],
    },
    "analysis_execution": "```python\nprint('generated step')\n```",
    "result": "```python\nimport statistics\nprint(statistics.median([1, 2, 3]))\n```",
    "writeup": "# Report\n\nThe mean of the values is 2.0.",
}


class FakeLLM:
    """Language model double: canned responses per step, records every request."""

    def __init__(self, responses=None, fail_on=(), block=None):
        self.responses = dict(DEFAULT_RESPONSES)
        self.responses.update(responses or {})
        self.fail_on = set(fail_on)
        self.block = block
        self.requests = []
        self._lock = threading.Lock()

    def call(self, request, token=None):
        with self._lock:
            self.requests.append(request)
        if self.block is not None:
            self.block.wait(10)
        if request.step in self.fail_on:
            raise CollaboratorError(f"model unavailable for {request.step}", collaborator="llm")
        response = self.responses.get(request.step, {"text": f"{request.step} output"})
        return response(request) if callable(response) else response

    def steps(self):
        return [r.step for r in self.requests]


class FakeExecutor:
    """Code executor double returning a successful report by default."""

    def __init__(self, success=True, raises=None, block=None):
        self.success = success
        self.raises = raises
        self.block = block
        self.calls = []

    def execute(self, code, session_id):
        self.calls.append((code, session_id))
        if self.block is not None:
            self.block.wait(10)
        if self.raises is not None:
            raise self.raises
        if not self.success:
            return ExecutionReport(
                success=False,
                stderr="ZeroDivisionError: division by zero\n",
                logs=["ZeroDivisionError: division by zero"],
                outputs=[{"type": "error", "ename": "ZeroDivisionError", "evalue": "division by zero", "traceback": []}],
                error="ZeroDivisionError: division by zero",
                execution_time_ms=3,
            )
        return ExecutionReport(
            success=True,
            stdout="2.0\n",
            logs=["2.0"],
            outputs=[
                {"type": "stream", "name": "stdout", "text": "2.0\n"},
                {"type": "display_data", "data": {"text/plain": "<Figure>", "image/png": "iVBORw0KGgo="}},
            ],
            variables=[{"name": "values", "type": "list", "value": "[1, 2, 3]"}],
            data_summary={"variable_count": 1, "dataframes": {}},
            execution_time_ms=5,
        )


@pytest.fixture(autouse=True)
def reset_mcp_state():
    """Reset the MCP server's global orchestrator before each test."""
    _reset_orchestrator()
    yield
    _reset_orchestrator()


@pytest.fixture
def fake_llm():
    return FakeLLM()


@pytest.fixture
def fake_executor():
    return FakeExecutor()


@pytest.fixture
def stores():
    return ProjectStores.in_memory()


@pytest.fixture
def make_orchestrator(tmp_path: Path, stores):
    """Factory for orchestrators on a temp home with fast streaming."""
    created = []

    def factory(llm=None, executor=None, project_stores=None, **config):
        values = {"home": tmp_path, "stream_delay_ms": 0, "transition_timeout": 5.0, "execution_timeout": 10.0}
        values.update(config)
        shared = project_stores or stores
        orchestrator = ResearchOrchestrator(
            OrchestratorConfig(**values),
            llm=llm or FakeLLM(),
            executor=executor or FakeExecutor(),
            stores_factory=lambda project_id: shared,
        )
        created.append(orchestrator)
        return orchestrator

    yield factory
    for orchestrator in created:
        orchestrator.close()


@pytest.fixture
def orchestrator(make_orchestrator, fake_llm, fake_executor):
    return make_orchestrator(llm=fake_llm, executor=fake_executor)


@pytest.fixture
def web_app(orchestrator):
    """Flask test client using the real launch_web() routes."""
    from flask import Flask
    import research_notebook.web as web_module

    captured = {}

    def fake_run(self, *a, **kw):
        captured["app"] = self

    with patch.object(Flask, "run", fake_run):
        web_module.launch_web(orchestrator)

    app = captured["app"]
    app.config["TESTING"] = True
    return app.test_client(), orchestrator
