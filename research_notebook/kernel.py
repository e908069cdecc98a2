"""
ResearchKernel: IPython-backed code executor with one namespace per session.
"""

import logging
import threading
import time
import types
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from IPython.core.interactiveshell import InteractiveShell
from IPython.utils.capture import capture_output

logger = logging.getLogger(__name__)

MAX_VALUE_REPR = 200


def _build_mime_bundle(obj) -> dict:
    """
    Build a MIME bundle dictionary from an object.

    Checks for IPython rich display methods and builds a dict mapping MIME
    types to their representations, with the primary rich content (or
    repr()) as text/plain.
    """
    rich_content = None

    rich_entries = []
    for mime_type, method_name in [
        ("text/html", "_repr_html_"),
        ("text/markdown", "_repr_markdown_"),
        ("application/json", "_repr_json_"),
        ("image/svg+xml", "_repr_svg_"),
        ("image/png", "_repr_png_"),
    ]:
        method = getattr(obj, method_name, None)
        if callable(method):
            value = method()
            if value is not None:
                rich_entries.append((mime_type, value))
                if rich_content is None:
                    rich_content = value

    plain = rich_content if rich_content is not None else repr(obj)
    data = {"text/plain": plain}
    for mime_type, value in rich_entries:
        data[mime_type] = value

    return data


@dataclass
class ExecutionReport:
    """Result of running one code cell."""
    success: bool
    stdout: str = ""
    stderr: str = ""
    logs: list[str] = field(default_factory=list)
    outputs: list[dict[str, Any]] = field(default_factory=list)
    variables: list[dict[str, Any]] = field(default_factory=list)
    data_summary: Optional[dict[str, Any]] = None
    execution_time_ms: int = 0
    error: Optional[str] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "success": self.success,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "logs": self.logs,
            "outputs": self.outputs,
            "variables": self.variables,
            "data_summary": self.data_summary,
            "execution_time_ms": self.execution_time_ms,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ExecutionReport":
        """Create from dictionary."""
        return cls(
            success=data["success"],
            stdout=data.get("stdout", ""),
            stderr=data.get("stderr", ""),
            logs=data.get("logs", []),
            outputs=data.get("outputs", []),
            variables=data.get("variables", []),
            data_summary=data.get("data_summary"),
            execution_time_ms=data.get("execution_time_ms", 0),
            error=data.get("error"),
        )


class CodeExecutor(Protocol):
    """Code-execution collaborator used for code and analysis cells."""

    def execute(self, code: str, session_id: str) -> ExecutionReport:
        ...


def _summarize_value(name: str, value: Any) -> dict[str, Any]:
    value_repr = repr(value)
    if len(value_repr) > MAX_VALUE_REPR:
        value_repr = value_repr[: MAX_VALUE_REPR - 3] + "..."
    summary = {"name": name, "type": type(value).__name__, "value": value_repr}
    shape = getattr(value, "shape", None)
    if shape is not None:
        summary["shape"] = list(shape) if isinstance(shape, tuple) else str(shape)
    return summary


class ResearchKernel:
    """
    Persistent IPython kernel shared by all sessions.

    IPython's InteractiveShell is a process-wide singleton, so sessions are
    isolated by swapping the user namespace in and out under a lock:
    - one saved namespace per session id
    - output capture (stdout, stderr, rich display)
    - variable and data frame summaries for routing
    """

    def __init__(self):
        """Initialize the kernel with the IPython shell."""
        self.ip = InteractiveShell.instance()
        self._namespaces: dict[str, dict[str, Any]] = {}
        self._current: Optional[str] = None
        self._lock = threading.Lock()

    def _user_names(self) -> dict[str, Any]:
        hidden = self.ip.user_ns_hidden
        return {
            k: v for k, v in self.ip.user_ns.items()
            if not k.startswith("_") and k not in hidden
        }

    def _activate(self, session_id: str):
        """Swap the session's namespace into the shell."""
        if self._current == session_id:
            return
        if self._current is not None:
            self._namespaces[self._current] = self._user_names()
        self.ip.reset(new_session=False)
        self.ip.user_ns.update(self._namespaces.get(session_id, {}))
        self.ip.user_ns["__research_session__"] = session_id
        self._current = session_id

    def execute(self, code: str, session_id: str) -> ExecutionReport:
        """
        Execute code in the session's namespace.

        Args:
            code: Python code to execute
            session_id: Session whose namespace is used

        Returns:
            ExecutionReport with captured output and status
        """
        with self._lock:
            self._activate(session_id)
            outputs = []
            error = None
            stdout = ""
            stderr = ""
            started = time.perf_counter()

            try:
                with capture_output() as captured:
                    result = self.ip.run_cell(code, silent=False, store_history=False)

                stdout = captured.stdout
                stderr = captured.stderr
                if stdout:
                    outputs.append({"type": "stream", "name": "stdout", "text": stdout})
                if stderr:
                    outputs.append({"type": "stream", "name": "stderr", "text": stderr})

                for display_output in captured.outputs:
                    data = {}
                    if hasattr(display_output, "data"):
                        data = display_output.data
                    elif hasattr(display_output, "_repr_html_"):
                        data = _build_mime_bundle(display_output)
                    outputs.append({"type": "display_data", "data": data})

                if result.success:
                    if result.result is not None:
                        outputs.append({
                            "type": "execute_result",
                            "data": _build_mime_bundle(result.result),
                        })
                else:
                    exc = result.error_in_exec or result.error_before_exec
                    if exc is not None:
                        error = f"{type(exc).__name__}: {exc}"
                        outputs.append({
                            "type": "error",
                            "ename": type(exc).__name__,
                            "evalue": str(exc),
                            "traceback": [],
                        })
            except Exception as e:
                error = f"{type(e).__name__}: {e}"
                outputs.append({
                    "type": "error",
                    "ename": type(e).__name__,
                    "evalue": str(e),
                    "traceback": [],
                })

            elapsed_ms = int((time.perf_counter() - started) * 1000)
            namespace = self._user_names()

        variables = [
            _summarize_value(name, value)
            for name, value in namespace.items()
            if not isinstance(value, (types.ModuleType, types.FunctionType, type))
        ]
        frames = {
            v["name"]: {"shape": v.get("shape"), "type": v["type"]}
            for v in variables
            if v.get("shape") is not None and hasattr(namespace[v["name"]], "columns")
        }
        logs = [line for line in (stdout + stderr).splitlines() if line.strip()]

        if error:
            logger.info("Execution failed for session %s: %s", session_id, error)

        return ExecutionReport(
            success=error is None,
            stdout=stdout,
            stderr=stderr,
            logs=logs,
            outputs=outputs,
            variables=variables,
            data_summary={"variable_count": len(variables), "dataframes": frames},
            execution_time_ms=elapsed_ms,
            error=error,
        )

    def get_namespace(self, session_id: str) -> dict[str, Any]:
        """Return a copy of the session's user namespace."""
        with self._lock:
            if self._current == session_id:
                return self._user_names()
            return dict(self._namespaces.get(session_id, {}))

    def restore_namespace(self, session_id: str, namespace: dict[str, Any]):
        """Merge saved variables into the session's namespace."""
        with self._lock:
            if self._current == session_id:
                self.ip.user_ns.update(namespace)
            else:
                self._namespaces.setdefault(session_id, {}).update(namespace)

    def get_variable(self, session_id: str, name: str) -> Any:
        """Get a variable from a session's namespace."""
        return self.get_namespace(session_id).get(name)

    def reset_session(self, session_id: str):
        """Drop a session's namespace."""
        with self._lock:
            self._namespaces.pop(session_id, None)
            if self._current == session_id:
                self.ip.reset(new_session=False)
                self._current = None
