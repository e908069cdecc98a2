"""
Utility functions for research-notebook.
"""

import ast
import json
import re
import sys
from importlib import metadata as importlib_metadata
from importlib import util as importlib_util
from typing import Any, Optional

from rich.syntax import Syntax
from rich.text import Text

# import name -> distribution name, where they differ
DISTRIBUTION_NAMES = {
    "sklearn": "scikit-learn",
    "cv2": "opencv-python",
    "PIL": "pillow",
    "bs4": "beautifulsoup4",
    "yaml": "pyyaml",
    "skimage": "scikit-image",
}

LIBRARY_CATEGORIES = {
    "pandas": "data",
    "numpy": "data",
    "polars": "data",
    "pyarrow": "data",
    "scipy": "statistics",
    "statsmodels": "statistics",
    "sklearn": "machine-learning",
    "torch": "machine-learning",
    "tensorflow": "machine-learning",
    "xgboost": "machine-learning",
    "matplotlib": "visualization",
    "seaborn": "visualization",
    "plotly": "visualization",
    "requests": "network",
    "httpx": "network",
}

STATUS_STYLES = {
    "pending": ("--", "dim"),
    "active": ("..", "yellow"),
    "completed": ("ok", "green"),
    "error": ("err", "red"),
    "running": ("run", "yellow"),
    "paused": ("||", "magenta"),
}


def format_output(output: dict[str, Any]) -> str:
    """
    Format an output dictionary for display (plain text).

    Args:
        output: Output dictionary from ExecutionReport.outputs

    Returns:
        Formatted string for display
    """
    output_type = output.get("type", "")

    if output_type == "stream":
        return output.get("text", "")

    elif output_type == "error":
        return f"{output.get('ename', 'Error')}: {output.get('evalue', '')}"

    elif output_type in ("execute_result", "display_data"):
        data = output.get("data", {})
        if "text/markdown" in data:
            return data["text/markdown"]
        if "application/json" in data:
            val = data["application/json"]
            return json.dumps(val, indent=2) if not isinstance(val, str) else val
        if "image/png" in data or "image/svg+xml" in data:
            return "[figure]"
        return data.get("text/plain", str(data))

    return str(output)


def format_report(report) -> str:
    """Render an execution report as the text content of a result cell."""
    lines = []
    if report.success:
        lines.append(f"Execution completed in {report.execution_time_ms} ms")
    else:
        lines.append(f"Execution failed: {report.error}")

    body = "\n".join(
        format_output(o).rstrip("\n") for o in report.outputs if o.get("type") != "error"
    ).strip()
    if body:
        lines.extend(["", "Output:", body])

    if report.variables:
        lines.extend(["", "Variables:"])
        for var in report.variables:
            lines.append(f"- {var['name']} ({var['type']}): {truncate_text(str(var.get('value', '')), 80)}")

    return "\n".join(lines)


def format_rich_output(output: dict[str, Any]):
    """
    Format an output dictionary as a Rich renderable.

    Returns:
        Rich renderable object for console display
    """
    output_type = output.get("type", "")

    if output_type == "stream":
        text = output.get("text", "").rstrip("\n")
        if output.get("name") == "stderr":
            return Text(text, style="yellow")
        return Text(text)

    if output_type == "error":
        error_text = Text()
        error_text.append(output.get("ename", "Error"), style="bold red")
        error_text.append(f": {output.get('evalue', '')}", style="red")
        return error_text

    if output_type == "execute_result":
        text = format_output(output)
        try:
            return Syntax(text, "python", theme="monokai", line_numbers=False)
        except Exception:
            return Text(text, style="cyan")

    return Text(format_output(output), style="cyan")


def get_status_style(status) -> tuple[str, str]:
    """Indicator and rich style for a cell or thread status."""
    if hasattr(status, "value"):
        status = status.value
    return STATUS_STYLES.get(status, ("?", "dim"))


def detect_imported_libraries(code: str) -> list[str]:
    """
    List the third-party top-level modules imported by ``code``.

    Standard library modules and relative imports are skipped; code that
    does not parse yields an empty list.
    """
    try:
        tree = ast.parse(code or "")
    except SyntaxError:
        return []

    found: list[str] = []
    for node in ast.walk(tree):
        if isinstance(node, ast.Import):
            names = [alias.name for alias in node.names]
        elif isinstance(node, ast.ImportFrom) and node.level == 0 and node.module:
            names = [node.module]
        else:
            continue
        for name in names:
            top = name.split(".")[0]
            if top in sys.stdlib_module_names or top in found:
                continue
            found.append(top)
    return found


def library_info(name: str) -> dict[str, Any]:
    """Version, category and install state of an imported library."""
    version: Optional[str] = None
    try:
        version = importlib_metadata.version(DISTRIBUTION_NAMES.get(name, name))
    except importlib_metadata.PackageNotFoundError:
        pass
    return {
        "name": DISTRIBUTION_NAMES.get(name, name),
        "version": version,
        "category": LIBRARY_CATEGORIES.get(name, "general"),
        "installed": importlib_util.find_spec(name) is not None,
    }


def truncate_text(text: str, max_length: int = 100) -> str:
    """Truncate text to max_length, adding ellipsis if needed."""
    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."


def sanitize_name(name: str) -> str:
    """Turn free text (a step title) into a safe identifier."""
    sanitized = re.sub(r"[^a-zA-Z0-9_]", "_", name.strip().lower())
    if sanitized and sanitized[0].isdigit():
        sanitized = "_" + sanitized
    return sanitized or "_item"
