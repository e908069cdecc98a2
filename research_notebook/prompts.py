"""
Research context and prompt templates for each workflow step.
"""

from typing import Iterable, Optional

from research_notebook.cell import Cell, CellKind, CellStatus, KIND_LABELS

BASE_PROMPT = """You are an AI research assistant helping with a research project. Use the following context to inform your response:

{context}

Please provide a detailed, thoughtful response based on the research context above."""

TASKS = {
    CellKind.INITIALIZATION: """TASK: Research Initialization
Based on the research goal, please:
1. Identify relevant research sources and academic references
2. Generate a comprehensive background summary
3. Suggest key research questions to explore
4. Outline the main research areas to investigate

Respond with a JSON object with the keys "text" (the structured initialization),
"references" (a list of objects with "title", "authors", "url", "summary", "year"),
"questions" (a list of strings) and "background_summary".""",

    CellKind.ABSTRACT: """TASK: Research Abstract
Based on the initialization above, write a concise abstract (one or two
paragraphs) stating the research question, the approach and the expected
contribution.

Respond with a JSON object with the keys "abstract" and "background_summary".""",

    CellKind.DATA_ASSESSMENT: """TASK: Data Assessment
Based on the research context and any existing data files, please:
1. Evaluate what data is needed for this research
2. Assess the relevance of any existing data files
3. Identify gaps in available data
4. Recommend what additional data should be collected
5. Suggest data sources or collection methods

If no data files exist, focus on what data would be most valuable for this research.

Existing data files:
{data_files}

Respond with a JSON object with the key "assessment".""",

    CellKind.DATA_COLLECTION: """TASK: Data Collection Planning
Based on the research context and data assessment, please:
1. Specify exactly what data needs to be collected
2. Describe the format and structure of this data
3. Explain how this data will support the research goal
4. Provide sample data or data generation methods if applicable
5. Outline any limitations or assumptions

Respond with a JSON object with the keys "data_needed", "collection_plan" and
"data_files" (a list of objects with "filename", "content" and "description").""",

    CellKind.ANALYSIS_PLAN: """TASK: Analysis Planning
Based on the research context and available data, please:
1. Design a comprehensive analysis approach
2. Specify statistical methods or analytical techniques to use
3. Outline the key questions the analysis should answer
4. Describe expected outputs and visualizations
5. Identify potential insights to look for

Available data files:
{data_files}

Respond with a JSON object with the keys "plan" and "steps" (a list of objects
with "title", "description" and optionally "code", the runnable Python for the step).""",

    CellKind.ANALYSIS_EXECUTION: """TASK: Analysis Execution
Step {step_number} of {total_steps}: {step_title}
{step_description}

Based on the research context and analysis plan, please:
1. Generate Python code to perform this step of the planned analysis
2. Include data loading, preprocessing, and analysis steps
3. Add appropriate visualizations and statistical tests
4. Include code comments explaining each step

Provide complete, runnable Python code in a single ```python block.""",

    CellKind.RESULT: """TASK: Revise Analysis Code
The code below produced the execution results recorded in the context.

```python
{code}
```

Rewrite the code so that it addresses the user's comment. Provide complete,
runnable Python code in a single ```python block.""",

    CellKind.WRITEUP: """TASK: Research Write-up
Using the research context and the execution results below, write the final
research report in Markdown with the sections Abstract, Introduction, Methods,
Results, Discussion and Conclusion.

Execution results:
{execution_results}

Respond with the Markdown report.""",
}


def _format_timestamp(cell: Cell) -> str:
    return cell.timestamp.strftime("%Y-%m-%d %H:%M:%S")


def build_research_context(
    goal: str,
    current_step: str,
    cells: Iterable[Cell],
    exclude_cell_id: Optional[str] = None,
) -> str:
    """
    Build the research context passed to every language model call.

    Only completed cells with content are included, in session order; the
    cell being produced (or rerun) is excluded.
    """
    relevant = [
        c for c in cells
        if c.id != exclude_cell_id and c.status == CellStatus.COMPLETED and c.content.strip()
    ]
    if not relevant:
        return f"Research Goal: {goal}\n\nCurrent Step: {current_step}\n\nNo previous context available."

    parts = [
        "# Research Context",
        "",
        "## Research Goal",
        goal,
        "",
        "## Current Step",
        current_step,
        "",
        "## Previous Research Entries",
        "",
    ]
    for number, cell in enumerate(relevant, start=1):
        parts.append(f"### {number}. {KIND_LABELS.get(cell.kind, 'Research Entry')} ({_format_timestamp(cell)})")
        parts.append(cell.content)
        parts.append("")

        notes = []
        references = getattr(cell.metadata, "references", None)
        if references:
            notes.append(f"**References Found:** {len(references)} sources")
        data_files = getattr(cell.metadata, "existing_data_files", None)
        if data_files:
            notes.append(f"**Data Files:** {len(data_files)} files")
        summary = getattr(cell.metadata, "background_summary", None)
        if summary:
            notes.append(f"**Background Summary:** {summary}")
        if notes:
            parts.extend(notes)
            parts.append("")

    return "\n".join(parts)


def format_data_files(files: Iterable[dict]) -> str:
    lines = []
    for f in files:
        columns = f.get("columns") or []
        line = f"- {f.get('filename', 'unknown')}"
        if f.get("description"):
            line += f": {f['description']}"
        if columns:
            line += f" (columns: {', '.join(columns)})"
        lines.append(line)
    return "\n".join(lines) if lines else "(none)"


def build_prompt(
    step: CellKind,
    context: str,
    comment: Optional[str] = None,
    **params,
) -> str:
    """
    Render the prompt for ``step``.

    Args:
        step: Kind of the cell being produced
        context: Output of build_research_context
        comment: User feedback for a rerun, appended as its own section
        **params: Values for the step template's placeholders

    Returns:
        The full prompt text
    """
    prompt = BASE_PROMPT.format(context=context)
    task = TASKS.get(step)
    if task:
        prompt = f"{prompt}\n\n{task.format(**params)}"
    if comment:
        prompt = (
            f"{prompt}\n\n## User Feedback\n{comment}\n\n"
            "Please consider this feedback when providing your response."
        )
    return prompt
