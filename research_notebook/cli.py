"""
CLI interface for research-notebook with Rich output.
"""

import logging
import sys
from typing import Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markdown import Markdown
from rich.panel import Panel
from rich.status import Status
from rich.syntax import Syntax
from rich.table import Table
from rich.text import Text

from research_notebook.cell import Cell, CellKind, CellStatus
from research_notebook.config import OrchestratorConfig
from research_notebook.exceptions import OrchestratorError
from research_notebook.orchestrator import ResearchOrchestrator
from research_notebook.utils import format_rich_output, get_status_style, truncate_text


console = Console()


def _make_orchestrator() -> ResearchOrchestrator:
    return ResearchOrchestrator(OrchestratorConfig.from_env())


def _fail(error: Exception):
    console.print(f"[red]Error: {getattr(error, 'message', None) or error}[/red]")
    sys.exit(1)


def _cell_body(cell: Cell, full: bool):
    content = cell.content if full else truncate_text(cell.content, 1200)
    if not content.strip():
        return Text("(empty)", style="dim italic")
    if cell.is_code:
        return Syntax(content, "python", theme="monokai", line_numbers=True, word_wrap=True)
    if cell.kind == CellKind.RESULT:
        return Text(content)
    return Markdown(content)


def render_cell(cell: Cell, index: int, full: bool = False):
    """Print one cell as a panel titled with its position, label and status."""
    indicator, style = get_status_style(cell.status)
    title = f"[{style}]{index + 1}. {cell.label}[/{style}]"
    subtitle = f"[{style}]{indicator}[/{style}] [dim]{cell.id}[/dim]"
    border = "red" if cell.status == CellStatus.ERROR else ("green" if cell.status == CellStatus.COMPLETED else "yellow")

    console.print(Panel(
        _cell_body(cell, full),
        title=title,
        title_align="left",
        subtitle=subtitle,
        subtitle_align="right",
        border_style=border,
        padding=(0, 1),
    ))
    if full and cell.kind == CellKind.RESULT:
        for result in cell.metadata.execution_results:
            for output in result.get("outputs", []):
                console.print(format_rich_output(output))
    if cell.error:
        console.print(Panel(
            Text(cell.error, style="red"),
            title="[red]Error[/red]",
            title_align="left",
            border_style="red",
            padding=(0, 1),
        ))


def _report_cell(cell: Optional[Cell], session_id: str):
    if cell is None:
        console.print("[yellow]Nothing to advance: the session is finished or waiting for input[/yellow]")
        return
    render_cell(cell, 0, full=False)
    console.print(f"[dim]Session:[/dim] {session_id}")


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose: bool):
    """research-notebook: LLM-driven research workflow orchestrator."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )


@main.command()
@click.argument("goal")
@click.option("--session-id", default=None, help="Explicit session id")
@click.option("--project", "-p", default="default", help="Project whose stores receive results")
@click.option("--auto", "-a", is_flag=True, help="Advance until the workflow blocks")
def start(goal: str, session_id: Optional[str], project: str, auto: bool):
    """Start a research session for GOAL."""
    orchestrator = _make_orchestrator()
    try:
        session = orchestrator.start(goal, session_id=session_id, project_id=project)
    except OrchestratorError as e:
        _fail(e)

    console.print(Panel(
        f"[green]Started:[/green] {session.session_id}\n"
        f"[dim]Goal:[/dim] {session.goal}\n"
        f"[dim]Project:[/dim] {session.project_id}",
        title="[bold blue]research-notebook[/bold blue]",
        border_style="green",
    ))

    if auto:
        _advance_all(orchestrator, session.session_id)
    else:
        console.print(f"\n[dim]Advance with:[/dim] research-nb advance {session.session_id}")


def _advance_all(orchestrator: ResearchOrchestrator, session_id: str):
    produced = 0
    while True:
        try:
            with Status("Working...", console=console, spinner="dots"):
                cell = orchestrator.advance(session_id)
        except OrchestratorError as e:
            _fail(e)
        if cell is None:
            break
        produced += 1
        render_cell(cell, produced - 1)
    console.print(f"[green]Produced {produced} cell(s)[/green]")


@main.command()
@click.argument("session_id")
@click.option("--cell", "cell_id", default=None, help="Advance from this cell instead of the last one")
@click.option("--all", "advance_all", is_flag=True, help="Advance until the workflow blocks")
def advance(session_id: str, cell_id: Optional[str], advance_all: bool):
    """Run the next transition of a session."""
    orchestrator = _make_orchestrator()
    if advance_all:
        _advance_all(orchestrator, session_id)
        return
    try:
        with Status("Working...", console=console, spinner="dots"):
            cell = orchestrator.advance(session_id, cell_id)
    except OrchestratorError as e:
        _fail(e)
    _report_cell(cell, session_id)


@main.command()
@click.argument("session_id")
@click.argument("cell_id")
@click.option("--restore-session", "-r", is_flag=True, help="Restore the kernel checkpoint before executing")
@click.option("--save-session", "-s", is_flag=True, help="Checkpoint the kernel namespace afterwards")
def execute(session_id: str, cell_id: str, restore_session: bool, save_session: bool):
    """Execute a code cell and wait for its result."""
    orchestrator = _make_orchestrator()
    try:
        if restore_session:
            info = orchestrator.restore_checkpoint(session_id)
            if info is None:
                console.print("[yellow]No checkpoint found, starting with an empty namespace[/yellow]")
            else:
                console.print(f"[dim]Restored checkpoint from {info['saved_at']}[/dim]")
        future = orchestrator.execute(session_id, cell_id)
        with Status("Executing...", console=console, spinner="dots"):
            cell = future.result()
        if save_session:
            path = orchestrator.save_checkpoint(session_id)
            console.print(f"[dim]Session saved to {path}[/dim]")
    except OrchestratorError as e:
        _fail(e)
    _report_cell(cell, session_id)


@main.command()
@click.argument("session_id")
@click.argument("cell_id")
@click.argument("comment")
def rerun(session_id: str, cell_id: str, comment: str):
    """Regenerate a cell in place using COMMENT as feedback."""
    orchestrator = _make_orchestrator()
    try:
        with Status("Regenerating...", console=console, spinner="dots"):
            cell = orchestrator.rerun(session_id, cell_id, comment)
    except OrchestratorError as e:
        _fail(e)
    render_cell(cell, 0)


@main.command()
@click.argument("session_id")
@click.option("--full", is_flag=True, help="Show complete cell contents")
def show(session_id: str, full: bool):
    """Show the cells of a session."""
    orchestrator = _make_orchestrator()
    try:
        session = orchestrator.load_session(session_id)
    except OrchestratorError as e:
        _fail(e)

    console.print(Panel(
        f"[bold]{session.goal}[/bold]\n[dim]{session.session_id}  |  {len(session.cells)} cells  |  "
        f"updated {session.updated_at.strftime('%Y-%m-%d %H:%M:%S')}[/dim]",
        title="[bold blue]research-notebook[/bold blue]",
        border_style="blue",
    ))
    for i, cell in enumerate(session.cells):
        render_cell(cell, i, full=full)


@main.command()
def sessions():
    """List saved sessions."""
    orchestrator = _make_orchestrator()
    sessions_list = orchestrator.list_sessions()

    if not sessions_list:
        console.print("[yellow]No saved sessions found[/yellow]")
        console.print("[dim]Start one with: research-nb start \"<goal>\"[/dim]")
        return

    table = Table(title="Saved Sessions", border_style="blue", show_lines=True)
    table.add_column("#", style="bold cyan", justify="right")
    table.add_column("Session", style="white")
    table.add_column("Goal", style="white")
    table.add_column("Updated", style="dim")
    table.add_column("Cells", justify="right", style="green")

    for i, session in enumerate(sessions_list):
        table.add_row(
            str(i),
            session.get("session_id", ""),
            truncate_text(session.get("goal", ""), 60),
            session.get("updated_at", ""),
            str(session.get("cell_count", 0)),
        )

    console.print(table)


@main.command()
@click.argument("session_id")
def threads(session_id: str):
    """List the execution threads of a session."""
    orchestrator = _make_orchestrator()
    try:
        thread_list = orchestrator.threads(session_id)
    except OrchestratorError as e:
        _fail(e)

    if not thread_list:
        console.print("[yellow]No execution threads[/yellow]")
        return

    table = Table(title="Execution Threads", border_style="blue")
    table.add_column("Thread", style="white")
    table.add_column("Cell", style="dim")
    table.add_column("Status")
    table.add_column("Started", style="dim")
    table.add_column("Error", style="red")

    for thread in thread_list:
        indicator, style = get_status_style(thread.status)
        table.add_row(
            thread.id,
            thread.cell_id,
            f"[{style}]{thread.status.value}[/{style}]",
            thread.start_time.strftime("%H:%M:%S"),
            thread.error or "",
        )
    console.print(table)


@main.command()
@click.argument("session_id")
def cancel(session_id: str):
    """Cancel the in-flight transition of a session."""
    orchestrator = _make_orchestrator()
    try:
        cancelled = orchestrator.cancel(session_id)
    except OrchestratorError as e:
        _fail(e)
    if cancelled:
        console.print("[yellow]Cancelled[/yellow]")
    else:
        console.print("[dim]Nothing was running[/dim]")


@main.command()
@click.argument("session_id")
def reset(session_id: str):
    """Reset a stuck loading state."""
    orchestrator = _make_orchestrator()
    try:
        orchestrator.reset_loading(session_id)
    except OrchestratorError as e:
        _fail(e)
    console.print("[green]Loading state reset[/green]")


@main.command()
@click.argument("session_id")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
def delete(session_id: str, yes: bool):
    """Delete a saved session."""
    if not yes and not click.confirm(f"Delete session {session_id}?"):
        return
    orchestrator = _make_orchestrator()
    if orchestrator.delete_session(session_id):
        console.print(f"[green]Deleted:[/green] {session_id}")
    else:
        console.print(f"[yellow]Session not found: {session_id}[/yellow]")


@main.command()
@click.option("--host", default="127.0.0.1", help="Interface to bind")
@click.option("--port", default=7860, type=int, help="Port to listen on")
def web(host: str, port: int):
    """Launch the JSON web API."""
    from research_notebook.web import launch_web
    launch_web(_make_orchestrator(), host=host, port=port)


@main.command()
def mcp():
    """Run the MCP server over stdio."""
    from research_notebook.mcp_server import mcp as server
    server.run()


if __name__ == "__main__":
    main()
