"""
Tests for the research-nb command line using Click's CliRunner.
"""

from unittest.mock import patch

import pytest
from click.testing import CliRunner
from rich.console import Console

from research_notebook.cell import CellKind
from research_notebook.cli import main


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def cli(orchestrator):
    """Route every command to the test orchestrator, on a console wide enough for ids."""
    with patch("research_notebook.cli._make_orchestrator", return_value=orchestrator), \
            patch("research_notebook.cli.console", Console(width=200)):
        yield orchestrator


class TestStart:

    def test_start(self, runner, cli):
        result = runner.invoke(main, ["start", "Analyze X", "--session-id", "s1", "-p", "proj"])

        assert result.exit_code == 0
        assert "Started:" in result.output
        assert "s1" in result.output
        assert cli.get_session("s1").project_id == "proj"

    def test_start_auto_runs_workflow(self, runner, cli):
        result = runner.invoke(main, ["start", "Analyze X", "--session-id", "s1", "--auto"])

        assert result.exit_code == 0
        assert "Produced 8 cell(s)" in result.output
        assert cli.get_session("s1").cells[-1].kind == CellKind.WRITEUP

    def test_empty_goal_fails(self, runner, cli):
        result = runner.invoke(main, ["start", "  "])

        assert result.exit_code == 1
        assert "Error: Research goal must not be empty" in result.output


class TestAdvance:

    def test_advance_one_step(self, runner, cli):
        cli.start("Analyze X", session_id="s1")
        result = runner.invoke(main, ["advance", "s1"])

        assert result.exit_code == 0
        assert "Research Initialization" in result.output
        assert len(cli.get_session("s1").cells) == 2

    def test_advance_all(self, runner, cli):
        cli.start("Analyze X", session_id="s1")
        result = runner.invoke(main, ["advance", "s1", "--all"])

        assert result.exit_code == 0
        assert "Produced 8 cell(s)" in result.output

    def test_advance_finished_session(self, runner, cli):
        cli.start("Analyze X", session_id="s1")
        cli.run_until_blocked("s1")
        result = runner.invoke(main, ["advance", "s1"])

        assert result.exit_code == 0
        assert "Nothing to advance" in result.output

    def test_unknown_session(self, runner, cli):
        result = runner.invoke(main, ["advance", "missing"])

        assert result.exit_code == 1
        assert "Session not found: missing" in result.output


class TestCellCommands:

    def _code_cell(self, orchestrator):
        orchestrator.start("Analyze X", session_id="s1")
        for _ in range(6):
            cell = orchestrator.advance("s1")
        assert cell.kind == CellKind.CODE
        return cell

    def test_execute(self, runner, cli):
        code = self._code_cell(cli)
        result = runner.invoke(main, ["execute", "s1", code.id])

        assert result.exit_code == 0
        assert "Execution Results" in result.output
        assert cli.get_session("s1").cells[-1].kind == CellKind.RESULT

    def test_execute_restores_checkpoint_first(self, runner, cli):
        code = self._code_cell(cli)
        with patch.object(cli, "restore_checkpoint", return_value=None) as mock_restore:
            result = runner.invoke(main, ["execute", "s1", code.id, "--restore-session"])

        assert result.exit_code == 0
        mock_restore.assert_called_once_with("s1")
        assert "No checkpoint found" in result.output

    def test_rerun(self, runner, cli):
        cli.start("Analyze X", session_id="s1")
        init = cli.advance("s1")
        result = runner.invoke(main, ["rerun", "s1", init.id, "focus on recent work"])

        assert result.exit_code == 0
        assert "Research Initialization" in result.output

    def test_rerun_goal_fails(self, runner, cli):
        session = cli.start("Analyze X", session_id="s1")
        result = runner.invoke(main, ["rerun", "s1", session.cells[0].id, "rephrase"])

        assert result.exit_code == 1
        assert "Comment functionality not available for goal cells" in result.output

    def test_threads(self, runner, cli):
        code = self._code_cell(cli)
        cli.advance("s1")
        result = runner.invoke(main, ["threads", "s1"])

        assert result.exit_code == 0
        assert "Execution Threads" in result.output
        assert "completed" in result.output
        assert code.id in result.output


class TestSessionCommands:

    def test_show(self, runner, cli):
        cli.start("Analyze X", session_id="s1")
        cli.advance("s1")
        result = runner.invoke(main, ["show", "s1", "--full"])

        assert result.exit_code == 0
        assert "Research Goal" in result.output
        assert "Research Initialization" in result.output
        assert "2 cells" in result.output

    def test_show_full_renders_result_outputs(self, runner, cli):
        cli.start("Analyze X", session_id="s1")
        for _ in range(7):
            cli.advance("s1")
        assert cli.get_session("s1").cells[-1].kind == CellKind.RESULT

        result = runner.invoke(main, ["show", "s1", "--full"])

        assert result.exit_code == 0
        # once in the report text, once as the rendered display output
        assert result.output.count("[figure]") == 2

    def test_sessions_empty(self, runner, cli):
        result = runner.invoke(main, ["sessions"])

        assert result.exit_code == 0
        assert "No saved sessions found" in result.output

    def test_sessions_table(self, runner, cli):
        cli.start("Analyze X", session_id="s1")
        result = runner.invoke(main, ["sessions"])

        assert result.exit_code == 0
        assert "Saved Sessions" in result.output
        assert "Analyze X" in result.output

    def test_cancel_idle(self, runner, cli):
        cli.start("Analyze X", session_id="s1")
        result = runner.invoke(main, ["cancel", "s1"])

        assert result.exit_code == 0
        assert "Nothing was running" in result.output

    def test_reset(self, runner, cli):
        cli.start("Analyze X", session_id="s1")
        result = runner.invoke(main, ["reset", "s1"])

        assert result.exit_code == 0
        assert "Loading state reset" in result.output

    def test_delete(self, runner, cli):
        cli.start("Analyze X", session_id="s1")
        result = runner.invoke(main, ["delete", "s1", "--yes"])

        assert result.exit_code == 0
        assert "Deleted:" in result.output
        assert cli.list_sessions() == []

    def test_delete_asks_for_confirmation(self, runner, cli):
        cli.start("Analyze X", session_id="s1")
        result = runner.invoke(main, ["delete", "s1"], input="n\n")

        assert result.exit_code == 0
        assert len(cli.list_sessions()) == 1


class TestServers:

    def test_web_command(self, runner, cli):
        with patch("research_notebook.web.launch_web") as mock_launch:
            result = runner.invoke(main, ["web", "--port", "9000"])

        assert result.exit_code == 0
        mock_launch.assert_called_once_with(cli, host="127.0.0.1", port=9000)

    def test_help_lists_commands(self, runner):
        result = runner.invoke(main, ["--help"])

        assert result.exit_code == 0
        for command in ("start", "advance", "execute", "rerun", "show", "sessions", "cancel", "reset"):
            assert command in result.output
