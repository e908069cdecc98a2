"""
Configuration for research-notebook, read from RESEARCH_NB_* environment variables.
"""

import os
import shlex
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

ENV_PREFIX = "RESEARCH_NB_"


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(ENV_PREFIX + name)
    return value if value not in (None, "") else default


def default_home() -> Path:
    """Return the base directory for sessions and project stores."""
    return Path(_env("HOME", str(Path.home() / ".research_notebook"))).expanduser()


class OrchestratorConfig(BaseModel):
    """Tunables for the orchestrator; every timeout is in seconds."""

    home: Path = Field(default_factory=default_home)
    sessions_dir: Optional[Path] = None
    projects_dir: Optional[Path] = None

    # single-flight guard for one transition
    transition_timeout: float = 30.0
    # transitions that run code in the kernel
    execution_timeout: float = 300.0
    # active/pending cells older than this are reset on load
    stuck_cell_threshold: float = 300.0
    stream_delay_ms: int = 100

    llm_command: list[str] = Field(default_factory=lambda: ["claude", "-p"])
    llm_timeout: float = 120.0
    # background execute() jobs; transitions run on a per-session worker
    max_workers: int = 4

    def model_post_init(self, __context) -> None:
        if self.sessions_dir is None:
            self.sessions_dir = self.home / "sessions"
        if self.projects_dir is None:
            self.projects_dir = self.home / "projects"

    @classmethod
    def from_env(cls, **overrides) -> "OrchestratorConfig":
        """Build a config from the environment; keyword overrides win."""
        values: dict = {"home": default_home()}

        for name, key in [
            ("SESSIONS_DIR", "sessions_dir"),
            ("PROJECTS_DIR", "projects_dir"),
        ]:
            raw = _env(name)
            if raw:
                values[key] = Path(raw).expanduser()

        for name, key in [
            ("TRANSITION_TIMEOUT", "transition_timeout"),
            ("EXECUTION_TIMEOUT", "execution_timeout"),
            ("STUCK_CELL_THRESHOLD", "stuck_cell_threshold"),
            ("LLM_TIMEOUT", "llm_timeout"),
        ]:
            raw = _env(name)
            if raw:
                values[key] = float(raw)

        for name, key in [("STREAM_DELAY_MS", "stream_delay_ms"), ("MAX_WORKERS", "max_workers")]:
            raw = _env(name)
            if raw:
                values[key] = int(raw)

        command = _env("LLM_COMMAND")
        if command:
            values["llm_command"] = shlex.split(command)

        values.update(overrides)
        return cls(**values)
