"""
Language-model collaborator: request type, protocol and command-line model.
"""

import json
import logging
import re
import subprocess
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional, Protocol, Union

from research_notebook.exceptions import CollaboratorError

if TYPE_CHECKING:
    from research_notebook.runtime import CancellationToken

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.2

FENCED_BLOCK = re.compile(r"```(?P<lang>[\w+-]*)\s*\n(?P<body>.*?)```", re.DOTALL)

LLMResponse = Union[dict[str, Any], str]


@dataclass
class LLMRequest:
    """One call to the language model for a workflow step."""
    step: str
    goal: str
    prompt: str
    context: str = ""
    params: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "step": self.step,
            "goal": self.goal,
            "prompt": self.prompt,
            "context": self.context,
            "params": dict(self.params),
        }


class LanguageModel(Protocol):
    """Anything that can answer an LLMRequest."""

    def call(self, request: LLMRequest, token: Optional["CancellationToken"] = None) -> LLMResponse:
        if token is not None:
            token.raise_if_cancelled()

        prompt = self._render(request)
        logger.info("LLM call started: step=%s, prompt_length=%d", request.step, len(prompt))
        try:
            process = subprocess.Popen(
                [*self.command, prompt],
                stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True, env=self.env
            )
        except FileNotFoundError as e:
            raise CollaboratorError(
                f"Language model command not found: {self.command[0]}",
                collaborator="llm", original_error=e,
            ) from e

        stdout, stderr = self._communicate(process, request, token)
        if process.returncode != 0:
            logger.error("LLM call failed: step=%s, error=%s", request.step, stderr.strip())
            raise CollaboratorError(
                f"Language model failed: {stderr.strip() or f'exit code {process.returncode}'}",
                collaborator="llm",
            )

        logger.info("LLM call completed: step=%s, response_length=%d", request.step, len(stdout))
        return stdout.strip()

    def _communicate(
        self,
        process: subprocess.Popen,
        request: LLMRequest,
        token: Optional["CancellationToken"],
    ) -> tuple[str, str]:
        """Wait for the client, killing it on cancellation or timeout."""
        deadline = time.monotonic() + self.timeout
        while True:
            try:
                stdout, stderr = process.communicate(timeout=POLL_INTERVAL)
                return stdout or "", stderr or ""
            except subprocess.TimeoutExpired:
                pass

            if token is not None and token.cancelled:
                _kill(process)
                logger.info("LLM call cancelled: step=%s", request.step)
                token.raise_if_cancelled()
            if time.monotonic() >= deadline:
                _kill(process)
                logger.error("LLM call timeout: step=%s", request.step)
                raise CollaboratorError(
                    f"Language model did not answer within {self.timeout:g}s",
                    collaborator="llm",
                )


def _kill(process: subprocess.Popen):
    process.kill()
    process.communicate()
