"""
StreamingReporter: incremental progress lines for a cell being produced.
"""

import logging
import time
from typing import TYPE_CHECKING, Callable, Iterable, Optional

from research_notebook.cell import Cell

if TYPE_CHECKING:
    from research_notebook.runtime import CancellationToken, SessionRuntime

logger = logging.getLogger(__name__)


class StreamingReporter:
    """
    Appends progress lines to one session's cells.

    Only the owning cell is touched, under the session's own lock, and the
    pacing delay is spent outside that lock, so other sessions (and readers
    of this one) are never blocked by a stream.
    """

    def __init__(
        self,
        runtime: "SessionRuntime",
        default_delay_ms: int = 100,
        listener: Optional[Callable[[str, str], None]] = None,
    ):
        self.runtime = runtime
        self.default_delay_ms = default_delay_ms
        self.listener = listener

    def _set_streaming(self, cell_id: str, value: bool, token=None, persist: bool = False):
        def apply(cell: Cell):
            cell.metadata.is_streaming = value

        self.runtime.mutate_cell(cell_id, apply, token=token, persist=persist)

    def stream_lines(
        self,
        cell_id: str,
        lines: Iterable[str],
        delay_ms: Optional[int] = None,
        token: Optional["CancellationToken"] = None,
    ) -> int:
        """
        Append each line to the cell's content and ``metadata.stream_lines``.

        Args:
            cell_id: Cell receiving the lines
            lines: Lines to append, in order
            delay_ms: Pause between lines (defaults to the reporter's pacing)
            token: Stops the stream early when cancelled

        Returns:
            Number of lines streamed
        """
        delay = (self.default_delay_ms if delay_ms is None else delay_ms) / 1000
        streamed = 0

        self._set_streaming(cell_id, True, token=token)
        try:
            for line in lines:
                if token is not None and token.cancelled:
                    break
                if streamed and delay > 0:
                    if token is not None:
                        if token.wait(delay):
                            break
                    else:
                        time.sleep(delay)

                def apply(cell: Cell, line=line):
                    cell.content = f"{cell.content}\n{line}" if cell.content else line
                    cell.metadata.stream_lines.append(line)

                self.runtime.mutate_cell(cell_id, apply, token=token)
                streamed += 1
                if self.listener is not None:
                    self.listener(cell_id, line)
        finally:
            # render state is reset even when the stream was interrupted
            self._set_streaming(cell_id, False, persist=True)

        logger.debug("Streamed %d line(s) to cell %s", streamed, cell_id)
        return streamed
