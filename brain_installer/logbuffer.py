"""Per-tool buffered logging.

Tools install in parallel. Each tool logs through its own child logger
whose records go into a buffer instead of the console; the executor hands
the buffer to the caller once the tool finishes, so output from different
tools never interleaves.
"""

import logging
import sys
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator

TOOL_LOGGER_PREFIX = "brain_installer.tools"


@dataclass(frozen=True)
class LogLine:
    level: str
    message: str


class ToolLogBuffer:
    """Ordered log lines for one tool."""

    def __init__(self, tool: str):
        self.tool = tool
        self._lines: list[LogLine] = []

    def append(self, line: LogLine) -> None:
        """Add a log line to the buffer."""
        self._lines.append(line)

    def lines(self) -> list[LogLine]:
        return list(self._lines)

    def clear(self) -> None:
        """Clear all log lines."""
        self._lines.clear()


class BufferedHandler(logging.Handler):
    """Logging handler that stores formatted records in a ToolLogBuffer."""

    def __init__(self, buffer: ToolLogBuffer, level: int = logging.NOTSET):
        super().__init__(level)
        self.buffer = buffer

    def emit(self, record: logging.LogRecord) -> None:
        """Store log record in buffer."""
        try:
            self.buffer.append(LogLine(level=record.levelname, message=self.format(record)))
        except Exception:
            self.handleError(record)


def tool_logger(tool: str) -> logging.Logger:
    return logging.getLogger(f"{TOOL_LOGGER_PREFIX}.{tool}")


@contextmanager
def buffered_tool_logger(
    tool: str, level: int = logging.INFO
) -> Iterator[tuple[logging.Logger, ToolLogBuffer]]:
    """Route a tool's logger into a fresh buffer for the duration of a run."""
    buffer = ToolLogBuffer(tool)
    log = tool_logger(tool)
    handler = BufferedHandler(buffer, level)
    handler.setFormatter(logging.Formatter("%(message)s"))
    previous_level, previous_propagate = log.level, log.propagate
    log.setLevel(level)
    log.propagate = False
    log.addHandler(handler)
    try:
        yield log, buffer
    finally:
        log.removeHandler(handler)
        log.setLevel(previous_level)
        log.propagate = previous_propagate


_console_handler: logging.Handler | None = None


def setup_logging(verbose: bool = False) -> None:
    """Configure console logging for the CLI."""
    global _console_handler
    level = logging.DEBUG if verbose else logging.WARNING
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Replace the handler from a previous call
    if _console_handler is not None:
        root_logger.removeHandler(_console_handler)

    _console_handler = logging.StreamHandler(sys.stderr)
    _console_handler.setLevel(level)
    _console_handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
    root_logger.addHandler(_console_handler)
