"""LogSink implementation that forwards process output to a logger.

Each non-empty line of stdout is logged at INFO, each line of stderr at
WARNING.
"""

from __future__ import annotations

import logging
from typing import Optional

logger = logging.getLogger(__name__)


class LoggerLogSink:
    """LogSink that writes decoded process output to a logger line by line."""

    def __init__(self, process_logger: Optional[logging.Logger] = None) -> None:
        """Initialize the sink.

        Args:
            process_logger: Logger receiving decoded lines (defaults to this module's)
        """
        self.process_logger = process_logger or logger

    def write_stdout(self, data: bytes) -> None:
        self._emit(data, logging.INFO)

    def write_stderr(self, data: bytes) -> None:
        self._emit(data, logging.WARNING)

    def _emit(self, data: bytes, level: int) -> None:
        if not data:
            return

        text = data.decode("utf-8", errors="replace")
        for line in text.splitlines():
            if line.strip():
                self.process_logger.log(level, line)
