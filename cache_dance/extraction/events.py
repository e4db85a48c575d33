"""Structured progress events emitted by the extraction pipeline."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import List, Optional, Protocol

logger = logging.getLogger("cache_dance.extraction")


class Stage(enum.Enum):
    SKIP = "skip"
    STAMP = "stamp"
    GENERATE = "generate"
    BUILD = "build"
    RESET = "reset"
    MATERIALIZE = "materialize"
    EXTRACT = "extract"
    RELOCATE = "relocate"


@dataclass(frozen=True)
class ExtractionEvent:
    stage: Stage
    source: Optional[str]
    detail: str


class ExtractionEvents(Protocol):
    """Destination for (stage, source, detail) progress events."""

    def event(self, stage: Stage, source: Optional[str], detail: str) -> None:  # pragma: no cover - protocol
        ...


class LoggingExtractionEvents:
    """Writes events to the cache_dance.extraction logger."""

    def __init__(self, events_logger: Optional[logging.Logger] = None) -> None:
        self._logger = events_logger or logger

    def event(self, stage: Stage, source: Optional[str], detail: str) -> None:
        self._logger.info("[%s] %s: %s", stage.value, source or "-", detail)


class InMemoryExtractionEvents:
    """Records events in order; useful for tests."""

    def __init__(self) -> None:
        self.events: List[ExtractionEvent] = []

    def event(self, stage: Stage, source: Optional[str], detail: str) -> None:
        self.events.append(ExtractionEvent(stage=stage, source=source, detail=detail))

    def stages(self, source: Optional[str] = None) -> List[Stage]:
        return [e.stage for e in self.events if source is None or e.source == source]
