"""Extraction of build cache mounts onto the host.

Boundary rules:
- The pipeline depends only on `cache_dance.container.interface.ProcessRunner`.
- Docker argv layouts live in `cache_dance.container.docker_cli`.
- Progress is reported through `ExtractionEvents`, never printed.
"""

from .events import (
    ExtractionEvent,
    ExtractionEvents,
    InMemoryExtractionEvents,
    LoggingExtractionEvents,
    Stage,
)
from .pipeline import CacheExtractor, ExtractionError, extract_caches
from .template import render_dancefile

__all__ = [
    "CacheExtractor",
    "ExtractionError",
    "ExtractionEvent",
    "ExtractionEvents",
    "InMemoryExtractionEvents",
    "LoggingExtractionEvents",
    "Stage",
    "extract_caches",
    "render_dancefile",
]
