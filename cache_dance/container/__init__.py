from .docker_cli import DockerCli
from .interface import (
    InMemoryLogSink,
    LogSink,
    PipedProcessError,
    PipedResult,
    ProcessError,
    ProcessResult,
    ProcessRunner,
    RemovalOutcome,
)
from .logging import LoggerLogSink
from .runner import SubprocessRunner

__all__ = [
    "DockerCli",
    "InMemoryLogSink",
    "LogSink",
    "LoggerLogSink",
    "PipedProcessError",
    "PipedResult",
    "ProcessError",
    "ProcessResult",
    "ProcessRunner",
    "RemovalOutcome",
    "SubprocessRunner",
]
