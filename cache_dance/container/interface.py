from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Optional, Protocol, Sequence, Tuple

MAX_ERROR = 1024 * 5  # Maximum length of captured stderr carried by errors
TRUNC_PREFIX = "[TRUNC]"


@dataclass(frozen=True)
class ProcessResult:
    """Outcome of a single external process."""

    argv: Tuple[str, ...]
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def program(self) -> str:
        return self.argv[0] if self.argv else ""


@dataclass(frozen=True)
class PipedResult:
    """Outcome of a producer | consumer pair; both exit codes are kept."""

    producer: ProcessResult
    consumer: ProcessResult

    @property
    def ok(self) -> bool:
        return self.producer.ok and self.consumer.ok


class RemovalOutcome(enum.Enum):
    """Classification of a forced container removal."""

    REMOVED = "removed"
    ABSENT = "absent"
    FAILED = "failed"


class LogSink(Protocol):
    """Destination for process stdout/stderr streams."""

    def write_stdout(self, data: bytes) -> None:  # pragma: no cover - protocol
        ...

    def write_stderr(self, data: bytes) -> None:  # pragma: no cover - protocol
        ...


class ProcessRunner(Protocol):
    """Abstract process runner used by the container adapter.

    Implementations must wait for every process they start and must never
    report success for a pipe where either side failed.
    """

    def run(self, argv: Sequence[str], *, check: bool = True) -> ProcessResult:  # pragma: no cover - protocol
        """Run a command to completion.

        Raises:
            ProcessError: If the command exits non-zero and check is True
        """
        ...

    def run_piped(
        self,
        producer: Sequence[str],
        consumer: Sequence[str],
    ) -> PipedResult:  # pragma: no cover - protocol
        """Connect producer stdout to consumer stdin and wait for both.

        Raises:
            PipedProcessError: If either process exits non-zero
        """
        ...


def truncate_stderr(msg: str) -> str:
    if len(msg) > MAX_ERROR - len(TRUNC_PREFIX):
        return (TRUNC_PREFIX + msg)[:MAX_ERROR]
    return msg


class ProcessError(RuntimeError):
    """Raised when an external command exits non-zero."""

    def __init__(
        self,
        result: ProcessResult,
        message: Optional[str] = None,
        *,
        cause: Optional[BaseException] = None,
    ) -> None:
        self.result = result
        self.argv = result.argv
        self.exit_code = result.exit_code
        self.stderr = truncate_stderr(result.stderr.strip())
        if message is None:
            message = f"{result.program} exited with status {result.exit_code}"
        if self.stderr:
            message = f"{message}: {self.stderr!r}"
        super().__init__(message)
        self.__cause__ = cause


class PipedProcessError(ProcessError):
    """Raised when either half of a process pipe exits non-zero."""

    def __init__(self, result: PipedResult) -> None:
        self.piped = result
        failed = result.producer if not result.producer.ok else result.consumer
        message = (
            f"pipe {result.producer.program} | {result.consumer.program} failed "
            f"(producer exit {result.producer.exit_code}, "
            f"consumer exit {result.consumer.exit_code})"
        )
        super().__init__(failed, message)


class InMemoryLogSink:
    """Simple bytes-accumulating sink useful for tests."""

    def __init__(self) -> None:
        self._stdout: bytearray = bytearray()
        self._stderr: bytearray = bytearray()

    def write_stdout(self, data: bytes) -> None:
        self._stdout.extend(data)

    def write_stderr(self, data: bytes) -> None:
        self._stderr.extend(data)

    @property
    def stdout(self) -> bytes:
        return bytes(self._stdout)

    @property
    def stderr(self) -> bytes:
        return bytes(self._stderr)
