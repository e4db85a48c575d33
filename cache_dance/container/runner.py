from __future__ import annotations

import logging
import shlex
import subprocess
from pathlib import Path
from threading import Thread
from typing import Optional, Sequence, Tuple

from .interface import (
    LogSink,
    PipedProcessError,
    PipedResult,
    ProcessError,
    ProcessResult,
    ProcessRunner,
)
from .logging import LoggerLogSink

logger = logging.getLogger(__name__)

# Exit status reported for a command whose executable could not be started
EXIT_NOT_STARTED = 127


def _decode(data: Optional[bytes]) -> str:
    return (data or b"").decode("utf-8", errors="replace")


class SubprocessRunner(ProcessRunner):
    """ProcessRunner backed by the subprocess module.

    Boundary rules:
    - Only this module spawns processes.
    - Every started process is waited on, including on error paths.
    - Output is forwarded to the LogSink once the process has exited.
    """

    def __init__(self, *, sink: Optional[LogSink] = None, cwd: Optional[Path] = None) -> None:
        self._sink = sink if sink is not None else LoggerLogSink()
        self._cwd = cwd

    def run(self, argv: Sequence[str], *, check: bool = True) -> ProcessResult:
        args = tuple(str(a) for a in argv)
        logger.info("Running: %s", shlex.join(args))
        try:
            proc = subprocess.run(
                args,
                cwd=self._cwd,
                stdin=subprocess.DEVNULL,
                capture_output=True,
            )
        except OSError as exc:
            result = ProcessResult(argv=args, exit_code=EXIT_NOT_STARTED, stderr=str(exc))
            if check:
                raise ProcessError(result, cause=exc) from exc
            return result

        self._forward(proc.stdout, proc.stderr)
        result = ProcessResult(
            argv=args,
            exit_code=proc.returncode,
            stdout=_decode(proc.stdout),
            stderr=_decode(proc.stderr),
        )
        if check and not result.ok:
            raise ProcessError(result)
        return result

    def run_piped(self, producer: Sequence[str], consumer: Sequence[str]) -> PipedResult:
        producer_args = tuple(str(a) for a in producer)
        consumer_args = tuple(str(a) for a in consumer)
        logger.info("Running: %s | %s", shlex.join(producer_args), shlex.join(consumer_args))

        try:
            producer_proc = subprocess.Popen(
                producer_args,
                cwd=self._cwd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as exc:
            result = ProcessResult(argv=producer_args, exit_code=EXIT_NOT_STARTED, stderr=str(exc))
            raise ProcessError(result, cause=exc) from exc

        try:
            consumer_proc = subprocess.Popen(
                consumer_args,
                cwd=self._cwd,
                stdin=producer_proc.stdout,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as exc:
            producer_proc.kill()
            producer_proc.communicate()
            result = ProcessResult(argv=consumer_args, exit_code=EXIT_NOT_STARTED, stderr=str(exc))
            raise ProcessError(result, cause=exc) from exc

        # Only the consumer holds the read end now; the producer gets EPIPE
        # if the consumer exits early.
        assert producer_proc.stdout is not None
        producer_proc.stdout.close()

        producer_err, consumer_out, consumer_err = self._join(producer_proc, consumer_proc)

        self._forward(b"", producer_err)
        self._forward(consumer_out, consumer_err)
        result = PipedResult(
            producer=ProcessResult(
                argv=producer_args,
                exit_code=producer_proc.returncode,
                stderr=_decode(producer_err),
            ),
            consumer=ProcessResult(
                argv=consumer_args,
                exit_code=consumer_proc.returncode,
                stdout=_decode(consumer_out),
                stderr=_decode(consumer_err),
            ),
        )
        if not result.ok:
            raise PipedProcessError(result)
        return result

    def _join(
        self,
        producer_proc: subprocess.Popen,
        consumer_proc: subprocess.Popen,
    ) -> Tuple[bytes, bytes, bytes]:
        # The producer's stderr must be drained while we block on the
        # consumer, otherwise a chatty producer can fill its stderr pipe.
        producer_err = bytearray()

        def drain() -> None:
            assert producer_proc.stderr is not None
            producer_err.extend(producer_proc.stderr.read())

        t_drain = Thread(target=drain, name="pipe-producer-stderr", daemon=True)
        t_drain.start()
        try:
            consumer_out, consumer_err = consumer_proc.communicate()
            producer_proc.wait()
        finally:
            t_drain.join()
            if producer_proc.stderr is not None:
                producer_proc.stderr.close()
        return bytes(producer_err), consumer_out, consumer_err

    def _forward(self, stdout: Optional[bytes], stderr: Optional[bytes]) -> None:
        if stdout:
            self._sink.write_stdout(stdout)
        if stderr:
            self._sink.write_stderr(stderr)
