from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

from .interface import PipedResult, ProcessResult, ProcessRunner, RemovalOutcome

logger = logging.getLogger(__name__)

_ABSENT_MARKERS = ("no such container", "no container with name or id")


class DockerCli:
    """Docker command-line adapter.

    Boundary rules:
    - Only this module knows docker argv layouts.
    - Process execution is delegated to a ProcessRunner.
    - Failures propagate as ProcessError from the runner, except for
      container removal which reports a RemovalOutcome instead.
    """

    def __init__(self, runner: ProcessRunner, *, docker: str = "docker") -> None:
        self._runner = runner
        self._docker = docker

    # --- argv construction ---

    def build_argv(
        self,
        context_dir: Path,
        dockerfile: Path,
        tag: str,
        builder: Optional[str] = None,
    ) -> List[str]:
        argv = [self._docker, "buildx", "build"]
        if builder:
            argv.extend(["--builder", builder])
        argv.extend(["-f", str(dockerfile), "--tag", tag, "--load", str(context_dir)])
        return argv

    def remove_argv(self, name: str) -> List[str]:
        return [self._docker, "rm", "-f", name]

    def create_argv(self, image: str, name: str) -> List[str]:
        # A TTY is required for `docker cp` to work against a never-started container
        return [self._docker, "create", "-ti", "--name", name, image]

    def copy_out_argv(self, name: str, path: str) -> List[str]:
        return [self._docker, "cp", "-L", f"{name}:{path}", "-"]

    @staticmethod
    def untar_argv(dest_dir: Path) -> List[str]:
        return ["tar", "-H", "posix", "-x", "-C", str(dest_dir)]

    # --- operations ---

    def build_image(
        self,
        context_dir: Path,
        dockerfile: Path,
        tag: str,
        builder: Optional[str] = None,
    ) -> ProcessResult:
        return self._runner.run(self.build_argv(context_dir, dockerfile, tag, builder))

    def remove_container(self, name: str) -> RemovalOutcome:
        """Force-remove a container by name without raising.

        Returns:
            REMOVED on success, ABSENT when no such container exists, FAILED
            for any other error.
        """
        result = self._runner.run(self.remove_argv(name), check=False)
        if result.ok:
            return RemovalOutcome.REMOVED
        stderr = result.stderr.lower()
        if any(marker in stderr for marker in _ABSENT_MARKERS):
            logger.debug("Container %s not present", name)
            return RemovalOutcome.ABSENT
        logger.warning(
            "Failed to remove container %s (exit %d): %s",
            name,
            result.exit_code,
            result.stderr.strip(),
        )
        return RemovalOutcome.FAILED

    def create_container(self, image: str, name: str) -> ProcessResult:
        return self._runner.run(self.create_argv(image, name))

    def copy_out(self, name: str, path: str, dest_dir: Path) -> PipedResult:
        """Stream `path` out of container `name` into `dest_dir` as a tar archive."""
        return self._runner.run_piped(self.copy_out_argv(name, path), self.untar_argv(dest_dir))
