"""Cache extraction pipeline.

Extraction of one cache source runs these stages in order, each gated on
the previous one:

1. stamp: create the scratch dir, write a fresh timestamp
2. generate: render the extraction build-file
3. build: build and load the extraction image
4. reset: force-remove any container holding the fixed name
5. materialize: create (never start) the extraction container
6. extract: ``docker cp`` the cache out of the container, piped into ``tar -x``
7. relocate: replace ``<workdir>/<source>`` with the extracted tree

The image tag and container name are fixed per host, so sources are always
extracted one after another and never concurrently.
"""

from __future__ import annotations

import logging
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional

from ..cache_map import CacheOptions, check_scratch_collision, mount_args, target_path
from ..config import ResolvedOptions
from ..container.docker_cli import DockerCli
from ..container.interface import ProcessRunner, RemovalOutcome
from ..container.runner import SubprocessRunner
from .events import ExtractionEvents, LoggingExtractionEvents, Stage
from .template import DANCE_CACHE_DIR, DANCEFILE, STAMP_FILE, render_dancefile

logger = logging.getLogger(__name__)

STAGING_DIR = "dance-cache"


class ExtractionError(RuntimeError):
    """Raised for pipeline failures that are not a failed external command."""

    def __init__(
        self,
        message: str,
        *,
        stage: Stage,
        source: str,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.stage = stage
        self.source = source
        self.__cause__ = cause


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CacheExtractor:
    """Runs the extraction stages for one cache source at a time."""

    def __init__(
        self,
        *,
        scratch_dir: Path,
        utility_image: str,
        builder: Optional[str] = None,
        runner: Optional[ProcessRunner] = None,
        events: Optional[ExtractionEvents] = None,
        workdir: Optional[Path] = None,
        image_tag: str = "dance:extract",
        container_name: str = "cache-container",
        docker_command: str = "docker",
        privileged_remove: bool = True,
        strict_cleanup: bool = False,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.workdir = Path(workdir) if workdir is not None else Path.cwd()
        scratch_dir = Path(scratch_dir)
        self.scratch_dir = scratch_dir if scratch_dir.is_absolute() else self.workdir / scratch_dir
        self.utility_image = utility_image
        self.builder = builder
        self.image_tag = image_tag
        self.container_name = container_name
        self.privileged_remove = privileged_remove
        self.strict_cleanup = strict_cleanup
        self._runner = runner if runner is not None else SubprocessRunner(cwd=self.workdir)
        self._docker = DockerCli(self._runner, docker=docker_command)
        self._events = events if events is not None else LoggingExtractionEvents()
        self._clock = clock

    @classmethod
    def from_options(
        cls,
        options: ResolvedOptions,
        *,
        runner: Optional[ProcessRunner] = None,
        events: Optional[ExtractionEvents] = None,
        workdir: Optional[Path] = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> "CacheExtractor":
        return cls(
            scratch_dir=options.scratch_dir,
            utility_image=options.utility_image,
            builder=options.builder,
            runner=runner,
            events=events,
            workdir=workdir,
            image_tag=options.image_tag,
            container_name=options.container_name,
            docker_command=options.docker_command,
            privileged_remove=options.privileged_remove,
            strict_cleanup=options.strict_cleanup,
            clock=clock,
        )

    @property
    def dancefile_path(self) -> Path:
        return self.scratch_dir / DANCEFILE

    @property
    def staging_dir(self) -> Path:
        return self.scratch_dir / STAGING_DIR

    def extract(self, source: str, options: CacheOptions) -> Path:
        """Extract one cache source into ``<workdir>/<source>``.

        Returns:
            Path of the relocated cache directory

        Raises:
            ProcessError: If any external command fails
            ExtractionError: If the extracted tree is missing, or container
                cleanup fails while strict_cleanup is set
            ConfigError: If the destination would overlap the scratch directory
            OSError: If the scratch dir cannot be written or the rename fails
        """
        check_scratch_collision({source: options}, self.scratch_dir, self.workdir)
        logger.info("Starting cache extraction for source: %s", source)
        self._stamp(source)
        self._generate(source, options)
        self._build(source)
        self._reset_container(source)
        self._materialize(source)
        extracted = self._extract(source)
        dest = self._relocate(source, extracted)
        logger.info("Extracted cache %s into %s", source, dest)
        return dest

    # --- stages ---

    def _stamp(self, source: str) -> None:
        self.scratch_dir.mkdir(parents=True, exist_ok=True)
        stamp = self._clock().isoformat()
        (self.scratch_dir / STAMP_FILE).write_text(stamp, encoding="utf-8")
        self._events.event(Stage.STAMP, source, f"wrote {STAMP_FILE} {stamp} in {self.scratch_dir}")

    def _generate(self, source: str, options: CacheOptions) -> None:
        target = target_path(options)
        args = mount_args(options)
        content = render_dancefile(source, target, args, self.utility_image)
        self.dancefile_path.write_text(content, encoding="utf-8")
        self._events.event(Stage.GENERATE, source, f"target: {target}")
        self._events.event(Stage.GENERATE, source, f"mount args: {args}")
        self._events.event(Stage.GENERATE, source, f"{DANCEFILE} content:\n{content}")

    def _build(self, source: str) -> None:
        argv = self._docker.build_argv(
            self.scratch_dir, self.dancefile_path, self.image_tag, self.builder
        )
        self._events.event(Stage.BUILD, source, " ".join(argv))
        self._docker.build_image(self.scratch_dir, self.dancefile_path, self.image_tag, self.builder)

    def _reset_container(self, source: str) -> None:
        outcome = self._docker.remove_container(self.container_name)
        self._events.event(Stage.RESET, source, f"container {self.container_name}: {outcome.value}")
        if outcome is RemovalOutcome.FAILED and self.strict_cleanup:
            raise ExtractionError(
                f"failed to remove container {self.container_name}",
                stage=Stage.RESET,
                source=source,
            )

    def _materialize(self, source: str) -> None:
        self._events.event(
            Stage.MATERIALIZE, source, f"creating {self.container_name} from {self.image_tag}"
        )
        self._docker.create_container(self.image_tag, self.container_name)

    def _extract(self, source: str) -> Path:
        extracted = self.staging_dir / source
        # Leftovers from an interrupted run would be merged by tar
        if extracted.exists():
            shutil.rmtree(extracted)

        self._events.event(
            Stage.EXTRACT, source, f"{self.container_name}:{DANCE_CACHE_DIR} -> {self.scratch_dir}"
        )
        self._docker.copy_out(self.container_name, DANCE_CACHE_DIR, self.scratch_dir)

        if not extracted.is_dir():
            raise ExtractionError(
                f"extracted cache not found at {extracted}",
                stage=Stage.EXTRACT,
                source=source,
            )
        files = sorted(entry.name for entry in extracted.iterdir())
        self._events.event(Stage.EXTRACT, source, f"extracted files: {files}")
        return extracted

    def _relocate(self, source: str, extracted: Path) -> Path:
        dest = self.workdir / source
        argv = ["rm", "-rf", str(dest)]
        if self.privileged_remove:
            argv.insert(0, "sudo")
        self._events.event(Stage.RELOCATE, source, f"{extracted} -> {dest}")
        self._runner.run(argv)
        extracted.rename(dest)
        return dest


def extract_caches(
    options: ResolvedOptions,
    *,
    runner: Optional[ProcessRunner] = None,
    events: Optional[ExtractionEvents] = None,
    workdir: Optional[Path] = None,
    clock: Callable[[], datetime] = _utc_now,
) -> List[str]:
    """Extract every cache source in cache map order.

    Each source completes all stages before the next one starts. The first
    failure propagates unchanged and the remaining sources are not touched.
    Nothing is run or written when skip_extraction is set.

    Returns:
        Cache sources extracted, in order
    """
    events = events if events is not None else LoggingExtractionEvents()
    if options.skip_extraction:
        events.event(Stage.SKIP, None, "skip-extraction is set, skipping extraction step")
        return []

    extractor = CacheExtractor.from_options(
        options, runner=runner, events=events, workdir=workdir, clock=clock
    )
    cache_map: Dict[str, CacheOptions] = options.cache_map
    check_scratch_collision(cache_map, extractor.scratch_dir, extractor.workdir)
    if not cache_map:
        logger.warning("No cache sources configured, nothing to extract")

    extracted: List[str] = []
    for source, cache_options in cache_map.items():
        extractor.extract(source, cache_options)
        extracted.append(source)
    return extracted
