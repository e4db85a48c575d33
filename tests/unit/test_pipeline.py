"""Unit tests for the extraction pipeline and batch orchestrator."""

from __future__ import annotations

import re
import shutil
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import pytest

from cache_dance.cache_map import CacheOptions, ConfigError
from cache_dance.config import ResolvedOptions
from cache_dance.container.interface import (
    PipedProcessError,
    PipedResult,
    ProcessError,
    ProcessResult,
)
from cache_dance.extraction import (
    CacheExtractor,
    ExtractionError,
    InMemoryExtractionEvents,
    Stage,
    extract_caches,
)


class FakeRunner:
    """ProcessRunner stand-in that emulates docker, tar and rm on disk.

    `contents` maps a cache source to the files its built image holds.
    `exit_codes` maps a command key ("build", "rm", "create", "cp", "tar",
    "remove") to the exit status it should report.
    """

    def __init__(
        self,
        contents: Optional[Dict[str, Dict[str, str]]] = None,
        exit_codes: Optional[Dict[str, int]] = None,
        stderr: Optional[Dict[str, str]] = None,
    ) -> None:
        self.contents = contents or {}
        self.exit_codes = exit_codes or {}
        self.stderr = stderr or {}
        self.calls: List[Tuple[str, ...]] = []
        self.image_source: Optional[str] = None

    @staticmethod
    def _key(argv: Sequence[str]) -> str:
        if argv[0] == "sudo" or argv[0] == "rm":
            return "remove"
        if argv[1] == "buildx":
            return "build"
        return argv[1]

    def _result(self, key, argv, exit_code=None):
        code = self.exit_codes.get(key, 0) if exit_code is None else exit_code
        return ProcessResult(argv=tuple(argv), exit_code=code, stderr=self.stderr.get(key, ""))

    def run(self, argv, *, check=True):
        argv = tuple(str(a) for a in argv)
        self.calls.append(argv)
        key = self._key(argv)
        result = self._result(key, argv)

        if result.ok and key == "build":
            dancefile = Path(argv[argv.index("-f") + 1]).read_text()
            self.image_source = re.search(r"mkdir -p /var/dance-cache/(\S+)", dancefile).group(1)
        elif result.ok and key == "remove":
            shutil.rmtree(argv[-1], ignore_errors=True)

        if check and not result.ok:
            raise ProcessError(result)
        return result

    def run_piped(self, producer, consumer):
        producer = tuple(str(a) for a in producer)
        consumer = tuple(str(a) for a in consumer)
        self.calls.append(producer + ("|",) + consumer)
        result = PipedResult(
            producer=self._result("cp", producer),
            consumer=self._result("tar", consumer),
        )
        if not result.ok:
            raise PipedProcessError(result)

        dest = Path(consumer[-1]) / "dance-cache" / self.image_source
        dest.mkdir(parents=True, exist_ok=True)
        for name, data in self.contents.get(self.image_source, {}).items():
            path = dest / name
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(data)
        return result

    def commands(self) -> List[str]:
        return [self._key(call) for call in self.calls]


def _clock():
    ticks = iter(datetime(2026, 1, 1, tzinfo=timezone.utc) + timedelta(seconds=n) for n in range(1000))
    return lambda: next(ticks)


def _options(cache_map, **kwargs) -> ResolvedOptions:
    return ResolvedOptions(
        cache_map=cache_map,
        scratch_dir=Path("scratch"),
        utility_image="busybox:latest",
        **kwargs,
    )


def _tree(root: Path) -> Dict[str, str]:
    return {
        str(p.relative_to(root)): p.read_text()
        for p in sorted(root.rglob("*"))
        if p.is_file()
    }


NPM = {"cache-npm": CacheOptions(target="/root/.npm", extra=(("id", "npm"),))}
NPM_FILES = {"cache-npm": {"_cacache/index": "idx", "_logs/debug.log": "log"}}


class TestCacheExtractor:
    """Test the per-source stage sequence."""

    def test_successful_extraction(self, tmp_path):
        runner = FakeRunner(contents=NPM_FILES)
        events = InMemoryExtractionEvents()
        extractor = CacheExtractor(
            scratch_dir=Path("scratch"),
            utility_image="busybox:latest",
            runner=runner,
            events=events,
            workdir=tmp_path,
            clock=_clock(),
        )

        dest = extractor.extract("cache-npm", NPM["cache-npm"])

        assert dest == tmp_path / "cache-npm"
        assert _tree(dest) == {"_cacache/index": "idx", "_logs/debug.log": "log"}
        assert runner.commands() == ["build", "rm", "create", "cp", "remove"]
        assert events.stages("cache-npm") == [
            Stage.STAMP,
            Stage.GENERATE,
            Stage.GENERATE,
            Stage.GENERATE,
            Stage.BUILD,
            Stage.RESET,
            Stage.MATERIALIZE,
            Stage.EXTRACT,
            Stage.EXTRACT,
            Stage.RELOCATE,
        ]

        scratch = tmp_path / "scratch"
        assert (scratch / "buildstamp").read_text() == "2026-01-01T00:00:00+00:00"
        dancefile = (scratch / "Dancefile.extract").read_text()
        assert "FROM busybox:latest" in dancefile
        assert "--mount=type=cache,target=/root/.npm,id=npm" in dancefile
        assert not (scratch / "dance-cache" / "cache-npm").exists()

    def test_commands_issued(self, tmp_path):
        runner = FakeRunner(contents=NPM_FILES)
        extractor = CacheExtractor(
            scratch_dir=tmp_path / "scratch",
            utility_image="busybox:latest",
            builder="ci",
            runner=runner,
            events=InMemoryExtractionEvents(),
            workdir=tmp_path,
        )

        extractor.extract("cache-npm", NPM["cache-npm"])

        scratch = str(tmp_path / "scratch")
        assert runner.calls == [
            (
                "docker", "buildx", "build", "--builder", "ci",
                "-f", f"{scratch}/Dancefile.extract",
                "--tag", "dance:extract", "--load", scratch,
            ),
            ("docker", "rm", "-f", "cache-container"),
            ("docker", "create", "-ti", "--name", "cache-container", "dance:extract"),
            (
                "docker", "cp", "-L", "cache-container:/var/dance-cache", "-", "|",
                "tar", "-H", "posix", "-x", "-C", scratch,
            ),
            ("sudo", "rm", "-rf", str(tmp_path / "cache-npm")),
        ]

    def test_unprivileged_remove(self, tmp_path):
        runner = FakeRunner(contents=NPM_FILES)
        extractor = CacheExtractor(
            scratch_dir=Path("scratch"),
            utility_image="busybox:latest",
            runner=runner,
            events=InMemoryExtractionEvents(),
            workdir=tmp_path,
            privileged_remove=False,
        )

        extractor.extract("cache-npm", NPM["cache-npm"])

        assert runner.calls[-1] == ("rm", "-rf", str(tmp_path / "cache-npm"))

    def test_prior_destination_replaced(self, tmp_path):
        stale = tmp_path / "cache-npm"
        stale.mkdir()
        (stale / "old-file").write_text("stale")
        extractor = CacheExtractor(
            scratch_dir=Path("scratch"),
            utility_image="busybox:latest",
            runner=FakeRunner(contents=NPM_FILES),
            events=InMemoryExtractionEvents(),
            workdir=tmp_path,
        )

        extractor.extract("cache-npm", NPM["cache-npm"])

        assert _tree(stale) == {"_cacache/index": "idx", "_logs/debug.log": "log"}

    def test_stale_staging_dir_is_not_merged(self, tmp_path):
        staging = tmp_path / "scratch" / "dance-cache" / "cache-npm"
        staging.mkdir(parents=True)
        (staging / "leftover").write_text("x")
        extractor = CacheExtractor(
            scratch_dir=Path("scratch"),
            utility_image="busybox:latest",
            runner=FakeRunner(contents=NPM_FILES),
            events=InMemoryExtractionEvents(),
            workdir=tmp_path,
        )

        dest = extractor.extract("cache-npm", NPM["cache-npm"])

        assert "leftover" not in _tree(dest)

    def test_rerun_is_idempotent(self, tmp_path):
        runner = FakeRunner(contents=NPM_FILES)
        extractor = CacheExtractor(
            scratch_dir=Path("scratch"),
            utility_image="busybox:latest",
            runner=runner,
            events=InMemoryExtractionEvents(),
            workdir=tmp_path,
            clock=_clock(),
        )

        first = _tree(extractor.extract("cache-npm", NPM["cache-npm"]))
        stamp1 = (tmp_path / "scratch" / "buildstamp").read_text()
        second = _tree(extractor.extract("cache-npm", NPM["cache-npm"]))
        stamp2 = (tmp_path / "scratch" / "buildstamp").read_text()

        assert first == second
        assert stamp1 != stamp2

    def test_build_failure_stops_pipeline(self, tmp_path):
        runner = FakeRunner(exit_codes={"build": 1}, stderr={"build": "failed to solve"})
        extractor = CacheExtractor(
            scratch_dir=Path("scratch"),
            utility_image="busybox:latest",
            runner=runner,
            events=InMemoryExtractionEvents(),
            workdir=tmp_path,
        )

        with pytest.raises(ProcessError) as exc_info:
            extractor.extract("cache-npm", NPM["cache-npm"])

        assert "failed to solve" in str(exc_info.value)
        assert runner.commands() == ["build"]

    @pytest.mark.parametrize(
        "stderr",
        ["Error: No such container: cache-container", "permission denied"],
    )
    def test_removal_failure_is_ignored(self, tmp_path, stderr):
        runner = FakeRunner(contents=NPM_FILES, exit_codes={"rm": 1}, stderr={"rm": stderr})
        extractor = CacheExtractor(
            scratch_dir=Path("scratch"),
            utility_image="busybox:latest",
            runner=runner,
            events=InMemoryExtractionEvents(),
            workdir=tmp_path,
        )

        extractor.extract("cache-npm", NPM["cache-npm"])

        assert runner.commands() == ["build", "rm", "create", "cp", "remove"]

    def test_strict_cleanup_aborts_on_other_failure(self, tmp_path):
        runner = FakeRunner(exit_codes={"rm": 1}, stderr={"rm": "permission denied"})
        extractor = CacheExtractor(
            scratch_dir=Path("scratch"),
            utility_image="busybox:latest",
            runner=runner,
            events=InMemoryExtractionEvents(),
            workdir=tmp_path,
            strict_cleanup=True,
        )

        with pytest.raises(ExtractionError) as exc_info:
            extractor.extract("cache-npm", NPM["cache-npm"])

        assert exc_info.value.stage is Stage.RESET
        assert runner.commands() == ["build", "rm"]

    def test_strict_cleanup_still_ignores_absent(self, tmp_path):
        runner = FakeRunner(
            contents=NPM_FILES,
            exit_codes={"rm": 1},
            stderr={"rm": "Error: No such container: cache-container"},
        )
        extractor = CacheExtractor(
            scratch_dir=Path("scratch"),
            utility_image="busybox:latest",
            runner=runner,
            events=InMemoryExtractionEvents(),
            workdir=tmp_path,
            strict_cleanup=True,
        )

        extractor.extract("cache-npm", NPM["cache-npm"])

        assert (tmp_path / "cache-npm").is_dir()

    def test_create_failure_stops_pipeline(self, tmp_path):
        runner = FakeRunner(exit_codes={"create": 125})
        extractor = CacheExtractor(
            scratch_dir=Path("scratch"),
            utility_image="busybox:latest",
            runner=runner,
            events=InMemoryExtractionEvents(),
            workdir=tmp_path,
        )

        with pytest.raises(ProcessError):
            extractor.extract("cache-npm", NPM["cache-npm"])

        assert runner.commands() == ["build", "rm", "create"]

    @pytest.mark.parametrize("codes", [{"cp": 1}, {"tar": 2}, {"cp": 1, "tar": 2}])
    def test_copy_or_untar_failure_is_fatal(self, tmp_path, codes):
        prior = tmp_path / "cache-npm"
        prior.mkdir()
        runner = FakeRunner(contents=NPM_FILES, exit_codes=codes)
        extractor = CacheExtractor(
            scratch_dir=Path("scratch"),
            utility_image="busybox:latest",
            runner=runner,
            events=InMemoryExtractionEvents(),
            workdir=tmp_path,
        )

        with pytest.raises(PipedProcessError) as exc_info:
            extractor.extract("cache-npm", NPM["cache-npm"])

        assert not exc_info.value.piped.ok
        assert runner.commands() == ["build", "rm", "create", "cp"]
        assert prior.is_dir()

    def test_missing_extracted_tree(self, tmp_path):
        class EmptyCopyRunner(FakeRunner):
            def run_piped(self, producer, consumer):
                self.calls.append(tuple(producer) + ("|",) + tuple(consumer))
                return PipedResult(
                    producer=ProcessResult(tuple(producer), 0),
                    consumer=ProcessResult(tuple(consumer), 0),
                )

        runner = EmptyCopyRunner()
        extractor = CacheExtractor(
            scratch_dir=Path("scratch"),
            utility_image="busybox:latest",
            runner=runner,
            events=InMemoryExtractionEvents(),
            workdir=tmp_path,
        )

        with pytest.raises(ExtractionError) as exc_info:
            extractor.extract("cache-npm", NPM["cache-npm"])

        assert exc_info.value.stage is Stage.EXTRACT
        assert exc_info.value.source == "cache-npm"
        assert "remove" not in runner.commands()

    def test_privileged_remove_failure_is_fatal(self, tmp_path):
        runner = FakeRunner(contents=NPM_FILES, exit_codes={"remove": 1})
        extractor = CacheExtractor(
            scratch_dir=Path("scratch"),
            utility_image="busybox:latest",
            runner=runner,
            events=InMemoryExtractionEvents(),
            workdir=tmp_path,
        )

        with pytest.raises(ProcessError):
            extractor.extract("cache-npm", NPM["cache-npm"])

        assert not (tmp_path / "cache-npm").exists()


class TestExtractCaches:
    """Test the batch orchestrator."""

    def test_sources_run_in_order_without_interleaving(self, tmp_path):
        cache_map = {
            "cache-b": CacheOptions(target="/b"),
            "cache-a": CacheOptions(target="/a"),
        }
        runner = FakeRunner(contents={"cache-a": {"a": "1"}, "cache-b": {"b": "2"}})
        events = InMemoryExtractionEvents()

        extracted = extract_caches(
            _options(cache_map), runner=runner, events=events, workdir=tmp_path
        )

        assert extracted == ["cache-b", "cache-a"]
        sources = [e.source for e in events.events]
        last_b = max(i for i, s in enumerate(sources) if s == "cache-b")
        first_a = min(i for i, s in enumerate(sources) if s == "cache-a")
        assert last_b < first_a
        assert runner.commands() == ["build", "rm", "create", "cp", "remove"] * 2
        assert _tree(tmp_path / "cache-a") == {"a": "1"}
        assert _tree(tmp_path / "cache-b") == {"b": "2"}

    def test_failure_aborts_remaining_sources(self, tmp_path):
        cache_map = {
            "cache-a": CacheOptions(target="/a"),
            "cache-b": CacheOptions(target="/b"),
        }

        class FailSecondBuild(FakeRunner):
            builds = 0

            def run(self, argv, *, check=True):
                if argv[1] == "buildx":
                    self.builds += 1
                    if self.builds == 2:
                        self.exit_codes = {"build": 1}
                return super().run(argv, check=check)

        runner = FailSecondBuild(contents={"cache-a": {"a": "1"}})
        cache_map["cache-c"] = CacheOptions(target="/c")

        with pytest.raises(ProcessError):
            extract_caches(
                _options(cache_map),
                runner=runner,
                events=InMemoryExtractionEvents(),
                workdir=tmp_path,
            )

        assert (tmp_path / "cache-a").is_dir()
        assert not (tmp_path / "cache-b").exists()
        assert not (tmp_path / "cache-c").exists()
        assert runner.commands() == ["build", "rm", "create", "cp", "remove", "build"]

    def test_skip_extraction_is_a_no_op(self, tmp_path):
        runner = FakeRunner(contents=NPM_FILES)
        events = InMemoryExtractionEvents()

        extracted = extract_caches(
            _options(NPM, skip_extraction=True),
            runner=runner,
            events=events,
            workdir=tmp_path,
        )

        assert extracted == []
        assert runner.calls == []
        assert list(tmp_path.iterdir()) == []
        assert events.stages() == [Stage.SKIP]

    def test_empty_cache_map(self, tmp_path):
        runner = FakeRunner()

        assert extract_caches(_options({}), runner=runner, workdir=tmp_path) == []
        assert runner.calls == []

    def test_source_named_like_scratch_dir_is_rejected(self, tmp_path):
        runner = FakeRunner(contents={"scratch": {"f": "x"}})
        cache_map = {
            "cache-npm": NPM["cache-npm"],
            "scratch": CacheOptions(target="/root/.cache"),
        }

        with pytest.raises(ConfigError):
            extract_caches(_options(cache_map), runner=runner, workdir=tmp_path)

        assert runner.calls == []
        assert not (tmp_path / "cache-npm").exists()

    def test_extractor_rejects_scratch_collision_before_running(self, tmp_path):
        runner = FakeRunner()
        extractor = CacheExtractor(
            scratch_dir=Path("scratch"),
            utility_image="busybox:latest",
            runner=runner,
            events=InMemoryExtractionEvents(),
            workdir=tmp_path,
        )

        with pytest.raises(ConfigError):
            extractor.extract("scratch", CacheOptions(target="/root/.cache"))

        assert runner.calls == []
        assert not (tmp_path / "scratch").exists()
