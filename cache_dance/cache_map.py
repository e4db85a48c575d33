"""Cache map model and parsing.

A cache map names each cache source and the build cache mount it comes from.
It is written as a JSON object whose values are either the mount target::

    {"cache-npm": "/root/.npm"}

or an object carrying the target plus further mount options::

    {"cache-go": {"target": "/go/pkg/mod", "id": "gomod", "sharing": "locked"}}
"""

from __future__ import annotations

import json
import logging
import os
import posixpath
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)

_TARGET_KEYS = ("target", "dst", "destination")
_MOUNT_FLAG = re.compile(r"--mount=(\S+)")
_SAFE_SOURCE = re.compile(r"[A-Za-z0-9._][A-Za-z0-9._-]*")
_UNSAFE_MOUNT_VALUE = re.compile(r"[\s,;&|`$\\]")


class ConfigError(ValueError):
    """Raised when cache options cannot be resolved into a valid cache map."""


@dataclass(frozen=True)
class CacheOptions:
    """Where a cache mount materialises in the build and how it is mounted."""

    target: str
    extra: Tuple[Tuple[str, str], ...] = ()


def target_path(options: CacheOptions) -> str:
    return options.target


def mount_args(options: CacheOptions) -> str:
    """Format the value of a ``RUN --mount=`` flag for this cache."""
    parts = ["type=cache", f"target={options.target}"]
    parts.extend(f"{key}={value}" for key, value in options.extra)
    return ",".join(parts)


def validate_source(source: Any) -> str:
    """Check that a cache source can be used as a single path segment.

    Sources are embedded unquoted in the generated build-file, so only
    letters, digits, ``.``, ``_`` and ``-`` are accepted, and a source may
    not start with ``-``.
    """
    if not isinstance(source, str) or not source:
        raise ConfigError(f"cache source must be a non-empty string: {source!r}")
    if source in (".", "..") or not _SAFE_SOURCE.fullmatch(source):
        raise ConfigError(f"cache source is not a safe directory name: {source!r}")
    return source


def _validate_mount_value(source: str, key: str, value: str) -> str:
    # Targets and options are embedded unquoted in a RUN instruction
    if _UNSAFE_MOUNT_VALUE.search(value):
        raise ConfigError(
            f"mount option {key!r} of cache source {source!r} contains whitespace "
            f"or a separator: {value!r}"
        )
    return value


def check_scratch_collision(
    cache_map: Mapping[str, CacheOptions],
    scratch_dir: Path,
    workdir: Path,
) -> None:
    """Reject sources whose destination would contain the scratch directory.

    Relocation removes ``<workdir>/<source>`` before renaming the extracted
    tree out of the scratch directory, so the two must not overlap.
    """
    scratch = Path(os.path.abspath(workdir / scratch_dir))
    for source in cache_map:
        dest = Path(os.path.abspath(workdir / source))
        if dest == scratch or dest in scratch.parents:
            raise ConfigError(
                f"cache source {source!r} collides with the scratch directory {scratch}; "
                "rename the source or choose another scratch_dir"
            )


def _stringify(key: str, value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (str, int, float)):
        return str(value)
    raise ConfigError(f"mount option {key!r} must be a scalar, got {type(value).__name__}")


def parse_cache_options(source: str, value: Any) -> CacheOptions:
    if isinstance(value, str):
        if not value:
            raise ConfigError(f"empty target for cache source {source!r}")
        return CacheOptions(target=_validate_mount_value(source, "target", value))

    if isinstance(value, Mapping):
        target = next((value[k] for k in _TARGET_KEYS if value.get(k)), None)
        if not isinstance(target, str) or not target:
            raise ConfigError(f"cache source {source!r} is missing a target")
        extra = tuple(
            (str(key), _validate_mount_value(source, str(key), _stringify(str(key), item)))
            for key, item in value.items()
            if key not in ("type",) + _TARGET_KEYS
        )
        return CacheOptions(target=_validate_mount_value(source, "target", target), extra=extra)

    raise ConfigError(
        f"cache source {source!r} must map to a target path or an options object"
    )


def parse_cache_map(value: Any) -> Dict[str, CacheOptions]:
    """Parse a cache map from a JSON string or an already-decoded mapping.

    Raises:
        ConfigError: On malformed JSON, invalid source names or missing targets
    """
    if value is None or value == "":
        return {}
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError as exc:
            raise ConfigError(f"cache map is not valid JSON: {exc}") from exc
    if not isinstance(value, Mapping):
        raise ConfigError("cache map must be a JSON object")

    cache_map: Dict[str, CacheOptions] = {}
    for source, options in value.items():
        cache_map[validate_source(source)] = parse_cache_options(source, options)
    return cache_map


def _source_name(mount: Mapping[str, str], target: str) -> str:
    cache_id = mount.get("id")
    if cache_id:
        return cache_id.strip("/").replace("/", "-")
    return posixpath.basename(target.rstrip("/"))


def discover_cache_mounts(dockerfile_text: str) -> Dict[str, CacheOptions]:
    """Find ``--mount=type=cache`` flags in a Dockerfile.

    Sources are named after the mount id, or after the last segment of the
    target when no id is given. Later duplicates of a name are ignored.
    """
    found: Dict[str, CacheOptions] = {}
    for match in _MOUNT_FLAG.finditer(dockerfile_text):
        fields: Dict[str, str] = {}
        for item in match.group(1).split(","):
            key, sep, val = item.partition("=")
            fields[key.strip()] = val.strip() if sep else "true"

        if fields.get("type") != "cache":
            continue
        target = next((fields[k] for k in _TARGET_KEYS if fields.get(k)), None)
        if target is None:
            logger.warning("Ignoring cache mount without target: %s", match.group(0))
            continue

        source = _source_name(fields, target)
        try:
            validate_source(source)
            _validate_mount_value(source, "target", target)
            extra = tuple(
                (key, _validate_mount_value(source, key, val))
                for key, val in fields.items()
                if key not in ("type",) + _TARGET_KEYS
            )
        except ConfigError as exc:
            logger.warning("Ignoring cache mount %s: %s", match.group(0), exc)
            continue
        if source in found:
            logger.warning("Duplicate cache source %s in Dockerfile, keeping first", source)
            continue

        found[source] = CacheOptions(target=target, extra=extra)
    return found


def load_dockerfile_cache_map(dockerfile: Path) -> Dict[str, CacheOptions]:
    """Discover cache mounts from a Dockerfile on disk; missing file yields {}."""
    try:
        text = Path(dockerfile).read_text(encoding="utf-8")
    except FileNotFoundError:
        logger.debug("Dockerfile %s not found, no cache mounts discovered", dockerfile)
        return {}
    except OSError as exc:
        raise ConfigError(f"unable to read Dockerfile {dockerfile}: {exc}") from exc
    cache_map = discover_cache_mounts(text)
    logger.info("Discovered %d cache mount(s) in %s", len(cache_map), dockerfile)
    return cache_map


def merge_legacy_source(
    cache_map: Dict[str, CacheOptions],
    cache_source: Optional[str],
    cache_target: Optional[str],
) -> Dict[str, CacheOptions]:
    """Add the deprecated single cache_source/cache_target pair to a map."""
    if cache_source and cache_target:
        logger.warning("cache_source/cache_target are deprecated, use cache_map instead")
        cache_map = dict(cache_map)
        cache_map[validate_source(cache_source)] = CacheOptions(
            target=_validate_mount_value(cache_source, "target", cache_target)
        )
    elif cache_source or cache_target:
        raise ConfigError("cache_source and cache_target must be given together")
    return cache_map
