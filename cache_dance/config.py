"""Configuration management for cache-dance.

Every setting is looked up through the same fallback chain: the parsed
command-line options object, then a ``CACHE_DANCE_<KEY>`` environment
variable, then the ``[cache-dance]`` section of the INI file named by
``CACHE_DANCE_CONFIG``, then the built-in default.
"""

from __future__ import annotations

import configparser
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from .cache_map import (
    CacheOptions,
    ConfigError,
    check_scratch_collision,
    load_dockerfile_cache_map,
    merge_legacy_source,
    parse_cache_map,
)

logger = logging.getLogger(__name__)

CONFIG_SECTION = "cache-dance"
ENV_PREFIX = "CACHE_DANCE_"

# Module-level config cache
_config: Optional[Dict[str, Any]] = None
_options: Optional[Any] = None  # Parsed CLI options (initialized by cli.main)

__all__ = [
    "ConfigError",
    "ResolvedOptions",
    "initialize",
    "reset_config",
    "resolve",
]


def initialize(options: Any) -> None:
    """Initialize config module with a parsed options object.

    Attributes named after config keys take precedence over every other
    source. Attributes that are None are treated as unset.

    Args:
        options: argparse.Namespace (or any object) carrying option attributes
    """
    global _options
    _options = options
    logger.debug("Config module initialized with options object")


def _parse_config_file(config_file: Optional[str] = None) -> Dict[str, Any]:
    """Parse the [cache-dance] section of an INI config file.

    Args:
        config_file: Path to the config file. If None, nothing is read.

    Returns:
        Dict of raw string values, keys normalized to underscores
    """
    if not config_file:
        return {}
    parser = configparser.ConfigParser(interpolation=None)
    try:
        read = parser.read(config_file, encoding="utf-8")
    except configparser.Error as exc:
        logger.warning("Failed to parse config file %s: %s", config_file, exc)
        return {}
    if not read:
        logger.warning("Config file %s not found, using defaults", config_file)
        return {}
    if not parser.has_section(CONFIG_SECTION):
        logger.debug("Config file %s has no [%s] section", config_file, CONFIG_SECTION)
        return {}
    return {key.replace("-", "_"): value for key, value in parser.items(CONFIG_SECTION)}


def _get_config() -> Dict[str, Any]:
    """Get parsed config dict, initializing if needed."""
    global _config
    if _config is None:
        config_file = os.environ.get(f"{ENV_PREFIX}CONFIG")
        _config = _parse_config_file(config_file)
    return _config


def _convert(
    source: str,
    value: Any,
    default: Any,
    converter: Optional[Callable[[Any], Any]],
) -> Any:
    if converter is None:
        return value
    try:
        return converter(value)
    except (ValueError, TypeError):
        logger.warning("Invalid value for %s: %s, using default", source, value)
        return default


def _get_config_value(
    key: str,
    default: Any,
    converter: Optional[Callable[[Any], Any]] = None,
) -> Any:
    """Get config value with fallback chain: options → env var → config file → default.

    Args:
        key: Config key name (underscored, as in the [cache-dance] section)
        default: Default value if not found
        converter: Optional function to convert string value (e.g., int, bool)
    """
    if _options is not None:
        value = getattr(_options, key, None)
        if value is not None:
            return _convert(f"option {key}", value, default, converter)

    env_var = f"{ENV_PREFIX}{key.upper()}"
    env_value = os.environ.get(env_var)
    if env_value is not None:
        return _convert(env_var, env_value, default, converter)

    value = _get_config().get(key)
    if value is not None:
        return _convert(f"config key {key}", value, default, converter)

    return default


def _parse_bool(value: Any) -> bool:
    """Parse boolean value from config (string or bool).

    Accepts: True, "true", "True", "1", "yes", "on" → True
             everything else → False
    """
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes", "on")
    return bool(value)


def _optional_str(value: Any) -> Optional[str]:
    text = str(value).strip()
    return text or None


def dance_cache_map_raw() -> Any:
    """Cache map as given (JSON text or mapping); default is empty."""
    return _get_config_value("cache_map", "{}")


def dance_cache_source() -> Optional[str]:
    """Deprecated single cache source name."""
    return _get_config_value("cache_source", None, converter=_optional_str)


def dance_cache_target() -> Optional[str]:
    """Deprecated single cache target path."""
    return _get_config_value("cache_target", None, converter=_optional_str)


def dance_dockerfile() -> Path:
    """Dockerfile scanned for cache mounts when no cache map is given."""
    return Path(_get_config_value("dockerfile", "Dockerfile"))


def dance_scratch_dir() -> Path:
    """Host staging directory for build files and extracted archives."""
    return Path(_get_config_value("scratch_dir", "scratch"))


def dance_skip_extraction() -> bool:
    return _get_config_value("skip_extraction", False, converter=_parse_bool)


def dance_utility_image() -> str:
    """Base image of the throwaway extraction build."""
    return _get_config_value("utility_image", "ghcr.io/containerd/busybox:latest")


def dance_builder() -> Optional[str]:
    """Named buildx builder; None selects the default builder."""
    return _get_config_value("builder", None, converter=_optional_str)


def dance_docker_command() -> str:
    return _get_config_value("docker_command", "docker")


def dance_image_tag() -> str:
    """Tag of the extraction image.

    Shared by every source and every run on the host: concurrent runs on the
    same docker daemon are unsafe.
    """
    return _get_config_value("image_tag", "dance:extract")


def dance_container_name() -> str:
    """Name of the extraction container; same single-host caveat as the tag."""
    return _get_config_value("container_name", "cache-container")


def dance_privileged_remove() -> bool:
    """Remove the destination with sudo (cache files may belong to another uid)."""
    return _get_config_value("privileged_remove", True, converter=_parse_bool)


def dance_strict_cleanup() -> bool:
    """Abort when removing the old container fails for a reason other than absence."""
    return _get_config_value("strict_cleanup", False, converter=_parse_bool)


def dance_cache_map() -> Dict[str, CacheOptions]:
    """Resolve the ordered cache map.

    Combines the cache_map option with the deprecated cache_source and
    cache_target pair. When the result is empty, cache mounts are discovered
    from the configured Dockerfile.

    Raises:
        ConfigError: If the cache map is malformed
    """
    cache_map = parse_cache_map(dance_cache_map_raw())
    cache_map = merge_legacy_source(cache_map, dance_cache_source(), dance_cache_target())
    if not cache_map:
        cache_map = load_dockerfile_cache_map(dance_dockerfile())
    return cache_map


@dataclass(frozen=True)
class ResolvedOptions:
    """Everything the batch orchestrator needs, resolved once per run."""

    cache_map: Dict[str, CacheOptions]
    scratch_dir: Path
    utility_image: str
    builder: Optional[str] = None
    skip_extraction: bool = False
    image_tag: str = "dance:extract"
    container_name: str = "cache-container"
    docker_command: str = "docker"
    privileged_remove: bool = True
    strict_cleanup: bool = False


def resolve() -> ResolvedOptions:
    """Resolve all settings into a ResolvedOptions value.

    The cache map is not resolved when extraction is skipped, so a skipped
    run never reads the Dockerfile.

    Raises:
        ConfigError: If the cache map is malformed or a cache source would
            overlap the scratch directory
    """
    skip = dance_skip_extraction()
    scratch_dir = dance_scratch_dir()
    cache_map = {} if skip else dance_cache_map()
    check_scratch_collision(cache_map, scratch_dir, Path.cwd())
    return ResolvedOptions(
        cache_map=cache_map,
        scratch_dir=scratch_dir,
        utility_image=dance_utility_image(),
        builder=dance_builder(),
        skip_extraction=skip,
        image_tag=dance_image_tag(),
        container_name=dance_container_name(),
        docker_command=dance_docker_command(),
        privileged_remove=dance_privileged_remove(),
        strict_cleanup=dance_strict_cleanup(),
    )


def reset_config() -> None:
    """Reset config cache (useful for testing)."""
    global _config, _options
    _config = None
    _options = None
