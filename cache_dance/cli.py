from __future__ import annotations

import argparse
import logging
from typing import List, Optional

from . import config as dance_config
from .container.interface import ProcessError
from .extraction import ExtractionError, extract_caches

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cache-dance",
        description="Extract BuildKit cache mounts into the working directory.",
    )
    # Defaults stay None so unset flags fall through to env vars and config file
    parser.add_argument(
        "--cache-map",
        help='JSON object mapping cache sources to targets, e.g. {"cache-npm": "/root/.npm"}.',
    )
    parser.add_argument("--cache-source", help="Deprecated: single cache source name.")
    parser.add_argument("--cache-target", help="Deprecated: single cache target path.")
    parser.add_argument(
        "--dockerfile",
        help="Dockerfile scanned for cache mounts when no cache map is given (default: Dockerfile).",
    )
    parser.add_argument(
        "--scratch-dir",
        help="Staging directory for build files and archives (default: scratch).",
    )
    parser.add_argument(
        "--skip-extraction",
        action="store_true",
        default=None,
        help="Do nothing; useful to disable extraction on cache hits.",
    )
    parser.add_argument(
        "--utility-image",
        help="Base image for the extraction build (default: ghcr.io/containerd/busybox:latest).",
    )
    parser.add_argument("--builder", help="buildx builder to use (default: current builder).")
    parser.add_argument("--log-level", default="INFO", help="Logging level.")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    dance_config.initialize(args)
    try:
        options = dance_config.resolve()
        extracted = extract_caches(options)
    except dance_config.ConfigError as exc:
        logger.error("Invalid configuration: %s", exc)
        return 1
    except ExtractionError as exc:
        logger.error("Extraction of %s failed at %s: %s", exc.source, exc.stage.value, exc)
        return 1
    except ProcessError as exc:
        logger.error("Command failed: %s", exc)
        return 1
    except OSError as exc:
        logger.error("Filesystem error: %s", exc)
        return 1

    logger.info("Extracted %d cache source(s): %s", len(extracted), ", ".join(extracted) or "-")
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
