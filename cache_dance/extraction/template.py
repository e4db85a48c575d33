"""Build-file template for pulling a cache mount's contents into an image."""

from __future__ import annotations

# Where the extraction image keeps the copied cache, one subdirectory per source
DANCE_CACHE_DIR = "/var/dance-cache"
STAMP_FILE = "buildstamp"
DANCEFILE = "Dancefile.extract"


def render_dancefile(
    cache_source: str,
    target_path: str,
    mount_args: str,
    container_image: str,
) -> str:
    """Render the extraction build-file.

    The ``COPY`` of the stamp file comes before the ``RUN`` so that a freshly
    written stamp invalidates the layer cache for the copy step.
    """
    dest = f"{DANCE_CACHE_DIR}/{cache_source}"
    return f"""
FROM {container_image}
COPY {STAMP_FILE} {STAMP_FILE}
RUN --mount={mount_args} \\
    echo "Contents of {target_path}:" && \\
    ls -la {target_path} && \\
    mkdir -p {dest} \\
    && cp -p -R {target_path}/. {dest} && \\
    echo "Contents of {dest}:" && \\
    ls -la {dest}
"""
