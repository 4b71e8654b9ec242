"""Example usage of the OCI image to rootfs converter."""

import asyncio
import logging
import shutil
import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, "src")

from oci2rootfs import (
    LayoutSource,
    Oci2RootfsError,
    build_dry_run_plan,
    configure_logging,
    convert_image,
    render_error,
)

configure_logging()
logger = logging.getLogger(__name__)


def copy_tree(output_dir: Path):
    """Build a materializer that copies the composed rootfs to output_dir."""

    def materialize(applied):
        shutil.copytree(applied.rootfs_dir, output_dir, symlinks=True)
        return output_dir

    return materialize


async def main(argv: list[str]) -> int:
    """Convert an image reference or OCI layout directory into a directory tree."""
    if len(argv) < 3:
        print("usage: convert_example.py <image-ref|layout-dir> <output-dir> [platform]")
        return 2

    target, output_dir = argv[1], Path(argv[2])
    platform = argv[3] if len(argv) > 3 else "linux/amd64"
    source = LayoutSource(path=target) if Path(target).is_dir() else target

    for step in build_dry_run_plan(source, platform).steps:
        logger.info("plan: %s (%s)", step.id, step.stage)

    try:
        result = await convert_image(
            source, platform, materializer=copy_tree(output_dir)
        )
    except Oci2RootfsError as e:
        print(render_error(e), file=sys.stderr)
        return 1

    logger.info("Converted %s (%s)", result.source_digest, result.platform)
    logger.info("Layers applied: %d", result.layers_applied)
    logger.info("Entrypoint: %s", list(result.runtime_metadata.entrypoint))
    logger.info("Rootfs written to %s", result.materialized)
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main(sys.argv)))
