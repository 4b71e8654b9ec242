"""Populate a fresh rootfs directory from the base ext4 image with debugfs."""

import logging
import subprocess
from collections.abc import Sequence
from pathlib import Path
from typing import Optional

from ..core.config import BASE_ROOTFS_ENV, Settings
from ..exceptions import BaseRootfsNotFoundError, ExternalToolError, MissingToolError

logger = logging.getLogger(__name__)

DEBUGFS_CANDIDATES = (
    "debugfs",
    "/opt/homebrew/opt/e2fsprogs/sbin/debugfs",
    "/opt/homebrew/opt/e2fsprogs/bin/debugfs",
    "/usr/local/opt/e2fsprogs/sbin/debugfs",
    "/usr/local/opt/e2fsprogs/bin/debugfs",
)

E2FSPROGS_HINTS = (
    "Install e2fsprogs.",
    "macOS: brew install e2fsprogs",
    "Linux: sudo apt install e2fsprogs",
)


def _probe(command: str) -> bool:
    try:
        result = subprocess.run(
            [command, "-V"],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=False,
        )
    except OSError:
        return False
    # debugfs -V exits 1 on some builds after printing its version
    return result.returncode in (0, 1)


def find_tool(candidates: Sequence[str] = DEBUGFS_CANDIDATES) -> str:
    """Return the first candidate command that runs.

    Raises:
        MissingToolError: If none of the candidates is installed
    """
    for candidate in candidates:
        if _probe(candidate):
            return candidate

    raise MissingToolError(
        f"{candidates[0] if candidates else 'Required tool'} is required but was not found.",
        E2FSPROGS_HINTS,
    )


def extract_base_rootfs_tree(dest: Path, settings: Optional[Settings] = None) -> None:
    """Dump the whole base ext4 image into dest.

    Args:
        dest: Empty rootfs directory
        settings: Supplies the base image path. Default: from environment

    Raises:
        BaseRootfsNotFoundError: If no base image is configured or it is missing
        MissingToolError: If debugfs is not installed
        ExternalToolError: If debugfs fails
    """
    settings = settings or Settings.from_env()
    image = settings.base_rootfs_image
    if image is None:
        raise BaseRootfsNotFoundError(
            "No base rootfs image is configured.",
            [f"Set {BASE_ROOTFS_ENV} to the path of an ext4 rootfs image."],
        )
    if not Path(image).is_file():
        raise BaseRootfsNotFoundError(
            f"Base rootfs image not found: {image}",
            [f"Check {BASE_ROOTFS_ENV}."],
        )

    debugfs = find_tool()
    command = [debugfs, "-R", f"rdump / {dest}", str(image)]
    logger.info("Extracting base rootfs from %s", image)
    result = subprocess.run(command, capture_output=True, text=True, check=False)
    if result.returncode != 0:
        raise ExternalToolError(
            "Failed to extract base rootfs tree.",
            [
                f'Command: {debugfs} -R "rdump / {dest}" {image}',
                result.stderr.strip() or result.stdout.strip() or "Unknown debugfs failure.",
            ],
        )
