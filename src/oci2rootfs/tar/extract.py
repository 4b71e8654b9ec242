"""Safe extraction of decoded tar entries."""

import logging
import os
import posixpath
import shutil
from pathlib import Path
from typing import Iterable, Optional

from ..exceptions import PathTraversalError
from ..utils.fs import ensure_parents_are_not_symlinks, path_exists, resolve_inside_root
from .models import TarEntry, TarEntryType

logger = logging.getLogger(__name__)


def sanitize_tar_path(raw_path: str) -> Optional[str]:
    """Normalise an archive member path to a safe relative POSIX path.

    Leading slashes and ``./`` prefixes are stripped and the path is
    normalised.

    Returns:
        The relative path, or None for empty and ``.`` paths

    Raises:
        PathTraversalError: If the path climbs above the archive root
    """
    if not raw_path or raw_path == ".":
        return None

    stripped = raw_path.replace("\\", "/").lstrip("/")
    while stripped.startswith("./"):
        stripped = stripped[2:]

    if not stripped or stripped == ".":
        return None

    normalized = posixpath.normpath(stripped)
    if normalized in (".", ""):
        return None

    if normalized == ".." or normalized.startswith("../"):
        raise PathTraversalError(
            f"Refusing archive entry with path traversal: '{raw_path}'.",
            ["The archive appears to contain unsafe paths."],
        )

    return normalized


def _prepare_target(target: Path, is_directory: bool) -> None:
    if not path_exists(target):
        return

    if is_directory and target.is_dir() and not target.is_symlink():
        return

    if target.is_dir() and not target.is_symlink():
        shutil.rmtree(target)
    else:
        target.unlink()


def extract_tar_to_directory(entries: Iterable[TarEntry], dest_dir: Path) -> None:
    """Write decoded entries below dest_dir.

    Used for OCI layout archives, which contain plain files and directories.
    Every path is sanitised, resolved inside dest_dir and checked for
    symlinked parents before anything is written.

    Raises:
        PathTraversalError: If an entry escapes dest_dir
        SymlinkParentError: If an entry would be written through a symlink
    """
    root = Path(os.path.abspath(dest_dir))
    root.mkdir(parents=True, exist_ok=True)

    for entry in entries:
        relative = sanitize_tar_path(entry.name)
        if relative is None:
            continue

        target = resolve_inside_root(root, relative)
        ensure_parents_are_not_symlinks(root, target)

        if entry.type is TarEntryType.DIRECTORY:
            _prepare_target(target, True)
            target.mkdir(parents=True, exist_ok=True)

        elif entry.type is TarEntryType.SYMLINK:
            _prepare_target(target, False)
            target.parent.mkdir(parents=True, exist_ok=True)
            os.symlink(entry.link_name, target)

        elif entry.type is TarEntryType.HARDLINK:
            link_relative = sanitize_tar_path(entry.link_name)
            if link_relative is None:
                continue
            link_target = resolve_inside_root(root, link_relative)
            ensure_parents_are_not_symlinks(root, link_target)
            if not path_exists(link_target):
                continue
            _prepare_target(target, False)
            target.parent.mkdir(parents=True, exist_ok=True)
            os.link(link_target, target, follow_symlinks=False)

        elif entry.type is TarEntryType.FILE:
            _prepare_target(target, False)
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(entry.content or b"")
            mode = entry.mode & 0o7777
            if mode:
                try:
                    target.chmod(mode)
                except OSError as e:
                    logger.debug("chmod failed for %s: %s", target, e)
