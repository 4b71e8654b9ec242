"""Temporary resource tracking for one pipeline run."""

import logging
import os
import shutil
import sys
import tempfile
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

TEMP_PREFIX = "oci2rootfs-"


class ResourceScope:
    """Owns every temporary path created during a pipeline run.

    Stages register what they allocate; ``close()`` removes all of it exactly
    once, newest first. Use as a context manager so removal runs on every
    exit path.
    """

    def __init__(self, base_dir: Optional[Path] = None) -> None:
        self.base_dir = base_dir
        self._paths: list[Path] = []
        self._closed = False

    def __enter__(self) -> "ResourceScope":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    @property
    def paths(self) -> tuple[Path, ...]:
        return tuple(self._paths)

    def register(self, path: Path) -> Path:
        """Register an existing path for removal when the scope closes."""
        if self._closed:
            raise RuntimeError("Resource scope is already closed")
        path = Path(path)
        if path not in self._paths:
            self._paths.append(path)
        return path

    def make_temp_dir(self, label: str) -> Path:
        """Create and register a fresh temporary directory."""
        path = Path(
            tempfile.mkdtemp(prefix=f"{TEMP_PREFIX}{label}-", dir=self.base_dir)
        )
        return self.register(path)

    def close(self) -> None:
        """Remove every registered path. Removal errors are logged, not raised."""
        if self._closed:
            return
        self._closed = True

        for path in reversed(self._paths):
            remove_tree(path)
        self._paths.clear()


def _widen(directory: Path) -> None:
    try:
        directory.chmod(directory.stat().st_mode | 0o700)
    except OSError as e:
        logger.debug("Could not widen %s: %s", directory, e)


def _widen_tree(root: Path) -> None:
    # Read-only directories from image layers block rmtree.
    _widen(root)
    for dirpath, dirnames, _filenames in os.walk(root):
        for name in dirnames:
            child = Path(dirpath) / name
            if not child.is_symlink():
                _widen(child)


def _log_failure(_func, path, exc) -> None:
    logger.debug("Could not remove %s: %s", path, exc)


def remove_tree(path: Path) -> None:
    """Remove a file or directory tree, ignoring missing paths."""
    try:
        if path.is_symlink() or path.is_file():
            path.unlink()
        elif path.exists():
            _widen_tree(path)
            if sys.version_info >= (3, 12):
                shutil.rmtree(path, onexc=_log_failure)
            else:
                shutil.rmtree(path, onerror=_log_failure)
    except OSError as e:
        logger.warning("Failed to clean up %s: %s", path, e)
