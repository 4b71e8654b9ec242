"""Filesystem helpers shared by extraction, pulling and layer application."""

import os
from pathlib import Path
from typing import Union

from ..exceptions import (
    BlobNotFoundError,
    LayoutNotFoundError,
    PathTraversalError,
    SymlinkParentError,
)
from .digest import parse_digest

PathLike = Union[str, Path]

_TRAVERSAL_HINT = "The archive appears to contain a path traversal entry."


def _is_within(root: str, candidate: str) -> bool:
    return candidate == root or candidate.startswith(root.rstrip(os.sep) + os.sep)


def resolve_inside_root(root: PathLike, relative_path: str) -> Path:
    """Join a relative archive path onto root and ensure it stays inside.

    The join is lexical; symlinks are checked separately by
    ``ensure_parents_are_not_symlinks``.

    Raises:
        PathTraversalError: If the result lies outside root
    """
    normalized_root = os.path.abspath(root)
    absolute = os.path.abspath(os.path.join(normalized_root, relative_path))
    if not _is_within(normalized_root, absolute):
        raise PathTraversalError(
            f"Refusing path outside extraction root: {relative_path}",
            [_TRAVERSAL_HINT],
        )
    return Path(absolute)


def ensure_parents_are_not_symlinks(root: PathLike, target: PathLike) -> None:
    """Refuse to write below any existing symlinked parent of target.

    Every existing segment between root and target (exclusive) is checked
    with ``lstat``; missing segments are fine since they will be created as
    real directories.

    Raises:
        PathTraversalError: If target is outside root
        SymlinkParentError: If an existing parent segment is a symlink
    """
    normalized_root = os.path.abspath(root)
    normalized_target = os.path.abspath(target)
    if not _is_within(normalized_root, normalized_target):
        raise PathTraversalError(
            f"Refusing path outside extraction root: {target}", [_TRAVERSAL_HINT]
        )

    relative = os.path.relpath(normalized_target, normalized_root)
    parts = [part for part in relative.split(os.sep) if part and part != "."]

    current = Path(normalized_root)
    for part in parts[:-1]:
        current = current / part
        if current.is_symlink():
            raise SymlinkParentError(
                f"Refusing to follow symlink parent '{current}'.",
                [
                    "Layer extraction was blocked to prevent writing outside "
                    "the rootfs tree."
                ],
            )


def path_exists(path: PathLike) -> bool:
    """Return True if anything (including a dangling symlink) is at path."""
    return os.path.lexists(path)


def assert_file_exists(path: Path, label: str, error=LayoutNotFoundError) -> None:
    if not path.is_file():
        raise error(
            f"{label} not found: {path}",
            [f"Verify that {label.lower()} exists and is a regular file."],
        )


def assert_directory_exists(path: Path, label: str) -> None:
    if not path.is_dir():
        raise LayoutNotFoundError(
            f"{label} not found: {path}",
            [f"Verify that {label.lower()} exists and is a directory."],
        )


def blob_path(root: PathLike, digest: str) -> Path:
    """Return ``<root>/blobs/<algorithm>/<hex>`` for a digest."""
    parsed = parse_digest(digest)
    return Path(root) / "blobs" / parsed.algorithm / parsed.hex


def layout_blob_path(layout_path: PathLike, digest: str) -> Path:
    """Return the path of a blob inside an OCI layout, which must exist.

    Raises:
        BlobNotFoundError: If the blob file is missing
    """
    path = blob_path(layout_path, digest)
    assert_file_exists(path, f"blob {digest}", error=BlobNotFoundError)
    return path


def temp_sibling(path: Path) -> Path:
    """Return a unique temporary path next to path, for atomic replacement."""
    return path.with_name(f".{path.name}.tmp-{os.getpid()}-{os.urandom(4).hex()}")


def list_directory(path: Path) -> list[str]:
    """List a directory, returning [] when path is missing or not a directory."""
    if path.is_symlink() or not path.is_dir():
        return []
    return sorted(os.listdir(path))
